# Copyright 2024 Wolfgang Hoschek AT mac DOT com
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
"""Test case base class used by most unit tests; provides consistent CLI argument parsing and Params construction."""

from __future__ import annotations
import argparse
import logging
import os
import tempfile
import unittest
from unittest.mock import MagicMock

from zpull_main import argparse_cli, configuration, zpull
from zpull_tests.fake_zfs import FakeZfs


#############################################################################
class AbstractTestCase(unittest.TestCase):

    @staticmethod
    def log_dir() -> str:
        return os.path.join(tempfile.gettempdir(), argparse_cli.LOG_DIR_DEFAULT + "-test-" + str(os.getuid()))

    @classmethod
    def argparser_parse_args(cls, args: list[str]) -> argparse.Namespace:
        return argparse_cli.argument_parser().parse_args(args + ["--log-dir", cls.log_dir(), "--tag-host", "backuphost"])

    @staticmethod
    def make_params(
        args: argparse.Namespace,
        log_params: configuration.LogParams | None = None,
        log: logging.Logger | None = None,
        inject_params: dict[str, bool] | None = None,
    ) -> configuration.Params:
        if log_params is None:
            log_params = MagicMock(spec=configuration.LogParams)
            log_params.isatty = False
            log_params.quiet = False
        log = log if log is not None else MagicMock(spec=logging.Logger)
        return configuration.Params(args=args, sys_argv=[], log_params=log_params, log=log, inject_params=inject_params)

    def make_job(self, cli: list[str] | None = None) -> zpull.Job:
        """Returns a job with local source and destination, whose zfs adapters are in-memory fakes."""
        args = self.argparser_parse_args(cli if cli is not None else ["pool/src", "pool2/dst"])
        job = zpull.Job()
        job.params = self.make_params(args=args)
        src = FakeZfs("src", job)
        dst = FakeZfs("dst", job)
        dst.peer = src
        job.src_zfs, job.dst_zfs = src, dst  # type: ignore[assignment]
        return job
