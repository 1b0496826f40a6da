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
"""Unit tests for the detection of helper programs on the source and local host."""

from __future__ import annotations
import os
import subprocess
import unittest
from unittest.mock import patch

import zpull_main.detect
from zpull_main import zpull
from zpull_main.detect import (
    _disable_program,
    _find_available_programs,
    detect_available_programs,
)
from zpull_tests.abstract_testcase import AbstractTestCase


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestDetectAvailablePrograms,
        TestDisableAndHelpers,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


def make_job(test: AbstractTestCase, cli: list[str]) -> zpull.Job:
    job = zpull.Job()
    with patch.dict(os.environ, {"zpull_reuse_ssh_connection": "false"}):
        job.params = test.make_params(test.argparser_parse_args(cli))
    return job


#############################################################################
class TestDetectAvailablePrograms(AbstractTestCase):

    def test_local_source_shares_local_programs(self) -> None:
        job = make_job(self, ["tank/src", "pool/dst"])
        with patch.object(zpull_main.detect, "run_ssh_command", return_value="zfs\nsh\nzstd\npv\n") as run:
            detect_available_programs(job)
        self.assertEqual(1, run.call_count)
        p = job.params
        self.assertEqual({"zfs", "sh", "zstd", "pv"}, set(p.available_programs["local"]))
        self.assertIs(p.available_programs["local"], p.available_programs["src"])
        self.assertTrue(p.is_program_available("pv", "dst"))
        self.assertFalse(p.is_program_available("mbuffer", "local"))

    def test_remote_source_is_checked_separately(self) -> None:
        job = make_job(self, ["host:tank/src", "pool/dst"])
        outputs = {"dst": "zfs\nssh\nsh\nzstd\nmbuffer\n", "src": "zfs\nsh\n"}
        with patch.object(zpull_main.detect, "run_ssh_command", side_effect=lambda j, r, cmd, **kw: outputs[r.location]):
            detect_available_programs(job)
        p = job.params
        self.assertTrue(p.is_program_available("zstd", "local"))
        self.assertFalse(p.is_program_available("zstd", "src"))
        self.assertTrue(p.is_program_available("mbuffer", "local"))

    def test_remote_source_requires_local_ssh(self) -> None:
        job = make_job(self, ["host:tank/src", "pool/dst"])
        with patch.object(zpull_main.detect, "run_ssh_command", return_value="zfs\nsh\n"):
            with self.assertRaises(SystemExit):
                detect_available_programs(job)

    def test_missing_zfs_is_fatal(self) -> None:
        job = make_job(self, ["tank/src", "pool/dst"])
        with patch.object(zpull_main.detect, "run_ssh_command", return_value="sh\nzstd\n"):
            with self.assertRaises(SystemExit):
                detect_available_programs(job)

    def test_programs_disabled_via_dash(self) -> None:
        cli = ["tank/src", "pool/dst", "--compression-program", "-", "--mbuffer-program", "-", "--pv-program", "-"]
        job = make_job(self, cli)
        with patch.object(zpull_main.detect, "run_ssh_command", return_value="zfs\nsh\nzstd\nmbuffer\npv\n"):
            detect_available_programs(job)
        for program in ["zstd", "mbuffer", "pv"]:
            for location in ["src", "dst", "local"]:
                self.assertFalse(job.params.is_program_available(program, location))
        self.assertTrue(job.params.is_program_available("sh", "local"))

    def test_failing_detection_continues_with_minimal_assumptions(self) -> None:
        job = make_job(self, ["tank/src", "pool/dst"])
        error = subprocess.CalledProcessError(127, "sh")
        with patch.object(zpull_main.detect, "run_ssh_command", side_effect=error):
            detect_available_programs(job)
        self.assertEqual({"zfs": ""}, job.params.available_programs["local"])
        job.params.log.warning.assert_called()  # type: ignore[attr-defined]

    def test_missing_local_shell_continues_with_minimal_assumptions(self) -> None:
        job = make_job(self, ["tank/src", "pool/dst"])
        error = FileNotFoundError(2, "No such file or directory", "sh")
        with patch.object(zpull_main.detect, "run_ssh_command", side_effect=error):
            detect_available_programs(job)
        self.assertEqual({"zfs": ""}, job.params.available_programs["src"])


#############################################################################
class TestDisableAndHelpers(AbstractTestCase):

    def test_disable_program(self) -> None:
        p = self.make_params(self.argparser_parse_args(["tank/src", "pool/dst"]))
        p.available_programs = {"local": {"pv": "", "zfs": ""}, "src": {"pv": ""}}
        _disable_program(p, "pv", ["local", "src"])
        self.assertEqual({"zfs": ""}, p.available_programs["local"])
        self.assertEqual({}, p.available_programs["src"])

    def test_find_available_programs_is_built_from_commands(self) -> None:
        p = self.make_params(self.argparser_parse_args(["tank/src", "pool/dst", "--pv-program", "mypv"]))
        script = _find_available_programs(p)
        self.assertEqual(7, len(script.steps))
        rendered = script.render()
        self.assertTrue(rendered.startswith("{ command -v zfs > /dev/null && printf '%s\\n' zfs; }; "), rendered)
        self.assertIn("{ command -v mypv > /dev/null && printf '%s\\n' pv; }", rendered)
        self.assertIn("command -v zstd", rendered)
        self.assertIn("command -v mbuffer", rendered)
        self.assertTrue(rendered.endswith("; true"), rendered)

    def test_find_available_programs_prints_found_programs_only(self) -> None:
        cli = ["tank/src", "pool/dst", "--pv-program", "zpull-no-such-program", "--compression-program", "sh"]
        p = self.make_params(self.argparser_parse_args(cli))
        argv = ["sh", "-c", _find_available_programs(p).render()]
        output = subprocess.run(argv, stdout=subprocess.PIPE, text=True, check=True)
        self.assertIn("sh\n", output.stdout)
        self.assertIn("zstd\n", output.stdout)
        self.assertNotIn("pv", output.stdout)
