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
"""Unit tests for the console progress status line."""

from __future__ import annotations
import io
import unittest
from unittest.mock import MagicMock

from zpull_main.progress_reporter import ProgressReporter
from zpull_main.utils import LOG_TRACE


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestProgressReporter,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


class FakeClock:
    def __init__(self) -> None:
        self.nanos = 0

    def __call__(self) -> int:
        return self.nanos

    def advance(self, secs: float) -> None:
        self.nanos += round(secs * 1_000_000_000)


#############################################################################
class TestProgressReporter(unittest.TestCase):

    def setUp(self) -> None:
        self.clock = FakeClock()
        self.stream = io.StringIO()
        self.log = MagicMock()

    def reporter(self, estimated_bytes: int = 4 * 1024 * 1024, isatty: bool = True) -> ProgressReporter:
        return ProgressReporter(
            self.log, estimated_bytes, isatty, update_interval_secs=1, stream=self.stream, clock=self.clock
        )

    def test_no_output_before_first_interval(self) -> None:
        reporter = self.reporter()
        reporter.add(1024)
        self.assertEqual("", self.stream.getvalue())
        self.assertEqual(1024, reporter.sent_bytes)

    def test_status_line_on_console(self) -> None:
        reporter = self.reporter()
        self.clock.advance(2)
        reporter.add(2 * 1024 * 1024)
        output = self.stream.getvalue()
        self.assertTrue(output.endswith("\r"))
        self.assertIn("[I] zfs sent 2.00 MiB 0:00:02", output)
        self.assertIn("[1.00 MiB/s]", output)
        self.assertIn("50% of 4 MiB", output)
        reporter.finish()
        self.assertTrue(self.stream.getvalue().endswith(" \r"))

    def test_without_estimate(self) -> None:
        reporter = self.reporter(estimated_bytes=0)
        self.clock.advance(1)
        reporter.add(10)
        self.assertNotIn(" of ", self.stream.getvalue())

    def test_not_a_tty_logs_at_trace_level(self) -> None:
        reporter = self.reporter(isatty=False)
        self.clock.advance(1)
        reporter.add(10)
        self.assertEqual("", self.stream.getvalue())
        self.log.log.assert_called_once()
        self.assertEqual(LOG_TRACE, self.log.log.call_args.args[0])
        reporter.finish()
        self.assertEqual("", self.stream.getvalue())

    def test_elapsed_and_duration_format(self) -> None:
        reporter = self.reporter()
        self.clock.advance(3725)
        self.assertEqual(3725 * 1_000_000_000, reporter.elapsed_nanos())
        self.assertIn(" 1:02:05 ", reporter.status_line(self.clock()))
