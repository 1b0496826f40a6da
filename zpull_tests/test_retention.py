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
"""Unit tests for retention cleanup of tagged snapshots."""

from __future__ import annotations
import unittest
from typing import cast
from unittest.mock import MagicMock

from zpull_main.retention import sweep_tagged
from zpull_main.tags import SnapshotTag
from zpull_tests.abstract_testcase import AbstractTestCase
from zpull_tests.fake_zfs import FakeZfs


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestSweepTagged,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


TAG = SnapshotTag("backuphost", "2024-11-06_08:30:05")
T1 = "zpull_backuphost_2024-11-04_08:30:05"
T2 = "zpull_backuphost_2024-11-05_08:30:05"
T3 = TAG.name


#############################################################################
class TestSweepTagged(AbstractTestCase):

    def setUp(self) -> None:
        self.job = self.make_job()
        self.zfs = cast(FakeZfs, self.job.src_zfs)
        self.zfs.dataset("pool/src")
        for name in ["daily1", T1, "zpull_otherhost_2024-11-05_00:00:00", T2, "daily2", T3]:
            self.zfs.snapshot("pool/src", name)

    def test_keeps_only_newest_tagged(self) -> None:
        self.assertEqual([T2, T1], sweep_tagged(self.zfs, "pool/src", TAG))
        remaining = self.zfs.datasets["pool/src"].names()
        self.assertEqual(["daily1", "zpull_otherhost_2024-11-05_00:00:00", "daily2", T3], remaining)

    def test_nothing_to_sweep(self) -> None:
        self.assertEqual([T2, T1], sweep_tagged(self.zfs, "pool/src", TAG))
        self.assertEqual([], sweep_tagged(self.zfs, "pool/src", TAG))

    def test_failures_are_skipped(self) -> None:
        self.zfs.failing_destroys.add(T1)
        self.assertEqual([T2], sweep_tagged(self.zfs, "pool/src", TAG))
        self.assertIn(T1, self.zfs.datasets["pool/src"].names())
        log = cast(MagicMock, self.job.params.log)
        self.assertEqual(1, log.warning.call_count)
        self.assertIn("snapshot is busy", log.warning.call_args.args)
