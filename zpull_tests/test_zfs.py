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
"""Unit tests for the 'zfs' CLI adapter; the remote command channel is mocked out."""

from __future__ import annotations
import unittest
from unittest.mock import MagicMock, patch

import zpull_main.zfs
from zpull_main import zpull
from zpull_main.commands import Command, Pipeline, Script
from zpull_main.zfs import (
    PropertyValue,
    Zfs,
    parse_send_size_estimate,
    parse_space,
)
from zpull_tests.abstract_testcase import AbstractTestCase


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestCommandBuilders,
        TestQueries,
        TestMutations,
        TestParsers,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


def make_zfs(test: AbstractTestCase, location: str = "src") -> Zfs:
    job = zpull.Job()
    job.params = test.make_params(test.argparser_parse_args(["tank/src", "pool/dst"]))
    return Zfs(job, job.params.src if location == "src" else job.params.dst)


#############################################################################
class TestCommandBuilders(AbstractTestCase):

    def setUp(self) -> None:
        self.zfs = make_zfs(self)

    def test_location(self) -> None:
        self.assertEqual("src", self.zfs.location)
        self.assertEqual("dst", make_zfs(self, "dst").location)

    def test_list_snapshots_command(self) -> None:
        cmd = self.zfs.list_snapshots_command("tank/src")
        self.assertEqual(
            "zfs list -t snapshot -d 1 -Hp -o name,creation,referenced -s createtxg tank/src", cmd.render()
        )

    def test_send_commands(self) -> None:
        self.assertEqual(("zfs", "send", "tank/a@s2"), self.zfs.send_command("tank/a", "s2").argv)
        self.assertEqual(
            ("zfs", "send", "-i", "tank/a@s1", "tank/a@s2"), self.zfs.send_command("tank/a", "s2", "s1").argv
        )

    def test_receive_commands(self) -> None:
        self.assertEqual(("zfs", "receive", "-F", "-u", "pool/a"), self.zfs.receive_command("pool/a", full=True).argv)
        self.assertEqual(("zfs", "receive", "-u", "pool/a"), self.zfs.receive_command("pool/a", full=False).argv)

    def test_invalid_names_are_rejected(self) -> None:
        with self.assertRaises(SystemExit):
            self.zfs.send_command("tank/a;rm", "s1")
        with self.assertRaises(SystemExit):
            self.zfs.send_command("tank/a", "s 1")


#############################################################################
class TestQueries(AbstractTestCase):

    def setUp(self) -> None:
        self.zfs = make_zfs(self)

    def test_read_listing_is_a_single_round_trip(self) -> None:
        with patch.object(zpull_main.zfs, "try_ssh_command", return_value="10\t20\n") as try_run:
            self.assertEqual("10\t20\n", self.zfs.read_listing("tank/src"))
        self.assertEqual(1, try_run.call_count)
        script = try_run.call_args[0][2]
        self.assertIsInstance(script, Script)
        self.assertEqual(2, len(script.steps))
        self.assertIn("used,available", script.render())
        self.assertIn("name,creation,referenced", script.render())

    def test_list_snapshots(self) -> None:
        with patch.object(zpull_main.zfs, "try_ssh_command", return_value="tank/src@s1\t10\t5\ntank/src@s2\t20\t6\n"):
            self.assertEqual(["tank/src@s1\t10\t5", "tank/src@s2\t20\t6"], self.zfs.list_snapshots("tank/src"))
        with patch.object(zpull_main.zfs, "try_ssh_command", return_value=None):
            self.assertIsNone(self.zfs.list_snapshots("tank/src"))

    def test_space(self) -> None:
        with patch.object(zpull_main.zfs, "try_ssh_command", return_value="100\t900\n"):
            self.assertEqual((100, 900), self.zfs.space("tank/src"))
        with patch.object(zpull_main.zfs, "try_ssh_command", return_value=None):
            self.assertIsNone(self.zfs.space("tank/src"))

    def test_get_properties(self) -> None:
        output = "readonly\ton\tlocal\ncompression\tlz4\tinherited from tank\n"
        with patch.object(zpull_main.zfs, "try_ssh_command", return_value=output):
            props = self.zfs.get_properties("tank/src", ["readonly", "compression"])
        assert props is not None
        self.assertEqual(PropertyValue("on", "local"), props["readonly"])
        self.assertTrue(props["readonly"].is_local)
        self.assertFalse(props["compression"].is_local)
        self.assertTrue(PropertyValue("on", "received").is_local)
        self.assertFalse(PropertyValue("off", "default").is_local)

    def test_exists(self) -> None:
        with patch.object(zpull_main.zfs, "try_ssh_command", return_value="tank/src@s1\n") as try_run:
            self.assertTrue(self.zfs.snapshot_exists("tank/src", "s1"))
        self.assertIn("tank/src@s1", try_run.call_args[0][2].argv)
        with patch.object(zpull_main.zfs, "try_ssh_command", return_value=None):
            self.assertFalse(self.zfs.snapshot_exists("tank/src", "s1"))

    def test_diff_reads_only_the_first_line(self) -> None:
        with patch.object(zpull_main.zfs, "run_ssh_command", return_value="M\t/tank/src/a.txt\n") as run:
            self.assertEqual("M\t/tank/src/a.txt\n", self.zfs.diff("tank/src", "s1", "s2"))
        pipeline = run.call_args[0][2]
        self.assertIsInstance(pipeline, Pipeline)
        self.assertEqual("zfs diff -H tank/src@s1 tank/src@s2 2>&1 | head -n 1", pipeline.render())
        self.zfs.job.params.log.warning.assert_not_called()  # type: ignore[attr-defined]

    def test_failing_diff_reads_as_a_change(self) -> None:
        output = "Cannot diff tank/src@s1: permission denied\n"
        with patch.object(zpull_main.zfs, "run_ssh_command", return_value=output):
            self.assertEqual(output, self.zfs.diff("tank/src", "s1", "s2"))
        self.zfs.job.params.log.warning.assert_called_once()  # type: ignore[attr-defined]

    def test_estimate_send_size(self) -> None:
        output = "incremental\ts1\ttank/src@s2\t4096\nsize\t4096\n"
        with patch.object(zpull_main.zfs, "run_ssh_command", return_value=output) as run:
            self.assertEqual(4096, self.zfs.estimate_send_size("tank/src", "s2", "s1"))
        self.assertEqual(("zfs", "send", "-nvP", "-i", "tank/src@s1", "tank/src@s2"), run.call_args[0][2].argv)


#############################################################################
class TestMutations(AbstractTestCase):

    def setUp(self) -> None:
        self.zfs = make_zfs(self, "dst")
        self.run = MagicMock(return_value="")
        patcher = patch.object(zpull_main.zfs, "run_ssh_command", self.run)
        patcher.start()
        self.addCleanup(patcher.stop)

    def last_argv(self) -> tuple[str, ...]:
        cmd = self.run.call_args[0][2]
        assert isinstance(cmd, Command)
        return cmd.argv

    def test_mutations(self) -> None:
        self.zfs.create_snapshot("pool/a", "s1")
        self.assertEqual(("zfs", "snapshot", "pool/a@s1"), self.last_argv())
        self.zfs.destroy_snapshot("pool/a", "s1")
        self.assertEqual(("zfs", "destroy", "pool/a@s1"), self.last_argv())
        self.zfs.destroy_snapshot("pool/a", "s1", dependents=True)
        self.assertEqual(("zfs", "destroy", "-R", "pool/a@s1"), self.last_argv())
        self.zfs.destroy_dataset("pool/a")
        self.assertEqual(("zfs", "destroy", "-r", "pool/a"), self.last_argv())
        self.zfs.rollback("pool/a", "s1")
        self.assertEqual(("zfs", "rollback", "-r", "pool/a@s1"), self.last_argv())
        self.zfs.set_property("pool/a", "readonly", "on")
        self.assertEqual(("zfs", "set", "readonly=on", "pool/a"), self.last_argv())
        self.zfs.inherit_property("pool/a", "readonly")
        self.assertEqual(("zfs", "inherit", "readonly", "pool/a"), self.last_argv())

    def test_custom_zfs_program(self) -> None:
        job = zpull.Job()
        job.params = self.make_params(self.argparser_parse_args(["tank/src", "pool/dst", "--zfs-program", "/sbin/zfs"]))
        Zfs(job, job.params.dst).create_snapshot("pool/a", "s1")
        self.assertEqual("/sbin/zfs", self.last_argv()[0])


#############################################################################
class TestParsers(unittest.TestCase):

    def test_parse_space(self) -> None:
        self.assertEqual((1, 2), parse_space("1\t2"))
        with self.assertRaises(ValueError):
            parse_space("garbage")

    def test_parse_send_size_estimate(self) -> None:
        self.assertEqual(123, parse_send_size_estimate("full\ttank/a@s1\t123\nsize\t123\n"))
        for output in ["", "full\ttank/a@s1\t123\n"]:
            with self.subTest(output=output), self.assertRaises(ValueError):
                parse_send_size_estimate(output)
