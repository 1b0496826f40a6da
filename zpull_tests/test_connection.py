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
"""Unit tests for the remote command channel."""

from __future__ import annotations
import os
import subprocess
import tempfile
import time
import unittest
from unittest.mock import MagicMock, patch

import zpull_main.connection
from zpull_main import zpull
from zpull_main.commands import Command, Pipeline, Script
from zpull_main.connection import (
    Connection,
    get_connection,
    is_dataset_missing,
    refresh_ssh_connection_if_necessary,
    remote_argv,
    run_ssh_command,
    run_ssh_script,
    timeout,
    try_ssh_command,
)
from zpull_tests.abstract_testcase import AbstractTestCase
from zpull_tests.tools import suppress_output


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestLocalCommands,
        TestRemoteCommands,
        TestTimeout,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


def make_job(test: AbstractTestCase, cli: list[str]) -> zpull.Job:
    job = zpull.Job()
    job.params = test.make_params(test.argparser_parse_args(cli))
    return job


#############################################################################
class TestLocalCommands(AbstractTestCase):

    def setUp(self) -> None:
        self.job = make_job(self, ["tank/src", "pool/dst"])

    def test_remote_argv_runs_plain_command_directly(self) -> None:
        cmd = Command.of("zfs", "list", "tank/src")
        self.assertEqual(["zfs", "list", "tank/src"], remote_argv(self.job, self.job.params.src, cmd))

    def test_remote_argv_runs_pipeline_via_shell(self) -> None:
        pipe = Pipeline.of(Command.of("echo", "a b"), Command.of("cat"))
        self.assertEqual(["sh", "-c", "echo 'a b' | cat"], remote_argv(self.job, self.job.params.dst, pipe))

    def test_run_ssh_command_returns_stdout(self) -> None:
        stdout = run_ssh_command(self.job, self.job.params.src, Command.of("printf", "%s\\n", "hello", "world"))
        self.assertEqual("hello\nworld\n", stdout)
        self.job.params.log.log.assert_called()  # type: ignore[attr-defined]

    def test_run_ssh_script_runs_all_steps_in_one_shell(self) -> None:
        script = Script.all_of(Command.of("printf", "1\\t2\\n"), Command.of("printf", "a\\n"))
        self.assertEqual("1\t2\na\n", run_ssh_script(self.job, self.job.params.src, script))

    def test_remote_argv_runs_redirected_command_via_shell(self) -> None:
        cmd = Command.of("zfs", "diff", "tank/src@s1").merge_stderr()
        self.assertEqual(["sh", "-c", "zfs diff tank/src@s1 2>&1"], remote_argv(self.job, self.job.params.src, cmd))

    def test_run_ssh_command_applies_redirects(self) -> None:
        script = Script.each_of(Command.of("printf", "x").discard_stdout(), Command.of("printf", "y"))
        self.assertEqual("y", run_ssh_command(self.job, self.job.params.src, script))
        cmd = Command.of("sh", "-c", "printf 'oops' >&2").merge_stderr()
        self.assertEqual("oops", run_ssh_command(self.job, self.job.params.src, cmd))

    def test_try_ssh_command_runs_script_as_one_batch(self) -> None:
        script = Script.all_of(Command.of("printf", "1\\t2\\n"), Command.of("printf", "a\\n"))
        with patch.object(zpull_main.connection, "run_ssh_script", return_value="1\t2\na\n") as run_script:
            self.assertEqual("1\t2\na\n", try_ssh_command(self.job, self.job.params.src, script))
        run_script.assert_called_once()
        self.assertIs(script, run_script.call_args[0][2])
        self.assertFalse(run_script.call_args[1]["print_stderr"])

    def test_run_ssh_command_raises_on_failure(self) -> None:
        with suppress_output(), self.assertRaises(subprocess.CalledProcessError):
            run_ssh_command(self.job, self.job.params.src, Command.of("sh", "-c", "exit 3"))

    def test_try_ssh_command_returns_none_if_dataset_is_missing(self) -> None:
        cmd = Command.of("sh", "-c", "echo \"cannot open 'tank/x': dataset does not exist\" >&2; exit 1")
        self.assertIsNone(try_ssh_command(self.job, self.job.params.src, cmd))

    def test_try_ssh_command_reraises_other_errors(self) -> None:
        cmd = Command.of("sh", "-c", "echo 'permission denied' >&2; exit 1")
        with self.assertRaises(subprocess.CalledProcessError):
            try_ssh_command(self.job, self.job.params.src, cmd)
        self.job.params.log.warning.assert_called()  # type: ignore[attr-defined]

    def test_is_dataset_missing(self) -> None:
        self.assertTrue(is_dataset_missing("cannot open 'tank/x': dataset does not exist"))
        self.assertTrue(is_dataset_missing("cannot open 'tank/x@s': could not find any snapshots to destroy"))
        self.assertTrue(is_dataset_missing("cannot open 'foo': no such pool"))
        self.assertFalse(is_dataset_missing("cannot destroy: snapshot is busy"))


#############################################################################
class TestRemoteCommands(AbstractTestCase):

    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.home_patch = patch("zpull_main.configuration.HOME_DIRECTORY", self.tmpdir.name)
        self.home_patch.start()
        self.job = make_job(self, ["root@host:tank/src", "pool/dst"])

    def tearDown(self) -> None:
        self.home_patch.stop()
        self.tmpdir.cleanup()

    def test_get_connection_is_cached_per_location(self) -> None:
        conn = get_connection(self.job, self.job.params.src)
        self.assertIs(conn, get_connection(self.job, self.job.params.src))
        self.assertIn("-S", conn.ssh_cmd)
        socket_file = conn.ssh_cmd[conn.ssh_cmd.index("-S") + 1]
        self.assertTrue(socket_file.startswith(os.path.join(self.tmpdir.name, ".ssh", "zpull", "s")))

    def test_remote_argv_appends_rendered_command_to_ssh(self) -> None:
        with patch.object(zpull_main.connection, "refresh_ssh_connection_if_necessary") as refresh:
            argv = remote_argv(self.job, self.job.params.src, Pipeline.of(Command.of("zfs", "send", "tank/src@s 1")))
        refresh.assert_called_once()
        self.assertEqual("ssh", argv[0])
        self.assertEqual("root@host", argv[-2])
        self.assertEqual("zfs send 'tank/src@s 1'", argv[-1])

    def test_refresh_starts_master_once_and_then_reuses_it(self) -> None:
        conn = get_connection(self.job, self.job.params.src)
        check_failed = MagicMock(returncode=255)
        with patch.object(zpull_main.connection, "subprocess_run", return_value=check_failed) as run:
            refresh_ssh_connection_if_necessary(self.job, self.job.params.src, conn)
            self.assertEqual(2, run.call_count)  # 'ssh -O check' followed by 'ssh -M ... exit'
            master_cmd = run.call_args_list[1][0][0]
            self.assertIn("-M", master_cmd)
            self.assertIn("-oControlPersist=90s", master_cmd)
            self.assertEqual("exit", master_cmd[-1])
            refresh_ssh_connection_if_necessary(self.job, self.job.params.src, conn)
            self.assertEqual(2, run.call_count)  # still alive; no further ssh invocation
        self.assertGreater(conn.last_refresh_time, 0)

    def test_refresh_dies_if_master_cannot_start(self) -> None:
        conn = get_connection(self.job, self.job.params.src)
        error = subprocess.CalledProcessError(255, "ssh", stderr="Permission denied (publickey)")
        with patch.object(zpull_main.connection, "subprocess_run", side_effect=[MagicMock(returncode=255), error]):
            with self.assertRaises(SystemExit):
                refresh_ssh_connection_if_necessary(self.job, self.job.params.src, conn)

    def test_refresh_dies_if_ssh_is_not_available(self) -> None:
        self.job.params.available_programs = {"local": {"zfs": ""}}
        conn = get_connection(self.job, self.job.params.src)
        with self.assertRaises(SystemExit):
            refresh_ssh_connection_if_necessary(self.job, self.job.params.src, conn)

    def test_shutdown_exits_master(self) -> None:
        conn = Connection(self.job.params.src)
        conn.last_refresh_time = time.monotonic_ns()
        with patch("subprocess.run", return_value=MagicMock(returncode=0)) as run:
            conn.shutdown(self.job.params)
        cmd = run.call_args[0][0]
        self.assertEqual(["-O", "exit", "root@host"], cmd[-3:])


#############################################################################
class TestTimeout(AbstractTestCase):

    def test_no_timeout(self) -> None:
        job = make_job(self, ["tank/src", "pool/dst"])
        self.assertIsNone(timeout(job))

    def test_remaining_and_expired(self) -> None:
        job = make_job(self, ["tank/src", "pool/dst", "--timeout", "10s"])
        job.timeout_nanos = time.monotonic_ns() + 5_000_000_000
        remaining = timeout(job)
        assert remaining is not None
        self.assertTrue(0 < remaining <= 5)
        job.timeout_nanos = time.monotonic_ns() - 1
        with self.assertRaises(subprocess.TimeoutExpired):
            timeout(job)
