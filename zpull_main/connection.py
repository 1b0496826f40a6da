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
"""The remote command channel; runs typed commands and batched scripts on the source or local host, reusing a multiplexed
ssh master connection for low latency via refresh_ssh_connection_if_necessary()."""

from __future__ import (
    annotations,
)
import logging
import os
import random
import shlex
import subprocess
import sys
import time
from subprocess import (
    DEVNULL,
    PIPE,
    CompletedProcess,
)
from typing import (
    TYPE_CHECKING,
    Any,
    Final,
    Union,
)

from zpull_main.commands import (
    Command,
    Pipeline,
    Script,
)
from zpull_main.utils import (
    LOG_TRACE,
    PROG_NAME,
    die,
    list_formatter,
    stderr_to_str,
    subprocess_run,
    xprint,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from zpull_main.configuration import (
        Params,
        Remote,
    )
    from zpull_main.zpull import (
        Job,
    )

Runnable = Union[Command, Pipeline, Script]

# constants:
UNIX_DOMAIN_SOCKET_PATH_MAX_LENGTH: Final[int] = 104  # see 'man unix' and sockaddr_un.sun_path on macOS and FreeBSD


def remote_argv(job: Job, remote: Remote, runnable: Runnable) -> list[str]:
    """Returns the argv to execute locally in order to run the given command, pipeline or script on the given remote.

    ssh concatenates its trailing argv into a single string that the remote shell parses, so the rendered (shell-safe)
    string is passed as one argument. On the local host a plain command is executed directly without an intermediate shell;
    redirects, pipelines and scripts need a shell and are run via 'sh -c'.
    """
    if remote.ssh_user_host:
        conn: Connection = get_connection(job, remote)
        refresh_ssh_connection_if_necessary(job, remote, conn)
        return conn.ssh_cmd + [runnable.render()]
    if isinstance(runnable, Command) and not runnable.redirect:
        return list(runnable.argv)
    return [job.params.shell_program_local, "-c", runnable.render()]


def run_ssh_command(
    job: Job,
    remote: Remote,
    cmd: Runnable,
    level: int = -1,
    check: bool = True,
    print_stdout: bool = False,
    print_stderr: bool = True,
) -> str:
    """Runs ``cmd`` on ``remote`` and returns its stdout; a failing command raises subprocess.CalledProcessError if
    ``check`` is True. Nothing is retried."""
    log = job.params.log
    argv: list[str] = remote_argv(job, remote, cmd)
    level = level if level >= 0 else logging.INFO
    log.log(level, "Executing: %s", list_formatter([shlex.quote(arg) for arg in argv], lstrip=True))
    stdout: Any = None
    stderr: Any = None
    try:
        process: CompletedProcess = subprocess_run(
            argv, stdin=DEVNULL, stdout=PIPE, stderr=PIPE, text=True, timeout=timeout(job), check=check
        )
        stdout, stderr = process.stdout, process.stderr
        return process.stdout
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
        stdout, stderr = e.stdout, e.stderr
        raise
    finally:
        xprint(log, stdout and stderr_to_str(stdout), run=print_stdout, file=sys.stdout, end="")
        xprint(log, stderr and stderr_to_str(stderr), run=print_stderr, file=sys.stderr, end="")


def run_ssh_script(
    job: Job, remote: Remote, script: Script, level: int = -1, check: bool = True, print_stderr: bool = True
) -> str:
    """Runs a batch of commands in a single round trip to the given remote, and returns the combined stdout."""
    job.params.log.log(LOG_TRACE, "Batching %s steps into one round trip to %s", len(script.steps), remote.location)
    return run_ssh_command(job, remote, script, level=level, check=check, print_stderr=print_stderr)


def try_ssh_command(job: Job, remote: Remote, cmd: Runnable, level: int = -1) -> str | None:
    """Like run_ssh_command(), except that it returns None if the dataset or snapshot the command refers to is missing."""
    try:
        if isinstance(cmd, Script):
            return run_ssh_script(job, remote, cmd, level=level, print_stderr=False)
        return run_ssh_command(job, remote, cmd, level=level, print_stderr=False)
    except subprocess.CalledProcessError as e:
        stderr: str = stderr_to_str(e.stderr)
        if is_dataset_missing(stderr):
            return None
        job.params.log.warning("%s", stderr.rstrip())
        raise


MISSING_DATASET_MESSAGES: Final[tuple[str, ...]] = (
    "dataset does not exist",
    "filesystem does not exist",  # solaris 11.4.0
    "could not find any snapshots",
    ": no such pool",
)


def is_dataset_missing(stderr: str) -> bool:
    return any(msg in stderr for msg in MISSING_DATASET_MESSAGES)


def refresh_ssh_connection_if_necessary(job: Job, remote: Remote, conn: Connection) -> None:
    """Makes sure that a multiplexed ssh master connection to ``remote`` is running, unless connection reuse is off.

    A master that was confirmed alive less than ControlPersist seconds ago (minus a safety margin) is trusted without
    asking. Otherwise 'ssh -O check' asks the local master over its socket, which also extends its lifetime, and a new
    master is started in the background if none answers.
    """
    p = job.params
    if not remote.ssh_user_host:
        return
    if p.available_programs and not p.is_program_available("ssh", "local"):
        die(f"{p.ssh_program} CLI is not available to talk to remote host. Install {p.ssh_program} first!")
    if not remote.reuse_ssh_connection:
        return
    trusted_nanos: int = (remote.ssh_control_persist_secs - job.control_persist_margin_secs) * 1_000_000_000
    if time.monotonic_ns() < conn.last_refresh_time + trusted_nanos:
        return
    if not conn.master_is_alive(job, remote):
        conn.start_master(job, remote)
    conn.last_refresh_time = time.monotonic_ns()


def timeout(job: Job) -> float | None:
    """Returns the seconds left until the --timeout deadline of the job, or None without a deadline; raises
    subprocess.TimeoutExpired once the deadline has passed."""
    deadline_nanos: int | None = job.timeout_nanos
    if deadline_nanos is None:
        return None
    remaining_nanos: int = deadline_nanos - time.monotonic_ns()
    if remaining_nanos <= 0:
        assert job.params.timeout_nanos is not None
        raise subprocess.TimeoutExpired(PROG_NAME + "_timeout", timeout=job.params.timeout_nanos / 1_000_000_000)
    return remaining_nanos / 1_000_000_000


def get_connection(job: Job, remote: Remote) -> Connection:
    """Returns the connection to ``remote``; there is one per location and job."""
    if remote.location not in job.connections:
        job.connections[remote.location] = Connection(remote)
    return job.connections[remote.location]


#############################################################################
class Connection:
    """The ssh command line that talks to a remote host, plus the state of its multiplexed ssh master connection."""

    def __init__(self, remote: Remote) -> None:
        self.last_refresh_time: int = 0  # monotonic nanos when the master was last confirmed alive; 0 means never
        self._reuse_ssh_connection: Final[bool] = remote.reuse_ssh_connection
        socket_file: str | None = None
        if remote.reuse_ssh_connection:
            rand: int = random.SystemRandom().randint(0, 999_999_999_999)
            socket_name: str = f"{remote.socket_prefix}{os.getpid()}@{time.time_ns() // 1_000_000}@{rand}"
            # truncated to the OS limit; ssh reports an error later if the truncated name collides
            socket_file = os.path.join(remote.ssh_socket_dir, socket_name)[:UNIX_DOMAIN_SOCKET_PATH_MAX_LENGTH]
        self.ssh_cmd: Final[list[str]] = remote.local_ssh_command(socket_file)

    def _control_cmd(self, *opts: str) -> list[str]:
        """Returns the ssh command with ``opts`` inserted before the trailing user@host."""
        return [*self.ssh_cmd[:-1], *opts, self.ssh_cmd[-1]]

    def master_is_alive(self, job: Job, remote: Remote) -> bool:
        """'ssh -O check' only talks to the local socket, never over the network."""
        cmd: list[str] = self._control_cmd("-O", "check")
        alive: bool = subprocess_run(cmd, stdin=DEVNULL, stdout=PIPE, stderr=PIPE, timeout=timeout(job)).returncode == 0
        job.params.log.log(LOG_TRACE, f"ssh connection is {'alive' if alive else 'not yet alive'}: %s", list_formatter(cmd))
        return alive

    def start_master(self, job: Job, remote: Remote) -> None:
        """Starts a background ssh master that lingers for ControlPersist seconds after its last client exits."""
        log = job.params.log
        persist_secs: int = remote.ssh_control_persist_secs
        if "-v" in remote.ssh_extra_opts:
            persist_secs = min(1, persist_secs)  # 'ssh -v' keeps the master in the foreground until the timer expires
        cmd: list[str] = self._control_cmd("-M", f"-oControlPersist={persist_secs}s") + ["exit"]
        log.log(LOG_TRACE, "Executing: %s", list_formatter(cmd))
        try:
            subprocess_run(cmd, stdin=DEVNULL, stdout=PIPE, stderr=PIPE, check=True, timeout=timeout(job))
        except subprocess.CalledProcessError as e:
            log.error("%s", stderr_to_str(e.stderr).rstrip())
            die(
                f"Cannot ssh into remote host via '{' '.join(cmd)}'. Fix ssh configuration first, considering "
                f"diagnostic log file output from running {PROG_NAME} with -v -v -v."
            )

    def shutdown(self, p: Params) -> None:
        """Tells the ssh master, if this connection started or used one, to exit now."""
        if not (self.ssh_cmd and self._reuse_ssh_connection and self.last_refresh_time > 0):
            return
        cmd: list[str] = self._control_cmd("-O", "exit")
        p.log.log(LOG_TRACE, "Executing: %s", shlex.join(cmd))
        try:
            proc: CompletedProcess = subprocess.run(cmd, stdin=DEVNULL, stderr=PIPE, text=True, timeout=0.1)
        except subprocess.TimeoutExpired as e:  # the master exits on its own after ControlPersist seconds anyway
            p.log.log(LOG_TRACE, "Harmless ssh master connection shutdown timeout: %s", e)
            return
        if proc.returncode != 0:
            p.log.log(LOG_TRACE, "Harmless ssh master connection shutdown issue: %s", proc.stderr.rstrip())
