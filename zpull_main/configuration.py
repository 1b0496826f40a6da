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
"""Turns the parsed command line into the settings objects of a run: LogParams for logging, Params for everything else,
and one Remote per side of the replication (the source host and the local destination)."""

from __future__ import (
    annotations,
)
import argparse
import os
import platform
import re
import sys
import tempfile
from datetime import (
    datetime,
)
from logging import (
    Logger,
)
from typing import (
    Final,
    NamedTuple,
)

from zpull_main.argparse_cli import (
    LOG_DIR_DEFAULT,
    __version__,
)
from zpull_main.detect import (
    DISABLE_PRG,
)
from zpull_main.tags import (
    default_host_id,
    validate_host_id,
)
from zpull_main.utils import (
    DIR_PERMISSIONS,
    FILE_PERMISSIONS,
    SHELL_CHARS,
    die,
    get_home_directory,
    getenv_bool,
    getenv_int,
    parse_duration_to_seconds,
    validate_dataset_name,
    validate_file_permissions,
    validate_is_not_a_symlink,
)

# constants:
HOME_DIRECTORY: Final[str] = get_home_directory()
QUOTING_CHARS: Final[str] = "'\"$`"
WHITESPACE_REGEX: Final[re.Pattern[str]] = re.compile(r"\s+")


def _log_level(args: argparse.Namespace) -> str:
    if args.quiet:
        return "ERROR"
    return {0: "INFO", 1: "DEBUG"}.get(args.verbose, "TRACE")


def _make_private_dir(path: str, description: str) -> None:
    """Creates ``path`` with mode 0700 unless it exists, then dies unless it is a private real directory of ours."""
    os.makedirs(path, mode=DIR_PERMISSIONS, exist_ok=True)
    validate_is_not_a_symlink(description, path)
    validate_file_permissions(path, DIR_PERMISSIONS)


#############################################################################
class LogParams:
    """Where and how verbosely this run logs. Each run gets its own log file below a per-day subdirectory of --log-dir,
    and a 'current' symlink next to the day directories points to the log file of the most recent run."""

    def __init__(self, args: argparse.Namespace) -> None:
        # immutable variables:
        self.log_level: Final[str] = _log_level(args)
        self.timestamp: Final[str] = datetime.now().isoformat(sep="_", timespec="seconds")  # 2024-09-03_12:26:15
        self.isatty: Final[bool] = getenv_bool("isatty", sys.stdout.isatty())
        self.quiet: Final[bool] = args.quiet
        self.home_dir: Final[str] = HOME_DIRECTORY
        log_parent_dir: Final[str] = args.log_dir or os.path.join(self.home_dir, LOG_DIR_DEFAULT)
        if LOG_DIR_DEFAULT not in os.path.basename(log_parent_dir):
            die(f"Basename of --log-dir must contain the substring '{LOG_DIR_DEFAULT}', but got: {log_parent_dir}")
        day: str = self.timestamp.split("_", 1)[0]
        self.log_dir: Final[str] = os.path.join(log_parent_dir, day)
        _make_private_dir(log_parent_dir, "--log-dir ")
        _make_private_dir(self.log_dir, "--log-dir subdir ")
        self.log_file_prefix: Final[str] = args.log_file_prefix
        self.log_file_suffix: Final[str] = args.log_file_suffix
        fd, self.log_file = tempfile.mkstemp(
            prefix=f"{self.log_file_prefix}{self.timestamp}{self.log_file_suffix}-", suffix=".log", dir=self.log_dir
        )
        os.fchmod(fd, FILE_PERMISSIONS)
        os.close(fd)
        stem: str = os.path.basename(self.log_file)[: -len(".log")]
        # '.' separates logger hierarchy levels, so the file stem is reduced to word chars
        self.logger_name_suffix: Final[str] = re.sub(r"\W", "_", stem, flags=re.ASCII)
        self._point_current_symlink_to(log_parent_dir, stem)

    def _point_current_symlink_to(self, log_parent_dir: str, stem: str) -> None:
        tmp_link: str = os.path.join(log_parent_dir, f".current-{stem}")
        try:
            os.symlink(os.path.relpath(self.log_file, start=log_parent_dir), tmp_link)
            os.replace(tmp_link, os.path.join(log_parent_dir, "current"))  # atomic
        except FileNotFoundError:
            pass  # a concurrent run cleaned up the directory

    def __repr__(self) -> str:
        return str(self.__dict__)


#############################################################################
class SrcSpec(NamedTuple):
    """The parts of the ``[user@]host:dataset`` positional CLI argument."""

    ssh_user: str
    ssh_host: str
    dataset: str


def parse_src_spec(text: str) -> SrcSpec:
    """Splits ``[user@]host:dataset`` into its parts; without a ``host:`` part the dataset lives on the local host.

    A colon only separates the host if no slash precedes it, as ZFS dataset names may themselves contain colons.
    """
    user, host, dataset = "", "", text
    head, sep, tail = text.partition(":")
    if sep and "/" not in head:
        host, dataset = head, tail
        if "@" in host:
            user, host = host.split("@", 1)
            if not user:
                die(f"Invalid empty ssh user in: '{text}'")
        if not host:
            die(f"Invalid empty ssh host in: '{text}'")
    for name in (user, host):
        if any(char in SHELL_CHARS or char.isspace() or char in ":/" for char in name):
            die(f"Invalid ssh user or host: '{name}' in: '{text}'")
    validate_dataset_name(dataset, text)
    if "@" in dataset:
        die(f"Source must be a dataset, not a snapshot: '{text}'")
    return SrcSpec(user, host, dataset)


#############################################################################
class Params:
    """All validated option values of a run. Option values that end up on a command line are checked here, once, so
    that the code which builds pipelines can trust them."""

    def __init__(
        self,
        args: argparse.Namespace,
        sys_argv: list[str],
        log_params: LogParams,
        log: Logger,
        inject_params: dict[str, bool] | None = None,
    ) -> None:
        assert args is not None
        assert isinstance(sys_argv, list)
        assert log_params is not None
        assert log is not None
        # immutable variables:
        self.args: Final[argparse.Namespace] = args
        self.sys_argv: Final[list[str]] = sys_argv
        self.log_params: Final[LogParams] = log_params
        self.log: Final[Logger] = log
        self.inject_params: Final[dict[str, bool]] = inject_params or {}  # for testing only

        self.min_free_fraction: Final[float] = args.min_free_fraction
        assert 0 <= self.min_free_fraction <= 1
        self.tag_host: Final[str] = args.tag_host or default_host_id()
        validate_host_id(self.tag_host)

        self.zfs_program: Final[str] = self._program_name(args.zfs_program)
        self.compression_program: Final[str] = self._program_name(args.compression_program)
        self.compression_program_opts: Final[list[str]] = self.split_args(args.compression_program_opts)
        for opt in ("-o", "--output-file", "-d", "--decompress"):
            if opt in self.compression_program_opts:
                die(f"--compression-program-opts: {opt} is disallowed for security reasons.")
        self.mbuffer_program: Final[str] = self._program_name(args.mbuffer_program)
        self.mbuffer_program_opts: Final[list[str]] = ["-q", "-m", self.validate_arg_str(args.mbuffer_size)]
        self.pv_program: Final[str] = self._program_name(args.pv_program)
        self.bwlimit: Final[str | None] = self.validate_arg(args.bwlimit) if args.bwlimit else None
        self.pv_program_opts: Final[list[str]] = ["-q"] + (["-L", self.bwlimit] if self.bwlimit else [])
        self.shell_program_local: Final[str] = "sh"
        self.shell_program: Final[str] = self._program_name(args.shell_program)
        self.ssh_program: Final[str] = self._program_name(args.ssh_program)

        self.src: Final[Remote] = Remote("src", args, self)
        self.dst: Final[Remote] = Remote("dst", args, self)  # always on the local host

        self.min_pipe_transfer_size: Final[int] = getenv_int("min_pipe_transfer_size", 1024 * 1024)  # skip compression etc.
        self.pipe_chunk_size: Final[int] = getenv_int("pipe_chunk_size", 1024 * 1024)
        self.progress_interval_secs: Final[float] = getenv_int("progress_interval_secs", 1)
        self.timeout_nanos: Final[int | None] = (
            None if args.timeout is None else int(1_000_000_000 * parse_duration_to_seconds(args.timeout))
        )

        self.prog_version: Final[str] = __version__
        self.python_version: Final[str] = sys.version
        self.platform_platform: Final[str] = platform.platform()

        # mutable variables:
        self.available_programs: dict[str, dict[str, str]] = {}  # location -> program name -> version text

    def split_args(self, text: str, *items: str) -> list[str]:
        """Splits an options string at whitespace, appends ``items``, and dies if any option contains quoting chars."""
        opts: list[str] = WHITESPACE_REGEX.split(text.strip()) if text.strip() else []
        opts += items
        for opt in opts:
            self._reject_quoting(opt)
        return opts

    def validate_arg(self, opt: str | None, allow_spaces: bool = False) -> str | None:
        """Passes ``opt`` through unless it contains whitespace (other than plain spaces, if allowed) or quoting chars."""
        if opt is not None:
            if any(char.isspace() and not (allow_spaces and char == " ") for char in opt):
                die(f"Option must not contain a whitespace character{' other than space' if allow_spaces else ''}: {opt}")
            self._reject_quoting(opt)
        return opt

    def validate_arg_str(self, opt: str | None, allow_spaces: bool = False) -> str:
        if opt is None:
            die("Option must not be missing")
        self.validate_arg(opt, allow_spaces=allow_spaces)
        return opt

    @staticmethod
    def _reject_quoting(opt: str) -> None:
        if any(char in QUOTING_CHARS for char in opt):
            die(f"Option must not contain a single quote or double quote or dollar or backtick character: {opt}")

    def _program_name(self, program: str) -> str:
        """Validates the name of an external program; tests may inject a missing or a failing program instead."""
        if not self.validate_arg_str(program):
            die(f"Program name must not be missing: {program}")
        bad: str | None = next((char for char in SHELL_CHARS + ":" if char in program), None)
        if bad is not None:
            die(f"Program name must not contain a '{bad}' character: {program}")
        if self.inject_params.get("inject_unavailable_" + program, False):
            return program + "-xxx"  # not on the PATH
        if self.inject_params.get("inject_failing_" + program, False):
            return "false"  # exits with non-zero status
        return program

    def is_program_available(self, program: str, location: str) -> bool:
        """Returns True if ``program`` was detected at ``location``, which is one of 'local', 'src' or 'dst'."""
        return program in self.available_programs.get(location, {})


#############################################################################
class Remote:
    """Where one side of the replication lives (dataset, and ssh host for a remote source), and how to reach it."""

    def __init__(self, loc: str, args: argparse.Namespace, p: Params) -> None:
        assert loc in ("src", "dst")
        # immutable variables:
        self.location: Final[str] = loc
        self.params: Final[Params] = p
        if loc == "src":
            spec: SrcSpec = parse_src_spec(args.src_spec)
        else:
            validate_dataset_name(args.dst_dataset, args.dst_dataset)
            if "@" in args.dst_dataset:
                die(f"Destination must be a dataset, not a snapshot: '{args.dst_dataset}'")
            spec = SrcSpec("", "", args.dst_dataset)
        self.ssh_user: Final[str] = spec.ssh_user
        self.ssh_host: Final[str] = spec.ssh_host
        self.ssh_user_host: Final[str] = f"{spec.ssh_user}@{spec.ssh_host}" if spec.ssh_user else spec.ssh_host
        self.dataset: Final[str] = spec.dataset
        self.is_nonlocal: Final[bool] = bool(self.ssh_user_host)
        self.ssh_port: Final[int | None] = args.ssh_src_port if loc == "src" else None
        self.ssh_config_file: Final[str | None] = p.validate_arg(args.ssh_src_config_file) if loc == "src" else None
        self.ssh_cipher: Final[str] = p.validate_arg_str(args.ssh_cipher)
        # no password prompts, no X11 forwarding, no pseudo-terminal:
        self.ssh_extra_opts: Final[list[str]] = ["-oBatchMode=yes", "-oServerAliveInterval=0", "-x", "-T"]
        if args.verbose >= 3:
            self.ssh_extra_opts.append("-v")
        self.ssh_control_persist_secs: Final[int] = args.ssh_control_persist_secs
        self.socket_prefix: Final[str] = "s"
        self.reuse_ssh_connection: Final[bool] = self.is_nonlocal and getenv_bool("reuse_ssh_connection", True)
        self.ssh_socket_dir: str = ""
        if self.reuse_ssh_connection:
            ssh_home_dir: str = os.path.join(HOME_DIRECTORY, ".ssh")
            os.makedirs(ssh_home_dir, mode=DIR_PERMISSIONS, exist_ok=True)
            self.ssh_socket_dir = os.path.join(ssh_home_dir, "zpull")
            os.makedirs(self.ssh_socket_dir, mode=DIR_PERMISSIONS, exist_ok=True)
            validate_file_permissions(self.ssh_socket_dir, mode=DIR_PERMISSIONS)

    @property
    def host_description(self) -> str:
        return self.ssh_user_host or "localhost"

    def local_ssh_command(self, socket_file: str | None) -> list[str]:
        """Returns the ssh prefix that runs a command on the remote host, or [] if the dataset is local. With a
        ``socket_file`` the command multiplexes over a shared master connection ('ssh -S')."""
        if not self.ssh_user_host:
            return []
        p: Params = self.params
        if p.ssh_program == DISABLE_PRG:
            die("Cannot talk to remote host because ssh CLI is disabled.")
        ssh_cmd: list[str] = [p.ssh_program, *self.ssh_extra_opts]
        for opt, value in (("-F", self.ssh_config_file), ("-c", self.ssh_cipher), ("-p", self.ssh_port)):
            if value:
                ssh_cmd += [opt, str(value)]
        if self.reuse_ssh_connection and socket_file:
            ssh_cmd += ["-S", socket_file]
        ssh_cmd.append(self.ssh_user_host)
        return ssh_cmd

    def __repr__(self) -> str:
        return str({k: v for k, v in self.__dict__.items() if k != "params"})
