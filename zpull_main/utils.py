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
"""Small helpers shared by the zpull modules: env var lookup, size and duration formatting, ZFS name checks, and a
subprocess runner that cleans up after itself."""

from __future__ import annotations
import argparse
import contextlib
import logging
import os
import pwd
import re
import signal
import stat
import subprocess
import sys
import types
from subprocess import (
    DEVNULL,
    PIPE,
)
from typing import (
    Any,
    Callable,
    Final,
    Iterable,
    NoReturn,
    TextIO,
)

# constants:
PROG_NAME: Final[str] = "zpull"
ENV_VAR_PREFIX: Final[str] = PROG_NAME + "_"
DIE_STATUS: Final[int] = 3
NO_COMMON_ANCESTOR_STATUS: Final[int] = 3
INSUFFICIENT_SPACE_STATUS: Final[int] = 4
SPACE_RECLAIM_EXHAUSTED_STATUS: Final[int] = 5
LOG_STDERR: Final[int] = (logging.INFO + logging.WARNING) // 2  # custom log level is halfway in between
LOG_STDOUT: Final[int] = (LOG_STDERR + logging.INFO) // 2  # custom log level is halfway in between
LOG_DEBUG: Final[int] = logging.DEBUG
LOG_TRACE: Final[int] = logging.DEBUG // 2  # custom log level is halfway in between
LOG_SUMMARY: Final[int] = logging.CRITICAL + 1  # custom log level of the outcome line of a run; passes even --quiet
SHELL_CHARS: Final[str] = '"' + "'`~!@#$%^&*()+={}[]|;<>?,\\"
FILE_PERMISSIONS: Final[int] = stat.S_IRUSR | stat.S_IWUSR  # rw-------
DIR_PERMISSIONS: Final[int] = stat.S_IRWXU  # rwx------
_NAME_COMPONENT_REGEX: Final[re.Pattern] = re.compile(r"[A-Za-z0-9_.:-]+")
_BYTE_UNITS: Final[tuple[str, ...]] = ("B", "KiB", "MiB", "GiB", "TiB", "PiB", "EiB")
_DURATION_UNITS: Final[tuple[tuple[str, int], ...]] = (  # unit name, length of unit in nanoseconds
    ("ns", 1),
    ("μs", 1_000),
    ("ms", 1_000_000),
    ("s", 1_000_000_000),
    ("m", 60 * 1_000_000_000),
    ("h", 3600 * 1_000_000_000),
    ("d", 86400 * 1_000_000_000),
)


def _getenv(key: str, default: str) -> str:
    value: str | None = os.getenv(ENV_VAR_PREFIX + key)
    return default if value is None else value


def getenv_int(key: str, default: int) -> int:
    """Returns the int value of env var ``zpull_<key>``, or ``default`` if it is unset."""
    return int(_getenv(key, str(default)))


def getenv_bool(key: str, default: bool = False) -> bool:
    """Returns True iff env var ``zpull_<key>`` is 'true' (case-insensitive), or ``default`` if it is unset."""
    return _getenv(key, str(default)).strip().lower() == "true"


def get_home_directory() -> str:
    """Looks up the home dir in the passwd database; the HOME env var may point elsewhere under sudo."""
    return pwd.getpwuid(os.getuid()).pw_dir


def human_readable_bytes(num_bytes: float, separator: str = " ", precision: int | None = None) -> str:
    """Formats a byte count with binary units; for example 1.5 * 2**20 --> "1.5 MiB"."""
    value: float = abs(num_bytes)
    unit: str = _BYTE_UNITS[0]
    for unit in _BYTE_UNITS:
        if value < 1024 or unit == _BYTE_UNITS[-1]:
            break
        value /= 1024
    sign: str = "-" if num_bytes < 0 else ""
    number: str = human_readable_float(value) if precision is None else f"{value:.{precision}f}"
    return f"{sign}{number}{separator}{unit}"


def human_readable_duration(duration: float, unit: str = "ns", separator: str = "", precision: int | None = None) -> str:
    """Formats a duration given in ``unit`` using the largest unit that keeps the number >= 1; e.g. 0.5s --> "500ms"."""
    factors: dict[str, int] = dict(_DURATION_UNITS)
    nanos: float = abs(duration) * factors[unit]
    name, length = _DURATION_UNITS[0]
    for candidate, candidate_length in _DURATION_UNITS:
        if nanos >= candidate_length:
            name, length = candidate, candidate_length
    value: float = nanos / length
    sign: str = "-" if duration < 0 else ""
    number: str = human_readable_float(value) if precision is None else f"{value:.{precision}f}"
    return f"{sign}{number}{separator}{name}"


def human_readable_float(number: float) -> str:
    """Keeps about three significant digits and drops trailing zeros: 3.14159 --> "3.14", 12.36 --> "12.4",
    123.6 --> "124", 1.50 --> "1.5"."""
    magnitude: float = abs(number)
    if magnitude >= 100:
        return str(round(number))
    digits: int = 2 if magnitude < 10 else 1
    text: str = f"{number:.{digits}f}".rstrip("0").rstrip(".")
    return "0" if text == "-0" else text


def percent(number: int, total: int) -> str:
    if total == 0:
        return "inf%"
    return human_readable_float(100 * number / total) + "%"


def list_formatter(iterable: Iterable[Any], separator: str = " ", lstrip: bool = False) -> Any:
    """Returns an object that joins ``iterable`` only when str() is called on it, i.e. only if the log record is emitted."""

    class _LazyJoin:
        def __str__(self) -> str:
            text: str = separator.join(str(item) for item in iterable)
            return text.lstrip() if lstrip else text

    return _LazyJoin()


def stderr_to_str(stderr: Any) -> str:
    """CalledProcessError.stderr may hold bytes even in text mode; see https://github.com/python/cpython/issues/87597."""
    if isinstance(stderr, bytes):
        return stderr.decode("utf-8", errors="replace")
    return str(stderr)


def xprint(log: logging.Logger, value: Any, run: bool = True, end: str = "\n", file: TextIO | None = None) -> None:
    """Routes remote command output into the log at the custom stdout or stderr level."""
    if not run or not value:
        return
    text: Any = value if end else str(value).rstrip()
    log.log(LOG_STDOUT if file is sys.stdout else LOG_STDERR, "%s", text)


def die(msg: str, exit_code: int = DIE_STATUS, parser: argparse.ArgumentParser | None = None) -> NoReturn:
    """Aborts with SystemExit(``exit_code``), or with a usage error (status 2) if ``parser`` is given."""
    if parser is not None:
        parser.error(msg)
    ex = SystemExit(msg)
    ex.code = exit_code
    raise ex


def subprocess_run(*args: Any, **kwargs: Any) -> subprocess.CompletedProcess:
    """Same contract as subprocess.run(), except that a timeout also terminates all descendants of the child."""
    input_value: Any = kwargs.pop("input", None)
    timeout: float | None = kwargs.pop("timeout", None)
    check: bool = kwargs.pop("check", False)
    if input_value is not None:
        if kwargs.get("stdin") is not None:
            raise ValueError("input and stdin are mutually exclusive")
        kwargs["stdin"] = PIPE

    with subprocess.Popen(*args, **kwargs) as proc:
        try:
            stdout, stderr = proc.communicate(input_value, timeout=timeout)
        except BaseException as e:
            try:
                if isinstance(e, subprocess.TimeoutExpired):
                    terminate_process_subtree(root_pid=proc.pid)
            finally:
                proc.kill()
            raise
        returncode: int = proc.wait()
    if check and returncode != 0:
        raise subprocess.CalledProcessError(returncode, proc.args, output=stdout, stderr=stderr)
    return subprocess.CompletedProcess(proc.args, returncode, stdout, stderr)


def terminate_process_subtree(
    except_current_process: bool = False, root_pid: int | None = None, sig: signal.Signals = signal.SIGTERM
) -> None:
    """Signals ``root_pid`` (default: this process) and every process below it; processes that already exited are
    ignored."""
    current_pid: int = os.getpid()
    root_pid = current_pid if root_pid is None else root_pid
    pids: list[int] = _descendant_pids(root_pid)
    if root_pid != current_pid:
        pids.insert(0, root_pid)
    elif not except_current_process:
        pids.append(current_pid)
    for pid in pids:
        with contextlib.suppress(OSError):
            os.kill(pid, sig)


def _descendant_pids(root_pid: int) -> list[int]:
    """Walks the process table as printed by 'ps' and returns the descendants of ``root_pid``, parents first."""
    lines: list[str] = subprocess.run(
        ["ps", "-Ao", "pid,ppid"], stdin=DEVNULL, stdout=PIPE, text=True, check=True
    ).stdout.splitlines()
    children: dict[int, list[int]] = {}
    for line in lines[1:]:  # skip header
        pid, ppid = (int(column) for column in line.split())
        children.setdefault(ppid, []).append(pid)
    result: list[int] = []
    todo: list[int] = [root_pid]
    while todo:
        kids: list[int] = children.get(todo.pop(0), [])
        result += kids
        todo += kids
    return result


def validate_dataset_name(dataset: str, input_text: str) -> None:
    """Accepts names like 'tank/backups/host1': the pool name starts with a letter, and each component is non-empty and
    consists of alphanumerics plus '_.:-' only, excluding '.' and '..'."""
    components: list[str] = dataset.split("/")
    if (
        not dataset[:1].isalpha()
        or any(not _NAME_COMPONENT_REGEX.fullmatch(component) for component in components)
        or any(component in (".", "..") for component in components)
    ):
        die(f"Invalid ZFS dataset name: '{dataset}' for: '{input_text}'")


def validate_snapshot_name(name: str, input_text: str) -> None:
    """Checks the part of a snapshot name after the '@' char."""
    if name in (".", "..") or not _NAME_COMPONENT_REGEX.fullmatch(name):
        die(f"Invalid ZFS snapshot name: '{name}' for: '{input_text}'")


def validate_is_not_a_symlink(msg: str, path: str, parser: argparse.ArgumentParser | None = None) -> None:
    if os.path.islink(path):
        die(f"{msg}must not be a symlink: {path}", parser=parser)


def validate_file_permissions(path: str, mode: int) -> None:
    """Dies unless ``path`` is owned by the effective user and has exactly the permission bits ``mode``."""
    stats: os.stat_result = os.stat(path)
    euid: int = os.geteuid()
    if stats.st_uid != euid:
        die(f"{path!r} is owned by uid {stats.st_uid}, not {euid}")
    actual: int = stat.S_IMODE(stats.st_mode)
    if actual != mode:
        die(
            f"{path!r} has permissions {actual:03o} aka {stat.filemode(actual)[1:]}, "
            f"not {mode:03o} ({stat.filemode(mode)[1:]})"
        )


def parse_duration_to_seconds(duration: str, context: str = "") -> float:
    """Parses human duration strings like '90s', '5m' or '2h' into seconds; a bare number means seconds."""
    units: dict[str, int] = {"s": 1, "m": 60, "h": 3600, "d": 86400}
    text: str = duration.strip().lower()
    multiplier: int = units.get(text[-1:], 0)
    number: str = text[:-1] if multiplier else text
    try:
        value = float(number)
    except ValueError:
        die(f"Invalid duration: '{duration}'{context}")
    if value < 0:
        die(f"Invalid duration: '{duration}'{context}")
    return value * (multiplier or 1)


#############################################################################
class _XFinally(contextlib.AbstractContextManager):
    """Runs a cleanup callable when the ``with`` block exits, on success and on error alike."""

    def __init__(self, cleanup: Callable[[], None]) -> None:
        self._cleanup = cleanup

    def __exit__(  # type: ignore[exit-return]
        self, exc_type: type[BaseException] | None, exc: BaseException | None, tb: types.TracebackType | None
    ) -> bool:
        if exc is None:
            self._cleanup()  # an error here propagates as usual
            return False
        try:
            self._cleanup()
        except BaseException as cleanup_exc:
            exc.__context__ = cleanup_exc  # shows up in the traceback of the body's exception
        return False


def xfinally(cleanup: Callable[[], None]) -> _XFinally:
    """Usage: ``with xfinally(cleanup): body``. Like try/finally, except that an error raised by ``cleanup`` never masks
    an error raised by ``body``; the cleanup error is attached to the body error as ``__context__`` instead."""
    return _XFinally(cleanup)
