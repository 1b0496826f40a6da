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
"""Builds the logger of a zpull run: human-readable lines go to stdout and to a per-run log file, and optionally to
syslog.

The logger of a Job is a private Logger instance that the logging manager does not know about, so many jobs can run
inside one Python process (as the tests do) without piling up handlers. Whoever creates such a logger closes it again
via ``reset_logger()``.
"""

from __future__ import (
    annotations,
)
import argparse
import contextlib
import logging
import sys
from datetime import (
    datetime,
)
from logging import (
    Logger,
)
from typing import (
    TYPE_CHECKING,
    Any,
    Final,
)

from zpull_main.utils import (
    LOG_STDERR,
    LOG_STDOUT,
    LOG_SUMMARY,
    LOG_TRACE,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from zpull_main.configuration import (
        LogParams,
    )

LOGGER_NAME: Final[str] = "zpull_main.zpull"
PROGRESS_LINE_COLS: Final[int] = 120
MSG_ARG_COLUMN: Final[int] = 54  # the first '%s' argument of a message starts at this column, for readable alignment
LOG_LEVEL_PREFIXES: Final[dict[int, str]] = {
    LOG_SUMMARY: "[I]",
    logging.CRITICAL: "[C] CRITICAL:",
    logging.ERROR: "[E] ERROR:",
    logging.WARNING: "[W]",
    logging.INFO: "[I]",
    logging.DEBUG: "[D]",
    LOG_TRACE: "[T]",
}


def get_logger(
    log_params: LogParams, args: argparse.Namespace, log: Logger | None = None, logger_name_suffix: str = ""
) -> Logger:
    """Returns ``log`` unchanged if the embedding application passes its own logger, else a new zpull run logger."""
    custom_levels = ((LOG_TRACE, "TRACE"), (LOG_STDERR, "STDERR"), (LOG_STDOUT, "STDOUT"), (LOG_SUMMARY, "SUMMARY"))
    for custom_level, level_name in custom_levels:
        logging.addLevelName(custom_level, level_name)
    if log is not None:
        assert isinstance(log, Logger)
        return log
    name: str = f"{LOGGER_NAME}.{logger_name_suffix}" if logger_name_suffix else LOGGER_NAME
    log = Logger(name)  # noqa: LOG001 not registered with Logger.manager
    log.setLevel(log_params.log_level)
    log.propagate = False  # the root logger would print every line a second time
    _add_handler(log, logging.StreamHandler(stream=sys.stdout), log_params.log_level, pad_progress_line=log_params.isatty)
    _add_handler(log, logging.FileHandler(log_params.log_file, encoding="utf-8"), log_params.log_level)
    if args.log_syslog_address:
        _add_syslog_handler(log, args)

    logging.logProcesses = False
    logging.logThreads = False
    logging.logMultiprocessing = False
    logging.raiseExceptions = False  # a closed stdout pipe must not print a traceback per log line
    return log


def _add_handler(log: Logger, handler: logging.Handler, level: int, prefix: str = "", pad_progress_line: bool = False) -> None:
    handler.setFormatter(get_default_log_formatter(prefix=prefix, pad_progress_line=pad_progress_line))
    handler.setLevel(level)
    log.addHandler(handler)


def _add_syslog_handler(log: Logger, args: argparse.Namespace) -> None:
    """Also sends log lines to a local or remote syslog daemon."""
    from logging.handlers import SysLogHandler  # lazy import for startup perf

    address, socktype = _get_syslog_address(args.log_syslog_address, args.log_syslog_socktype)
    prefix: str = str(args.log_syslog_prefix).strip().replace("%", "")
    level: Any = LOG_TRACE if args.log_syslog_level == "TRACE" else args.log_syslog_level
    handler = SysLogHandler(address=address, facility=args.log_syslog_facility, socktype=socktype)
    _add_handler(log, handler, level, prefix=prefix + " ")
    if handler.level < log.getEffectiveLevel():
        overall: str = logging.getLevelName(log.getEffectiveLevel())
        log.warning(
            "%s",
            f"Syslog receives nothing below {overall} because the syslog level {args.log_syslog_level} is lower than "
            f"the overall log level {overall}.",
        )


def _get_syslog_address(address: str, log_syslog_socktype: str) -> tuple[str | tuple[str, int], Any]:
    """'host:port' becomes a (host, port) tuple plus UDP or TCP socket type; anything else is a unix socket path."""
    import socket  # lazy import for startup perf

    address = address.strip()
    if ":" not in address:
        return address, None
    host, port = address.rsplit(":", 1)
    socktype: socket.SocketKind = socket.SOCK_DGRAM if log_syslog_socktype == "UDP" else socket.SOCK_STREAM
    return (host.strip(), int(port.strip())), socktype


def reset_logger(log: Logger) -> None:
    """Detaches and closes all handlers and filters of ``log``, which closes its log file too."""
    for handler in list(log.handlers):
        log.removeHandler(handler)
        with contextlib.suppress(BrokenPipeError):
            handler.flush()
        handler.close()
    for log_filter in list(log.filters):
        log.removeFilter(log_filter)
    log.setLevel(logging.NOTSET)
    log.propagate = True


#############################################################################
class _LineFormatter(logging.Formatter):
    """Renders '<timestamp> <level> <msg>' lines; remote stdout and stderr records pass through undecorated."""

    def __init__(self, prefix: str, cols: int) -> None:
        super().__init__()
        self.prefix: str = prefix
        self.cols: int = cols  # pad each line to this width so that it covers a previous progress line

    def format(self, record: logging.LogRecord) -> str:
        if record.levelno in (LOG_STDOUT, LOG_STDERR):
            return (self.prefix + super().format(record)).ljust(self.cols)
        timestamp: str = datetime.now().isoformat(sep=" ", timespec="seconds")
        head: str = f"{timestamp} {LOG_LEVEL_PREFIXES.get(record.levelno, '')} "
        msg: str = head + str(record.msg)
        pos: int = str(record.msg).find("%s")
        if pos > 0:
            pos += len(head)
            msg = msg[:pos].ljust(MSG_ARG_COLUMN) + msg[pos:]
        if record.exc_info or record.exc_text or record.stack_info:
            record.msg = msg
            msg = super().format(record)
        elif record.args:
            msg = msg % record.args
        return (self.prefix + msg).ljust(self.cols)


def get_default_log_formatter(prefix: str = "", pad_progress_line: bool = False) -> logging.Formatter:
    return _LineFormatter(prefix, PROGRESS_LINE_COLS if pad_progress_line else 0)


def get_simple_logger(program: str) -> Logger:
    """Returns a minimal stderr logger, for errors that occur before the run logger exists."""

    class _ProgramFormatter(logging.Formatter):
        def format(self, record: logging.LogRecord) -> str:
            record.level_prefix = LOG_LEVEL_PREFIXES.get(record.levelno, "")
            record.program = program
            return super().format(record)

    log = Logger(program)  # noqa: LOG001 not registered with Logger.manager
    log.setLevel(logging.INFO)
    log.propagate = False
    handler = logging.StreamHandler()
    handler.setFormatter(
        _ProgramFormatter(fmt="%(asctime)s %(level_prefix)s [%(program)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    )
    log.addHandler(handler)
    return log
