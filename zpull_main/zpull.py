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
"""
* Main CLI entry point for pulling ZFS snapshots from a (usually remote) source host to a local destination; the logic
  for a single run lives in the Job class.
* Overview of the zpull_main/zpull.py codebase:
* The codebase starts with docs, definition of input data and associated argument parsing in argparse_cli.py, plus
  the Params and Remote classes in configuration.py.
* Control flow of a run, in Job.replicate(): detect helper programs, read the source catalog, create the tagged
  snapshot on the source, re-read the source catalog, read the destination catalog (a missing destination means
  'first sync'), find the newest common snapshot in matcher.py, skip the run if nothing changed since then, free
  space on the destination in pruner.py, transfer the new snapshot in transfer.py, and finally delete older tagged
  snapshots on both sides in retention.py.
* Nothing is ever retried. A failed run deletes the tagged snapshot it created, so the next run (typically started by
  cron) begins from whatever state the previous run actually left behind.
* The remote command channel is in connection.py and the typed command builder in commands.py; all 'zfs' CLI calls go
  through the adapter in zfs.py.
"""

from __future__ import (
    annotations,
)
import argparse
import signal
import subprocess
import sys
import time
from datetime import (
    datetime,
    timezone,
)
from logging import (
    Logger,
)
from subprocess import (
    CalledProcessError,
)
from typing import (
    Any,
    Callable,
    Final,
)

import zpull_main.loggers
from zpull_main.argparse_cli import (
    argument_parser,
)
from zpull_main.catalog import (
    Catalog,
    Snapshot,
    read_catalog,
)
from zpull_main.configuration import (
    LogParams,
    Params,
    Remote,
)
from zpull_main.connection import (
    Connection,
    timeout,
)
from zpull_main.detect import (
    detect_available_programs,
)
from zpull_main.errors import (
    CatalogUnavailable,
    ReplicationError,
    SpaceReclaimExhausted,
    TransferTotalFailure,
)
from zpull_main.loggers import (
    get_simple_logger,
    reset_logger,
)
from zpull_main.matcher import (
    Matched,
    MatchResult,
    NoTargetHistory,
    match,
)
from zpull_main.pruner import (
    ensure_free_space,
)
from zpull_main.retention import (
    sweep_tagged,
)
from zpull_main.tags import (
    SnapshotTag,
)
from zpull_main.transfer import (
    ReplicationPlan,
    TransferOutcome,
    describe_outcome,
    transfer,
)
from zpull_main.utils import (
    DIE_STATUS,
    LOG_SUMMARY,
    LOG_TRACE,
    PROG_NAME,
    human_readable_duration,
    stderr_to_str,
    terminate_process_subtree,
    xfinally,
)
from zpull_main.zfs import (
    Zfs,
)

# constants:
NO_NEW_DATA_MSG: Final[str] = "no new data, exiting"


#############################################################################
def main() -> None:
    """API for command line clients."""
    run_main(argument_parser().parse_args(), sys.argv)


def run_main(args: argparse.Namespace, sys_argv: list[str] | None = None, log: Logger | None = None) -> None:
    """API for Python clients; visible for testing; may become a public API eventually."""
    Job().run_main(args, sys_argv, log)


#############################################################################
class Job:
    """Executes one zpull run, i.e. pulls at most one new snapshot from the source into the destination."""

    def __init__(self) -> None:
        self.params: Params
        self.src_zfs: Zfs
        self.dst_zfs: Zfs
        self.connections: dict[str, Connection] = {}
        self.control_persist_margin_secs: int = 2
        self.timeout_nanos: int | None = None
        self.tag: SnapshotTag | None = None

        self.is_test_mode: bool = False  # for testing only
        self.inject_params: dict[str, bool] = {}  # for testing only
        self.zfs_factory: Callable[[Job, Remote], Zfs] = Zfs  # for testing only
        self.now: Callable[[], int] = time.monotonic_ns  # for testing only
        self.utcnow: Callable[[], datetime] = lambda: datetime.now(timezone.utc)  # for testing only

    def shutdown(self) -> None:
        """Exits any multiplexed ssh sessions that may be leftover."""
        for conn in self.connections.values():
            conn.shutdown(self.params)

    def terminate(self, old_term_handler: Any, except_current_process: bool = False) -> None:
        """Shuts down gracefully on SIGTERM, optionally killing descendants."""

        def post_shutdown() -> None:
            signal.signal(signal.SIGTERM, old_term_handler)  # restore original signal handler
            terminate_process_subtree(except_current_process=except_current_process)

        with xfinally(post_shutdown):
            self.shutdown()

    def run_main(self, args: argparse.Namespace, sys_argv: list[str] | None = None, log: Logger | None = None) -> None:
        """Sets up logging, runs the job, and maps any error to the exit code of the process."""
        assert isinstance(self.inject_params, dict)
        try:
            log_params = LogParams(args)
            log = zpull_main.loggers.get_logger(
                log_params=log_params, args=args, log=log, logger_name_suffix=log_params.logger_name_suffix
            )
            log.info("%s", f"Log file is: {log_params.log_file}")
        except BaseException as e:
            get_simple_logger(PROG_NAME).error("Log init: %s", e, exc_info=False if isinstance(e, SystemExit) else True)
            raise

        def log_error_on_exit(error: Any, status_code: Any, exc_info: bool = False) -> None:
            log.error("%s%s", f"Exiting {PROG_NAME} with status code {status_code}. Cause: ", error, exc_info=exc_info)

        with xfinally(lambda: reset_logger(log)):  # runs on exit, without masking exception raised in body of block
            try:
                log.info("CLI arguments: %s", " ".join(sys_argv or []))
                if self.is_test_mode:
                    log.log(LOG_TRACE, "Parsed CLI arguments: %s", args)
                self.params = Params(args, sys_argv or [], log_params, log, self.inject_params)
                p = self.params
                log.debug("%s", f"{PROG_NAME} {p.prog_version}, python {p.python_version}, {p.platform_platform}")
                # On CTRL-C and SIGTERM, send signal to descendant processes to also terminate descendants
                old_term_handler = signal.getsignal(signal.SIGTERM)
                signal.signal(signal.SIGTERM, lambda sig, f: self.terminate(old_term_handler))
                old_int_handler = signal.signal(signal.SIGINT, lambda s, f: self.terminate(old_term_handler))
                try:
                    self.run_tasks()
                except BaseException:
                    self.terminate(old_term_handler, except_current_process=True)
                    raise
                finally:
                    signal.signal(signal.SIGTERM, old_term_handler)  # restore original signal handler
                    signal.signal(signal.SIGINT, old_int_handler)  # restore original signal handler
                self.shutdown()
            except ReplicationError as e:
                log_error_on_exit(e, e.exit_code)
                raise SystemExit(e.exit_code) from e
            except CalledProcessError as e:
                log_error_on_exit(f"{e} {stderr_to_str(e.stderr).rstrip()}".rstrip(), DIE_STATUS)
                raise SystemExit(DIE_STATUS) from e
            except SystemExit as e:
                log_error_on_exit(e, e.code)
                raise
            except (subprocess.TimeoutExpired, UnicodeDecodeError) as e:
                log_error_on_exit(e, DIE_STATUS)
                raise SystemExit(DIE_STATUS) from e
            except BaseException as e:
                log_error_on_exit(e, DIE_STATUS, exc_info=True)
                raise SystemExit(DIE_STATUS) from e
            finally:
                log.info("%s", f"Log file was: {log_params.log_file}")

    def run_tasks(self) -> TransferOutcome | None:
        """Runs the replication and logs exactly one SUCCESS or FAILURE line; returns None if there was nothing to do."""
        p, log = self.params, self.params.log
        start_time_nanos: int = self.now()
        self.timeout_nanos = None if p.timeout_nanos is None else time.monotonic_ns() + p.timeout_nanos
        self.connections = {}
        self.src_zfs = self.zfs_factory(self, p.src)
        self.dst_zfs = self.zfs_factory(self, p.dst)
        task: str = f"{p.src.host_description}:{p.src.dataset} --> {p.dst.dataset}"
        try:
            outcome: TransferOutcome | None = self.replicate()
        except BaseException as e:
            elapsed: str = human_readable_duration(self.now() - start_time_nanos)
            cause: str = str(e) or type(e).__name__
            log.error("%s", f"FAILURE: {task} after {elapsed}: {cause}")
            raise
        elapsed = human_readable_duration(self.now() - start_time_nanos)
        if outcome is None:
            log.log(LOG_SUMMARY, "%s", f"SUCCESS: {task} after {elapsed}: {NO_NEW_DATA_MSG}")
        else:
            log.log(LOG_SUMMARY, "%s", f"SUCCESS: {task} after {elapsed}: transferred {outcome.num_bytes} bytes, "
                    f"{describe_outcome(outcome)}")  # fmt: skip
        return outcome

    def replicate(self) -> TransferOutcome | None:
        """Creates the tagged snapshot on the source and pulls it into the destination; on any failure, and if there is no
        new data, deletes the tagged snapshot again before returning or raising."""
        p, log = self.params, self.params.log
        detect_available_programs(self)
        src_zfs, dst_zfs = self.src_zfs, self.dst_zfs
        src_dataset, dst_dataset = p.src.dataset, p.dst.dataset
        read_catalog(src_zfs, src_dataset)  # the source must exist; CatalogUnavailable is fatal here

        self.tag = tag = SnapshotTag.create(p.tag_host, self.utcnow())
        log.info("Creating tagged snapshot on source: %s", f"{src_dataset}@{tag.name}")
        src_zfs.create_snapshot(src_dataset, tag.name)
        try:
            timeout(self)
            src_catalog: Catalog = read_catalog(src_zfs, src_dataset)
            new_snapshot: Snapshot | None = src_catalog.get(tag.name)
            if new_snapshot is None:
                raise TransferTotalFailure(f"Tagged snapshot vanished from source: {src_dataset}@{tag.name}")
            dst_catalog: Catalog | None
            try:
                dst_catalog = read_catalog(dst_zfs, dst_dataset)
            except CatalogUnavailable:
                log.info("Destination does not exist yet; performing first sync: %s", dst_dataset)
                dst_catalog = None
            result: MatchResult = NoTargetHistory() if dst_catalog is None else match(src_catalog, dst_catalog)
            ancestor: Snapshot | None = result.ancestor if isinstance(result, Matched) else None
            log.debug("Match result: %s", result)
            plan = ReplicationPlan(  # raises NoCommonAncestor if the histories have diverged
                src_host=p.src.ssh_user_host,
                src_dataset=src_dataset,
                dst_dataset=dst_dataset,
                min_free_fraction=p.min_free_fraction,
                common_ancestor=ancestor,
                new_snapshot=new_snapshot,
                dst_exists=dst_catalog is not None,
                dst_has_snapshots=dst_catalog is not None and len(dst_catalog) > 0,
            )
            if ancestor is not None:
                if not src_zfs.diff(src_dataset, ancestor.name, tag.name).strip():
                    self.destroy_tag(tag)
                    return None
                if not ensure_free_space(dst_zfs, dst_dataset, p.min_free_fraction, tag, keep={ancestor.name}):
                    raise SpaceReclaimExhausted(
                        f"Cannot free {p.min_free_fraction:.0%} of destination {dst_dataset} even after deleting all "
                        "eligible snapshots"
                    )
                read_catalog(dst_zfs, dst_dataset)  # re-read after pruning; the destination must still exist
            timeout(self)
            outcome: TransferOutcome = transfer(self, plan)
        except BaseException:
            self.destroy_tag(tag)
            raise

        for zfs, dataset in [(src_zfs, src_dataset), (dst_zfs, dst_dataset)]:
            try:
                sweep_tagged(zfs, dataset, tag)
            except (CalledProcessError, subprocess.TimeoutExpired, ReplicationError) as e:
                log.warning("%s", f"Cannot sweep old tagged snapshots on {zfs.location}: {e}")
        return outcome

    def destroy_tag(self, tag: SnapshotTag) -> None:
        """Deletes the tagged snapshot created by this run on the source; a failure is logged and does not mask the error
        that caused the run to end."""
        p, log = self.params, self.params.log
        self.timeout_nanos = None  # cleanup must proceed even after the run timed out
        log.info("Deleting tagged snapshot on source: %s", f"{p.src.dataset}@{tag.name}")
        try:
            self.src_zfs.destroy_snapshot(p.src.dataset, tag.name)
        except (CalledProcessError, subprocess.TimeoutExpired) as e:
            stderr: str = stderr_to_str(getattr(e, "stderr", None) or "").rstrip()
            log.warning("%s", f"Cannot delete tagged snapshot {p.src.dataset}@{tag.name}: {stderr or e}")


#############################################################################
if __name__ == "__main__":
    main()
