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
"""Transfers one new snapshot from the source to the destination via a 'zfs send | zfs receive' pipeline of OS processes.

The producer chain consists of the source leg ('zfs send', optionally piped into a compressor, all running on the source
host), followed by optional local stages (a buffer that decouples network and disk rates, a decompressor and a rate
limiter). The consumer is 'zfs receive' on the local host. The control thread itself sits between the producer chain and
the consumer: it reads the output of the producer chain in chunks, counts the bytes, reports progress and writes the chunks
to the consumer. Ordinary pipe backpressure applies throughout.

Whether a transfer succeeded is decided by looking at the destination afterwards, never by exit codes alone: the transfer
succeeded iff the new snapshot exists on the destination.

Example pipeline in pull mode with compression and bandwidth limit:
``ssh src "sh -c 'zfs send -i tank/a@s1 tank/a@s2 | zstd -c -1'" | mbuffer -q -m 128M | zstd -dc | pv -q -L 100m``
followed by the control thread, followed by ``zfs receive -u pool/a``.
"""

from __future__ import (
    annotations,
)
import contextlib
import dataclasses
import shlex
import subprocess
import tempfile
import time
from dataclasses import (
    dataclass,
)
from subprocess import (
    DEVNULL,
    PIPE,
)
from typing import (
    IO,
    TYPE_CHECKING,
    Any,
    Final,
    NamedTuple,
)

from zpull_main.catalog import (
    Snapshot,
    read_snapshots,
)
from zpull_main.commands import (
    Command,
    Pipeline,
)
from zpull_main.connection import (
    remote_argv,
)
from zpull_main.errors import (
    CatalogUnavailable,
    InsufficientSpaceForEstimate,
    NoCommonAncestor,
    PropertyRestoreFailure,
    TransferPartialFailure,
    TransferTotalFailure,
)
from zpull_main.progress_reporter import (
    ProgressReporter,
)
from zpull_main.utils import (
    LOG_DEBUG,
    human_readable_bytes,
    human_readable_duration,
    stderr_to_str,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from logging import (
        Logger,
    )

    from zpull_main.zfs import (
        PropertyValue,
        Zfs,
    )
    from zpull_main.zpull import (
        Job,
    )

# constants:
READONLY: Final[str] = "readonly"


#############################################################################
@dataclass(frozen=True)
class ReplicationPlan:
    """Everything the transfer needs to know; a destination that has snapshots must share a common ancestor with the source,
    otherwise the plan cannot be constructed."""

    src_host: str  # empty for the local host
    src_dataset: str
    dst_dataset: str
    min_free_fraction: float
    common_ancestor: Snapshot | None
    new_snapshot: Snapshot
    dst_exists: bool
    dst_has_snapshots: bool = False
    estimated_bytes: int = 0

    def __post_init__(self) -> None:
        if self.dst_exists and self.dst_has_snapshots and self.common_ancestor is None:
            raise NoCommonAncestor(
                f"Destination {self.dst_dataset} has snapshots but none of them exists on source {self.src_dataset} with "
                "the same creation time. Manually delete the destination dataset or its snapshots to start over with a "
                "full transfer."
            )

    @property
    def is_incremental(self) -> bool:
        return self.common_ancestor is not None


#############################################################################
@dataclass(frozen=True)
class TransferOutcome:
    """Result of a transfer whose new snapshot was verified to exist on the destination."""

    num_bytes: int  # uncompressed bytes that went through the control thread
    estimated_bytes: int
    elapsed_nanos: int


#############################################################################
class TransferPipeline(NamedTuple):
    """The argv of each producer process in chain order, plus the argv of the consumer process."""

    producers: list[list[str]]
    consumer: list[str]
    is_compressed: bool


#############################################################################
@dataclass(frozen=True)
class PipelineResult:
    """Exit codes and stderr output of the processes of a finished pipeline, in chain order; the consumer is last."""

    num_bytes: int
    argvs: list[list[str]]
    returncodes: list[int]
    stderrs: list[str]

    @property
    def ok(self) -> bool:
        return all(returncode == 0 for returncode in self.returncodes)

    def errors(self) -> list[str]:
        """Returns one message per process that exited with non-zero status."""
        return [
            f"{shlex.join(argv)} exited with status {returncode}: {stderr.strip()}".rstrip(": ")
            for argv, returncode, stderr in zip(self.argvs, self.returncodes, self.stderrs)
            if returncode != 0
        ]


def transfer(job: Job, plan: ReplicationPlan) -> TransferOutcome:
    """Transfers ``plan.new_snapshot`` to the destination and verifies that it arrived; raises InsufficientSpaceForEstimate
    before touching the destination if the estimated size does not fit, and TransferPartialFailure or TransferTotalFailure
    if the snapshot did not arrive. The destination's readonly property is always restored last."""
    p, log = job.params, job.params.log
    src_zfs: Zfs = job.src_zfs
    dst_zfs: Zfs = job.dst_zfs
    ancestor: str | None = plan.common_ancestor.name if plan.common_ancestor is not None else None
    estimated_bytes: int = src_zfs.estimate_send_size(plan.src_dataset, plan.new_snapshot.name, ancestor)
    plan = dataclasses.replace(plan, estimated_bytes=estimated_bytes)
    _check_space_for_estimate(dst_zfs, plan)

    saved_readonly: PropertyValue | None = None
    if plan.dst_exists:
        props: dict[str, PropertyValue] | None = dst_zfs.get_properties(plan.dst_dataset, [READONLY])
        saved_readonly = None if props is None else props.get(READONLY)
    try:
        if plan.dst_exists:
            dst_zfs.set_property(plan.dst_dataset, READONLY, "on")
            if ancestor is not None:
                dst_zfs.rollback(plan.dst_dataset, ancestor)  # discard anything a previous partial transfer left behind
            else:
                log.info("Destination has no snapshots; replacing it with a full copy: %s", plan.dst_dataset)
                dst_zfs.destroy_dataset(plan.dst_dataset)

        kind: str = f"incremental from @{ancestor}" if ancestor else "full"
        log.info("Transferring %s", f"{plan.src_dataset}@{plan.new_snapshot.name} ({kind}) to {plan.dst_dataset}, "
                 f"estimated size {human_readable_bytes(estimated_bytes)} ...")  # fmt: skip
        pipeline: TransferPipeline = build_pipeline(job, plan)
        reporter = ProgressReporter(
            log, estimated_bytes, isatty=p.log_params.isatty and not p.log_params.quiet,
            update_interval_secs=p.progress_interval_secs,
        )  # fmt: skip
        try:
            result: PipelineResult = run_pipeline(
                log, pipeline.producers, pipeline.consumer, p.pipe_chunk_size, reporter, job.timeout_nanos
            )
        finally:
            reporter.finish()
        for error in result.errors():
            log.warning("%s", error)
        _verify_arrival(job, plan, result)
        return TransferOutcome(result.num_bytes, estimated_bytes, reporter.elapsed_nanos())
    finally:
        if saved_readonly is not None:
            try:
                _restore_readonly(dst_zfs, plan.dst_dataset, saved_readonly)
            except PropertyRestoreFailure as e:
                log.warning("%s", e)


def _check_space_for_estimate(dst_zfs: Zfs, plan: ReplicationPlan) -> None:
    """For a first sync the destination does not exist yet, so the space of its parent is checked instead."""
    dataset: str = plan.dst_dataset
    if not plan.dst_exists and "/" in dataset:
        dataset = dataset.rsplit("/", 1)[0]
    space: tuple[int, int] | None = dst_zfs.space(dataset)
    if space is None:
        raise CatalogUnavailable(dst_zfs.location, dataset)
    available: int = space[1]
    if available < plan.estimated_bytes:
        raise InsufficientSpaceForEstimate(
            f"Not enough space on destination {dataset} for the transfer: available "
            f"{human_readable_bytes(available)}, estimated {human_readable_bytes(plan.estimated_bytes)}"
        )


def _verify_arrival(job: Job, plan: ReplicationPlan, result: PipelineResult) -> None:
    """Raises TransferPartialFailure if some but not all data landed, TransferTotalFailure if nothing landed."""
    dst_zfs: Zfs = job.dst_zfs
    if dst_zfs.snapshot_exists(plan.dst_dataset, plan.new_snapshot.name):
        return
    details: str = "; ".join(result.errors()) or "pipeline exited normally but the snapshot is missing"
    msg: str = f"Snapshot {plan.dst_dataset}@{plan.new_snapshot.name} did not arrive on destination: {details}"
    dst_snapshots: list[Snapshot] | None = read_snapshots(dst_zfs, plan.dst_dataset)
    if dst_snapshots is None:
        raise TransferTotalFailure(msg)
    newest: Snapshot | None = max(dst_snapshots, key=lambda snapshot: snapshot.creation, default=None)
    ancestor: Snapshot | None = plan.common_ancestor
    if newest is not None and (ancestor is None or newest.creation > ancestor.creation):
        raise TransferPartialFailure(msg)
    raise TransferTotalFailure(msg)


def _restore_readonly(dst_zfs: Zfs, dataset: str, saved: PropertyValue) -> None:
    """Puts back the readonly value found before the transfer; a locally set value is set again, otherwise the value is
    inherited again."""
    try:
        if saved.is_local:
            dst_zfs.set_property(dataset, READONLY, saved.value)
        else:
            dst_zfs.inherit_property(dataset, READONLY)
    except subprocess.CalledProcessError as e:
        msg: str = stderr_to_str(e.stderr).rstrip()
        raise PropertyRestoreFailure(f"Cannot restore {READONLY} property of {dataset}: {msg}") from e


def build_pipeline(job: Job, plan: ReplicationPlan) -> TransferPipeline:
    """Constructs the producer chain and consumer argvs; optional stages are omitted if their program is missing or the
    transfer is too small to benefit from them."""
    p = job.params
    ancestor: str | None = plan.common_ancestor.name if plan.common_ancestor is not None else None
    send_cmd: Command = job.src_zfs.send_command(plan.src_dataset, plan.new_snapshot.name, ancestor)
    recv_cmd: Command = job.dst_zfs.receive_command(plan.dst_dataset, full=ancestor is None)
    is_big: bool = plan.estimated_bytes >= p.min_pipe_transfer_size
    # no compression is used unless the data crosses the network and both sides support it
    is_compressed: bool = (
        is_big
        and p.src.is_nonlocal
        and p.is_program_available("zstd", "src")
        and p.is_program_available("zstd", "local")
        and p.is_program_available("sh", "src")
    )
    src_leg: Command = send_cmd
    if is_compressed:
        compress_cmd = Command.of(p.compression_program, "-c", p.compression_program_opts)
        src_leg = Command.of(p.shell_program, "-c", Pipeline.of(send_cmd, compress_cmd).render())
    producers: list[list[str]] = [remote_argv(job, p.src, src_leg)]
    if is_big and p.src.is_nonlocal and p.is_program_available("mbuffer", "local"):
        producers.append([p.mbuffer_program] + p.mbuffer_program_opts)
    if is_compressed:
        producers.append([p.compression_program, "-dc"])
    if p.bwlimit and p.is_program_available("pv", "local"):
        producers.append([p.pv_program] + p.pv_program_opts)
    consumer: list[str] = remote_argv(job, p.dst, recv_cmd)
    return TransferPipeline(producers, consumer, is_compressed)


def run_pipeline(
    log: Logger,
    producers: list[list[str]],
    consumer: list[str],
    chunk_size: int = 1024 * 1024,
    reporter: ProgressReporter | None = None,
    timeout_nanos: int | None = None,
) -> PipelineResult:
    """Runs the producer chain connected stdout-to-stdin, and copies its output to the consumer in the current thread.

    Each process writes its stderr to a private temporary file, so a chatty process can never block on a full stderr pipe.
    If the consumer exits early, copying stops and the producers terminate on broken pipes. ``timeout_nanos`` is an absolute
    time.monotonic_ns() deadline that is checked between chunks. On any exception all processes are killed.
    """
    assert len(producers) > 0
    assert chunk_size > 0
    argvs: list[list[str]] = producers + [consumer]
    procs: list[subprocess.Popen] = []
    num_bytes: int = 0
    with contextlib.ExitStack() as stack:
        errfiles: list[IO[bytes]] = [stack.enter_context(tempfile.TemporaryFile()) for _ in argvs]
        try:
            upstream: Any = DEVNULL
            for argv, errfile in zip(producers, errfiles):
                log.log(LOG_DEBUG, "Executing: %s", shlex.join(argv))
                proc = subprocess.Popen(argv, stdin=upstream, stdout=PIPE, stderr=errfile)
                if upstream is not DEVNULL:
                    upstream.close()  # the child process holds its own copy of the pipe
                upstream = proc.stdout
                procs.append(proc)
            log.log(LOG_DEBUG, "Executing: %s", shlex.join(consumer))
            consumer_proc = subprocess.Popen(consumer, stdin=PIPE, stdout=errfiles[-1], stderr=errfiles[-1])
            procs.append(consumer_proc)
            try:
                num_bytes = _copy(upstream, consumer_proc.stdin, chunk_size, reporter, timeout_nanos)
            finally:
                upstream.close()
                with contextlib.suppress(BrokenPipeError):
                    consumer_proc.stdin.close()  # EOF
            returncodes: list[int] = [proc.wait() for proc in procs]
        except BaseException:
            for proc in procs:
                with contextlib.suppress(OSError):
                    proc.kill()
            for proc in procs:
                proc.wait()
            raise
        stderrs: list[str] = []
        for errfile in errfiles:
            errfile.seek(0)
            stderrs.append(stderr_to_str(errfile.read()))
    return PipelineResult(num_bytes, argvs, returncodes, stderrs)


def _copy(
    src: IO[bytes], dst: IO[bytes], chunk_size: int, reporter: ProgressReporter | None, timeout_nanos: int | None
) -> int:
    """Copies until EOF on ``src`` or until ``dst`` is closed by its reader; returns the number of bytes copied."""
    num_bytes: int = 0
    read = src.read1 if hasattr(src, "read1") else src.read  # type: ignore[attr-defined]
    while True:
        if timeout_nanos is not None and time.monotonic_ns() > timeout_nanos:
            raise subprocess.TimeoutExpired("zfs send | zfs receive", timeout=0)
        chunk: bytes = read(chunk_size)
        if not chunk:
            return num_bytes  # EOF
        try:
            dst.write(chunk)
        except BrokenPipeError:
            return num_bytes  # consumer exited early; its exit status tells why
        num_bytes += len(chunk)
        if reporter is not None:
            reporter.add(len(chunk))


def describe_outcome(outcome: TransferOutcome) -> str:
    """Returns a human-readable summary of the given transfer."""
    rate: int = round(1_000_000_000 * outcome.num_bytes / max(1, outcome.elapsed_nanos))
    return (
        f"{human_readable_bytes(outcome.num_bytes)} in {human_readable_duration(outcome.elapsed_nanos)} "
        f"[{human_readable_bytes(rate)}/s]"
    )
