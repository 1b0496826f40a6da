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
"""Adapter that speaks the 'zfs' CLI on one host; builds typed commands and parses their output.

All other modules talk to ZFS exclusively through this class, which also makes it easy to substitute an in-memory fake in
tests. Commands that address a dataset or snapshot that does not exist return None instead of raising, where noted.
"""

from __future__ import (
    annotations,
)
from typing import (
    TYPE_CHECKING,
    Final,
    NamedTuple,
)

from zpull_main.commands import (
    Command,
    Pipeline,
    Script,
)
from zpull_main.connection import (
    Runnable,
    run_ssh_command,
    try_ssh_command,
)
from zpull_main.utils import (
    LOG_DEBUG,
    LOG_TRACE,
    validate_dataset_name,
    validate_snapshot_name,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from zpull_main.configuration import (
        Remote,
    )
    from zpull_main.zpull import (
        Job,
    )

# constants:
DIFF_CHANGE_TYPES: Final[str] = "-+MR"  # first char of each line of 'zfs diff -H', see 'man zfs-diff'


#############################################################################
class PropertyValue(NamedTuple):
    """Value of a ZFS property plus where it comes from, e.g. 'local', 'default', 'inherited from tank'."""

    value: str
    source: str

    @property
    def is_local(self) -> bool:
        """Returns True if the value was explicitly set on the dataset itself, as opposed to inherited or default."""
        return self.source in ("local", "received")


#############################################################################
class Zfs:
    """Runs 'zfs' CLI commands on the host of the given remote, via the remote command channel."""

    def __init__(self, job: Job, remote: Remote) -> None:
        self.job: Final[Job] = job
        self.remote: Final[Remote] = remote

    @property
    def location(self) -> str:
        """Returns 'src' or 'dst'."""
        return self.remote.location

    def zfs(self, *args: str | None) -> Command:
        """Returns a 'zfs' CLI command with the given arguments; None arguments are omitted."""
        return Command.of(self.job.params.zfs_program, *args)

    def run(self, cmd: Runnable, level: int = LOG_DEBUG) -> str:
        """Runs the given command or script and returns its stdout; raises CalledProcessError on failure."""
        return run_ssh_command(self.job, self.remote, cmd, level=level)

    def try_run(self, cmd: Runnable, level: int = LOG_DEBUG) -> str | None:
        """Like run() but returns None if the addressed dataset or snapshot does not exist."""
        return try_ssh_command(self.job, self.remote, cmd, level=level)

    # --- commands -----------------------------------------------------------------------------------------------------

    def space_command(self, dataset: str) -> Command:
        """Prints '<used>\\t<available>' of the given dataset, in bytes."""
        return self.zfs("list", "-Hp", "-o", "used,available", _checked(dataset))

    def list_snapshots_command(self, dataset: str) -> Command:
        """Prints one '<dataset>@<name>\\t<creation>\\t<referenced>' line per snapshot, oldest first."""
        return self.zfs("list", "-t", "snapshot", "-d", "1", "-Hp", "-o", "name,creation,referenced", "-s", "createtxg",
                        _checked(dataset))  # fmt: skip

    def send_command(self, dataset: str, snapshot: str, from_snapshot: str | None = None) -> Command:
        """Returns 'zfs send' of the given snapshot, incremental if ``from_snapshot`` is given, else full."""
        incremental: list[str] = ["-i", _snap(dataset, from_snapshot)] if from_snapshot else []
        return self.zfs("send", incremental, _snap(dataset, snapshot))

    def receive_command(self, dataset: str, full: bool) -> Command:
        """Returns 'zfs receive' into the given dataset without mounting it; a full stream forcibly replaces the dataset."""
        return self.zfs("receive", "-F" if full else None, "-u", _checked(dataset))

    # --- queries ------------------------------------------------------------------------------------------------------

    def list_snapshots(self, dataset: str) -> list[str] | None:
        """Returns the raw snapshot listing lines of the given dataset, or None if the dataset does not exist."""
        output: str | None = self.try_run(self.list_snapshots_command(dataset), level=LOG_TRACE)
        return None if output is None else output.splitlines()

    def read_listing(self, dataset: str) -> str | None:
        """Lists space counters and all snapshots of the given dataset in a single round trip; the first output line holds
        the space counters and each subsequent line holds one snapshot. Returns None if the dataset does not exist."""
        script = Script.all_of(self.space_command(dataset), self.list_snapshots_command(dataset))
        return self.try_run(script, level=LOG_TRACE)

    def space(self, dataset: str) -> tuple[int, int] | None:
        """Returns (used, available) bytes of the given dataset, or None if the dataset does not exist."""
        output: str | None = self.try_run(self.space_command(dataset), level=LOG_TRACE)
        if output is None:
            return None
        return parse_space(output.splitlines()[0])

    def get_properties(self, dataset: str, names: list[str]) -> dict[str, PropertyValue] | None:
        """Returns the values and sources of the given properties, or None if the dataset does not exist."""
        cmd = self.zfs("get", "-Hp", "-o", "property,value,source", ",".join(names), _checked(dataset))
        output: str | None = self.try_run(cmd, level=LOG_TRACE)
        if output is None:
            return None
        results: dict[str, PropertyValue] = {}
        for line in output.splitlines():
            name, value, source = line.split("\t", 2)
            results[name] = PropertyValue(value, source)
        return results

    def snapshot_exists(self, dataset: str, snapshot: str) -> bool:
        """Queries the host directly, bypassing any previously read catalog."""
        cmd = self.zfs("list", "-t", "snapshot", "-H", "-o", "name", _snap(dataset, snapshot))
        return self.try_run(cmd, level=LOG_TRACE) is not None

    def diff(self, dataset: str, from_snapshot: str, to_snapshot: str) -> str:
        """Returns the first line of 'zfs diff' between the two snapshots; empty output means the snapshots hold the same data.

        Only one line crosses the wire, however many files changed. The exit status of the pipeline is the one of 'head',
        so stderr of 'zfs diff' is merged into the output; a failing diff thus reads as a change, never as 'no new data'.
        """
        diff_cmd: Command = self.zfs("diff", "-H", _snap(dataset, from_snapshot), _snap(dataset, to_snapshot))
        output: str = self.run(Pipeline.of(diff_cmd.merge_stderr(), Command.of("head", "-n", "1")))
        if output and output[0] not in DIFF_CHANGE_TYPES:
            self.job.params.log.warning("Cannot diff %s; assuming it changed: %s", f"{dataset}@{to_snapshot}", output.rstrip())
        return output

    def estimate_send_size(self, dataset: str, snapshot: str, from_snapshot: str | None = None) -> int:
        """Estimates num bytes to transfer via 'zfs send', using a dry run."""
        incremental: list[str] = ["-i", _snap(dataset, from_snapshot)] if from_snapshot else []
        lines: str = self.run(self.zfs("send", "-nvP", incremental, _snap(dataset, snapshot)), level=LOG_TRACE)
        return parse_send_size_estimate(lines)

    # --- mutations ----------------------------------------------------------------------------------------------------

    def create_snapshot(self, dataset: str, snapshot: str) -> None:
        self.run(self.zfs("snapshot", _snap(dataset, snapshot)))

    def destroy_snapshot(self, dataset: str, snapshot: str, dependents: bool = False) -> None:
        """Destroys the given snapshot; with ``dependents`` also destroys clones and bookmarks that depend on it."""
        self.run(self.zfs("destroy", "-R" if dependents else None, _snap(dataset, snapshot)))

    def destroy_dataset(self, dataset: str) -> None:
        """Destroys the given dataset including all of its snapshots and descendants."""
        self.run(self.zfs("destroy", "-r", _checked(dataset)))

    def rollback(self, dataset: str, snapshot: str) -> None:
        """Rolls the dataset back to the given snapshot, destroying any later snapshots."""
        self.run(self.zfs("rollback", "-r", _snap(dataset, snapshot)))

    def set_property(self, dataset: str, name: str, value: str) -> None:
        self.run(self.zfs("set", f"{name}={value}", _checked(dataset)))

    def inherit_property(self, dataset: str, name: str) -> None:
        self.run(self.zfs("inherit", name, _checked(dataset)))


def parse_space(line: str) -> tuple[int, int]:
    """Parses a '<used>\\t<available>' line."""
    used, available = line.split("\t", 1)
    return int(used), int(available)


def parse_send_size_estimate(lines: str) -> int:
    """Parses the output of 'zfs send -nvP'; its last line is 'size\\t<bytes>'."""
    size: str = lines.splitlines()[-1] if lines.strip() else ""
    if not size.startswith("size"):
        raise ValueError(f"Unparsable 'zfs send -nvP' output: {lines!r}")
    return int(size[size.index("\t") + 1 :])


def _checked(dataset: str) -> str:
    validate_dataset_name(dataset, dataset)
    return dataset


def _snap(dataset: str, snapshot: str) -> str:
    """Returns the full name of the given snapshot of the given dataset, i.e. 'dataset@snapshot'."""
    validate_snapshot_name(snapshot, f"{dataset}@{snapshot}")
    return f"{_checked(dataset)}@{snapshot}"
