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
"""In-memory stand-in for the 'zfs' CLI adapter, so that replication logic can be tested without a ZFS installation.

The fake keeps the snapshots and space counters of each dataset in memory. Queries render their results in exactly the
format the real 'zfs' CLI prints, so the production parsers are exercised as well. The send and receive commands are real
local processes ('printf' and 'sh -c cat'), so the production pipeline code moves real bytes; the effect of a receive is
applied to the in-memory destination the next time the destination is queried.
"""

from __future__ import (
    annotations,
)
import subprocess
from dataclasses import (
    dataclass,
    field,
)
from typing import (
    Any,
)

from zpull_main.catalog import (
    Snapshot,
)
from zpull_main.commands import (
    Command,
)
from zpull_main.zfs import (
    PropertyValue,
)


#############################################################################
@dataclass
class FakeDataset:
    """One dataset; ``version`` counts writes so that 'zfs diff' can tell whether data changed between two snapshots."""

    used: int = 1000
    available: int = 1_000_000
    snapshots: list[Snapshot] = field(default_factory=list)
    versions: dict[str, int] = field(default_factory=dict)  # snapshot name -> version at snapshot time
    version: int = 0
    properties: dict[str, PropertyValue] = field(default_factory=lambda: {"readonly": PropertyValue("off", "default")})

    def write(self, num_bytes: int = 100) -> None:
        """Simulates a modification of the live filesystem."""
        self.version += 1
        self.used += num_bytes
        self.available -= num_bytes

    def add_snapshot(self, name: str, creation: int, referenced: int = 100) -> Snapshot:
        snapshot = Snapshot(name, creation, referenced)
        self.snapshots.append(snapshot)
        self.versions[name] = self.version
        return snapshot

    def names(self) -> list[str]:
        return [snapshot.name for snapshot in self.snapshots]

    def find(self, name: str) -> Snapshot | None:
        return next((snapshot for snapshot in self.snapshots if snapshot.name == name), None)


#############################################################################
class FakeZfs:
    """Implements the subset of the zpull_main.zfs.Zfs API that the replication engine uses."""

    def __init__(self, location: str, job: Any = None) -> None:
        self.location: str = location
        self.job: Any = job
        self.datasets: dict[str, FakeDataset] = {}
        self.clock: int = 1_700_000_000  # creation time of the next snapshot
        self.peer: FakeZfs | None = None  # the sending side, for a receiving fake
        self.receive_mode: str = "ok"  # "ok" | "fail" | "partial"
        self.failing_destroys: set[str] = set()  # snapshot names whose destroy fails
        self.last_send: tuple[str, str, str | None] | None = None  # (dataset, snapshot, from_snapshot)
        self.sends: list[tuple[str, str, str | None]] = []
        self.send_size: int = 3000
        self.pending_receive: tuple[str, bool] | None = None
        self.calls: list[tuple[str, ...]] = []  # log of mutating calls

    def dataset(self, name: str, **kwargs: Any) -> FakeDataset:
        """Creates (or returns) the given dataset."""
        if name not in self.datasets:
            self.datasets[name] = FakeDataset(**kwargs)
        return self.datasets[name]

    def snapshot(self, dataset: str, name: str, referenced: int = 100, creation: int | None = None) -> Snapshot:
        """Creates a snapshot with an ever increasing creation time, unless given explicitly."""
        if creation is None:
            self.clock += 10
            creation = self.clock
        return self.datasets[dataset].add_snapshot(name, creation, referenced)

    # --- queries ------------------------------------------------------------------------------------------------------

    def read_listing(self, dataset: str) -> str | None:
        self._settle()
        ds: FakeDataset | None = self.datasets.get(dataset)
        if ds is None:
            return None
        lines: list[str] = [f"{ds.used}\t{ds.available}"]
        lines += [f"{dataset}@{s.name}\t{s.creation}\t{s.referenced}" for s in ds.snapshots]
        return "\n".join(lines) + "\n"

    def list_snapshots(self, dataset: str) -> list[str] | None:
        listing: str | None = self.read_listing(dataset)
        return None if listing is None else listing.splitlines()[1:]

    def space(self, dataset: str) -> tuple[int, int] | None:
        self._settle()
        ds: FakeDataset | None = self.datasets.get(dataset)
        return None if ds is None else (ds.used, ds.available)

    def get_properties(self, dataset: str, names: list[str]) -> dict[str, PropertyValue] | None:
        self._settle()
        ds: FakeDataset | None = self.datasets.get(dataset)
        return None if ds is None else {name: ds.properties[name] for name in names if name in ds.properties}

    def snapshot_exists(self, dataset: str, snapshot: str) -> bool:
        self._settle()
        ds: FakeDataset | None = self.datasets.get(dataset)
        return ds is not None and ds.find(snapshot) is not None

    def diff(self, dataset: str, from_snapshot: str, to_snapshot: str) -> str:
        ds: FakeDataset = self.datasets[dataset]
        same: bool = ds.versions[from_snapshot] == ds.versions[to_snapshot]
        return "" if same else f"M\t/{dataset}/file.txt\n"

    def estimate_send_size(self, dataset: str, snapshot: str, from_snapshot: str | None = None) -> int:
        self._check_snapshot(dataset, snapshot)
        return self.send_size

    # --- commands -----------------------------------------------------------------------------------------------------

    def send_command(self, dataset: str, snapshot: str, from_snapshot: str | None = None) -> Command:
        self._check_snapshot(dataset, snapshot)
        self.last_send = (dataset, snapshot, from_snapshot)
        self.sends.append(self.last_send)
        return Command.of("printf", "%s", "x" * self.send_size)

    def receive_command(self, dataset: str, full: bool) -> Command:
        self.pending_receive = (dataset, full)
        if self.receive_mode == "ok":
            return Command.of("sh", "-c", "cat > /dev/null")
        return Command.of("sh", "-c", "cat > /dev/null; echo 'cannot receive: checksum mismatch' >&2; exit 1")

    # --- mutations ----------------------------------------------------------------------------------------------------

    def create_snapshot(self, dataset: str, snapshot: str) -> None:
        self.calls.append(("create_snapshot", dataset, snapshot))
        if self.datasets[dataset].find(snapshot) is not None:
            raise subprocess.CalledProcessError(1, ["zfs", "snapshot"], stderr="dataset already exists")
        self.snapshot(dataset, snapshot)

    def destroy_snapshot(self, dataset: str, snapshot: str, dependents: bool = False) -> None:
        self.calls.append(("destroy_snapshot", dataset, snapshot))
        if snapshot in self.failing_destroys:
            raise subprocess.CalledProcessError(1, ["zfs", "destroy"], stderr="snapshot is busy")
        ds: FakeDataset = self.datasets[dataset]
        found: Snapshot | None = ds.find(snapshot)
        assert found is not None, snapshot
        ds.snapshots.remove(found)
        ds.used -= found.referenced
        ds.available += found.referenced

    def destroy_dataset(self, dataset: str) -> None:
        self.calls.append(("destroy_dataset", dataset))
        del self.datasets[dataset]

    def rollback(self, dataset: str, snapshot: str) -> None:
        self.calls.append(("rollback", dataset, snapshot))
        ds: FakeDataset = self.datasets[dataset]
        target: Snapshot | None = ds.find(snapshot)
        assert target is not None, snapshot
        ds.snapshots = [s for s in ds.snapshots if s.creation <= target.creation]

    def set_property(self, dataset: str, name: str, value: str) -> None:
        self.calls.append(("set_property", dataset, name, value))
        self._settle()
        self.datasets[dataset].properties[name] = PropertyValue(value, "local")

    def inherit_property(self, dataset: str, name: str) -> None:
        self.calls.append(("inherit_property", dataset, name))
        self._settle()
        if dataset not in self.datasets:
            raise subprocess.CalledProcessError(1, ["zfs", "inherit"], stderr="dataset does not exist")
        self.datasets[dataset].properties[name] = PropertyValue("off", "default")

    # --- helpers ------------------------------------------------------------------------------------------------------

    def _check_snapshot(self, dataset: str, snapshot: str) -> None:
        if dataset not in self.datasets or self.datasets[dataset].find(snapshot) is None:
            raise subprocess.CalledProcessError(1, ["zfs", "send"], stderr="dataset does not exist")

    def _settle(self) -> None:
        """Applies the effect of the most recent receive, if any, as the real receive would have done it."""
        if self.pending_receive is None:
            return
        dataset, full = self.pending_receive
        self.pending_receive = None
        if self.receive_mode == "fail":
            return
        assert self.peer is not None and self.peer.last_send is not None
        src_dataset, src_snapshot, _ = self.peer.last_send
        sent: Snapshot | None = self.peer.datasets[src_dataset].find(src_snapshot)
        assert sent is not None
        if full and dataset not in self.datasets:
            self.datasets[dataset] = FakeDataset(used=0, available=self.datasets_parent_available(dataset))
        ds: FakeDataset = self.datasets[dataset]
        ds.used += self.peer.send_size
        ds.available -= self.peer.send_size
        if self.receive_mode == "partial":
            ds.add_snapshot("partial_intermediate", sent.creation - 1, sent.referenced)
        else:
            ds.add_snapshot(sent.name, sent.creation, sent.referenced)

    def datasets_parent_available(self, dataset: str) -> int:
        parent: str = dataset.rsplit("/", 1)[0]
        return self.datasets[parent].available if parent in self.datasets else 1_000_000
