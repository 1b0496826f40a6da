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
"""Snapshot catalog of one dataset on one host, read in a single round trip.

The catalog contains only snapshots of the dataset itself; snapshots of descendant datasets such as ``tank/foo/bar@s1`` are
never part of the catalog of ``tank/foo``.
"""

from __future__ import (
    annotations,
)
from dataclasses import (
    dataclass,
)
from typing import (
    TYPE_CHECKING,
    Iterator,
)

from zpull_main.errors import (
    CatalogUnavailable,
)
from zpull_main.zfs import (
    parse_space,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from zpull_main.zfs import (
        Zfs,
    )


#############################################################################
@dataclass(frozen=True)
class Snapshot:
    """A point-in-time snapshot of a dataset; ``creation`` is the UTC unix time in seconds and identifies the snapshot when
    comparing hosts, ``referenced`` is in bytes."""

    name: str  # the part after the '@' char
    creation: int
    referenced: int


#############################################################################
class Catalog:
    """Immutable name-to-snapshot mapping for exactly one dataset on exactly one host, plus the space counters of the
    dataset observed in the same round trip."""

    def __init__(self, location: str, dataset: str, used: int, available: int, snapshots: list[Snapshot]) -> None:
        self.location: str = location
        self.dataset: str = dataset
        self.used: int = used
        self.available: int = available
        self._snapshots: tuple[Snapshot, ...] = tuple(snapshots)  # in listing order, i.e. oldest createtxg first
        self._by_name: dict[str, Snapshot] = {snapshot.name: snapshot for snapshot in self._snapshots}

    def __len__(self) -> int:
        return len(self._snapshots)

    def __iter__(self) -> Iterator[Snapshot]:
        return iter(self._snapshots)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def get(self, name: str) -> Snapshot | None:
        return self._by_name.get(name)

    def sorted_by_creation(self) -> list[Snapshot]:
        """Returns all snapshots, oldest first; snapshots with the same creation time retain their listing order."""
        return sorted(self._snapshots, key=lambda snapshot: snapshot.creation)

    def newest(self) -> Snapshot | None:
        """Returns the most recently created snapshot, or None if the dataset has no snapshots."""
        snapshots: list[Snapshot] = self.sorted_by_creation()
        return snapshots[-1] if snapshots else None

    @property
    def size(self) -> int:
        """Returns the total size of the filesystem as seen by the dataset, i.e. used plus available bytes."""
        return self.used + self.available

    def __repr__(self) -> str:
        names: list[str] = [snapshot.name for snapshot in self._snapshots]
        return f"Catalog({self.location}:{self.dataset}, used={self.used}, available={self.available}, snapshots={names})"


def read_catalog(zfs: Zfs, dataset: str) -> Catalog:
    """Reads the catalog of the given dataset in one round trip; raises CatalogUnavailable if the dataset does not exist."""
    listing: str | None = zfs.read_listing(dataset)
    if listing is None:
        raise CatalogUnavailable(zfs.location, dataset)
    return parse_catalog(zfs.location, dataset, listing)


def read_snapshots(zfs: Zfs, dataset: str) -> list[Snapshot] | None:
    """Reads only the snapshots of the given dataset, without space counters; returns None if the dataset does not exist."""
    lines: list[str] | None = zfs.list_snapshots(dataset)
    return None if lines is None else parse_snapshots(dataset, lines)


def parse_catalog(location: str, dataset: str, listing: str) -> Catalog:
    """Parses the output of Zfs.read_listing(); the first line holds the space counters, each further line one snapshot."""
    lines: list[str] = listing.splitlines()
    if not lines:
        raise ValueError(f"Empty listing of {location} dataset: {dataset}")
    used, available = parse_space(lines[0])
    return Catalog(location, dataset, used, available, parse_snapshots(dataset, lines[1:]))


def parse_snapshots(dataset: str, lines: list[str]) -> list[Snapshot]:
    """Parses '<dataset>@<name>\\t<creation>\\t<referenced>' lines, in listing order."""
    snapshots: list[Snapshot] = []
    for line in lines:
        full_name, creation, referenced = line.split("\t", 2)
        snapshot_dataset, _, name = full_name.partition("@")
        if snapshot_dataset != dataset:
            continue  # exclude snapshots of descendant datasets; tank/foo/bar@s1 is not a snapshot of tank/foo
        snapshots.append(Snapshot(name, int(creation), int(referenced)))
    return snapshots
