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
"""Space reclamation on the destination; deletes the oldest non-tagged snapshots until enough space is available.

Only snapshots that were not created by this replication host are candidates. The newest candidate is never deleted, so
at most ``count - 1`` candidates are deleted. Snapshots to keep (i.e. the common ancestor of the current run) are skipped
over but still count as candidates.
"""

from __future__ import (
    annotations,
)
from typing import (
    TYPE_CHECKING,
    AbstractSet,
)

from zpull_main.catalog import (
    Catalog,
    Snapshot,
    read_catalog,
)
from zpull_main.errors import (
    CatalogUnavailable,
)
from zpull_main.utils import (
    human_readable_bytes,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from zpull_main.tags import (
        SnapshotTag,
    )
    from zpull_main.zfs import (
        Zfs,
    )


def ensure_free_space(
    zfs: Zfs, dataset: str, min_free_fraction: float, tag: SnapshotTag, keep: AbstractSet[str] = frozenset()
) -> bool:
    """Returns True if at least ``min_free_fraction`` of the dataset's filesystem size is available, deleting old candidate
    snapshots one at a time until this holds; returns False if the candidates are exhausted before that."""
    log = zfs.job.params.log
    catalog: Catalog = read_catalog(zfs, dataset)
    required: float = catalog.size * min_free_fraction
    available: int = catalog.available
    if available >= required:
        log.debug("Enough free space on destination: %s", _describe(available, required))
        return True

    # newest first, so that popping from the end yields the oldest remaining candidate
    candidates: list[Snapshot] = [
        snapshot
        for snapshot in reversed(catalog.sorted_by_creation())
        if not tag.is_tagged(snapshot.name)
    ]
    log.info("Not enough free space on destination: %s. Deleting old snapshots ...", _describe(available, required))
    while available < required and len(candidates) > 1:
        oldest: Snapshot = candidates.pop()
        if oldest.name in keep:
            continue
        log.info("Deleting snapshot to free space: %s", f"{dataset}@{oldest.name}")
        zfs.destroy_snapshot(dataset, oldest.name, dependents=True)
        space: tuple[int, int] | None = zfs.space(dataset)
        if space is None:
            raise CatalogUnavailable(zfs.location, dataset)
        available = space[1]
    if available >= required:
        log.info("Freed enough space on destination: %s", _describe(available, required))
        return True
    return False


def _describe(available: int, required: float) -> str:
    return f"available {human_readable_bytes(available)}, required {human_readable_bytes(required)}"
