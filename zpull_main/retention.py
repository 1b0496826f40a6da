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
"""Retention cleanup after a successful transfer; keeps only the newest tagged snapshot on a host."""

from __future__ import (
    annotations,
)
import subprocess
from typing import (
    TYPE_CHECKING,
)

from zpull_main.catalog import (
    Catalog,
    Snapshot,
    read_catalog,
)
from zpull_main.utils import (
    stderr_to_str,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from zpull_main.tags import (
        SnapshotTag,
    )
    from zpull_main.zfs import (
        Zfs,
    )


def sweep_tagged(zfs: Zfs, dataset: str, tag: SnapshotTag) -> list[str]:
    """Deletes all but the newest tagged snapshot of the given dataset and returns the names actually deleted; snapshots
    that cannot be deleted are logged and skipped."""
    log = zfs.job.params.log
    catalog: Catalog = read_catalog(zfs, dataset)
    tagged: list[Snapshot] = [s for s in reversed(catalog.sorted_by_creation()) if tag.is_tagged(s.name)]  # newest first
    deleted: list[str] = []
    for snapshot in tagged[1:]:
        try:
            zfs.destroy_snapshot(dataset, snapshot.name)
        except subprocess.CalledProcessError as e:
            log.warning("Cannot delete %s snapshot %s: %s", zfs.location, f"{dataset}@{snapshot.name}",
                        stderr_to_str(e.stderr).rstrip())  # fmt: skip
            continue
        deleted.append(snapshot.name)
    if deleted:
        log.info("Deleted %s old tagged snapshots on %s: %s", len(deleted), zfs.location, ", ".join(deleted))
    return deleted
