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
"""Names of the snapshots that zpull creates itself; for example ``zpull_backuphost_2024-11-06_08:30:05``.

The tag of a run is computed exactly once, when the run starts, and is then passed explicitly to every component that
creates or filters snapshots. A snapshot is "tagged" iff its name carries the marker of this replication host. Only tagged
snapshots are subject to retention cleanup, and only non-tagged snapshots are subject to space reclamation.
"""

from __future__ import (
    annotations,
)
import socket
from datetime import (
    datetime,
    timezone,
)
from typing import (
    Final,
    NamedTuple,
)

from zpull_main.utils import (
    PROG_NAME,
    SHELL_CHARS,
    die,
    validate_snapshot_name,
)

# constants:
TAG_PREFIX: Final[str] = PROG_NAME + "_"
TIMESTAMP_FORMAT: Final[str] = "%Y-%m-%d_%H:%M:%S"  # UTC


def default_host_id() -> str:
    """Returns the short hostname of the local host, i.e. without the domain part."""
    return socket.gethostname().split(".", 1)[0]


def validate_host_id(host_id: str, input_text: str = "--tag-host") -> None:
    """The host id must not contain the separator char of the tag, nor chars that are illegal in snapshot names."""
    if not host_id or any(char in SHELL_CHARS or char.isspace() or char in "_@/#:" for char in host_id):
        die(f"Invalid {input_text}: must be non-empty and must not contain whitespace or special chars: '{host_id}'")


#############################################################################
class SnapshotTag(NamedTuple):
    """Contains the individual parts that are concatenated into the name of the snapshot created by a run."""

    host_id: str  # backuphost
    timestamp: str  # 2024-11-06_08:30:05

    @classmethod
    def create(cls, host_id: str, now: datetime | None = None) -> SnapshotTag:
        """Computes the tag of a run that starts at ``now`` (default: the current UTC time)."""
        validate_host_id(host_id)
        now = datetime.now(timezone.utc) if now is None else now.astimezone(timezone.utc)
        tag = cls(host_id, now.strftime(TIMESTAMP_FORMAT))
        validate_snapshot_name(tag.name, "snapshot tag")
        return tag

    @property
    def marker(self) -> str:  # zpull_backuphost_
        """Returns the name prefix shared by all snapshots that this replication host creates."""
        return f"{TAG_PREFIX}{self.host_id}_"

    @property
    def name(self) -> str:  # zpull_backuphost_2024-11-06_08:30:05
        return f"{self.marker}{self.timestamp}"

    def is_tagged(self, snapshot_name: str) -> bool:
        """Returns True if the given snapshot (name after the '@' char) was created by this replication host."""
        return snapshot_name.startswith(self.marker)

    def __str__(self) -> str:
        return self.name
