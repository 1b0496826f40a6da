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
"""Error kinds raised by the replication engine; each fatal kind maps to the process exit code reported by the CLI.

None of these errors is ever retried internally. An external scheduler is expected to re-invoke the whole run, which then
resumes from whatever state the previous attempt actually left behind.
"""

from __future__ import (
    annotations,
)
from typing import (
    Final,
)

from zpull_main.utils import (
    DIE_STATUS,
    INSUFFICIENT_SPACE_STATUS,
    NO_COMMON_ANCESTOR_STATUS,
    SPACE_RECLAIM_EXHAUSTED_STATUS,
)


#############################################################################
class ReplicationError(Exception):
    """Base class of all replication errors; ``exit_code`` is the process exit status to report."""

    exit_code: int = DIE_STATUS

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message: Final[str] = message


class CatalogUnavailable(ReplicationError):
    """The dataset does not exist on that host; on the target this simply means 'first sync'."""

    def __init__(self, location: str, dataset: str) -> None:
        super().__init__(f"Dataset does not exist on {location} host: {dataset}")
        self.location: Final[str] = location
        self.dataset: Final[str] = dataset


class NoCommonAncestor(ReplicationError):
    """Target has snapshots but none of them shares a creation time with the source; histories have diverged."""

    exit_code = NO_COMMON_ANCESTOR_STATUS


class InsufficientSpaceForEstimate(ReplicationError):
    """Target has less space available than the estimated size of the transfer."""

    exit_code = INSUFFICIENT_SPACE_STATUS


class SpaceReclaimExhausted(ReplicationError):
    """All eligible target snapshots were pruned and the free space threshold is still not met."""

    exit_code = SPACE_RECLAIM_EXHAUSTED_STATUS


class TransferFailure(ReplicationError):
    """The new snapshot did not land on the target."""

    exit_code = DIE_STATUS


class TransferPartialFailure(TransferFailure):
    """Some data landed on the target, but not the new snapshot."""


class TransferTotalFailure(TransferFailure):
    """No data at all landed on the target."""


class PropertyRestoreFailure(ReplicationError):
    """The target's readonly property could not be restored; logged, never changes the outcome of a run."""
