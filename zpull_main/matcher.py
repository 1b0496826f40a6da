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
"""Finds the newest snapshot that source and destination have in common; the base of the next incremental transfer.

Two snapshots are the same snapshot iff they have the same name and the same creation time; a name alone is not enough as a
snapshot may have been destroyed and recreated under the same name on one side.
"""

from __future__ import (
    annotations,
)
from dataclasses import (
    dataclass,
)
from typing import (
    Union,
)

from zpull_main.catalog import (
    Catalog,
    Snapshot,
)


#############################################################################
@dataclass(frozen=True)
class NoTargetHistory:
    """The destination has no snapshots at all, hence a full transfer is needed."""


@dataclass(frozen=True)
class NoMatch:
    """The destination has snapshots but none of them exists on the source; the histories have diverged."""


@dataclass(frozen=True)
class Matched:
    """The newest destination snapshot that also exists on the source with identical creation time."""

    ancestor: Snapshot


MatchResult = Union[NoTargetHistory, NoMatch, Matched]


def match(src: Catalog, dst: Catalog) -> MatchResult:
    """Returns the newest common snapshot by walking the destination snapshots from newest to oldest."""
    if len(dst) == 0:
        return NoTargetHistory()
    for dst_snapshot in reversed(dst.sorted_by_creation()):
        src_snapshot: Snapshot | None = src.get(dst_snapshot.name)
        if src_snapshot is not None and src_snapshot.creation == dst_snapshot.creation:
            return Matched(src_snapshot)
    return NoMatch()
