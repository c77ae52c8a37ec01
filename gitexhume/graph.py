# graph.py -- Frontier of the blind discovery walk
# Copyright (C) 2025 Gitexhume contributors
#
# SPDX-License-Identifier: Apache-2.0 OR GPL-2.0-or-later
# Gitexhume is dual-licensed under the Apache License, Version 2.0 and the GNU
# General Public License as published by the Free Software Foundation; version 2.0
# or (at your option) any later version. You can redistribute it and/or
# modify it under the terms of either of these two licenses.
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
# You should have received a copy of the licenses; if not, see
# <http://www.gnu.org/licenses/> for a copy of the GNU General Public License
# and <http://www.apache.org/licenses/LICENSE-2.0> for a copy of the Apache
# License, Version 2.0.
#

"""Work tracking for the blind discovery walk.

Every work item moves forward only: from ``frontier`` (known, not fetched)
to ``in_flight`` (claimed by a worker) to ``done`` (fetched and handled, or
permanently failed). ``done`` is sticky, so the walk cannot cycle, and it
terminates exactly when nothing is queued or claimed.
"""

import logging
import threading
from collections import deque
from collections.abc import Hashable, Iterable
from typing import NamedTuple, Optional

from .objects import ObjectID, hex_to_filename

logger = logging.getLogger(__name__)

SIGNPOST = "signpost"
OBJECT = "object"
PACK_INDEX = "pack-index"
PACK = "pack"


class Task(NamedTuple):
    """A unit of work: one remote file to fetch and handle.

    ``name`` is a path relative to ``.git/`` for signposts, a hex id for
    objects and a ``pack-<sha>`` base name for packs and their indexes.
    """

    kind: str
    name: object

    @classmethod
    def signpost(cls, path: str) -> "Task":
        return cls(SIGNPOST, path)

    @classmethod
    def object(cls, sha: ObjectID) -> "Task":
        return cls(OBJECT, sha)

    @classmethod
    def pack_index(cls, name: str) -> "Task":
        return cls(PACK_INDEX, name)

    @classmethod
    def pack(cls, name: str) -> "Task":
        return cls(PACK, name)

    @property
    def path(self) -> str:
        """Remote path of the file, relative to ``.git/``."""
        if self.kind == OBJECT:
            assert isinstance(self.name, bytes)
            return hex_to_filename(self.name)
        if self.kind == PACK_INDEX:
            return f"objects/pack/{self.name}.idx"
        if self.kind == PACK:
            return f"objects/pack/{self.name}.pack"
        assert isinstance(self.name, str)
        return self.name

    def __str__(self) -> str:
        return self.path


class GraphStats(NamedTuple):
    frontier: int
    in_flight: int
    done: int


class DiscoveryGraph:
    """Three disjoint sets of work items, shared by all workers.

    All transitions happen under one condition variable; idle workers park
    on it in :meth:`claim` until work is seeded, the walk finishes or the
    graph is closed.
    """

    def __init__(self, items: Iterable[Hashable] = ()) -> None:
        self._cond = threading.Condition()
        self._frontier: deque[Hashable] = deque()
        self._queued: set[Hashable] = set()
        self._in_flight: set[Hashable] = set()
        self._done: set[Hashable] = set()
        self._closed = False
        self.seed(items)

    def seed(self, items: Iterable[Hashable]) -> int:
        """Queue every item not already tracked.

        Returns: the number of items added to the frontier
        """
        added = 0
        with self._cond:
            for item in items:
                if (
                    item in self._queued
                    or item in self._in_flight
                    or item in self._done
                ):
                    continue
                self._queued.add(item)
                self._frontier.append(item)
                added += 1
            if added:
                self._cond.notify_all()
        return added

    def claim(self, block: bool = True, timeout: Optional[float] = None):
        """Atomically move one item from the frontier to in-flight.

        Args:
          block: Wait for work while other items are still in flight
          timeout: Maximum time to wait, in seconds
        Returns: the claimed item, or None if there is nothing to claim:
          the walk finished, the graph was closed, the wait timed out, or
          ``block`` is False and the frontier is empty
        """
        with self._cond:
            while True:
                if self._closed:
                    return None
                if self._frontier:
                    item = self._frontier.popleft()
                    self._queued.discard(item)
                    self._in_flight.add(item)
                    return item
                if not self._in_flight:
                    # Nothing queued and nothing that could queue more.
                    self._cond.notify_all()
                    return None
                if not block:
                    return None
                if not self._cond.wait(timeout):
                    return None

    def complete(self, item: Hashable, discovered: Iterable[Hashable] = ()) -> None:
        """Mark a claimed item as done and seed what it revealed."""
        with self._cond:
            self._finish(item)
            self.seed(discovered)
            self._cond.notify_all()

    def fail_permanently(self, item: Hashable) -> None:
        """Mark a claimed item as done without contributing discoveries."""
        with self._cond:
            self._finish(item)
            self._cond.notify_all()

    def _finish(self, item: Hashable) -> None:
        if item not in self._in_flight:
            raise KeyError(f"{item!r} is not in flight")
        self._in_flight.remove(item)
        self._done.add(item)

    def close(self) -> None:
        """Stop handing out work; parked and future claims return None.

        Items in flight stay in flight.
        """
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed

    def is_finished(self) -> bool:
        """Return True when nothing is queued or in flight."""
        with self._cond:
            return not self._frontier and not self._in_flight

    def state_of(self, item: Hashable) -> Optional[str]:
        """Return "frontier", "in-flight", "done" or None for ``item``."""
        with self._cond:
            if item in self._queued:
                return "frontier"
            if item in self._in_flight:
                return "in-flight"
            if item in self._done:
                return "done"
            return None

    def __contains__(self, item: object) -> bool:
        return self.state_of(item) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        """Return the number of items ever tracked."""
        with self._cond:
            return len(self._queued) + len(self._in_flight) + len(self._done)

    def in_flight(self) -> set[Hashable]:
        with self._cond:
            return set(self._in_flight)

    def done(self) -> set[Hashable]:
        with self._cond:
            return set(self._done)

    def stats(self) -> GraphStats:
        with self._cond:
            return GraphStats(len(self._frontier), len(self._in_flight), len(self._done))
