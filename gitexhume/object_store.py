# object_store.py -- Store of objects recovered during a walk
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

"""In-memory accumulation of everything a walk recovers.

Workers add decoded objects, refs and index entries concurrently; the tree
assembler reads the result once the walk has finished.
"""

import threading
from collections.abc import Iterable, Iterator
from typing import Optional

from .index import IndexEntry
from .objects import COMMIT, TAG, DecodedObject, ObjectID
from .refs import Head


class MemoryObjectStore:
    """Object store that keeps all objects in memory."""

    def __init__(self) -> None:
        """Initialize a MemoryObjectStore.

        Creates an empty in-memory object store.
        """
        self._lock = threading.Lock()
        self._data: dict[ObjectID, DecodedObject] = {}
        self._refs: dict[bytes, ObjectID] = {}
        self._loose_refs: set[bytes] = set()
        self._head: Optional[Head] = None
        self._index: Optional[list[IndexEntry]] = None

    def __contains__(self, sha: object) -> bool:
        """Check if a particular object is present by hex id."""
        with self._lock:
            return sha in self._data

    def __iter__(self) -> Iterator[ObjectID]:
        """Iterate over the ids that are present in this store."""
        with self._lock:
            return iter(list(self._data))

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def __getitem__(self, sha: ObjectID) -> DecodedObject:
        """Retrieve an object by hex id.

        Raises:
          KeyError: If the object is not found
        """
        with self._lock:
            return self._data[sha]

    def get(self, sha: ObjectID) -> Optional[DecodedObject]:
        with self._lock:
            return self._data.get(sha)

    def add_object(self, obj: DecodedObject) -> bool:
        """Add a single object to this object store.

        Returns: True if the object was not present before
        """
        with self._lock:
            if obj.id in self._data:
                return False
            self._data[obj.id] = obj
            return True

    def add_objects(self, objects: Iterable[DecodedObject]) -> list[DecodedObject]:
        """Add a set of objects to this object store.

        Returns: the objects that were not present before
        """
        return [obj for obj in objects if self.add_object(obj)]

    def set_ref(self, name: bytes, sha: ObjectID, loose: bool = False) -> None:
        """Record the id a ref pointed at.

        A loose ref file takes precedence over packed-refs and info/refs, as
        it does in git. Otherwise the first value seen for a name wins.

        Args:
          name: Full ref name
          sha: Hex id the ref points at
          loose: Whether the value was read from the ref's own file
        """
        with self._lock:
            if not loose:
                self._refs.setdefault(name, sha)
            elif name not in self._loose_refs:
                self._loose_refs.add(name)
                self._refs[name] = sha

    def update_refs(self, refs: dict[bytes, ObjectID]) -> None:
        for name, sha in refs.items():
            self.set_ref(name, sha)

    def get_refs(self) -> dict[bytes, ObjectID]:
        with self._lock:
            return dict(self._refs)

    @property
    def head(self) -> Optional[Head]:
        return self._head

    def set_head(self, head: Head) -> None:
        with self._lock:
            self._head = head

    @property
    def index_entries(self) -> Optional[list[IndexEntry]]:
        return self._index

    def set_index_entries(self, entries: list[IndexEntry]) -> None:
        with self._lock:
            self._index = list(entries)

    def peel_to_commit(self, sha: ObjectID) -> Optional[DecodedObject]:
        """Follow tags from ``sha`` down to a commit present in the store.

        Returns: the commit, or None if a link is missing or is not a
          commit or tag
        """
        seen = set()
        obj = self.get(sha)
        while obj is not None and obj.type_num == TAG and obj.id not in seen:
            seen.add(obj.id)
            obj = self.get(obj.object[0])
        if obj is None or obj.type_num != COMMIT:
            return None
        return obj
