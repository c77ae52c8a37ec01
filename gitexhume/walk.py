# walk.py -- Blind discovery walk over an exposed .git directory
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

"""Discovery walk: turning fetched files into more work.

:class:`BlindWalker` is the :class:`~gitexhume.scheduler.TaskHandler` of a
reconstruction run. Every fetched file is decoded according to its work item
kind and whatever ids, refs and packs it mentions become new work items:

* signposts (``HEAD``, ``packed-refs``, reflogs, ...) are scanned for ids,
  ref names and pack names;
* loose objects are decoded and verified, and their tree, parent, entry or
  target ids are followed;
* pack indexes announce the pack they belong to;
* packs are inflated as a whole. A ref-delta whose base is not in the pack
  stays parked in its inflater while the base is fetched as an ordinary
  object; when that object arrives it is handed to every inflater waiting
  on it.

:func:`reconstruct` wires the walker, a discovery graph, a fetch scheduler
and the tree assembler together.
"""

import logging
import os
import struct
import threading
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Optional, Union

from .checkout import CheckoutResult, TreeAssembler, validate_path
from .config import KNOWN_SIGNPOSTS, FetchConfig
from .errors import CorruptObject, CorruptPack, NotGitRepository
from .graph import OBJECT, PACK, PACK_INDEX, SIGNPOST, DiscoveryGraph, Task
from .index import UnsupportedIndexFormat, read_index_bytes
from .object_store import MemoryObjectStore
from .objects import S_ISGITLINK, DecodedObject, ObjectID, decode_loose_object
from .pack import PackData, PackIndex, PackInflater, load_pack_index
from .refs import parse_head, scan
from .scheduler import FetchFn, FetchReport, FetchScheduler, TaskHandler

logger = logging.getLogger(__name__)

HEAD_PATH = "HEAD"
INDEX_PATH = "index"


class BlindWalker(TaskHandler):
    """Decode fetched files and name the work items they reveal."""

    def __init__(
        self,
        store: Optional[MemoryObjectStore] = None,
        git_dir: Union[str, bytes, None] = None,
    ) -> None:
        """Initialize a BlindWalker.

        Args:
          store: Store receiving decoded objects, refs and index entries
          git_dir: If set, every successfully decoded file is also written
            below this directory at its remote path
        """
        self.store = store if store is not None else MemoryObjectStore()
        if isinstance(git_dir, bytes):
            git_dir = os.fsdecode(git_dir)
        self.git_dir = git_dir
        # Pack bookkeeping and every store insertion happen under this lock,
        # so an object cannot arrive between an inflater parking a delta on
        # it and the inflater being registered as waiting.
        self._lock = threading.RLock()
        self._indexes: dict[str, PackIndex] = {}
        self._inflaters: dict[str, PackInflater] = {}
        self.pack_errors: dict[str, CorruptPack] = {}
        self.corrupt: dict[ObjectID, CorruptObject] = {}

    def initial_tasks(self) -> list[Task]:
        return [Task.signpost(path) for path in KNOWN_SIGNPOSTS]

    def path(self, item: Task) -> str:
        return item.path

    def lookup(self, item: Task) -> Optional[list[Task]]:
        # Objects recovered from a pack need no fetch; their references
        # were queued when the pack was inflated.
        if item.kind == OBJECT and item.name in self.store:
            return []
        return None

    def handle(self, item: Task, data: bytes) -> list[Task]:
        if item.kind == SIGNPOST:
            discovered = self._handle_signpost(item.path, data)
        elif item.kind == OBJECT:
            discovered = self._handle_object(item.name, data)
        elif item.kind == PACK_INDEX:
            discovered = self._handle_pack_index(item.name, data)
        elif item.kind == PACK:
            discovered = self._handle_pack(item.name, data)
        else:
            raise ValueError(f"unknown work item kind {item.kind!r}")
        self._mirror(item.path, data)
        return discovered

    def handle_failure(self, item: Task, exc: BaseException) -> list[Task]:
        if item.kind == PACK_INDEX:
            # The pack may still be there without its index.
            return [Task.pack(item.name)]
        if item.kind == PACK:
            with self._lock:
                index = self._indexes.get(item.name)
            if index is not None:
                logger.info(
                    "Falling back to loose objects for the %d ids in %s",
                    len(index),
                    item.name,
                )
                return [Task.object(sha) for sha in index]
        return []

    def _mirror(self, path: str, data: bytes) -> None:
        if self.git_dir is None:
            return
        if not validate_path(path.encode("utf-8")):
            logger.warning("Not mirroring unsafe path %s", path)
            return
        target = os.path.join(self.git_dir, *path.split("/"))
        try:
            os.makedirs(os.path.dirname(target), exist_ok=True)
            with open(target, "wb") as f:
                f.write(data)
        except OSError as e:
            logger.warning("Failed to mirror %s: %s", path, e)

    def _handle_signpost(self, path: str, data: bytes) -> list[Task]:
        if path == INDEX_PATH:
            try:
                entries = read_index_bytes(data)
            except (ValueError, struct.error, UnsupportedIndexFormat) as e:
                logger.warning("Unable to parse index: %s", e)
            else:
                logger.info("Index lists %d files", len(entries))
                self.store.set_index_entries(entries)
                return [
                    Task.object(entry.sha)
                    for entry in entries
                    if not S_ISGITLINK(entry.mode)
                ]

        if path == HEAD_PATH:
            head = parse_head(data)
            if head is None:
                raise NotGitRepository("remote HEAD is not a git HEAD")
            self.store.set_head(head)

        result = scan(data, path)
        refs = dict(result.refs)
        if path.startswith("refs/"):
            name = path.encode("utf-8")
            sha = refs.pop(name, None)
            if sha is not None:
                self.store.set_ref(name, sha, loose=True)
        self.store.update_refs(refs)
        discovered = [Task.object(sha) for sha in sorted(result.ids)]
        discovered.extend(Task.signpost(p) for p in result.paths)
        discovered.extend(Task.pack_index(name) for name in sorted(result.packs))
        logger.debug(
            "%s: %d ids, %d refs, %d packs",
            path,
            len(result.ids),
            len(result.paths) // 2,
            len(result.packs),
        )
        return discovered

    def _handle_object(self, sha: ObjectID, data: bytes) -> list[Task]:
        obj = decode_loose_object(data, sha)
        # Parse before storing, so a malformed body fails this item.
        obj.referenced_ids()
        with self._lock:
            return self._absorb([obj])

    def _handle_pack_index(self, name: str, data: bytes) -> list[Task]:
        index = load_pack_index(data)
        logger.debug("%s lists %d objects", name, len(index))
        with self._lock:
            self._indexes[name] = index
        return [Task.pack(name)]

    def _handle_pack(self, name: str, data: bytes) -> list[Task]:
        pack_data = PackData(data, name)
        with self._lock:
            index = self._indexes.get(name)
            inflater = PackInflater(pack_data, index, resolve_ext_ref=self.store.get)
            discovered = []
            try:
                resolved = inflater.inflate()
            except CorruptPack as exc:
                logger.error("%s: %s; keeping %d objects", name, exc, len(exc.salvaged))
                self.pack_errors[name] = exc
                resolved = exc.salvaged
                if index is not None:
                    discovered.extend(Task.object(sha) for sha in index)
            if inflater.errors and index is not None:
                for offset in inflater.errors:
                    sha = index.object_sha_at(offset)
                    if sha is not None:
                        discovered.append(Task.object(sha))
            logger.info(
                "%s: %d objects, %d deltas resolved",
                name,
                len(resolved),
                inflater.delta_resolutions,
            )
            discovered.extend(self._absorb(resolved))
            waiting = inflater.waiting_bases()
            if waiting:
                logger.debug(
                    "%s: %d external delta bases to fetch", name, len(waiting)
                )
                self._inflaters[name] = inflater
                discovered.extend(Task.object(sha) for sha in sorted(waiting))
            return discovered

    def _absorb(self, objects: Iterable[DecodedObject]) -> list[Task]:
        """Add objects to the store and follow what they reference.

        Objects handed to waiting inflaters may resolve further objects,
        which are absorbed in turn. Must be called with the lock held.
        """
        discovered = []
        pending = deque(objects)
        while pending:
            obj = pending.popleft()
            try:
                referenced = obj.referenced_ids()
            except CorruptObject as exc:
                logger.error("Dropping %s: %s", obj.id.decode("ascii"), exc)
                self.corrupt[obj.id] = exc
                continue
            if not self.store.add_object(obj):
                continue
            discovered.extend(Task.object(sha) for sha in referenced)
            for name, inflater in list(self._inflaters.items()):
                if obj.id not in inflater.waiting_bases():
                    continue
                pending.extend(inflater.provide_base(obj))
                if not inflater.waiting_bases():
                    del self._inflaters[name]
        return discovered

    def unresolved_bases(self) -> set[ObjectID]:
        """Return the external delta bases that never arrived."""
        with self._lock:
            bases: set[ObjectID] = set()
            for inflater in self._inflaters.values():
                bases.update(inflater.waiting_bases())
            return bases


@dataclass
class ReconstructionResult:
    """Everything a :func:`reconstruct` run produced."""

    report: FetchReport
    store: MemoryObjectStore
    checkout: CheckoutResult
    unresolved_bases: set = field(default_factory=set)

    @property
    def missing_objects(self) -> list[ObjectID]:
        """Ids of objects that could not be recovered."""
        return sorted(
            item.name
            for item in self.report.failures
            if item.kind == OBJECT and item.name not in self.store
        )

    @property
    def exit_status(self) -> int:
        """0 for a complete tree, 1 for a partial one, 2 if nothing was recovered."""
        if not self.checkout.recovered:
            return 2
        if self.checkout.complete and not self.report.cancelled:
            return 0
        return 1


def reconstruct(
    fetch: FetchFn,
    output: Union[str, bytes],
    config: Optional[FetchConfig] = None,
    mirror_git_dir: bool = True,
    ref: Union[str, bytes, None] = None,
    cancel_event: Optional[threading.Event] = None,
) -> ReconstructionResult:
    """Reconstruct the working tree of a remote ``.git`` directory.

    Args:
      fetch: Callable fetching a path relative to the remote ``.git/``,
        e.g. a :class:`~gitexhume.dumb.DumbHTTPFetcher`
      output: Directory to write the working tree to
      config: Concurrency and retry policy
      mirror_git_dir: Also write the fetched raw files to ``<output>/.git``
      ref: Ref name or id to check out instead of the default choice
      cancel_event: Event that stops the walk when set
    Returns: a ReconstructionResult
    Raises:
      NotGitRepository: if the remote HEAD is missing or is not a git HEAD
    """
    if isinstance(output, bytes):
        output = os.fsdecode(output)
    config = config or FetchConfig()
    store = MemoryObjectStore()
    git_dir = os.path.join(output, ".git") if mirror_git_dir else None
    walker = BlindWalker(store, git_dir)
    head_task = Task.signpost(HEAD_PATH)
    graph = DiscoveryGraph([head_task])
    scheduler = FetchScheduler(graph, fetch, walker, config, cancel_event)

    # HEAD first: nothing else is requested unless it looks like a git HEAD.
    report = scheduler.run()
    if store.head is None:
        if report.cancelled:
            raise NotGitRepository("cancelled before HEAD was fetched")
        error = report.failures.get(head_task)
        if isinstance(error, NotGitRepository):
            raise error
        raise NotGitRepository(f"unable to fetch HEAD: {error}")
    logger.info("Found git HEAD, walking the repository")

    graph.seed(walker.initial_tasks())
    report = scheduler.run()
    stats = graph.stats()
    logger.info(
        "Walk finished: %d items handled, %d objects recovered, %d failures",
        stats.done,
        len(store),
        len(report.failures),
    )

    checkout = TreeAssembler(store, output).checkout(ref)
    return ReconstructionResult(
        report=report,
        store=store,
        checkout=checkout,
        unresolved_bases=walker.unresolved_bases(),
    )
