# checkout.py -- Materialization of a recovered tree
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

"""Writing a recovered commit out as a working tree.

Once the walk has finished, one commit is chosen, its tree is flattened into
a path map and every blob is written below the output directory. Objects
that were never recovered end up as missing paths rather than errors.
"""

import logging
import os
import stat
import sys
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import NamedTuple, Optional, Union

from .objects import (
    BLOB,
    TREE,
    S_ISGITLINK,
    DecodedObject,
    ObjectID,
    valid_hexsha,
)
from .object_store import MemoryObjectStore
from .refs import HEADREF, PEELED_TAG_SUFFIX

logger = logging.getLogger(__name__)

INVALID_DOTNAMES = (b".git", b".", b"..", b"")


def validate_path_element_default(element: bytes) -> bool:
    return element.lower() not in INVALID_DOTNAMES


def validate_path(
    path: bytes,
    element_validator: Callable[[bytes], bool] = validate_path_element_default,
) -> bool:
    """Check that ``path`` stays inside the output root.

    Absolute paths, ``.`` and ``..`` components, empty components and
    ``.git`` components are refused.
    """
    if path.startswith(b"/"):
        return False
    for p in path.split(b"/"):
        if not element_validator(p):
            return False
    return True


class PathEntry(NamedTuple):
    """A file of the working tree."""

    path: bytes
    mode: int
    sha: ObjectID


class PathMap(NamedTuple):
    """Flattened tree: files found, and directories that could not be read."""

    entries: list[PathEntry]
    missing_trees: list[bytes]


def iter_tree_contents(
    store: MemoryObjectStore, tree_id: ObjectID, missing: list[bytes]
) -> Iterator[PathEntry]:
    """Iterate the contents of a tree and all subtrees.

    Iteration is depth-first pre-order, as in e.g. os.walk. Subtrees that are
    not in the store, or are not trees, are appended to ``missing``.
    """
    todo = [PathEntry(b"", stat.S_IFDIR, tree_id)]
    while todo:
        entry = todo.pop()
        if not stat.S_ISDIR(entry.mode):
            yield entry
            continue
        tree = store.get(entry.sha)
        if tree is None or tree.type_num != TREE:
            missing.append(entry.path or b".")
            continue
        extra = []
        for subentry in tree.items():
            if entry.path:
                path = entry.path + b"/" + subentry.path
            else:
                path = subentry.path
            extra.append(PathEntry(path, subentry.mode, subentry.sha))
        todo.extend(reversed(extra))


def build_path_map(store: MemoryObjectStore, tree_id: ObjectID) -> PathMap:
    """Flatten the tree ``tree_id`` into a list of files."""
    missing: list[bytes] = []
    entries = list(iter_tree_contents(store, tree_id, missing))
    return PathMap(entries, missing)


def path_map_from_index(store: MemoryObjectStore) -> Optional[PathMap]:
    """Build a path map from the recovered index, if there is one."""
    index = store.index_entries
    if index is None:
        return None
    return PathMap([PathEntry(e.path, e.mode, e.sha) for e in index], [])


def _tree_to_fs_path(root_path: bytes, tree_path: bytes) -> bytes:
    """Convert a git tree path to a file system path."""
    if os.path.sep != "/":
        sep_corrected_path = tree_path.replace(b"/", os.path.sep.encode("ascii"))
    else:
        sep_corrected_path = tree_path
    return os.path.join(root_path, sep_corrected_path)


def _below_any(path: bytes, prefixes: set[bytes]) -> bool:
    """Check whether a directory of ``path`` is one of ``prefixes``."""
    parts = path.split(b"/")
    for i in range(1, len(parts)):
        if b"/".join(parts[:i]) in prefixes:
            return True
    return False


def _is_within(root: bytes, path: bytes) -> bool:
    return path == root or os.path.commonpath([root, path]) == root


def build_file_from_blob(blob: DecodedObject, mode: int, target_path: bytes) -> None:
    """Build a file or symlink on disk based on a blob.

    Args:
      blob: The blob
      mode: File mode from the tree entry
      target_path: Path to write to
    """
    try:
        oldstat: Optional[os.stat_result] = os.lstat(target_path)
    except FileNotFoundError:
        oldstat = None
    contents = blob.body
    if stat.S_ISLNK(mode):
        if oldstat is not None:
            os.unlink(target_path)
        try:
            if sys.platform == "win32":
                # os.symlink on Windows requires a unicode string.
                os.symlink(os.fsdecode(contents), os.fsdecode(target_path))
            else:
                os.symlink(contents, target_path)
            return
        except (OSError, NotImplementedError) as e:
            logger.debug("Cannot create symlink %r (%s), writing a file", target_path, e)
    elif oldstat is not None and stat.S_ISLNK(oldstat.st_mode):
        os.unlink(target_path)

    with open(target_path, "wb") as f:
        f.write(contents)
    if mode & 0o111:
        os.chmod(target_path, 0o755)
    else:
        os.chmod(target_path, 0o644)


@dataclass
class CheckoutResult:
    """What was written by :meth:`TreeAssembler.checkout`."""

    commit: Optional[ObjectID] = None
    ref: Optional[bytes] = None
    from_index: bool = False
    written: list = field(default_factory=list)
    missing: list = field(default_factory=list)
    refused: list = field(default_factory=list)

    @property
    def recovered(self) -> bool:
        """Whether a commit or an index was found to check out."""
        return self.commit is not None or self.from_index

    @property
    def complete(self) -> bool:
        return self.recovered and not self.missing and not self.refused


class TreeAssembler:
    """Turn the contents of an object store into files on disk."""

    def __init__(
        self, store: MemoryObjectStore, root_path: Union[str, bytes]
    ) -> None:
        self.store = store
        if not isinstance(root_path, bytes):
            root_path = os.fsencode(root_path)
        self.root_path = root_path

    def candidate_refs(self) -> list[tuple[bytes, ObjectID]]:
        """Return (name, id) pairs to try, most preferred first.

        HEAD comes first, then the ref it points at, then every other
        recovered ref in sorted order.
        """
        candidates = []
        refs = self.store.get_refs()
        head = self.store.head
        if head is not None:
            if head.sha is not None:
                candidates.append((HEADREF, head.sha))
            elif head.target is not None and head.target in refs:
                candidates.append((head.target, refs[head.target]))
        for name in sorted(refs):
            if name.endswith(PEELED_TAG_SUFFIX):
                continue
            candidates.append((name, refs[name]))
        return candidates

    def resolve_ref(self, ref: Union[str, bytes]) -> Optional[ObjectID]:
        """Turn a user supplied ref name or id into an id.

        Full names (``refs/heads/main``), short branch and tag names,
        ``HEAD`` and 40 character hex ids are accepted.
        """
        if isinstance(ref, str):
            ref = ref.encode("utf-8")
        refs = self.store.get_refs()
        if ref == HEADREF:
            head = self.store.head
            if head is None:
                return None
            if head.sha is not None:
                return head.sha
            return refs.get(head.target)
        for name in (ref, b"refs/heads/" + ref, b"refs/tags/" + ref, b"refs/remotes/" + ref):
            if name in refs:
                return refs[name]
        if valid_hexsha(ref):
            return ref.lower()
        return None

    def select_commit(
        self, ref: Union[str, bytes, None] = None
    ) -> tuple[Optional[bytes], Optional[DecodedObject]]:
        """Choose the commit to materialize.

        Args:
          ref: Optional ref name or id; without one, the first candidate ref
            whose commit was recovered is used
        Returns: tuple of (ref name, commit); both None if nothing resolves
        """
        if ref is not None:
            sha = self.resolve_ref(ref)
            if sha is None:
                logger.warning("Ref %s was not recovered", ref)
                return None, None
            name = ref if isinstance(ref, bytes) else ref.encode("utf-8")
            return name, self.store.peel_to_commit(sha)
        for name, sha in self.candidate_refs():
            commit = self.store.peel_to_commit(sha)
            if commit is not None:
                return name, commit
            logger.debug("Commit for %s was not recovered", name.decode("utf-8", "replace"))
        return None, None

    def write(self, path_map: PathMap, result: CheckoutResult) -> None:
        """Write every entry of ``path_map`` below the root path.

        Entries below a symlink written earlier, or whose parent directory
        resolves outside the root path, are refused.
        """
        result.missing.extend(path_map.missing_trees)
        real_root = os.path.realpath(self.root_path)
        links: set[bytes] = set()
        for entry in path_map.entries:
            if not validate_path(entry.path) or _below_any(entry.path, links):
                logger.warning("Refusing to write unsafe path %r", entry.path)
                result.refused.append(entry.path)
                continue
            full_path = _tree_to_fs_path(self.root_path, entry.path)
            parent = os.path.dirname(full_path)
            if not _is_within(real_root, os.path.realpath(parent)):
                logger.warning("Refusing to write %r through a symlink", entry.path)
                result.refused.append(entry.path)
                continue
            try:
                os.makedirs(parent, exist_ok=True)
            except (FileExistsError, NotADirectoryError):
                logger.warning("Cannot create directory for %r", entry.path)
                result.refused.append(entry.path)
                continue

            if S_ISGITLINK(entry.mode):
                os.makedirs(full_path, exist_ok=True)
                result.written.append(entry.path)
                continue

            blob = self.store.get(entry.sha)
            if blob is None or blob.type_num != BLOB:
                logger.debug("Blob %s for %r was not recovered", entry.sha, entry.path)
                result.missing.append(entry.path)
                continue
            build_file_from_blob(blob, entry.mode, full_path)
            if stat.S_ISLNK(entry.mode):
                links.add(entry.path)
            result.written.append(entry.path)

    def checkout(self, ref: Union[str, bytes, None] = None) -> CheckoutResult:
        """Materialize the chosen commit, or the recovered index as fallback."""
        result = CheckoutResult()
        name, commit = self.select_commit(ref)
        path_map: Optional[PathMap]
        if commit is not None:
            result.commit = commit.id
            result.ref = name
            logger.info(
                "Checking out %s (%s)",
                name.decode("utf-8", "replace") if name else "commit",
                commit.id.decode("ascii"),
            )
            path_map = build_path_map(self.store, commit.tree)
        else:
            path_map = path_map_from_index(self.store)
            if path_map is None:
                logger.warning("No commit or index was recovered, nothing to write")
                return result
            logger.info("No commit was recovered, writing files listed in the index")
            result.from_index = True
        os.makedirs(self.root_path, exist_ok=True)
        self.write(path_map, result)
        return result
