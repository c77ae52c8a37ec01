# objects.py -- Decoding of git objects
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

"""Access to base git objects.

Objects are identified by their hex SHA-1 (as ``bytes``) throughout. A loose
object is the zlib-compressed form of ``b"<kind> <size>\\0" + body``; its id
is the SHA-1 of the uncompressed form.
"""

import binascii
import stat
import zlib
from collections.abc import Iterator
from hashlib import sha1
from typing import NamedTuple, Optional

from .errors import CorruptObject, UnknownKind

ObjectID = bytes

ZERO_SHA = b"0" * 40

COMMIT = 1
TREE = 2
BLOB = 3
TAG = 4

TYPE_NAMES = {
    COMMIT: b"commit",
    TREE: b"tree",
    BLOB: b"blob",
    TAG: b"tag",
}
TYPE_NUMS = {name: num for num, name in TYPE_NAMES.items()}

# Header fields for commits
_TREE_HEADER = b"tree"
_PARENT_HEADER = b"parent"

# Header fields for tags
_OBJECT_HEADER = b"object"
_TYPE_HEADER = b"type"

S_IFGITLINK = 0o160000


def S_ISGITLINK(m: int) -> bool:
    """Check if a mode indicates a submodule.

    Args:
      m: Mode to check
    Returns: a ``boolean``
    """
    return stat.S_IFMT(m) == S_IFGITLINK


def sha_to_hex(sha: bytes) -> ObjectID:
    """Takes a binary sha and returns its 40 character hex form."""
    hexsha = binascii.hexlify(sha)
    assert len(hexsha) == 40, f"Incorrect length of sha1 string: {hexsha!r}"
    return hexsha


def hex_to_sha(hex: ObjectID) -> bytes:
    """Takes a hex sha and returns a binary sha."""
    assert len(hex) == 40, f"Incorrect length of hexsha: {hex!r}"
    try:
        return binascii.unhexlify(hex)
    except TypeError as exc:
        if not isinstance(hex, bytes):
            raise
        raise ValueError(exc.args[0]) from exc


def valid_hexsha(hex: bytes) -> bool:
    """Check whether ``hex`` is a well-formed 40 character hex id."""
    if len(hex) != 40:
        return False
    try:
        binascii.unhexlify(hex)
    except (TypeError, binascii.Error):
        return False
    else:
        return True


def hex_to_filename(hex: ObjectID) -> str:
    """Return the remote path of a loose object, relative to ``.git/``."""
    hex_str = hex.decode("ascii")
    return f"objects/{hex_str[:2]}/{hex_str[2:]}"


def object_header(type_num: int, length: int) -> bytes:
    """Return an object header for the given numeric type and text length."""
    return TYPE_NAMES[type_num] + b" " + str(length).encode("ascii") + b"\0"


def obj_sha(type_num: int, body: bytes) -> ObjectID:
    """Compute the hex id for a numeric type and object body."""
    sha = sha1()
    sha.update(object_header(type_num, len(body)))
    sha.update(body)
    return sha.hexdigest().encode("ascii")


def kind_for_mode(mode: int) -> int:
    """Return the object kind a tree entry with ``mode`` points at."""
    if stat.S_ISDIR(mode):
        return TREE
    if S_ISGITLINK(mode):
        return COMMIT
    return BLOB


class TreeEntry(NamedTuple):
    """Named tuple encapsulating a single tree entry."""

    path: bytes
    mode: int
    sha: ObjectID

    @property
    def kind_hint(self) -> int:
        """Kind of the child object, as implied by the entry mode."""
        return kind_for_mode(self.mode)


def parse_tree(text: bytes, sha: Optional[ObjectID] = None) -> Iterator[TreeEntry]:
    """Parse a tree body.

    Args:
      text: Serialized tree body
      sha: Id of the tree, used in error messages
    Returns: iterator of tree entries
    Raises:
      CorruptObject: if the body is not a valid tree
    """
    count = 0
    length = len(text)
    while count < length:
        mode_end = text.find(b" ", count)
        if mode_end == -1:
            raise CorruptObject(sha, "tree entry without mode terminator")
        mode_text = text[count:mode_end]
        try:
            mode = int(mode_text, 8)
        except ValueError as exc:
            raise CorruptObject(sha, f"invalid tree mode {mode_text!r}") from exc
        name_end = text.find(b"\0", mode_end)
        if name_end == -1:
            raise CorruptObject(sha, "tree entry without name terminator")
        name = text[mode_end + 1 : name_end]
        count = name_end + 21
        binsha = text[name_end + 1 : count]
        if len(binsha) != 20:
            raise CorruptObject(sha, "tree entry sha has invalid length")
        yield TreeEntry(name, mode, sha_to_hex(binsha))


def _parse_headers(text: bytes) -> Iterator[tuple[bytes, bytes]]:
    """Yield (field, value) header pairs of a commit or tag body.

    Continuation lines (starting with a space, as used by ``gpgsig``) are
    skipped.
    """
    for line in text.split(b"\n"):
        if line == b"":
            return
        if line.startswith(b" "):
            continue
        field, _, value = line.partition(b" ")
        yield field, value


def parse_commit(
    text: bytes, sha: Optional[ObjectID] = None
) -> tuple[ObjectID, list[ObjectID]]:
    """Parse the tree and parents out of a commit body.

    Returns: tuple of (tree id, list of parent ids)
    Raises:
      CorruptObject: if the commit has no valid tree header
    """
    tree = None
    parents = []
    for field, value in _parse_headers(text):
        if field == _TREE_HEADER:
            if not valid_hexsha(value):
                raise CorruptObject(sha, f"invalid tree id {value!r}")
            tree = value
        elif field == _PARENT_HEADER:
            if not valid_hexsha(value):
                raise CorruptObject(sha, f"invalid parent id {value!r}")
            parents.append(value)
    if tree is None:
        raise CorruptObject(sha, "commit without tree")
    return tree, parents


def parse_tag(text: bytes, sha: Optional[ObjectID] = None) -> tuple[ObjectID, int]:
    """Parse the target of a tag body.

    Returns: tuple of (target id, target kind)
    Raises:
      CorruptObject: if the tag has no valid object header
    """
    target = None
    target_kind = COMMIT
    for field, value in _parse_headers(text):
        if field == _OBJECT_HEADER:
            if not valid_hexsha(value):
                raise CorruptObject(sha, f"invalid tag target {value!r}")
            target = value
        elif field == _TYPE_HEADER:
            try:
                target_kind = TYPE_NUMS[value]
            except KeyError:
                raise UnknownKind(sha, value) from None
    if target is None:
        raise CorruptObject(sha, "tag without object")
    return target, target_kind


class DecodedObject:
    """A fully decoded, hash-verified object.

    Instances are created by :func:`decode_loose_object` or by the pack
    inflater; ``id`` always equals the hash of header and body.
    """

    __slots__ = ("id", "type_num", "body", "_parsed")

    def __init__(self, id: ObjectID, type_num: int, body: bytes) -> None:
        self.id = id
        self.type_num = type_num
        self.body = body
        self._parsed = None

    @classmethod
    def from_body(cls, type_num: int, body: bytes) -> "DecodedObject":
        """Create an object from its kind and body, computing its id."""
        if type_num not in TYPE_NAMES:
            raise UnknownKind(None, str(type_num).encode("ascii"))
        return cls(obj_sha(type_num, body), type_num, body)

    @property
    def type_name(self) -> bytes:
        return TYPE_NAMES[self.type_num]

    @property
    def size(self) -> int:
        return len(self.body)

    def _ensure_parsed(self):
        if self._parsed is None:
            if self.type_num == TREE:
                self._parsed = list(parse_tree(self.body, self.id))
            elif self.type_num == COMMIT:
                self._parsed = parse_commit(self.body, self.id)
            elif self.type_num == TAG:
                self._parsed = parse_tag(self.body, self.id)
            else:
                self._parsed = ()
        return self._parsed

    def items(self) -> list[TreeEntry]:
        """Return the entries of a tree object."""
        if self.type_num != TREE:
            raise TypeError(f"{self.id!r} is not a tree")
        return self._ensure_parsed()

    @property
    def tree(self) -> ObjectID:
        """Tree id of a commit object."""
        if self.type_num != COMMIT:
            raise TypeError(f"{self.id!r} is not a commit")
        return self._ensure_parsed()[0]

    @property
    def parents(self) -> list[ObjectID]:
        """Parent ids of a commit object."""
        if self.type_num != COMMIT:
            raise TypeError(f"{self.id!r} is not a commit")
        return self._ensure_parsed()[1]

    @property
    def object(self) -> tuple[ObjectID, int]:
        """Target (id, kind) of a tag object."""
        if self.type_num != TAG:
            raise TypeError(f"{self.id!r} is not a tag")
        return self._ensure_parsed()

    def referenced_ids(self) -> list[ObjectID]:
        """Return the ids this object points at.

        Gitlink entries are left out; they name commits in another
        repository.

        Raises:
          CorruptObject: if the body cannot be parsed
        """
        if self.type_num == COMMIT:
            return [self.tree, *self.parents]
        if self.type_num == TAG:
            return [self.object[0]]
        if self.type_num == TREE:
            return [
                entry.sha for entry in self.items() if not S_ISGITLINK(entry.mode)
            ]
        return []

    def as_legacy_object(self) -> bytes:
        """Return the compressed loose-object form of this object."""
        return zlib.compress(object_header(self.type_num, len(self.body)) + self.body)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DecodedObject):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.type_name.decode()} {self.id.decode()}>"


def parse_object_header(text: bytes, sha: Optional[ObjectID] = None) -> tuple[int, int, int]:
    """Parse the ``<kind> <size>\\0`` header of an uncompressed object.

    Returns: tuple of (type number, declared size, offset of the body)
    Raises:
      CorruptObject: if the header is malformed
      UnknownKind: if the kind is not one of the four object kinds
    """
    header_end = text.find(b"\0")
    if header_end == -1:
        raise CorruptObject(sha, "object header not terminated")
    parts = text[:header_end].split(b" ", 1)
    if len(parts) != 2:
        raise CorruptObject(sha, "invalid object header")
    kind, size_text = parts
    if kind not in TYPE_NUMS:
        raise UnknownKind(sha, kind)
    if not size_text.isdigit() or (len(size_text) > 1 and size_text[:1] == b"0"):
        raise CorruptObject(sha, f"size {size_text!r} is not in canonical format")
    return TYPE_NUMS[kind], int(size_text), header_end + 1


def decode_loose_object(
    data: bytes, expected_id: Optional[ObjectID] = None
) -> DecodedObject:
    """Decode the raw bytes of a loose object file.

    Args:
      data: Compressed contents as fetched
      expected_id: Id implied by the path the data was fetched from
    Returns: a hash-verified DecodedObject
    Raises:
      CorruptObject: on decompression failure, malformed header, size or
        hash mismatch
      UnknownKind: if the header kind is not recognized
    """
    try:
        text = zlib.decompress(data)
    except zlib.error as exc:
        raise CorruptObject(expected_id, f"decompression failed: {exc}") from exc
    type_num, size, body_start = parse_object_header(text, expected_id)
    body = text[body_start:]
    if len(body) != size:
        raise CorruptObject(
            expected_id, f"object size mismatch: header says {size}, got {len(body)}"
        )
    obj = DecodedObject.from_body(type_num, body)
    if expected_id is not None and obj.id != expected_id:
        raise CorruptObject(expected_id, f"content hashes to {obj.id.decode('ascii')}")
    return obj


def encode_loose_object(obj: DecodedObject) -> bytes:
    """Return the compressed loose-object bytes for ``obj``."""
    return obj.as_legacy_object()
