# pack.py -- For dealing with packed git objects.
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

"""Classes for dealing with packed git objects.

A pack is a compact representation of a bunch of objects, stored
using deltas where possible.

A pack fetched over dumb HTTP is held in memory as a whole. Its entries are
parsed sequentially; whole entries decode directly, while delta entries are
resolved against their base, which is either an earlier entry of the same
pack (ofs-delta) or any object identified by id (ref-delta). A ref-delta
whose base is neither in the pack nor known to the caller is parked until
the base is supplied through :meth:`PackInflater.provide_base`.

The optional companion index (``.idx``) maps ids to offsets; when present it
lets ref-deltas find in-pack bases before they have been resolved and is
used to verify resolved ids.
"""

__all__ = [
    "DELTA_TYPES",
    "OFS_DELTA",
    "REF_DELTA",
    "PackData",
    "PackIndex",
    "PackInflater",
    "UnpackedObject",
    "apply_delta",
    "load_pack_index",
    "read_pack_header",
    "read_zlib_chunks",
    "take_msb_bytes",
    "unpack_object",
]

import logging
import threading
import zlib
from collections import defaultdict, deque
from collections.abc import Callable, Iterator
from hashlib import sha1
from struct import unpack_from
from typing import Optional, Union

from .errors import (
    ApplyDeltaError,
    ChecksumMismatch,
    CorruptObject,
    CorruptPack,
    CycleDetected,
    GitExhumeError,
)
from .objects import TYPE_NAMES, DecodedObject, ObjectID, sha_to_hex

logger = logging.getLogger(__name__)

OFS_DELTA = 6
REF_DELTA = 7

DELTA_TYPES = (OFS_DELTA, REF_DELTA)

PACK_SIGNATURE = b"PACK"
PACK_INDEX_V2_SIGNATURE = b"\377tOc"

_ZLIB_BUFSIZE = 65536

ResolveExtRefFn = Callable[[ObjectID], Optional[DecodedObject]]


def take_msb_bytes(data: bytes, offset: int) -> tuple[list[int], int]:
    """Read bytes marked with most significant bit.

    Args:
      data: Buffer to read from
      offset: Offset of the first byte
    Returns:
      Tuple of (list of bytes read, offset just past them)
    Raises:
      CorruptPack: if the buffer ends before the last byte
    """
    ret: list[int] = []
    while len(ret) == 0 or ret[-1] & 0x80:
        if offset >= len(data):
            raise CorruptPack("pack truncated inside an entry header")
        ret.append(data[offset])
        offset += 1
    return ret, offset


class UnpackedObject:
    """A single entry as it appears in a pack, before delta resolution.

    ``data`` holds the decompressed payload: the object body for whole
    entries, the delta instructions for delta entries.
    """

    __slots__ = [
        "data",  # Decompressed payload.
        "decomp_len",  # Decompressed length declared in the entry header.
        "delta_base",  # Delta base offset (ofs) or hex id (ref).
        "end",  # Offset just past this entry.
        "offset",  # Offset in its pack.
        "pack_type_num",  # Type of this object in the pack (may be a delta).
    ]

    def __init__(
        self,
        pack_type_num: int,
        *,
        offset: int,
        delta_base: Union[None, bytes, int] = None,
        decomp_len: Optional[int] = None,
        data: bytes = b"",
        end: Optional[int] = None,
    ) -> None:
        self.pack_type_num = pack_type_num
        self.offset = offset
        self.delta_base = delta_base
        self.decomp_len = decomp_len
        self.data = data
        self.end = end

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, UnpackedObject):
            return False
        for slot in self.__slots__:
            if getattr(self, slot) != getattr(other, slot):
                return False
        return True

    def __repr__(self) -> str:
        data = [f"{s}={getattr(self, s)!r}" for s in self.__slots__ if s != "data"]
        return "{}({})".format(self.__class__.__name__, ", ".join(data))


def read_zlib_chunks(
    data: bytes,
    offset: int,
    decomp_len: int,
    buffer_size: int = _ZLIB_BUFSIZE,
) -> tuple[bytes, int]:
    """Inflate one zlib stream embedded in a buffer.

    Args:
      data: Buffer holding the stream
      offset: Offset where the stream starts
      decomp_len: Expected length of the decompressed data
      buffer_size: Number of compressed bytes fed to zlib at once
    Returns: Tuple of (decompressed data, offset just past the stream)
    Raises:
      zlib.error: if a decompression error occurred or the size is wrong
    """
    if decomp_len < 0:
        raise ValueError("non-negative zlib data stream size expected")
    decomp_obj = zlib.decompressobj()
    view = memoryview(data)
    chunks = []
    total = 0
    while not decomp_obj.eof:
        add = view[offset : offset + buffer_size]
        if not add:
            raise zlib.error("EOF before end of zlib stream")
        offset += len(add)
        decomp = decomp_obj.decompress(add)
        total += len(decomp)
        chunks.append(decomp)
    offset -= len(decomp_obj.unused_data)
    if total != decomp_len:
        raise zlib.error("decompressed data does not match expected size")
    return b"".join(chunks), offset


def read_pack_header(data: bytes) -> tuple[int, int]:
    """Read the header of a pack file.

    Args:
      data: Pack contents
    Returns: Tuple of (pack version, number of objects)
    Raises:
      CorruptPack: if the signature or version is wrong
    """
    if len(data) < 12:
        raise CorruptPack("file too short to contain pack")
    if data[:4] != PACK_SIGNATURE:
        raise CorruptPack(f"Invalid pack header {bytes(data[:4])!r}")
    (version,) = unpack_from(">L", data, 4)
    if version not in (2, 3):
        raise CorruptPack(f"Version was {version}")
    (num_objects,) = unpack_from(">L", data, 8)
    return version, num_objects


def unpack_object(
    data: bytes, offset: int, zlib_bufsize: int = _ZLIB_BUFSIZE
) -> UnpackedObject:
    """Unpack the pack entry starting at ``offset``.

    Args:
      data: Pack contents
      offset: Offset of the entry header
      zlib_bufsize: Buffer size for zlib operations
    Returns: An UnpackedObject with every member set
    Raises:
      CorruptPack: if the entry is malformed
    """
    raw, pos = take_msb_bytes(data, offset)
    type_num = (raw[0] >> 4) & 0x07
    size = raw[0] & 0x0F
    for i, byte in enumerate(raw[1:]):
        size += (byte & 0x7F) << ((i * 7) + 4)

    delta_base: Union[int, bytes, None]
    if type_num == OFS_DELTA:
        raw, pos = take_msb_bytes(data, pos)
        delta_base_offset = raw[0] & 0x7F
        for byte in raw[1:]:
            delta_base_offset += 1
            delta_base_offset <<= 7
            delta_base_offset += byte & 0x7F
        delta_base = delta_base_offset
    elif type_num == REF_DELTA:
        if pos + 20 > len(data):
            raise CorruptPack(f"pack truncated inside ref-delta at offset {offset}")
        delta_base = sha_to_hex(bytes(data[pos : pos + 20]))
        pos += 20
    elif type_num in TYPE_NAMES:
        delta_base = None
    else:
        raise CorruptPack(f"invalid object type {type_num} at offset {offset}")

    try:
        payload, end = read_zlib_chunks(data, pos, size, buffer_size=zlib_bufsize)
    except zlib.error as exc:
        raise CorruptPack(f"entry at offset {offset}: {exc}") from exc
    return UnpackedObject(
        type_num,
        offset=offset,
        delta_base=delta_base,
        decomp_len=size,
        data=payload,
        end=end,
    )


def _delta_header_size(delta: bytes, index: int) -> tuple[int, int]:
    size = 0
    i = 0
    while True:
        if index >= len(delta):
            raise ApplyDeltaError("delta header truncated")
        cmd = delta[index]
        index += 1
        size |= (cmd & ~0x80) << i
        i += 7
        if not cmd & 0x80:
            break
    return size, index


def apply_delta(src_buf: bytes, delta: bytes) -> bytes:
    """Based on the similar function in git's patch-delta.c.

    Args:
      src_buf: Source buffer
      delta: Delta instructions
    Returns: The reconstructed target buffer
    Raises:
      ApplyDeltaError: if the delta does not fit the source buffer
    """
    out = []
    index = 0
    delta_length = len(delta)

    src_size, index = _delta_header_size(delta, index)
    dest_size, index = _delta_header_size(delta, index)
    if src_size != len(src_buf):
        raise ApplyDeltaError(
            f"Unexpected source buffer size: {src_size} vs {len(src_buf)}"
        )
    while index < delta_length:
        cmd = delta[index]
        index += 1
        if cmd & 0x80:
            cp_off = 0
            for i in range(4):
                if cmd & (1 << i):
                    cp_off |= delta[index] << (i * 8)
                    index += 1
            cp_size = 0
            # Version 3 packs can contain copy sizes larger than 64K.
            for i in range(3):
                if cmd & (1 << (4 + i)):
                    cp_size |= delta[index] << (i * 8)
                    index += 1
            if cp_size == 0:
                cp_size = 0x10000
            if cp_off + cp_size > src_size or cp_size > dest_size:
                raise ApplyDeltaError(
                    f"copy of {cp_size} bytes at {cp_off} exceeds source buffer"
                )
            out.append(src_buf[cp_off : cp_off + cp_size])
        elif cmd != 0:
            if index + cmd > delta_length:
                raise ApplyDeltaError("insert runs past end of delta")
            out.append(delta[index : index + cmd])
            index += cmd
        else:
            raise ApplyDeltaError("Invalid opcode 0")

    result = b"".join(out)
    if dest_size != len(result):
        raise ApplyDeltaError("dest size incorrect")
    return result


class PackIndex:
    """An in-memory pack index (version 1 or 2).

    Only the parts needed to map ids to offsets are kept.
    """

    def __init__(self, contents: bytes) -> None:
        """Parse the contents of a ``.idx`` file.

        Raises:
          CorruptPack: if the index is malformed or its checksum is wrong
        """
        if len(contents) < 0x100 * 4 + 40:
            raise CorruptPack("pack index too short")
        expected = contents[-20:]
        got = sha1(contents[:-20]).digest()
        if expected != got:
            raise CorruptPack(str(ChecksumMismatch(expected, got, "pack index")))
        if contents[:4] == PACK_INDEX_V2_SIGNATURE:
            (self.version,) = unpack_from(">L", contents, 4)
            if self.version != 2:
                raise CorruptPack(f"Unsupported pack index version {self.version}")
            self._entries = self._read_v2(contents)
        else:
            self.version = 1
            self._entries = self._read_v1(contents)
        self._pack_checksum = bytes(contents[-40:-20])
        self._offsets = dict(self._entries)
        self._names = {offset: sha for sha, offset in self._entries}

    @staticmethod
    def _read_fan_out_table(contents: bytes, start_offset: int) -> list[int]:
        ret = []
        for i in range(0x100):
            (count,) = unpack_from(">L", contents, start_offset + i * 4)
            ret.append(count)
        return ret

    def _read_v1(self, contents: bytes) -> list[tuple[ObjectID, int]]:
        fan_out = self._read_fan_out_table(contents, 0)
        count = fan_out[-1]
        base = 0x100 * 4
        if base + count * 24 + 40 > len(contents):
            raise CorruptPack("pack index truncated")
        entries = []
        for i in range(count):
            (offset,) = unpack_from(">L", contents, base + i * 24)
            name = contents[base + i * 24 + 4 : base + i * 24 + 24]
            entries.append((sha_to_hex(bytes(name)), offset))
        return entries

    def _read_v2(self, contents: bytes) -> list[tuple[ObjectID, int]]:
        fan_out = self._read_fan_out_table(contents, 8)
        count = fan_out[-1]
        name_table = 8 + 0x100 * 4
        crc32_table = name_table + 20 * count
        offset_table = crc32_table + 4 * count
        large_offset_table = offset_table + 4 * count
        if large_offset_table + 40 > len(contents):
            raise CorruptPack("pack index truncated")
        entries = []
        for i in range(count):
            name = contents[name_table + i * 20 : name_table + (i + 1) * 20]
            (offset,) = unpack_from(">L", contents, offset_table + i * 4)
            if offset & (2**31):
                large = large_offset_table + (offset & (2**31 - 1)) * 8
                (offset,) = unpack_from(">Q", contents, large)
            entries.append((sha_to_hex(bytes(name)), offset))
        return entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ObjectID]:
        """Iterate over the hex ids in this index."""
        return (sha for sha, _ in self._entries)

    def __contains__(self, sha: object) -> bool:
        return sha in self._offsets

    def iterentries(self) -> Iterator[tuple[ObjectID, int]]:
        """Iterate over (hex id, offset) pairs."""
        return iter(self._entries)

    def object_offset(self, sha: ObjectID) -> int:
        """Return the pack offset of the object with the given hex id.

        Raises:
          KeyError: if the id is not in this index
        """
        return self._offsets[sha]

    def object_sha_at(self, offset: int) -> Optional[ObjectID]:
        """Return the hex id stored at ``offset``, if the index lists one."""
        return self._names.get(offset)

    def get_pack_checksum(self) -> bytes:
        """Return the binary checksum stored for the corresponding pack."""
        return self._pack_checksum


def load_pack_index(contents: bytes) -> PackIndex:
    """Load a pack index from the raw contents of an ``.idx`` file."""
    return PackIndex(contents)


class PackData:
    """The data contained in a packfile.

    Entries are parsed sequentially on construction; a structural failure
    part way through is remembered in ``error`` and the entries before it
    stay available.
    """

    def __init__(self, data: bytes, name: Optional[str] = None) -> None:
        """Parse pack data.

        Raises:
          CorruptPack: if the pack header itself is unusable
        """
        self._data = data
        self.name = name or "<pack>"
        self.version, self._num_objects = read_pack_header(data)
        self._entries: dict[int, UnpackedObject] = {}
        self.error: Optional[CorruptPack] = None
        self._parse()

    def _parse(self) -> None:
        offset = 12
        limit = len(self._data) - 20
        for i in range(self._num_objects):
            if offset >= limit:
                self.error = CorruptPack(
                    f"{self.name}: truncated after {i} of {self._num_objects} entries"
                )
                return
            try:
                unpacked = unpack_object(self._data, offset)
            except CorruptPack as exc:
                self.error = CorruptPack(f"{self.name}: {exc}")
                return
            self._entries[offset] = unpacked
            offset = unpacked.end
        if offset != limit:
            self.error = CorruptPack(
                f"{self.name}: {limit - offset} unexpected bytes after last entry"
            )

    def __len__(self) -> int:
        """Returns the number of objects in this pack."""
        return self._num_objects

    def iter_unpacked(self) -> Iterator[UnpackedObject]:
        """Iterate over the successfully parsed entries, in pack order."""
        return iter(self._entries.values())

    def get_unpacked_object_at(self, offset: int) -> UnpackedObject:
        """Return the entry starting at ``offset``.

        Raises:
          KeyError: if no entry starts there
        """
        return self._entries[offset]

    def calculate_checksum(self) -> bytes:
        """Calculate the checksum for this pack."""
        return sha1(self._data[:-20]).digest()

    def get_stored_checksum(self) -> bytes:
        """Return the expected checksum stored in this pack."""
        return bytes(self._data[-20:])

    def check(self) -> None:
        """Check the consistency of this pack.

        Raises:
          CorruptPack: on a structural failure or checksum mismatch
        """
        if self.error is not None:
            raise self.error
        actual = self.calculate_checksum()
        stored = self.get_stored_checksum()
        if actual != stored:
            raise CorruptPack(f"{self.name}: {ChecksumMismatch(stored, actual)}")


class _MissingBase(Exception):
    """A ref-delta base is not available yet."""

    def __init__(self, sha: ObjectID) -> None:
        self.sha = sha


class PackInflater:
    """Resolve the entries of a pack into decoded objects.

    Resolved objects are memoized by pack offset and by id, so every entry
    is inflated at most once however many deltas use it as their base.
    Delta chains are walked with an explicit stack, which keeps resolution
    linear in the chain length.

    The memo tables are shared by every caller of the same inflater; all
    access goes through one lock.
    """

    def __init__(
        self,
        pack_data: PackData,
        index: Optional[PackIndex] = None,
        resolve_ext_ref: Optional[ResolveExtRefFn] = None,
    ) -> None:
        """Initialize a PackInflater.

        Args:
          pack_data: Parsed pack data
          index: Optional companion index
          resolve_ext_ref: Optional function returning an already known
            object by id, or None
        """
        self.data = pack_data
        if (
            index is not None
            and index.get_pack_checksum() != pack_data.get_stored_checksum()
        ):
            logger.warning(
                "Index for %s belongs to a different pack, ignoring it", pack_data.name
            )
            index = None
        self.index = index
        self._resolve_ext_ref = resolve_ext_ref
        self._lock = threading.RLock()
        self._by_offset: dict[int, DecodedObject] = {}
        self._by_sha: dict[ObjectID, DecodedObject] = {}
        self._external: dict[ObjectID, DecodedObject] = {}
        self._waiting: dict[ObjectID, list[int]] = defaultdict(list)
        self._unblocked: deque[int] = deque()
        self._fresh: list[DecodedObject] = []
        self.errors: dict[int, GitExhumeError] = {}
        self.delta_resolutions = 0

    def inflate(self) -> list[DecodedObject]:
        """Resolve every entry that can be resolved with what is known.

        Returns: the objects resolved by this call, in no particular order
        Raises:
          CorruptPack: if the pack is structurally broken or its checksum
            does not match; ``salvaged`` holds everything resolved anyway
        """
        with self._lock:
            for unpacked in self.data.iter_unpacked():
                self._try(unpacked.offset)
            self._drain()
            resolved = self._take_fresh()
            try:
                self.data.check()
            except CorruptPack as exc:
                raise CorruptPack(exc.reason, salvaged=resolved) from exc
            return resolved

    def provide_base(self, obj: DecodedObject) -> list[DecodedObject]:
        """Supply an external delta base and resolve entries waiting on it.

        Returns: the objects newly resolved
        """
        with self._lock:
            self._external[obj.id] = obj
            self._unblocked.extend(self._waiting.pop(obj.id, []))
            self._drain()
            return self._take_fresh()

    def waiting_bases(self) -> set[ObjectID]:
        """Return the ids of external bases entries are still waiting on."""
        with self._lock:
            return set(self._waiting)

    def resolved(self) -> list[DecodedObject]:
        """Return every object resolved so far."""
        with self._lock:
            return list(self._by_offset.values())

    def _take_fresh(self) -> list[DecodedObject]:
        fresh, self._fresh = self._fresh, []
        return fresh

    def _drain(self) -> None:
        while self._unblocked:
            self._try(self._unblocked.popleft())

    def _try(self, offset: int) -> None:
        if offset in self._by_offset or offset in self.errors:
            return
        try:
            self._resolve(offset)
        except _MissingBase as exc:
            self._waiting[exc.sha].append(offset)
        except ApplyDeltaError as exc:
            self._fail(offset, CorruptPack(f"entry at offset {offset}: {exc}"))
        except (CorruptObject, CorruptPack) as exc:
            self._fail(offset, exc)

    def _fail(self, offset: int, exc: GitExhumeError) -> None:
        logger.error("%s: %s", self.data.name, exc)
        self.errors[offset] = exc

    def _lookup_sha(self, sha: ObjectID) -> Union[int, DecodedObject, None]:
        obj = self._by_sha.get(sha)
        if obj is not None:
            return obj
        if self.index is not None and sha in self.index:
            return self.index.object_offset(sha)
        obj = self._external.get(sha)
        if obj is None and self._resolve_ext_ref is not None:
            obj = self._resolve_ext_ref(sha)
        return obj

    def _resolve(self, offset: int) -> DecodedObject:
        # Walk down the delta chain, building a stack of deltas to reach
        # the requested object.
        delta_stack: list[int] = []
        seen: set[int] = set()
        current: Union[int, DecodedObject] = offset
        while isinstance(current, int):
            memo = self._by_offset.get(current)
            if memo is not None:
                current = memo
                break
            if current in seen:
                raise CycleDetected(offset, delta_stack + [current])
            if current in self.errors:
                raise CorruptPack(f"base entry at offset {current} is unusable")
            seen.add(current)
            try:
                unpacked = self.data.get_unpacked_object_at(current)
            except KeyError:
                raise CorruptPack(f"no pack entry starts at offset {current}") from None
            if unpacked.pack_type_num not in DELTA_TYPES:
                base = DecodedObject.from_body(unpacked.pack_type_num, unpacked.data)
                self._remember(current, base)
                current = base
                break
            delta_stack.append(current)
            if unpacked.pack_type_num == OFS_DELTA:
                assert isinstance(unpacked.delta_base, int)
                if not 0 < unpacked.delta_base <= current:
                    raise CorruptPack(
                        f"ofs-delta at offset {current} points outside the pack"
                    )
                current = current - unpacked.delta_base
            else:
                assert isinstance(unpacked.delta_base, bytes)
                found = self._lookup_sha(unpacked.delta_base)
                if found is None:
                    raise _MissingBase(unpacked.delta_base)
                current = found

        # Now apply the deltas all the way up the stack.
        base = current
        for delta_offset in reversed(delta_stack):
            unpacked = self.data.get_unpacked_object_at(delta_offset)
            body = apply_delta(base.body, unpacked.data)
            self.delta_resolutions += 1
            base = DecodedObject.from_body(base.type_num, body)
            self._remember(delta_offset, base)
        return base

    def _remember(self, offset: int, obj: DecodedObject) -> None:
        if self.index is not None:
            expected = self.index.object_sha_at(offset)
            if expected is not None and expected != obj.id:
                raise CorruptObject(
                    expected,
                    f"pack entry at offset {offset} hashes to {obj.id.decode('ascii')}",
                )
        self._by_offset[offset] = obj
        self._by_sha[obj.id] = obj
        self._fresh.append(obj)
        self._unblocked.extend(self._waiting.pop(obj.id, []))
