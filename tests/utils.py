# utils.py -- Test utilities for gitexhume
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

"""Utility functions common to gitexhume tests."""

import struct
import threading
import zlib
from collections import defaultdict
from difflib import SequenceMatcher
from hashlib import sha1
from typing import Optional, Union

from gitexhume.errors import NotFound, TransientError
from gitexhume.objects import (
    BLOB,
    COMMIT,
    TAG,
    TREE,
    TYPE_NAMES,
    DecodedObject,
    hex_to_filename,
    hex_to_sha,
)
from gitexhume.pack import DELTA_TYPES, OFS_DELTA, REF_DELTA

# Plain files are very frequently used in tests, so let the mode be very short.
F = 0o100644  # Shorthand mode for Files.
X = 0o100755
D = 0o040000
L = 0o120000
G = 0o160000


def make_object(type_num: int, body: bytes) -> DecodedObject:
    return DecodedObject.from_body(type_num, body)


def make_blob(data: bytes) -> DecodedObject:
    return make_object(BLOB, data)


def make_tree(entries) -> DecodedObject:
    """Make a tree from (name, mode, hex id) triples."""
    body = b"".join(
        b"%o %s\0%s" % (mode, name, hex_to_sha(sha)) for name, mode, sha in entries
    )
    return make_object(TREE, body)


def make_commit(
    tree: bytes, parents=(), message: bytes = b"Test message.\n"
) -> DecodedObject:
    lines = [b"tree " + tree]
    lines.extend(b"parent " + p for p in parents)
    lines.append(b"author Test Author <test@nodomain.com> 1174773719 +0000")
    lines.append(b"committer Test Committer <test@nodomain.com> 1174773719 +0000")
    return make_object(COMMIT, b"\n".join(lines) + b"\n\n" + message)


def make_tag(
    target: DecodedObject, name: bytes = b"v1.0", message: bytes = b"Tag.\n"
) -> DecodedObject:
    body = (
        b"object " + target.id + b"\n"
        b"type " + TYPE_NAMES[target.type_num] + b"\n"
        b"tag " + name + b"\n"
        b"tagger Test Tagger <test@nodomain.com> 1174773719 +0000\n\n" + message
    )
    return make_object(TAG, body)


def delta_encode_size(size: int) -> bytes:
    ret = bytearray()
    c = size & 0x7F
    size >>= 7
    while size:
        ret.append(c | 0x80)
        c = size & 0x7F
        size >>= 7
    ret.append(c)
    return bytes(ret)


def _encode_copy_operation(start: int, length: int) -> bytes:
    scratch = bytearray([0x80])
    for i in range(4):
        if start & 0xFF << i * 8:
            scratch.append((start >> i * 8) & 0xFF)
            scratch[0] |= 1 << i
    for i in range(2):
        if length & 0xFF << i * 8:
            scratch.append((length >> i * 8) & 0xFF)
            scratch[0] |= 1 << (4 + i)
    return bytes(scratch)


def create_delta(base_buf: bytes, target_buf: bytes) -> bytes:
    """Use python difflib to work out how to transform base_buf to target_buf."""
    out = [delta_encode_size(len(base_buf)), delta_encode_size(len(target_buf))]
    seq = SequenceMatcher(isjunk=None, a=base_buf, b=target_buf, autojunk=False)
    for opcode, i1, i2, j1, j2 in seq.get_opcodes():
        if opcode == "equal":
            copy_start = i1
            copy_len = i2 - i1
            while copy_len > 0:
                to_copy = min(copy_len, 0xFFFF)
                out.append(_encode_copy_operation(copy_start, to_copy))
                copy_start += to_copy
                copy_len -= to_copy
        if opcode in ("replace", "insert"):
            s = j2 - j1
            o = j1
            while s > 127:
                out.append(bytes([127]))
                out.append(target_buf[o : o + 127])
                s -= 127
                o += 127
            out.append(bytes([s]))
            out.append(target_buf[o : o + s])
    return b"".join(out)


def pack_object_header(
    type_num: int, delta_base: Union[bytes, int, None], size: int
) -> bytes:
    """Create a pack object header for the given object info."""
    header = []
    c = (type_num << 4) | (size & 15)
    size >>= 4
    while size:
        header.append(c | 0x80)
        c = size & 0x7F
        size >>= 7
    header.append(c)
    if type_num == OFS_DELTA:
        assert isinstance(delta_base, int)
        ret = [delta_base & 0x7F]
        delta_base >>= 7
        while delta_base:
            delta_base -= 1
            ret.insert(0, 0x80 | (delta_base & 0x7F))
            delta_base >>= 7
        header.extend(ret)
    elif type_num == REF_DELTA:
        assert isinstance(delta_base, bytes) and len(delta_base) == 20
        header.extend(delta_base)
    return bytes(header)


def build_pack(objects_spec, version: int = 2):
    """Build test pack data from a concise spec.

    Args:
      objects_spec: A list of (type_num, obj). For non-delta types, obj is
        the body of that object. For delta types, obj is a tuple of
        (base, data), where base is either an index in objects_spec of the
        base for that delta, or (ref deltas only) a DecodedObject outside
        the pack, making the pack thin; data is the full, non-deltified
        body of the object.
      version: Pack version to write
    Returns: tuple of (pack bytes, list of (offset, type num, body, hex id)
      in the order of objects_spec)
    """
    num_objects = len(objects_spec)
    full_objects: dict[int, DecodedObject] = {}

    while len(full_objects) < num_objects:
        for i, (type_num, obj) in enumerate(objects_spec):
            if i in full_objects:
                continue
            if type_num not in DELTA_TYPES:
                full_objects[i] = make_object(type_num, obj)
                continue
            base, data = obj
            if isinstance(base, int):
                if base not in full_objects:
                    continue
                base_type_num = full_objects[base].type_num
            else:
                base_type_num = base.type_num
            full_objects[i] = make_object(base_type_num, data)

    out = bytearray(b"PACK" + struct.pack(">LL", version, num_objects))
    offsets: dict[int, int] = {}
    for i, (type_num, obj) in enumerate(objects_spec):
        offset = len(out)
        if type_num == OFS_DELTA:
            base_index, data = obj
            delta_base: Union[bytes, int, None] = offset - offsets[base_index]
            payload = create_delta(full_objects[base_index].body, data)
        elif type_num == REF_DELTA:
            base, data = obj
            base_obj = full_objects[base] if isinstance(base, int) else base
            delta_base = hex_to_sha(base_obj.id)
            payload = create_delta(base_obj.body, data)
        else:
            delta_base = None
            payload = obj
        out += pack_object_header(type_num, delta_base, len(payload))
        out += zlib.compress(payload)
        offsets[i] = offset
    out += sha1(bytes(out)).digest()

    expected = []
    for i in range(num_objects):
        obj = full_objects[i]
        expected.append((offsets[i], obj.type_num, obj.body, obj.id))
    return bytes(out), expected


def build_pack_index(entries, pack_data: bytes, version: int = 2) -> bytes:
    """Build a pack index for (hex id, offset) pairs of ``pack_data``."""
    entries = sorted((hex_to_sha(sha), offset) for sha, offset in entries)
    fan_out_table: dict[int, int] = defaultdict(lambda: 0)
    for name, _ in entries:
        fan_out_table[name[0]] += 1
    fan_out = []
    total = 0
    for i in range(0x100):
        total += fan_out_table[i]
        fan_out.append(struct.pack(">L", total))

    out = bytearray()
    if version == 2:
        out += b"\377tOc" + struct.pack(">L", 2)
        out += b"".join(fan_out)
        for name, _ in entries:
            out += name
        for _ in entries:
            out += struct.pack(">L", 0)
        for _, offset in entries:
            out += struct.pack(">L", offset)
    else:
        out += b"".join(fan_out)
        for name, offset in entries:
            out += struct.pack(">L", offset) + name
    out += pack_data[-20:]
    out += sha1(bytes(out)).digest()
    return bytes(out)


def _encode_offset_varint(n: int) -> bytes:
    ret = [n & 0x7F]
    n >>= 7
    while n:
        n -= 1
        ret.insert(0, 0x80 | (n & 0x7F))
        n >>= 7
    return bytes(ret)


def build_index(entries, version: int = 2) -> bytes:
    """Build index file contents from (path, mode, hex id) triples."""
    out = bytearray(b"DIRC" + struct.pack(">LL", version, len(entries)))
    previous = b""
    for path, mode, sha in entries:
        fixed = struct.pack(">LLLLLLLLLL", 0, 0, 0, 0, 0, 0, mode, 0, 0, 0)
        flags = min(len(path), 0xFFF)
        entry = fixed + hex_to_sha(sha) + struct.pack(">H", flags)
        if version >= 4:
            common = 0
            while (
                common < min(len(previous), len(path))
                and previous[common] == path[common]
            ):
                common += 1
            entry += _encode_offset_varint(len(previous) - common)
            entry += path[common:] + b"\0"
        else:
            entry += path
            entry += b"\0" * (((len(entry) + 8) & ~7) - len(entry))
        out += entry
        previous = path
    out += sha1(bytes(out)).digest()
    return bytes(out)


def loose_files(*objects: DecodedObject) -> dict[str, bytes]:
    """Return remote files for ``objects`` stored as loose objects."""
    return {hex_to_filename(obj.id): obj.as_legacy_object() for obj in objects}


class FakeRemote:
    """In-memory stand-in for a remote .git directory.

    Callable like a fetcher. ``transient`` maps paths to the number of
    TransientErrors to raise before serving them.
    """

    def __init__(
        self,
        files: Optional[dict[str, bytes]] = None,
        transient: Optional[dict[str, int]] = None,
    ) -> None:
        self.files = dict(files or {})
        self.transient = dict(transient or {})
        self.requests: list[str] = []
        self._lock = threading.Lock()

    def __call__(self, path: str, timeout: Optional[float] = None) -> bytes:
        with self._lock:
            self.requests.append(path)
            remaining = self.transient.get(path, 0)
            if remaining:
                self.transient[path] = remaining - 1
                raise TransientError(path, "simulated timeout")
        try:
            return self.files[path]
        except KeyError:
            raise NotFound(path, 404) from None

    def count(self, path: str) -> int:
        with self._lock:
            return self.requests.count(path)
