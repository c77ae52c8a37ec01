# index.py -- Reading of the git index file
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

"""Parser for the git index file format.

Only the fields needed to seed the walk and to lay out files are kept:
path, mode and blob id of every stage-0 entry.
"""

import struct
from collections.abc import Iterator
from io import BytesIO
from typing import BinaryIO, NamedTuple

from .objects import ObjectID, sha_to_hex

INDEX_SIGNATURE = b"DIRC"

FLAG_STAGEMASK = 0x3000
FLAG_STAGESHIFT = 12
FLAG_NAMEMASK = 0x0FFF
FLAG_EXTENDED = 0x4000


class UnsupportedIndexFormat(Exception):
    """An unsupported index format was encountered."""

    def __init__(self, version: int) -> None:
        self.index_format_version = version
        super().__init__(f"unsupported index version {version}")


class IndexEntry(NamedTuple):
    """A single index entry."""

    path: bytes
    mode: int
    sha: ObjectID
    stage: int


def read_index_header(f: BinaryIO) -> tuple[int, int]:
    """Read an index header from a file.

    Returns:
      tuple of (version, num_entries)
    Raises:
      ValueError: if the signature is wrong
      UnsupportedIndexFormat: for unknown versions
    """
    header = f.read(4)
    if header != INDEX_SIGNATURE:
        raise ValueError(f"Invalid index file header: {header!r}")
    (version, num_entries) = struct.unpack(b">LL", f.read(4 * 2))
    if version not in (2, 3, 4):
        raise UnsupportedIndexFormat(version)
    return version, num_entries


def _read_offset_varint(f: BinaryIO) -> int:
    # Same encoding as the ofs-delta base offset in packs.
    data = f.read(1)
    if not data:
        raise ValueError("Unexpected end of file while reading varint")
    value = data[0] & 0x7F
    while data[0] & 0x80:
        data = f.read(1)
        if not data:
            raise ValueError("Unexpected end of file while reading varint")
        value = ((value + 1) << 7) | (data[0] & 0x7F)
    return value


def _read_nul_terminated(f: BinaryIO) -> bytes:
    chunks = []
    while True:
        byte = f.read(1)
        if not byte:
            raise ValueError("Unexpected end of file while reading path")
        if byte == b"\0":
            return b"".join(chunks)
        chunks.append(byte)


def read_cache_entry(f: BinaryIO, version: int, previous_path: bytes = b"") -> IndexEntry:
    """Read an entry from a cache file.

    Args:
      f: File-like object to read from
      version: Index version
      previous_path: Previous entry's path (for version 4 compression)
    """
    beginoffset = f.tell()
    fixed = f.read(40 + 20 + 2)
    if len(fixed) != 62:
        raise ValueError("Unexpected end of file while reading index entry")
    (mode,) = struct.unpack(">L", fixed[24:28])
    sha = fixed[40:60]
    (flags,) = struct.unpack(">H", fixed[60:62])
    if flags & FLAG_EXTENDED:
        if version < 3:
            raise ValueError("extended flag set in index with version < 3")
        f.read(2)

    if version >= 4:
        remove_len = _read_offset_varint(f)
        if remove_len > len(previous_path):
            raise ValueError("Invalid path compression in index entry")
        name = previous_path[: len(previous_path) - remove_len] + _read_nul_terminated(f)
    elif flags & FLAG_NAMEMASK == FLAG_NAMEMASK:
        name = _read_nul_terminated(f)
        real_size = (f.tell() - beginoffset + 7) & ~7
        f.read((beginoffset + real_size) - f.tell())
    else:
        name = f.read(flags & FLAG_NAMEMASK)
        # Padding:
        real_size = (f.tell() - beginoffset + 8) & ~7
        f.read((beginoffset + real_size) - f.tell())

    return IndexEntry(
        name,
        mode,
        sha_to_hex(sha),
        (flags & FLAG_STAGEMASK) >> FLAG_STAGESHIFT,
    )


def read_index(f: BinaryIO) -> Iterator[IndexEntry]:
    """Read an index file, yielding the individual entries."""
    version, num_entries = read_index_header(f)
    previous_path = b""
    for _ in range(num_entries):
        entry = read_cache_entry(f, version, previous_path)
        previous_path = entry.path
        yield entry


def read_index_bytes(contents: bytes) -> list[IndexEntry]:
    """Parse raw index contents into stage-0 entries.

    Raises:
      ValueError: if the contents are not a readable index
    """
    return [entry for entry in read_index(BytesIO(contents)) if entry.stage == 0]
