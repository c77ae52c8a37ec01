# test_pack.py -- Tests for the handling of git packs
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

"""Tests for gitexhume.pack."""

import struct
import zlib
from hashlib import sha1

from gitexhume.errors import (
    ApplyDeltaError,
    CorruptObject,
    CorruptPack,
    CycleDetected,
)
from gitexhume.objects import BLOB, TREE, obj_sha
from gitexhume.pack import (
    OFS_DELTA,
    REF_DELTA,
    PackData,
    PackInflater,
    apply_delta,
    load_pack_index,
    read_pack_header,
    read_zlib_chunks,
    take_msb_bytes,
    unpack_object,
)

from . import TestCase
from .utils import (
    delta_encode_size,
    build_pack,
    build_pack_index,
    create_delta,
    make_blob,
    pack_object_header,
)


def _noise(seed: bytes, length: int) -> bytes:
    """Return incompressible bytes."""
    out = b""
    while len(out) < length:
        seed = sha1(seed).digest()
        out += seed
    return out[:length]


class HelperTests(TestCase):
    def test_take_msb_bytes(self) -> None:
        self.assertEqual(([0x81, 0x01], 2), take_msb_bytes(b"\x81\x01", 0))
        self.assertEqual(([0x05], 2), take_msb_bytes(b"\x00\x05", 1))

    def test_take_msb_bytes_truncated(self) -> None:
        self.assertRaises(CorruptPack, take_msb_bytes, b"\x80\x80", 0)

    def test_read_zlib_chunks(self) -> None:
        compressed = zlib.compress(b"hello" * 100)
        data = b"xx" + compressed + b"trailer"
        body, end = read_zlib_chunks(data, 2, 500, buffer_size=7)
        self.assertEqual(b"hello" * 100, body)
        self.assertEqual(2 + len(compressed), end)

    def test_read_zlib_chunks_wrong_size(self) -> None:
        data = zlib.compress(b"hello")
        self.assertRaises(zlib.error, read_zlib_chunks, data, 0, 4)

    def test_read_zlib_chunks_truncated(self) -> None:
        data = zlib.compress(_noise(b"x", 200))
        self.assertRaises(zlib.error, read_zlib_chunks, data[:-10], 0, 200)

    def test_read_pack_header(self) -> None:
        data, _ = build_pack([(BLOB, b"a"), (BLOB, b"b")])
        self.assertEqual((2, 2), read_pack_header(data))

    def test_read_pack_header_bad_signature(self) -> None:
        self.assertRaises(CorruptPack, read_pack_header, b"KCAP" + b"\0" * 8)

    def test_read_pack_header_bad_version(self) -> None:
        self.assertRaises(
            CorruptPack, read_pack_header, b"PACK\0\0\0\x04\0\0\0\0"
        )

    def test_read_pack_header_too_short(self) -> None:
        self.assertRaises(CorruptPack, read_pack_header, b"PACK")

    def test_unpack_object_ofs_delta(self) -> None:
        data, expected = build_pack(
            [(BLOB, b"base contents"), (OFS_DELTA, (0, b"base contents!"))]
        )
        unpacked = unpack_object(data, expected[1][0])
        self.assertEqual(OFS_DELTA, unpacked.pack_type_num)
        self.assertEqual(expected[1][0] - expected[0][0], unpacked.delta_base)

    def test_unpack_object_invalid_type(self) -> None:
        # Type 5 is reserved.
        data = b"PACK\0\0\0\x02\0\0\0\x01" + bytes([0x50]) + zlib.compress(b"")
        self.assertRaises(CorruptPack, unpack_object, data, 12)


class ApplyDeltaTests(TestCase):
    def test_roundtrip(self) -> None:
        base = b"The quick brown fox jumps over the lazy dog" * 10
        target = base.replace(b"lazy", b"sleepy") + b"\nThe end.\n"
        self.assertEqual(target, apply_delta(base, create_delta(base, target)))

    def test_copy_size_zero_means_64k(self) -> None:
        base = _noise(b"big", 0x10000 + 5)
        delta = delta_encode_size(len(base)) + delta_encode_size(0x10000) + b"\x80"
        self.assertEqual(base[:0x10000], apply_delta(base, delta))

    def test_wrong_source_size(self) -> None:
        delta = create_delta(b"abc", b"abcd")
        self.assertRaises(ApplyDeltaError, apply_delta, b"abcdef", delta)

    def test_opcode_zero(self) -> None:
        self.assertRaises(ApplyDeltaError, apply_delta, b"abc", b"\x03\x03\x00")

    def test_copy_out_of_range(self) -> None:
        # Copy 16 bytes from offset 0 of a 3 byte source.
        self.assertRaises(ApplyDeltaError, apply_delta, b"abc", b"\x03\x10\x90\x10")

    def test_dest_size_mismatch(self) -> None:
        self.assertRaises(ApplyDeltaError, apply_delta, b"abc", b"\x03\x05\x02xy")


class PackIndexTests(TestCase):
    def _build(self, version):
        data, expected = build_pack([(BLOB, b"one"), (BLOB, b"two"), (BLOB, b"three")])
        idx = build_pack_index([(e[3], e[0]) for e in expected], data, version)
        return data, expected, load_pack_index(idx)

    def test_v2(self) -> None:
        data, expected, index = self._build(2)
        self.assertEqual(2, index.version)
        self.assertEqual(3, len(index))
        self.assertEqual({e[3] for e in expected}, set(index))
        for offset, _, _, sha in expected:
            self.assertEqual(offset, index.object_offset(sha))
            self.assertEqual(sha, index.object_sha_at(offset))
        self.assertEqual(data[-20:], index.get_pack_checksum())

    def test_v1(self) -> None:
        data, expected, index = self._build(1)
        self.assertEqual(1, index.version)
        self.assertEqual(
            sorted((e[3], e[0]) for e in expected), sorted(index.iterentries())
        )

    def test_missing(self) -> None:
        _, _, index = self._build(2)
        self.assertNotIn(b"f" * 40, index)
        self.assertRaises(KeyError, index.object_offset, b"f" * 40)
        self.assertIsNone(index.object_sha_at(1))

    def test_bad_checksum(self) -> None:
        data, expected = build_pack([(BLOB, b"one")])
        idx = build_pack_index([(expected[0][3], expected[0][0])], data)
        corrupt = idx[:-1] + bytes([idx[-1] ^ 0xFF])
        self.assertRaises(CorruptPack, load_pack_index, corrupt)

    def test_too_short(self) -> None:
        self.assertRaises(CorruptPack, load_pack_index, b"\377tOc")


class PackDataTests(TestCase):
    def test_whole_entries(self) -> None:
        data, expected = build_pack([(BLOB, b"a"), (BLOB, b"b"), (TREE, b"")])
        pack = PackData(data)
        self.assertEqual(3, len(pack))
        self.assertIsNone(pack.error)
        self.assertEqual(
            [e[0] for e in expected], [u.offset for u in pack.iter_unpacked()]
        )
        pack.check()

    def test_checksum_mismatch(self) -> None:
        data, _ = build_pack([(BLOB, b"a")])
        pack = PackData(data[:-1] + bytes([data[-1] ^ 0xFF]))
        self.assertRaises(CorruptPack, pack.check)

    def test_trailing_garbage(self) -> None:
        data, _ = build_pack([(BLOB, b"a")])
        pack = PackData(data[:-20] + b"junk" + data[-20:])
        self.assertIsNotNone(pack.error)

    def test_bad_header(self) -> None:
        self.assertRaises(CorruptPack, PackData, b"<html>not a pack</html>")


class PackInflaterTests(TestCase):
    def test_whole_entries_only(self) -> None:
        spec = [(BLOB, b"blob %d" % i) for i in range(5)]
        data, expected = build_pack(spec)
        inflater = PackInflater(PackData(data))
        objects = inflater.inflate()
        self.assertEqual(5, len(objects))
        self.assertEqual({e[3] for e in expected}, {o.id for o in objects})
        self.assertEqual(0, inflater.delta_resolutions)

    def test_ofs_delta_chain(self) -> None:
        depth = 50
        body = b"line\n" * 20
        spec = [(BLOB, body)]
        for i in range(depth):
            body = body + b"more %d\n" % i
            spec.append((OFS_DELTA, (i, body)))
        data, expected = build_pack(spec)
        inflater = PackInflater(PackData(data))
        objects = {o.id: o for o in inflater.inflate()}
        self.assertEqual(depth + 1, len(objects))
        self.assertEqual(depth, inflater.delta_resolutions)
        last = objects[expected[-1][3]]
        self.assertEqual(body, last.body)
        self.assertEqual(last.id, obj_sha(BLOB, last.body))

    def test_ref_delta_base_later_in_pack(self) -> None:
        base = b"shared text " * 10
        data, expected = build_pack(
            [(REF_DELTA, (1, base + b"changed")), (BLOB, base)]
        )
        inflater = PackInflater(PackData(data))
        objects = inflater.inflate()
        self.assertEqual({e[3] for e in expected}, {o.id for o in objects})
        self.assertEqual(set(), inflater.waiting_bases())

    def test_ref_delta_with_index(self) -> None:
        base = b"shared text " * 10
        data, expected = build_pack(
            [(REF_DELTA, (1, base + b"changed")), (BLOB, base)]
        )
        index = load_pack_index(build_pack_index([(e[3], e[0]) for e in expected], data))
        inflater = PackInflater(PackData(data), index)
        self.assertIs(index, inflater.index)
        self.assertEqual(2, len(inflater.inflate()))

    def test_thin_pack_waits_for_base(self) -> None:
        external = make_blob(b"external base contents\n" * 5)
        target = external.body + b"appended\n"
        data, expected = build_pack(
            [(REF_DELTA, (external, target)), (OFS_DELTA, (0, target + b"again\n"))]
        )
        inflater = PackInflater(PackData(data))
        self.assertEqual([], inflater.inflate())
        self.assertEqual({external.id}, inflater.waiting_bases())

        resolved = inflater.provide_base(external)
        self.assertEqual({e[3] for e in expected}, {o.id for o in resolved})
        self.assertEqual(set(), inflater.waiting_bases())
        self.assertEqual(2, len(inflater.resolved()))

    def test_thin_pack_external_lookup(self) -> None:
        external = make_blob(b"known already\n" * 3)
        data, expected = build_pack([(REF_DELTA, (external, b"known already\n"))])
        known = {external.id: external}
        inflater = PackInflater(PackData(data), resolve_ext_ref=known.get)
        objects = inflater.inflate()
        self.assertEqual([expected[0][3]], [o.id for o in objects])

    def test_checksum_mismatch_salvages(self) -> None:
        data, expected = build_pack([(BLOB, b"a"), (BLOB, b"b")])
        corrupt = data[:-1] + bytes([data[-1] ^ 0xFF])
        with self.assertRaises(CorruptPack) as cm:
            PackInflater(PackData(corrupt)).inflate()
        self.assertEqual(
            {e[3] for e in expected}, {o.id for o in cm.exception.salvaged}
        )

    def test_truncated_salvages_prefix(self) -> None:
        spec = [(BLOB, _noise(b"%d" % i, 100)) for i in range(3)]
        data, expected = build_pack(spec)
        truncated = data[: expected[2][0] + 10]
        with self.assertRaises(CorruptPack) as cm:
            PackInflater(PackData(truncated)).inflate()
        self.assertEqual(
            {expected[0][3], expected[1][3]},
            {o.id for o in cm.exception.salvaged},
        )

    def test_cycle(self) -> None:
        x = make_blob(b"x")
        y = make_blob(b"y")
        data, expected = build_pack(
            [(REF_DELTA, (x, b"first")), (REF_DELTA, (y, b"second"))]
        )
        # An index claiming each delta is the other's base.
        index = load_pack_index(
            build_pack_index([(x.id, expected[1][0]), (y.id, expected[0][0])], data)
        )
        inflater = PackInflater(PackData(data), index)
        self.assertEqual([], inflater.inflate())
        self.assertEqual(2, len(inflater.errors))
        for error in inflater.errors.values():
            self.assertIsInstance(error, CorruptPack)
        self.assertIsInstance(inflater.errors[expected[0][0]], CycleDetected)

    def test_cycle_leaves_other_entries(self) -> None:
        x = make_blob(b"x")
        data, expected = build_pack(
            [(REF_DELTA, (x, b"loop")), (BLOB, b"unrelated")]
        )
        index = load_pack_index(
            build_pack_index([(x.id, expected[0][0]), (expected[1][3], expected[1][0])], data)
        )
        inflater = PackInflater(PackData(data), index)
        self.assertEqual([expected[1][3]], [o.id for o in inflater.inflate()])
        self.assertIsInstance(inflater.errors[expected[0][0]], CycleDetected)

    def test_index_id_mismatch(self) -> None:
        data, expected = build_pack([(BLOB, b"real")])
        index = load_pack_index(build_pack_index([(b"e" * 40, expected[0][0])], data))
        inflater = PackInflater(PackData(data), index)
        self.assertEqual([], inflater.inflate())
        self.assertIsInstance(inflater.errors[expected[0][0]], CorruptObject)

    def test_index_of_other_pack_ignored(self) -> None:
        data, expected = build_pack([(BLOB, b"mine")])
        other, other_expected = build_pack([(BLOB, b"theirs")])
        index = load_pack_index(
            build_pack_index([(other_expected[0][3], other_expected[0][0])], other)
        )
        inflater = PackInflater(PackData(data), index)
        self.assertIsNone(inflater.index)
        self.assertEqual([expected[0][3]], [o.id for o in inflater.inflate()])

    def test_broken_delta(self) -> None:
        # A delta made against a different source buffer.
        delta = create_delta(b"other base", b"based")
        out = bytearray(b"PACK" + struct.pack(">LL", 2, 2))
        base_offset = len(out)
        out += pack_object_header(BLOB, None, 4) + zlib.compress(b"base")
        delta_offset = len(out)
        out += pack_object_header(OFS_DELTA, delta_offset - base_offset, len(delta))
        out += zlib.compress(delta)
        out += sha1(bytes(out)).digest()
        inflater = PackInflater(PackData(bytes(out)))
        objects = inflater.inflate()
        self.assertEqual([make_blob(b"base").id], [o.id for o in objects])
        self.assertIsInstance(inflater.errors[delta_offset], CorruptPack)

    def test_memo_shared_between_calls(self) -> None:
        data, _ = build_pack([(BLOB, b"base " * 10), (OFS_DELTA, (0, b"base " * 11))])
        inflater = PackInflater(PackData(data))
        first = inflater.inflate()
        self.assertEqual(2, len(first))
        self.assertEqual([], inflater.inflate())
        self.assertEqual(1, inflater.delta_resolutions)
