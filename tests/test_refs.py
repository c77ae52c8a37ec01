# test_refs.py -- tests for refs.py
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

"""Tests for gitexhume.refs."""

from gitexhume.objects import ZERO_SHA
from gitexhume.refs import (
    Head,
    check_ref_format,
    parse_head,
    parse_symref_value,
    read_ref_lines,
    read_reflog_ids,
    ref_paths,
    scan,
    scan_object_ids,
    scan_ref_names,
)

from . import TestCase

ONES = b"1" * 40
TWOS = b"2" * 40
A_SHA = b"42d06bd4b77fed026b154d16493e5deab78f02ec"


class CheckRefFormatTests(TestCase):
    """Tests for the check_ref_format function.

    These are the same tests as in the git test suite.
    """

    def test_valid(self) -> None:
        self.assertTrue(check_ref_format(b"heads/foo"))
        self.assertTrue(check_ref_format(b"refs/heads/main"))
        self.assertTrue(check_ref_format(b"refs/tags/v1.0-rc.1"))

    def test_invalid(self) -> None:
        self.assertFalse(check_ref_format(b"foo"))
        self.assertFalse(check_ref_format(b"heads/foo/"))
        self.assertFalse(check_ref_format(b"./foo"))
        self.assertFalse(check_ref_format(b".refs/foo"))
        self.assertFalse(check_ref_format(b"heads/foo..bar"))
        self.assertFalse(check_ref_format(b"heads/foo?bar"))
        self.assertFalse(check_ref_format(b"heads/foo.lock"))
        self.assertFalse(check_ref_format(b"heads/v@{ation"))
        self.assertFalse(check_ref_format(b"heads/foo\bar"))
        self.assertFalse(check_ref_format(b"refs/heads/*"))


class ParseHeadTests(TestCase):
    def test_symbolic(self) -> None:
        self.assertEqual(
            Head(b"refs/heads/main", None), parse_head(b"ref: refs/heads/main\n")
        )

    def test_detached(self) -> None:
        self.assertEqual(Head(None, A_SHA), parse_head(A_SHA + b"\n"))

    def test_html(self) -> None:
        self.assertIsNone(parse_head(b"<html><body>Not Found</body></html>"))

    def test_bad_target(self) -> None:
        self.assertIsNone(parse_head(b"ref: ../../etc/passwd\n"))

    def test_short_sha(self) -> None:
        self.assertIsNone(parse_head(A_SHA[:39]))

    def test_parse_symref_value(self) -> None:
        self.assertEqual(b"refs/heads/main", parse_symref_value(b"ref: refs/heads/main\n"))
        self.assertRaises(ValueError, parse_symref_value, A_SHA)


class ReadRefLinesTests(TestCase):
    def test_packed_refs(self) -> None:
        contents = b"\n".join(
            [
                b"# pack-refs with: peeled fully-peeled sorted ",
                ONES + b" refs/heads/main",
                TWOS + b" refs/tags/v1.0",
                b"^" + A_SHA,
                b"",
            ]
        )
        self.assertEqual(
            [
                (b"refs/heads/main", ONES),
                (b"refs/tags/v1.0", TWOS),
                (b"refs/tags/v1.0^{}", A_SHA),
            ],
            list(read_ref_lines(contents)),
        )

    def test_info_refs(self) -> None:
        contents = (
            ONES + b"\trefs/heads/main\n"
            + TWOS + b"\trefs/tags/v1.0\n"
            + A_SHA + b"\trefs/tags/v1.0^{}\n"
        )
        self.assertEqual(
            {
                b"refs/heads/main": ONES,
                b"refs/tags/v1.0": TWOS,
                b"refs/tags/v1.0^{}": A_SHA,
            },
            dict(read_ref_lines(contents)),
        )

    def test_malformed_lines_skipped(self) -> None:
        contents = b"garbage\n" + b"abc refs/heads/x\n" + ONES + b" notaref\n"
        self.assertEqual([], list(read_ref_lines(contents)))

    def test_peeled_without_ref(self) -> None:
        self.assertEqual([], list(read_ref_lines(b"^" + A_SHA + b"\n")))


class ReflogTests(TestCase):
    def test_read_reflog_ids(self) -> None:
        contents = (
            ZERO_SHA + b" " + ONES
            + b" Test <test@example.com> 1446552482 +0000\tclone: from x\n"
            + ONES + b" " + TWOS
            + b" Test <test@example.com> 1446552483 +0000\tcommit: change\n"
        )
        self.assertEqual([ONES, ONES, TWOS], list(read_reflog_ids(contents)))


class ScanTests(TestCase):
    def test_scan_object_ids(self) -> None:
        contents = b"x" + ONES + b" y " + A_SHA.upper() + b"\n" + ZERO_SHA
        self.assertEqual({ONES, A_SHA}, scan_object_ids(contents))

    def test_scan_object_ids_ignores_longer_runs(self) -> None:
        self.assertEqual(set(), scan_object_ids(b"a" * 41))
        self.assertEqual(set(), scan_object_ids(b"a" * 39))

    def test_scan_ref_names(self) -> None:
        contents = (
            b'[remote "origin"]\n'
            b"\tfetch = +refs/heads/*:refs/remotes/origin/*\n"
            b"[branch \"main\"]\n"
            b"\tmerge = refs/heads/main\n"
        )
        self.assertEqual({b"refs/heads/main"}, scan_ref_names(contents))

    def test_scan_ref_names_rejects_traversal(self) -> None:
        self.assertEqual(set(), scan_ref_names(b"refs/heads/../../secret"))

    def test_ref_paths(self) -> None:
        self.assertEqual(
            ["refs/heads/main", "logs/refs/heads/main"],
            ref_paths([b"refs/heads/main"]),
        )

    def test_scan_head(self) -> None:
        result = scan(b"ref: refs/heads/main\n", "HEAD")
        self.assertEqual(set(), result.ids)
        self.assertEqual({}, result.refs)
        self.assertEqual(["refs/heads/main", "logs/refs/heads/main"], result.paths)

    def test_scan_loose_ref(self) -> None:
        result = scan(ONES + b"\n", "refs/heads/main")
        self.assertEqual({ONES}, result.ids)
        self.assertEqual({b"refs/heads/main": ONES}, result.refs)

    def test_scan_reflog(self) -> None:
        result = scan(
            ZERO_SHA + b" " + ONES + b" A <a@b> 1 +0000\tcommit (initial): x\n",
            "logs/HEAD",
        )
        self.assertEqual({ONES}, result.ids)
        self.assertEqual({}, result.refs)

    def test_scan_info_packs(self) -> None:
        name = b"pack-" + A_SHA
        result = scan(b"P " + name + b".pack\n\n", "objects/info/packs")
        self.assertEqual({"pack-" + A_SHA.decode("ascii")}, result.packs)
        self.assertEqual(set(), result.ids)
