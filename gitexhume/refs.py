# refs.py -- Scanning of ref files and other signposts
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

"""Extraction of object ids and ref names from signpost files.

Scanning is deliberately format-light: every 40 character hex run in any
fetched file is a candidate id. Ids that do not name a real object simply
fail to fetch later on.
"""

import re
from collections.abc import Iterable, Iterator
from typing import NamedTuple, Optional

from .objects import ZERO_SHA, ObjectID

SYMREF = b"ref: "
HEADREF = b"HEAD"
LOCAL_BRANCH_PREFIX = b"refs/heads/"
PEELED_TAG_SUFFIX = b"^{}"

# Hex runs that are not part of a longer hex run.
OBJECT_RE = re.compile(rb"(?<![0-9a-fA-F])([0-9a-fA-F]{40})(?![0-9a-fA-F])")
# A name directly followed by "/" or "*" is the prefix of a pattern.
REFS_RE = re.compile(rb"refs(?:/[\w\-\.\*]+)*/[\w\-\.]+(?![\w\-\.\*/])")
PACK_RE = re.compile(rb"pack-([0-9a-f]{40})\.(?:pack|idx)")
HEAD_RE = re.compile(rb"^(ref:.*|[0-9a-f]{40})$")

BAD_REF_CHARS = set(b"\177 ~^:?*[")


def check_ref_format(refname: bytes) -> bool:
    """Check if a refname is correctly formatted.

    Implements the rules of git-check-ref-format that matter for turning a
    ref name into a remote path.

    Args:
      refname: The refname to check
    Returns: True if refname is valid, False otherwise
    """
    if b"/." in refname or refname.startswith(b"."):
        return False
    if b"/" not in refname:
        return False
    if b".." in refname or b"//" in refname:
        return False
    for c in refname:
        if c < 0o40 or c in BAD_REF_CHARS:
            return False
    if refname[-1:] in (b"/", b"."):
        return False
    if refname.endswith(b".lock"):
        return False
    if b"@{" in refname:
        return False
    return True


def parse_symref_value(contents: bytes) -> bytes:
    """Parse a symref value.

    Args:
      contents: Contents to parse
    Returns: Destination
    """
    if contents.startswith(SYMREF):
        return contents[len(SYMREF) :].rstrip(b"\r\n")
    raise ValueError(contents)


class Head(NamedTuple):
    """Parsed contents of a HEAD-like file.

    Exactly one of ``target`` (symbolic) and ``sha`` (detached) is set.
    """

    target: Optional[bytes]
    sha: Optional[ObjectID]


def parse_head(contents: bytes) -> Optional[Head]:
    """Parse the contents of HEAD.

    Returns: a Head, or None if the contents do not look like a git HEAD
    """
    text = contents.strip()
    if not HEAD_RE.match(text):
        return None
    if text.startswith(SYMREF.rstrip()):
        target = text[len(SYMREF.rstrip()) :].strip()
        if not check_ref_format(target):
            return None
        return Head(target, None)
    return Head(None, text)


def read_ref_lines(contents: bytes) -> Iterator[tuple[bytes, ObjectID]]:
    """Read (ref name, id) pairs from packed-refs or info/refs contents.

    Both ``<sha> <name>`` (packed-refs) and ``<sha>\\t<name>`` (info/refs)
    lines are accepted; peeled lines (``^<sha>``) are attributed to the
    preceding ref with a ``^{}`` suffix. Malformed lines are skipped.
    """
    last_name = None
    for line in contents.splitlines():
        if not line or line.startswith(b"#"):
            continue
        if line.startswith(b"^"):
            sha = line[1:].strip().lower()
            if last_name is not None and OBJECT_RE.fullmatch(sha):
                yield last_name + PEELED_TAG_SUFFIX, sha
            continue
        fields = line.split(None, 1)
        if len(fields) != 2:
            continue
        sha, name = fields[0].lower(), fields[1].strip()
        if name.endswith(PEELED_TAG_SUFFIX):
            if OBJECT_RE.fullmatch(sha):
                yield name, sha
            continue
        if not OBJECT_RE.fullmatch(sha) or not check_ref_format(name):
            continue
        last_name = name
        yield name, sha


def read_reflog_ids(contents: bytes) -> Iterator[ObjectID]:
    """Yield old and new ids of each reflog line."""
    for line in contents.splitlines():
        fields = line.split(b" ", 2)
        if len(fields) < 2:
            continue
        for sha in fields[:2]:
            sha = sha.lower()
            if OBJECT_RE.fullmatch(sha) and sha != ZERO_SHA:
                yield sha


def scan_object_ids(contents: bytes) -> set[ObjectID]:
    """Return every candidate object id found in ``contents``."""
    ids = {m.group(1).lower() for m in OBJECT_RE.finditer(contents)}
    ids.discard(ZERO_SHA)
    return ids


def scan_ref_names(contents: bytes) -> set[bytes]:
    """Return the well-formed ``refs/...`` names mentioned in ``contents``."""
    names = set()
    for match in REFS_RE.finditer(contents):
        name = match.group(0)
        if name.endswith(b"*") or not check_ref_format(name):
            continue
        names.add(name)
    return names


def ref_paths(names: Iterable[bytes]) -> list[str]:
    """Return the remote paths worth requesting for the given ref names.

    Each ref has a loose ref file and a reflog.
    """
    paths = []
    for name in sorted(names):
        text = name.decode("utf-8", "replace")
        paths.append(text)
        paths.append(f"logs/{text}")
    return paths


class ScanResult(NamedTuple):
    """Everything a signpost file revealed."""

    ids: set[ObjectID]
    refs: dict[bytes, ObjectID]
    paths: list[str]
    packs: set[str]


def scan(contents: bytes, path: Optional[str] = None) -> ScanResult:
    """Scan the contents of a signpost file.

    Args:
      contents: Raw file contents
      path: Remote path of the file, relative to ``.git/``; lets loose ref
        files be recorded as refs
    Returns: a ScanResult
    """
    ids = scan_object_ids(contents)
    refs = dict(read_ref_lines(contents))
    if path is not None and path.startswith("refs/"):
        text = contents.strip().lower()
        if OBJECT_RE.fullmatch(text) and text != ZERO_SHA:
            refs[path.encode("utf-8")] = text
    if path is not None and path.startswith("logs/"):
        ids.update(read_reflog_ids(contents))
    paths = ref_paths(scan_ref_names(contents))
    pack_ids = {m.group(1) for m in PACK_RE.finditer(contents)}
    # A pack name is the checksum of the pack, not an object.
    ids.difference_update(pack_ids)
    packs = {"pack-" + sha.decode("ascii") for sha in pack_ids}
    return ScanResult(ids, refs, paths, packs)
