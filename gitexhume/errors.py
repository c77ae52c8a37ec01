# errors.py -- Exception classes for gitexhume
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

"""Gitexhume-related exception classes.

Failures are local to the object or file being processed: none of these
ever aborts a walk on its own. The scheduler records them and moves on.
"""

import binascii
from collections.abc import Sequence
from typing import TYPE_CHECKING, Optional, Union

if TYPE_CHECKING:
    from .objects import DecodedObject


class GitExhumeError(Exception):
    """Base class for all gitexhume errors."""


class NotFound(GitExhumeError):
    """A remote resource is absent.

    Expected and common when walking blind; never retried.
    """

    def __init__(self, path: str, status: Optional[int] = None) -> None:
        """Initialize a NotFound exception.

        Args:
            path: Path of the resource, relative to the repository root.
            status: HTTP status code that signalled the absence, if any.
        """
        self.path = path
        self.status = status
        if status is None:
            message = f"{path} not found"
        else:
            message = f"{path} not found (status {status})"
        GitExhumeError.__init__(self, message)


class TransientError(GitExhumeError):
    """A fetch failed in a way that may succeed when retried.

    Covers timeouts, connection errors and 5xx responses.
    """

    def __init__(self, path: str, reason: str) -> None:
        """Initialize a TransientError.

        Args:
            path: Path of the resource, relative to the repository root.
            reason: Human-readable description of the failure.
        """
        self.path = path
        self.reason = reason
        GitExhumeError.__init__(self, f"{path}: {reason}")


class ChecksumMismatch(GitExhumeError):
    """A checksum didn't match the expected contents."""

    def __init__(
        self,
        expected: Union[bytes, str],
        got: Union[bytes, str],
        extra: Optional[str] = None,
    ) -> None:
        """Initialize a ChecksumMismatch exception.

        Args:
            expected: The expected checksum value (binary digest or hex).
            got: The actual checksum value (binary digest or hex).
            extra: Optional additional error information.
        """
        self.expected = _checksum_str(expected)
        self.got = _checksum_str(got)
        self.extra = extra
        message = f"Checksum mismatch: Expected {self.expected}, got {self.got}"
        if extra is not None:
            message += f"; {extra}"
        GitExhumeError.__init__(self, message)


def _checksum_str(value: Union[bytes, str]) -> str:
    if isinstance(value, bytes) and len(value) == 20:
        return binascii.hexlify(value).decode("ascii")
    if isinstance(value, bytes):
        return value.decode("ascii")
    return value


class CorruptObject(GitExhumeError):
    """A decoded object failed validation.

    Raised for decompression failures, malformed headers, size and hash
    mismatches. Never retried: fetching the same bytes reproduces it.
    """

    def __init__(self, sha: Optional[bytes], reason: str) -> None:
        """Initialize a CorruptObject exception.

        Args:
            sha: Hex id the object was expected to have, if known.
            reason: Description of what is wrong with it.
        """
        self.sha = sha
        self.reason = reason
        if sha is None:
            GitExhumeError.__init__(self, reason)
        else:
            GitExhumeError.__init__(self, f"{sha.decode('ascii')}: {reason}")


class UnknownKind(CorruptObject):
    """An object header names a kind other than commit, tree, blob or tag."""

    def __init__(self, sha: Optional[bytes], kind: bytes) -> None:
        """Initialize an UnknownKind exception.

        Args:
            sha: Hex id the object was expected to have, if known.
            kind: The kind found in the object header.
        """
        self.kind = kind
        super().__init__(sha, f"unknown object kind {kind!r}")


class ApplyDeltaError(GitExhumeError):
    """Indicates that applying a delta failed."""


class CorruptPack(GitExhumeError):
    """A pack file failed structural or checksum validation.

    Objects that were fully resolved (and therefore hash-verified) before the
    failure was detected are carried in ``salvaged``.
    """

    def __init__(
        self,
        reason: str,
        salvaged: Optional[Sequence["DecodedObject"]] = None,
    ) -> None:
        """Initialize a CorruptPack exception.

        Args:
            reason: Description of the failure.
            salvaged: Objects resolved before the failure point.
        """
        self.reason = reason
        self.salvaged = list(salvaged or [])
        GitExhumeError.__init__(self, reason)


class CycleDetected(CorruptPack):
    """A delta chain refers back to one of its own entries."""

    def __init__(self, offset: int, chain: Sequence[int]) -> None:
        """Initialize a CycleDetected exception.

        Args:
            offset: Pack offset of the entry whose chain loops.
            chain: Offsets visited before the loop was found.
        """
        self.offset = offset
        self.chain = list(chain)
        super().__init__(
            f"delta chain of entry at offset {offset} loops back "
            f"via {' -> '.join(str(o) for o in self.chain)}"
        )


class NotGitRepository(GitExhumeError):
    """The remote does not expose a usable git HEAD."""
