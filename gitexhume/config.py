# config.py -- Fetch configuration
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

"""Settings that drive a reconstruction run."""

from dataclasses import dataclass

DEFAULT_CONCURRENCY = 8
DEFAULT_RETRIES = 3
DEFAULT_TIMEOUT = 10.0
DEFAULT_BACKOFF = 0.01

# Paths (relative to .git/) that are worth requesting from any repository.
KNOWN_SIGNPOSTS = (
    "HEAD",
    "ORIG_HEAD",
    "FETCH_HEAD",
    "packed-refs",
    "info/refs",
    "objects/info/packs",
    "index",
    "config",
    "logs/HEAD",
    "refs/heads/master",
    "refs/heads/main",
    "refs/remotes/origin/HEAD",
    "logs/refs/remotes/origin/HEAD",
    "refs/stash",
)


@dataclass(frozen=True)
class FetchConfig:
    """Concurrency and retry policy of the fetch scheduler.

    Attributes:
      concurrency: Number of worker threads
      retries: Extra attempts after a transient failure
      timeout: Per-attempt timeout, in seconds
      backoff: Delay before the first retry, in seconds; doubled for every
        further retry
    """

    concurrency: int = DEFAULT_CONCURRENCY
    retries: int = DEFAULT_RETRIES
    timeout: float = DEFAULT_TIMEOUT
    backoff: float = DEFAULT_BACKOFF

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {self.concurrency}")
        if self.retries < 0:
            raise ValueError(f"retries must not be negative, got {self.retries}")
        if self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}")
        if self.backoff < 0:
            raise ValueError(f"backoff must not be negative, got {self.backoff}")

    @property
    def attempts(self) -> int:
        """Total number of attempts per work item."""
        return self.retries + 1
