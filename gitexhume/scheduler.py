# scheduler.py -- Concurrent fetching of discovery work items
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

"""Worker pool that drains a :class:`DiscoveryGraph`.

A fixed number of threads claim work items, fetch the corresponding remote
file with a per-attempt timeout and pass the bytes to a :class:`TaskHandler`,
which decodes them and names the items they reveal. Transient fetch failures
are retried with exponential backoff; everything else fails the item at
once. A failure only ever affects its own item.
"""

import logging
import random
import threading
from collections.abc import Callable, Hashable, Iterable
from dataclasses import dataclass, field
from typing import Optional

from .config import FetchConfig
from .errors import GitExhumeError, NotFound, TransientError
from .graph import DiscoveryGraph

logger = logging.getLogger(__name__)

FetchFn = Callable[[str, Optional[float]], bytes]

_JOIN_INTERVAL = 0.1


class TaskHandler:
    """Interprets work items for a :class:`FetchScheduler`.

    Subclasses override :meth:`handle`; the other hooks have no-op defaults.
    Hooks are called concurrently from the worker threads.
    """

    def path(self, item: Hashable) -> str:
        """Return the remote path to fetch for ``item``."""
        return str(item)

    def lookup(self, item: Hashable) -> Optional[Iterable[Hashable]]:
        """Return discoveries for ``item`` if it can be handled without a fetch.

        Returns: None to fetch as usual
        """
        return None

    def handle(self, item: Hashable, data: bytes) -> Iterable[Hashable]:
        """Decode fetched ``data`` and return the work items it reveals.

        Raises:
          GitExhumeError: if the data cannot be decoded
        """
        raise NotImplementedError(self.handle)

    def handle_failure(
        self, item: Hashable, exc: BaseException
    ) -> Iterable[Hashable]:
        """React to a permanent failure of ``item``.

        Returns: work items to try instead
        """
        return ()


@dataclass
class FetchReport:
    """Outcome of a :meth:`FetchScheduler.run` call."""

    completed: set = field(default_factory=set)
    failures: dict = field(default_factory=dict)
    attempts: dict = field(default_factory=dict)
    stranded: set = field(default_factory=set)
    cancelled: bool = False

    @property
    def not_found(self) -> dict:
        """Failures caused by the remote file being absent."""
        return {k: v for k, v in self.failures.items() if isinstance(v, NotFound)}

    @property
    def errors(self) -> dict:
        """Failures other than absent remote files."""
        return {k: v for k, v in self.failures.items() if not isinstance(v, NotFound)}


class FetchScheduler:
    """Drain a discovery graph with a fixed pool of worker threads."""

    def __init__(
        self,
        graph: DiscoveryGraph,
        fetch: FetchFn,
        handler: TaskHandler,
        config: Optional[FetchConfig] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """Initialize a FetchScheduler.

        Args:
          graph: Graph holding the work items
          fetch: Callable taking a remote path and a timeout, returning the
            file contents or raising NotFound or TransientError
          handler: Interprets fetched data
          config: Concurrency and retry policy
          cancel_event: Event that stops the run when set; one is created
            if not given
        """
        self.graph = graph
        self.fetch = fetch
        self.handler = handler
        self.config = config or FetchConfig()
        self.cancel_event = cancel_event or threading.Event()
        self._report = FetchReport()
        self._report_lock = threading.Lock()

    def cancel(self) -> None:
        """Ask all workers to stop at their next claim or fetch boundary."""
        self.cancel_event.set()
        self.graph.close()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def run(self) -> FetchReport:
        """Run until the graph is exhausted or the run is cancelled.

        After a cancellation this returns without waiting for workers that
        are blocked in a fetch. Those workers are abandoned and whatever they
        finish later is not reflected in the returned report.

        Returns: a snapshot FetchReport; items still in flight after a
          cancellation are listed in ``stranded``
        """
        if self.cancelled:
            self.graph.close()
        workers = [
            threading.Thread(
                target=self._worker, name=f"gitexhume-worker-{i}", daemon=True
            )
            for i in range(self.config.concurrency)
        ]
        for worker in workers:
            worker.start()
        for worker in workers:
            while worker.is_alive() and not self.cancelled:
                worker.join(_JOIN_INTERVAL)
            if self.cancelled:
                # The event may have been set without going through
                # cancel(), e.g. by a signal handler.
                self.graph.close()
                break
        return self._snapshot()

    def _snapshot(self) -> FetchReport:
        with self._report_lock:
            return FetchReport(
                completed=set(self._report.completed),
                failures=dict(self._report.failures),
                attempts=dict(self._report.attempts),
                stranded=self.graph.in_flight(),
                cancelled=self.cancelled,
            )

    def _worker(self) -> None:
        while not self.cancelled:
            item = self.graph.claim(block=True)
            if item is None:
                return
            try:
                self._process(item)
            except Exception as exc:
                logger.exception("Unexpected error while processing %s", item)
                self._fail(item, exc)

    def _record_attempt(self, item: Hashable) -> None:
        with self._report_lock:
            self._report.attempts[item] = self._report.attempts.get(item, 0) + 1

    def _backoff(self, attempt: int) -> float:
        delay = self.config.backoff * (2 ** (attempt - 1))
        return delay * (0.5 + random.random())

    def _process(self, item: Hashable) -> None:
        known = self.handler.lookup(item)
        if known is not None:
            self._complete(item, known)
            return

        path = self.handler.path(item)
        data = self._fetch_with_retries(item, path)
        # An abandoned fetch stays stranded even if it returns late.
        if data is None or self.cancelled:
            return
        try:
            discovered = self.handler.handle(item, data)
        except GitExhumeError as exc:
            logger.error("Failed to decode %s: %s", path, exc)
            self._fail(item, exc)
            return
        self._complete(item, discovered)

    def _fetch_with_retries(self, item: Hashable, path: str) -> Optional[bytes]:
        """Fetch ``path``, retrying transient failures.

        Returns: the data, or None if the item failed or the run was cancelled
        """
        attempts = self.config.attempts
        for attempt in range(1, attempts + 1):
            if self.cancelled:
                return None
            self._record_attempt(item)
            try:
                return self.fetch(path, self.config.timeout)
            except NotFound as exc:
                logger.debug("%s not found", path)
                self._fail(item, exc)
                return None
            except TransientError as exc:
                if attempt == attempts:
                    logger.warning(
                        "Giving up on %s after %d attempts: %s", path, attempts, exc
                    )
                    self._fail(item, exc)
                    return None
                delay = self._backoff(attempt)
                logger.debug(
                    "Attempt %d of %d for %s failed (%s), retrying in %.3fs",
                    attempt,
                    attempts,
                    path,
                    exc,
                    delay,
                )
                if self.cancel_event.wait(delay):
                    return None
        return None

    def _complete(self, item: Hashable, discovered: Iterable[Hashable]) -> None:
        self.graph.complete(item, discovered)
        with self._report_lock:
            self._report.completed.add(item)

    def _fail(self, item: Hashable, exc: BaseException) -> None:
        if self.graph.state_of(item) != "in-flight":
            return
        with self._report_lock:
            self._report.failures[item] = exc
        try:
            # Alternatives are queued while the item is still in flight so
            # the walk cannot be seen as finished in between.
            instead = list(self.handler.handle_failure(item, exc))
            if instead:
                logger.debug("Trying %d alternatives for %s", len(instead), item)
                self.graph.seed(instead)
        finally:
            self.graph.fail_permanently(item)
