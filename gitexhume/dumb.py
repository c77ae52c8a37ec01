# dumb.py -- Fetching of raw files from an exposed .git directory
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

"""Dumb HTTP access to a remote ``.git`` directory.

Every file is fetched with a plain GET relative to the ``.git/`` base URL.
Servers that hide a missing file behind an HTML error page, an empty body
or a redirect are treated as if they had answered 404.
"""

__all__ = [
    "DumbHTTPFetcher",
    "check_for_proxy_bypass",
    "default_urllib3_manager",
    "default_user_agent_string",
    "normalize_base_url",
]

import ipaddress
import logging
import os
import time
from typing import TYPE_CHECKING, Optional, Union
from urllib.parse import quote, urljoin, urlparse, urlunparse

import urllib3
import urllib3.exceptions

from . import __version__
from .errors import NotFound, TransientError

if TYPE_CHECKING:
    from urllib3.response import BaseHTTPResponse

logger = logging.getLogger(__name__)

# Statuses meaning "the file is not there".
NOT_FOUND_STATUSES = frozenset({301, 302, 303, 307, 308, 401, 403, 404, 410})

# Statuses worth retrying.
TRANSIENT_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})

_READ_CHUNK_SIZE = 65536


def default_user_agent_string() -> str:
    """Return the default user agent string for gitexhume."""
    return "gitexhume/{}".format(".".join([str(x) for x in __version__]))


def normalize_base_url(url: str) -> str:
    """Return the ``.git/`` base URL for a user supplied repository URL.

    The path is cut at the first ``.git`` segment and ``.git/`` appended
    again, so ``http://host/app``, ``http://host/app/.git`` and
    ``http://host/app/.git/HEAD`` all map to ``http://host/app/.git/``.

    Raises:
      ValueError: if the URL is not an http(s) URL with a host
    """
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"not an http(s) URL: {url!r}")
    segments = [segment for segment in parsed.path.split("/") if segment]
    if ".git" in segments:
        segments = segments[: segments.index(".git")]
    segments.append(".git")
    path = "/" + "/".join(segments) + "/"
    return urlunparse((parsed.scheme, parsed.netloc, path, "", "", ""))


def check_for_proxy_bypass(base_url: Optional[str]) -> bool:
    """Check if proxy should be bypassed for the given URL."""
    if not base_url:
        return False
    no_proxy_str = os.environ.get("no_proxy")
    if not no_proxy_str:
        return False
    # Matching follows curl: https://curl.se/libcurl/c/CURLOPT_NOPROXY.html
    hostname = urlparse(base_url).hostname
    if not hostname:
        return False
    try:
        hostname_ip = ipaddress.ip_address(hostname)
    except ValueError:
        hostname_ip = None

    for no_proxy_value in no_proxy_str.split(","):
        no_proxy_value = no_proxy_value.strip().lower().lstrip(".")
        if not no_proxy_value:
            continue
        if hostname_ip:
            try:
                no_proxy_network = ipaddress.ip_network(no_proxy_value, strict=False)
            except ValueError:
                no_proxy_network = None
            if no_proxy_network and hostname_ip in no_proxy_network:
                return True
        if no_proxy_value == "*":
            return True
        if hostname == no_proxy_value:
            return True
        # Only match complete domains.
        if hostname.endswith("." + no_proxy_value):
            return True
    return False


def default_urllib3_manager(
    base_url: Optional[str] = None,
    timeout: Optional[float] = None,
    user_agent: Optional[str] = None,
    maxsize: int = 8,
    cert_reqs: Optional[str] = None,
) -> Union[urllib3.ProxyManager, urllib3.PoolManager]:
    """Return urllib3 connection pool manager.

    Honour proxy configuration from the environment.

    Args:
      base_url: Base URL for proxy bypass checks
      timeout: Default timeout for HTTP requests in seconds
      user_agent: User agent to send; defaults to gitexhume/<version>
      maxsize: Number of connections kept per host, normally the number of
        workers
      cert_reqs: SSL certificate requirements (e.g. "CERT_REQUIRED", "CERT_NONE")
    Returns:
      Either a `urllib3.ProxyManager` instance for proxy configurations or a
      `urllib3.PoolManager` instance otherwise
    """
    proxy_server: Optional[str] = None
    for proxyname in ("https_proxy", "http_proxy", "all_proxy"):
        proxy_server = os.environ.get(proxyname)
        if proxy_server:
            break

    if proxy_server and check_for_proxy_bypass(base_url):
        proxy_server = None

    if user_agent is None:
        user_agent = default_user_agent_string()
    headers = {"User-agent": user_agent}

    kwargs: dict[str, object] = {
        "maxsize": maxsize,
        "cert_reqs": cert_reqs or "CERT_REQUIRED",
        # Redirects and retries are interpreted by the caller.
        "retries": False,
    }
    if timeout is not None:
        kwargs["timeout"] = timeout

    manager: Union[urllib3.ProxyManager, urllib3.PoolManager]
    if proxy_server:
        proxy_server_url = urlparse(proxy_server)
        if proxy_server_url.username is not None:
            proxy_headers = urllib3.make_headers(
                proxy_basic_auth=f"{proxy_server_url.username}:{proxy_server_url.password or ''}"
            )
        else:
            proxy_headers = {}
        manager = urllib3.ProxyManager(
            proxy_server, proxy_headers=proxy_headers, headers=headers, **kwargs
        )
    else:
        manager = urllib3.PoolManager(headers=headers, **kwargs)

    return manager


class DumbHTTPFetcher:
    """Fetch files of a remote ``.git`` directory over plain HTTP(S).

    Instances are callable as ``fetcher(path, timeout)`` and safe to share
    between worker threads; urllib3 pools the connections.
    """

    def __init__(
        self,
        base_url: str,
        pool_manager: Optional[urllib3.PoolManager] = None,
        maxsize: int = 8,
    ) -> None:
        """Initialize a DumbHTTPFetcher.

        Args:
          base_url: URL of the remote ``.git/`` directory, with trailing slash
          pool_manager: Optional urllib3 pool manager to use
          maxsize: Connections kept per host when creating a pool manager
        """
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        if pool_manager is None:
            pool_manager = default_urllib3_manager(self.base_url, maxsize=maxsize)
        self.pool_manager = pool_manager

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.base_url!r})"

    def _get_url(self, path: str) -> str:
        return urljoin(self.base_url, quote(path))

    def _http_request(self, url: str, timeout: Optional[float]) -> "BaseHTTPResponse":
        req_headers = dict(self.pool_manager.headers)
        req_headers["Pragma"] = "no-cache"
        request_kwargs: dict[str, object] = {
            "headers": req_headers,
            "preload_content": False,
            "redirect": False,
        }
        if timeout is not None:
            request_kwargs["timeout"] = timeout
        return self.pool_manager.request("GET", url, **request_kwargs)

    def fetch(self, path: str, timeout: Optional[float] = None) -> bytes:
        """Fetch a file relative to the ``.git/`` base URL.

        Args:
          path: Path relative to the base URL, e.g. ``objects/ab/cdef...``
          timeout: Timeout for this attempt, in seconds
        Returns:
          Content as bytes
        Raises:
          NotFound: if the server says the file is absent, or serves a
            soft 404 (HTML page, empty body, redirect)
          TransientError: on timeouts, connection errors and statuses worth
            retrying
        """
        url = self._get_url(path)
        # urllib3 applies the timeout per socket operation; a slowly trickled
        # body is bounded by this deadline instead.
        deadline = None if timeout is None else time.monotonic() + timeout
        try:
            resp = self._http_request(url, timeout)
        except urllib3.exceptions.HTTPError as e:
            raise TransientError(path, str(e)) from e

        try:
            status = resp.status
            if status in NOT_FOUND_STATUSES:
                raise NotFound(path, status)
            if status in TRANSIENT_STATUSES:
                raise TransientError(path, f"HTTP status {status}")
            if status != 200:
                raise NotFound(path, status)

            content_type = resp.headers.get("Content-Type") or ""
            if content_type.split(";")[0].strip().lower() == "text/html":
                logger.debug("Soft 404 for %s: HTML response", url)
                raise NotFound(path, status)

            chunks = []
            try:
                while True:
                    chunk = resp.read(_READ_CHUNK_SIZE)
                    if not chunk:
                        break
                    chunks.append(chunk)
                    if deadline is not None and time.monotonic() > deadline:
                        raise TransientError(path, f"read took longer than {timeout}s")
            except urllib3.exceptions.HTTPError as e:
                raise TransientError(path, str(e)) from e
            data = b"".join(chunks)
            if not data:
                logger.debug("Soft 404 for %s: empty body", url)
                raise NotFound(path, status)
            return data
        finally:
            resp.close()

    __call__ = fetch
