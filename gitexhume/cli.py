# cli.py -- Command line interface for gitexhume
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

"""Simple command-line interface to gitexhume.

    gitexhume http://example.com/app/ ./app
"""

__all__ = ["main", "signal_int"]

import argparse
import logging
import os
import signal
import sys
import threading
import types
from collections.abc import Sequence
from typing import Optional

from . import __version__
from .config import DEFAULT_CONCURRENCY, DEFAULT_RETRIES, DEFAULT_TIMEOUT, FetchConfig
from .dumb import DumbHTTPFetcher, normalize_base_url
from .errors import NotGitRepository
from .log_utils import default_logging_config
from .walk import ReconstructionResult, reconstruct

logger = logging.getLogger(__name__)

# Set by the SIGINT handler; the walk stops at the next claim or fetch.
_cancel_event = threading.Event()


def signal_int(signal: int, frame: Optional[types.FrameType]) -> None:
    """Handle interrupt signal by cancelling the walk, or exiting if repeated.

    Args:
        signal: Signal number
        frame: Current stack frame
    """
    if _cancel_event.is_set():
        sys.exit(1)
    sys.stderr.write("Interrupted, finishing up (press Ctrl-C again to abort)\n")
    _cancel_event.set()


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {value}")
    return number


def _non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must not be negative, got {value}")
    return number


def _positive_float(value: str) -> float:
    number = float(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be positive, got {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gitexhume",
        description="Rebuild a source tree from a .git directory exposed over HTTP",
    )
    parser.add_argument("url", help="URL of the repository or its .git directory")
    parser.add_argument("output", help="Directory to write the working tree to")
    parser.add_argument(
        "-j",
        "--jobs",
        type=_positive_int,
        default=DEFAULT_CONCURRENCY,
        help="Number of concurrent fetches (default: %(default)s)",
    )
    parser.add_argument(
        "-r",
        "--retries",
        type=_non_negative_int,
        default=DEFAULT_RETRIES,
        help="Retries after a timeout or server error (default: %(default)s)",
    )
    parser.add_argument(
        "-t",
        "--timeout",
        type=_positive_float,
        default=DEFAULT_TIMEOUT,
        metavar="SECONDS",
        help="Timeout per fetch attempt (default: %(default)s)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity; repeat for connection level output",
    )
    parser.add_argument(
        "--no-git-dir",
        dest="git_dir",
        action="store_false",
        help="Do not mirror the fetched files into OUTPUT/.git",
    )
    parser.add_argument(
        "--ref",
        help="Ref name or commit id to check out instead of HEAD",
    )
    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s " + ".".join(str(x) for x in __version__),
    )
    return parser


def print_summary(result: ReconstructionResult, outstream=None) -> None:
    """Write a human readable summary of a run."""
    if outstream is None:
        outstream = sys.stdout
    checkout = result.checkout
    report = result.report
    if checkout.commit is not None:
        name = checkout.ref.decode("utf-8", "replace") if checkout.ref else "commit"
        outstream.write(f"Checked out {name} ({checkout.commit.decode('ascii')})\n")
    elif checkout.from_index:
        outstream.write("No commit recovered; wrote files listed in the index\n")
    outstream.write(
        f"{len(result.store)} objects recovered, {len(checkout.written)} files written\n"
    )
    for path in checkout.missing:
        outstream.write(f"missing: {os.fsdecode(path)}\n")
    for path in checkout.refused:
        outstream.write(f"refused: {os.fsdecode(path)}\n")
    for sha in result.missing_objects:
        outstream.write(f"unrecovered object: {sha.decode('ascii')}\n")
    for sha in sorted(result.unresolved_bases):
        outstream.write(f"unresolved delta base: {sha.decode('ascii')}\n")
    errors = report.errors
    for item in sorted(errors, key=str):
        outstream.write(f"failed: {item}: {errors[item]}\n")
    if report.cancelled:
        outstream.write(f"Cancelled; {len(report.stranded)} fetches abandoned\n")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point for the gitexhume CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code: 0 for a complete tree, 1 for a partial one, 2 if nothing
        was reconstructed
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = build_parser()
    args = parser.parse_args(argv)

    default_logging_config(args.verbose)

    try:
        base_url = normalize_base_url(args.url)
    except ValueError as e:
        parser.error(str(e))

    config = FetchConfig(
        concurrency=args.jobs, retries=args.retries, timeout=args.timeout
    )
    fetcher = DumbHTTPFetcher(base_url, maxsize=config.concurrency)
    logger.info("Reconstructing %s into %s", base_url, args.output)

    try:
        result = reconstruct(
            fetcher,
            args.output,
            config=config,
            mirror_git_dir=args.git_dir,
            ref=args.ref,
            cancel_event=_cancel_event,
        )
    except NotGitRepository as e:
        logger.error("%s does not expose a git repository: %s", base_url, e)
        return 2

    print_summary(result)
    return result.exit_status


def _main() -> None:
    signal.signal(signal.SIGINT, signal_int)

    sys.exit(main())


if __name__ == "__main__":
    _main()
