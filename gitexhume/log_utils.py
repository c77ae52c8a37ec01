# log_utils.py -- Logging configuration for gitexhume
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

"""Logging utilities for gitexhume.

Gitexhume can be used as a library, and library users may not want to see
any logging output. The package logger therefore carries a handler that
discards everything until :func:`default_logging_config` (or
:func:`remove_null_handler`) is called.

For details on the null handler approach, see:
http://docs.python.org/library/logging.html#configuring-logging-for-a-library
"""

import logging
import os
import sys
from typing import Optional, Union

getLogger = logging.getLogger

TRACE_ENV = "GITEXHUME_TRACE"

_DEFAULT_FORMAT = "%(asctime)s %(levelname)s: %(message)s"
_TRACE_FORMAT = "%(asctime)s %(name)s %(levelname)s: %(message)s"


class _NullHandler(logging.Handler):
    """No-op logging handler to avoid unexpected logging warnings."""

    def emit(self, record: logging.LogRecord) -> None:
        pass


_NULL_HANDLER = _NullHandler()
_GITEXHUME_LOGGER = getLogger("gitexhume")
_GITEXHUME_LOGGER.addHandler(_NULL_HANDLER)


def _get_trace_target() -> Optional[Union[str, int]]:
    """Get the trace target from the GITEXHUME_TRACE environment variable.

    Returns:
        - None if tracing is disabled
        - 2 for stderr output (values "1", "2", "true")
        - int (3-9) for file descriptor
        - str for file path (absolute paths or directories)
    """
    trace_value = os.environ.get(TRACE_ENV, "")

    if not trace_value or trace_value.lower() in ("0", "false"):
        return None

    if trace_value.lower() in ("1", "2", "true"):
        return 2

    try:
        fd = int(trace_value)
        if 3 <= fd <= 9:
            return fd
    except ValueError:
        pass

    if os.path.isabs(trace_value):
        return trace_value

    return None


def _configure_logging_from_trace() -> bool:
    """Configure logging based on the GITEXHUME_TRACE environment variable.

    Returns True if trace configuration was successful, False otherwise.
    """
    trace_target = _get_trace_target()
    if trace_target is None:
        return False

    if trace_target == 2:
        logging.basicConfig(level=logging.DEBUG, stream=sys.stderr, format=_TRACE_FORMAT)
        return True

    if isinstance(trace_target, int):
        try:
            stream = os.fdopen(trace_target, "w", buffering=1)
        except OSError as e:
            sys.stderr.write(
                f"Warning: Failed to open {TRACE_ENV} fd {trace_target}: {e}\n"
            )
            return False
        logging.basicConfig(level=logging.DEBUG, stream=stream, format=_TRACE_FORMAT)
        return True

    if os.path.isdir(trace_target):
        filename = os.path.join(trace_target, f"trace.{os.getpid()}")
    else:
        filename = trace_target
    try:
        logging.basicConfig(
            level=logging.DEBUG, filename=filename, filemode="a", format=_TRACE_FORMAT
        )
    except OSError as e:
        sys.stderr.write(f"Warning: Failed to open {TRACE_ENV} file {trace_target}: {e}\n")
        return False
    return True


def level_for_verbosity(verbosity: int) -> int:
    """Map the number of ``-v`` flags to a logging level."""
    if verbosity <= 0:
        return logging.INFO
    return logging.DEBUG


def default_logging_config(verbosity: int = 0) -> None:
    """Set up the default gitexhume loggers.

    Respects the GITEXHUME_TRACE environment variable for trace output:
    - If set to "1", "2", or "true", trace to stderr
    - If set to an integer 3-9, trace to that file descriptor
    - If set to an absolute path, trace to that file
    - If the path is a directory, trace to files in that directory (per process)
    - Otherwise, log to stderr at the level implied by ``verbosity``

    Args:
      verbosity: 0 for progress messages, 1 for per-file debug output,
        2 or more to also see urllib3 connection handling
    """
    remove_null_handler()

    if _configure_logging_from_trace():
        return
    logging.basicConfig(
        level=level_for_verbosity(verbosity),
        stream=sys.stderr,
        format=_DEFAULT_FORMAT,
    )
    if verbosity < 2:
        # urllib3 logs every connection at DEBUG.
        getLogger("urllib3").setLevel(logging.WARNING)


def remove_null_handler() -> None:
    """Remove the null handler from the gitexhume logger.

    If a caller wants to set up logging using something other than
    default_logging_config, calling this function first is a minor optimization
    to avoid the overhead of using the _NullHandler.
    """
    _GITEXHUME_LOGGER.removeHandler(_NULL_HANDLER)
