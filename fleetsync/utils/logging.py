# Copyright 2025 nurion team
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Logging for the sync layer.

All component loggers live under the ``fleetsync`` namespace and share one
stdout handler attached to the package logger, so an embedding process can
tune or silence the whole layer through ``logging.getLogger("fleetsync")``.

Example:
    configure_logging("DEBUG")
    logger = create_logger("PushTransport")  # -> "fleetsync.PushTransport"
"""

from __future__ import annotations

import logging
import sys
from typing import IO, Optional, Union

ROOT_LOGGER = "fleetsync"
DEFAULT_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"

_handler: Optional[logging.StreamHandler] = None


def parse_level(level: Union[int, str]) -> int:
    """Accept a numeric level or a level name such as ``"debug"``."""
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.strip().upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return value


def configure_logging(
    level: Union[int, str, None] = None,
    fmt: Optional[str] = None,
    stream: Optional[IO[str]] = None,
) -> logging.Logger:
    """Set up the ``fleetsync`` package logger.

    Safe to call repeatedly: the handler is created once and later calls only
    change what they are given (level, format or output stream).

    Args:
        level: Level for every fleetsync logger; unchanged when None
        fmt: ``logging.Formatter`` format string
        stream: Output stream, stdout by default

    Returns:
        The package logger
    """
    global _handler

    root = logging.getLogger(ROOT_LOGGER)
    if _handler is None:
        _handler = logging.StreamHandler(stream or sys.stdout)
        _handler.setFormatter(logging.Formatter(fmt or DEFAULT_FORMAT))
        root.addHandler(_handler)
        root.propagate = False
        if level is None and root.level == logging.NOTSET:
            level = logging.INFO
    else:
        if stream is not None:
            _handler.setStream(stream)
        if fmt:
            _handler.setFormatter(logging.Formatter(fmt))

    if level is not None:
        root.setLevel(parse_level(level))
    return root


def create_logger(name: str) -> logging.Logger:
    """Return the component logger ``fleetsync.<name>``.

    The package handler is installed on first use if nobody configured it.
    """
    if _handler is None:
        configure_logging()
    if name != ROOT_LOGGER and not name.startswith(f"{ROOT_LOGGER}."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)
