"""Centralised logging configuration for CryptoPulse entry points."""

from __future__ import annotations

import logging
from typing import Optional, Union

_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def configure_logging(level: Union[int, str, None] = logging.INFO) -> None:
    """Install a single stream handler on the root logger.

    Calling this more than once is harmless; an already configured root logger
    keeps its handlers and only has its level updated.
    """

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    root = logging.getLogger()
    root.setLevel(level if level is not None else logging.INFO)
    if root.handlers:
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_FORMAT, "%H:%M:%S"))
    root.addHandler(handler)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a module-scoped logger under the ``cryptopulse`` namespace."""

    return logging.getLogger(name if name else "cryptopulse")


__all__ = ["configure_logging", "get_logger"]
