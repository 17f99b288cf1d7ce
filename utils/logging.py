"""Logging helpers for TailGuard."""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
ROOT_LOGGER = 'tailguard'


def get_logger(name: str) -> logging.Logger:
    """Get a named logger under the tailguard hierarchy."""
    if not name.startswith(ROOT_LOGGER):
        name = f'{ROOT_LOGGER}.{name}'
    return logging.getLogger(name)


def configure_logging(level: str | int = logging.INFO) -> logging.Logger:
    """
    Attach a stderr handler to the tailguard root logger.

    Safe to call more than once; the handler is only added the first time.
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(level)

    if not any(getattr(h, '_tailguard', False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._tailguard = True
        root.addHandler(handler)

    return root
