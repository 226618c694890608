"""Logging helpers with consistent formatting."""

from __future__ import annotations

import logging
import sys
from typing import Optional

from rich.logging import RichHandler

from .env import get_bool_env, get_str_env


def _env_level(default: int) -> int:
    name = get_str_env("CLOUDLOCK_LOG_LEVEL")
    if name is None:
        return default
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else default


def get_logger(name: str, level: Optional[int] = None, *, rich: Optional[bool] = None) -> logging.Logger:
    """Configure and return a logger.

    Contention is logged at debug, so ``CLOUDLOCK_LOG_LEVEL=DEBUG`` is how an
    operator watches retries without touching code. ``CLOUDLOCK_RICH_LOGS=0``
    swaps the rich console for plain stdout lines, which log collectors on
    worker hosts parse more easily. Explicit arguments win over both.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    if level is None:
        level = _env_level(logging.INFO)
    if rich is None:
        rich = get_bool_env("CLOUDLOCK_RICH_LOGS", default=True)
    logger.setLevel(level)

    if rich:
        # Lease ids and object names may contain brackets; don't parse markup.
        handler: logging.Handler = RichHandler(
            level=level,
            markup=False,
            rich_tracebacks=True,
            tracebacks_show_locals=False,
            show_time=True,
            show_path=False,
        )
    else:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(level)

    formatter = logging.Formatter(
        "%(asctime)s %(name)s %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(formatter)

    logger.addHandler(handler)
    logger.propagate = False
    return logger
