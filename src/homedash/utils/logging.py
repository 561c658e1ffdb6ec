"""Logging helpers with consistent formatting."""

from __future__ import annotations

import logging
import sys
from typing import Optional

from rich.logging import RichHandler

from homedash.utils.env import get_bool_env, get_level_env

_ROOT = "homedash"


def get_logger(name: str, level: Optional[int] = None, *, rich: Optional[bool] = None) -> logging.Logger:
    """Return a component logger under the ``homedash`` namespace.

    The namespace root gets a single handler on first use; component loggers
    propagate to it. ``HOMEDASH_LOG_LEVEL`` and ``HOMEDASH_RICH_LOGS`` override
    the defaults.
    """
    root = logging.getLogger(_ROOT)
    if not root.handlers:
        effective = level if level is not None else get_level_env("HOMEDASH_LOG_LEVEL", default=logging.INFO)
        use_rich = rich if rich is not None else get_bool_env("HOMEDASH_RICH_LOGS", default=True)
        root.setLevel(effective)

        if use_rich:
            handler: logging.Handler = RichHandler(
                level=effective,
                markup=False,
                rich_tracebacks=True,
                tracebacks_show_locals=False,
                show_time=True,
                show_path=False,
            )
            handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        else:
            handler = logging.StreamHandler(sys.stdout)
            handler.setLevel(effective)
            handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s %(name)s %(levelname)s: %(message)s",
                    datefmt="%Y-%m-%d %H:%M:%S",
                )
            )
        root.addHandler(handler)
        root.propagate = False

    if name == _ROOT or name.startswith(f"{_ROOT}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{_ROOT}.{name}")
