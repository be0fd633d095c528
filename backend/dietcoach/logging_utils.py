from __future__ import annotations

import logging
import sys

from .config import LOG_LEVEL

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_configured = False


def _configure_root() -> None:
    global _configured
    if _configured:
        return
    root = logging.getLogger("dietcoach")
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(_FORMAT))
        root.addHandler(handler)
    level = logging.getLevelName(str(LOG_LEVEL or "INFO").upper())
    root.setLevel(level if isinstance(level, int) else logging.INFO)
    root.propagate = True
    _configured = True


def get_logger(name: str) -> logging.Logger:
    _configure_root()
    return logging.getLogger(name)
