from __future__ import annotations

import logging
import os
from typing import Optional


_TRUTHY = {"1", "true", "yes", "on"}


def is_truthy(value: Optional[str]) -> bool:
    if value is None:
        return False
    return str(value).strip().lower() in _TRUTHY


def env_flag(name: str) -> bool:
    return is_truthy(os.environ.get(name))


def _parse_level(value, default_level: int) -> int:
    if value is None:
        return default_level
    if isinstance(value, int):
        return int(value)
    text = str(value).strip().upper()
    if not text:
        return default_level
    if text.isdigit():
        return int(text)
    resolved = logging.getLevelName(text)
    if isinstance(resolved, int):
        return resolved
    return default_level


def get_log_level_from_env(default: str | int = "INFO") -> int:
    """
    Resolve log level from env (MPIAIJ_LOG_LEVEL, or MPIAIJ_DEBUG=1 for DEBUG).
    """
    default_level = _parse_level(default, logging.INFO)
    env_level = os.environ.get("MPIAIJ_LOG_LEVEL")
    if env_level:
        return _parse_level(env_level, default_level)
    if env_flag("MPIAIJ_DEBUG"):
        return logging.DEBUG
    return default_level


class RankFilter(logging.Filter):
    """Inject ``record.rank`` so formats can use ``%(rank)s``."""

    def __init__(self, rank: int) -> None:
        super().__init__()
        self.rank = int(rank)

    def filter(self, record: logging.LogRecord) -> bool:
        record.rank = self.rank
        return True


def setup_logging(rank: int, *, level: int, quiet_nonroot: bool = True) -> None:
    """
    Configure root logging once and quiet non-root console handlers by default.
    """
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s [rank %(rank)s] [%(name)s] %(message)s",
        )
    root.setLevel(level)

    for handler in root.handlers:
        if not any(isinstance(f, RankFilter) for f in handler.filters):
            handler.addFilter(RankFilter(rank))
        if isinstance(handler, logging.FileHandler):
            continue
        if quiet_nonroot and rank != 0:
            handler.setLevel(max(level, logging.WARNING))
        else:
            handler.setLevel(level)
