"""
Logging setup shared by the driver and tests.

Environment:
- AMROPS_LOG_LEVEL: level name or number (overrides the configured level);
- AMROPS_PETSC_DEBUG: truthy -> DEBUG when no explicit level is set.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Mapping, Optional

_TRUTHY = {"1", "true", "yes", "on"}

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _is_truthy(value: Optional[str]) -> bool:
    if value is None:
        return False
    return str(value).strip().lower() in _TRUTHY


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


def is_root_rank(comm=None) -> bool:
    """
    True on rank 0 of `comm` (or of the world communicator); True for a
    serial run without mpi4py.
    """
    from parallel.mpi_bootstrap import comm_rank_size

    rank, _ = comm_rank_size(comm)
    return rank == 0


def get_log_level_from_env(default: str | int = "INFO") -> int:
    """
    Resolve log level from env (AMROPS_LOG_LEVEL or AMROPS_PETSC_DEBUG).
    """
    default_level = _parse_level(default, logging.INFO)
    env_level = os.environ.get("AMROPS_LOG_LEVEL")
    if env_level:
        return _parse_level(env_level, default_level)
    if _is_truthy(os.environ.get("AMROPS_PETSC_DEBUG")):
        return logging.DEBUG
    return default_level


def setup_logging(rank: int, *, level: int, quiet_nonroot: bool = True) -> None:
    """
    Configure root logging once; non-root ranks only report warnings and
    errors unless quiet_nonroot is False.
    """
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)
    root.setLevel(level)

    handler_level = max(level, logging.WARNING) if (quiet_nonroot and rank != 0) else level
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            continue
        handler.setLevel(handler_level)


def format_diag(diag: Mapping[str, Any]) -> str:
    """One-line `key=value` rendering of an assembler diag dict."""
    return " ".join(f"{k}={v}" for k, v in diag.items())
