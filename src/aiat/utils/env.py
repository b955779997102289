"""Typed readers for ``AIAT_*`` environment variables.

Unset or empty variables yield the default; malformed numbers are logged and
also fall back to the default so a bad shell export never aborts startup.
"""

from __future__ import annotations

import logging
import os
from typing import Callable, Iterable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

N = TypeVar("N", int, float)

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


def env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(name)
    return v if v is not None else default


def env_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    s = v.strip().lower()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    logger.debug("%s=%r is not a boolean; using %s", name, v, default)
    return default


def _env_number(name: str, default: N, convert: Callable[[str], N]) -> N:
    v = os.getenv(name)
    if not v:
        return default
    try:
        return convert(v.strip())
    except ValueError:
        logger.debug("%s=%r is not a number; using %s", name, v, default)
        return default


def env_int(name: str, default: int) -> int:
    return _env_number(name, default, lambda s: int(s, 10))


def env_float(name: str, default: float) -> float:
    return _env_number(name, default, float)


def env_paths(name: str, default: Iterable[str] = ()) -> List[str]:
    """Split an ``os.pathsep`` separated variable, dropping empty entries."""

    v = os.getenv(name)
    if not v:
        return [str(p) for p in default]
    return [part for part in (p.strip() for p in v.split(os.pathsep)) if part]


__all__ = ["env_bool", "env_float", "env_int", "env_paths", "env_str"]
