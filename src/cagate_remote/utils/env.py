"""Typed readers for ``CAGATE_*`` environment variables.

Unset or blank variables yield the default. Malformed numbers also yield the
default, with a warning naming the variable.
"""

from __future__ import annotations

import logging
import math
import os
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


def _raw(name: str) -> Optional[str]:
    v = os.getenv(name)
    if v is None:
        return None
    v = v.strip()
    return v or None


def env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    # Blank values are kept here: callers decide whether "" disables a feature.
    v = os.getenv(name)
    return v if v is not None else default


def env_bool(name: str, default: bool = False) -> bool:
    v = _raw(name)
    if v is None:
        return default
    s = v.lower()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    logger.warning("%s=%r is not a boolean; using %s", name, v, default)
    return default


def env_int(name: str, default: int) -> int:
    v = _raw(name)
    if v is None:
        return default
    try:
        return int(v, 10)
    except ValueError:
        logger.warning("%s=%r is not an integer; using %d", name, v, default)
        return default


def env_float(name: str, default: float) -> float:
    v = _raw(name)
    if v is None:
        return default
    try:
        value = float(v)
    except ValueError:
        value = math.nan
    if not math.isfinite(value):
        logger.warning("%s=%r is not a finite number; using %s", name, v, default)
        return default
    return value


def env_ms(name: str, default_ms: float) -> float:
    """Read a millisecond value and return it in seconds, never negative."""

    return max(0.0, env_float(name, default_ms)) / 1000.0


def env_list(name: str, default: Tuple[str, ...] = ()) -> Tuple[str, ...]:
    """Split a comma separated variable, dropping empty entries."""

    v = _raw(name)
    if v is None:
        return default
    return tuple(part.strip() for part in v.split(",") if part.strip())
