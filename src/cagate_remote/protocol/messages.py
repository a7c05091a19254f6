"""Control channel request shapes.

The machine speaks a small JSON-RPC-like dialect: every outgoing frame is a
UTF-8 text message ``{"method": ..., "params": {...}, "id": n}``. Only two
methods are used, ``setbutton`` and ``settouch``. Replies are not decoded.
"""

from __future__ import annotations

import itertools
import json
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, Mapping, Union

SET_BUTTON_METHOD = "setbutton"
SET_TOUCH_METHOD = "settouch"

STATE_RELEASED = 0
STATE_PRESSED = 1

# Fixed touch range used before wire scaling.
INTERNAL_COORD_MAX = 10000


class CoordScale(IntEnum):
    """Coordinate range the remote touch controller expects."""

    SCALE_10000 = 10000
    SCALE_0X7FFF = 32767


def _check_state(state: int) -> int:
    value = int(state)
    if value not in (STATE_RELEASED, STATE_PRESSED):
        raise ValueError(f"state must be 0 or 1, got {state!r}")
    return value


@dataclass(frozen=True, slots=True)
class SetButtonParams:
    key: int
    state: int

    def to_dict(self) -> Dict[str, Any]:
        return {"key": int(self.key), "state": int(self.state)}


@dataclass(frozen=True, slots=True)
class SetTouchParams:
    x: int
    y: int
    state: int

    def to_dict(self) -> Dict[str, Any]:
        return {"x": int(self.x), "y": int(self.y), "state": int(self.state)}


@dataclass(frozen=True, slots=True)
class SetButtonRequest:
    params: SetButtonParams
    id: int
    method: str = SET_BUTTON_METHOD

    def to_dict(self) -> Dict[str, Any]:
        return {"method": self.method, "params": self.params.to_dict(), "id": int(self.id)}


@dataclass(frozen=True, slots=True)
class SetTouchRequest:
    params: SetTouchParams
    id: int
    method: str = SET_TOUCH_METHOD

    def to_dict(self) -> Dict[str, Any]:
        return {"method": self.method, "params": self.params.to_dict(), "id": int(self.id)}


ControlRequest = Union[SetButtonRequest, SetTouchRequest]


class RequestIdSequence:
    """Hands out request ids for one connection: 1, 2, 3, ..."""

    __slots__ = ("_counter", "_last")

    def __init__(self) -> None:
        self._counter = itertools.count(1)
        self._last = 0

    @property
    def last(self) -> int:
        return self._last

    def next(self) -> int:
        self._last = next(self._counter)
        return self._last


def build_set_button(key: int, state: int, *, request_id: int) -> SetButtonRequest:
    """Construct a ``setbutton`` request."""

    key_value = int(key)
    if key_value < 0:
        raise ValueError(f"button key must be non-negative, got {key!r}")
    params = SetButtonParams(key=key_value, state=_check_state(state))
    return SetButtonRequest(params=params, id=int(request_id))


def build_set_touch(x: int, y: int, state: int, *, request_id: int) -> SetTouchRequest:
    """Construct a ``settouch`` request."""

    params = SetTouchParams(x=int(x), y=int(y), state=_check_state(state))
    return SetTouchRequest(params=params, id=int(request_id))


def encode_request(request: ControlRequest | Mapping[str, Any]) -> str:
    """Serialize a request as compact JSON text."""

    payload = request if isinstance(request, Mapping) else request.to_dict()
    return json.dumps(payload, separators=(",", ":"))
