"""Wire protocol for the machine control channel."""

from __future__ import annotations

from .messages import (
    INTERNAL_COORD_MAX,
    SET_BUTTON_METHOD,
    SET_TOUCH_METHOD,
    STATE_PRESSED,
    STATE_RELEASED,
    ControlRequest,
    CoordScale,
    RequestIdSequence,
    SetButtonParams,
    SetButtonRequest,
    SetTouchParams,
    SetTouchRequest,
    build_set_button,
    build_set_touch,
    encode_request,
)

__all__ = [name for name in globals().keys() if not name.startswith("_")]
