"""Single-touch pad that turns pointer gestures into ``settouch`` requests.

Screen positions are mapped into the pad rectangle, normalized to a fixed
internal range of ``[0, 10000]`` (y=0 at the top edge), then scaled to the
wire range the machine expects. Moves are throttled by a time gate and a
per-axis delta gate; press and release always go out so the machine never
keeps a touch that the user already lifted.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, Tuple

from cagate_remote.protocol import INTERNAL_COORD_MAX, STATE_PRESSED, STATE_RELEASED, CoordScale

logger = logging.getLogger(__name__)

DEFAULT_MIN_SEND_INTERVAL_S = 0.02
DEFAULT_MIN_COORD_DELTA = 8


@dataclass(frozen=True)
class PointerEvent:
    """Pointer callback payload delivered by the host UI."""

    pointer_id: int
    x: float
    y: float
    camera: Any = None


@dataclass(frozen=True)
class LocalRect:
    x_min: float
    y_min: float
    x_max: float
    y_max: float


class TouchSurface(Protocol):
    """Input surface geometry supplied by the host UI."""

    @property
    def rect(self) -> LocalRect:
        ...

    def screen_to_local(self, x: float, y: float, camera: Any = None) -> Optional[Tuple[float, float]]:
        """Return the point in the surface's local, y-up frame, or None."""
        ...


class TouchChannel(Protocol):
    def is_connected(self) -> bool:
        ...

    def send_touch(self, x: int, y: int, state: int) -> bool:
        ...


@dataclass(frozen=True)
class SurfaceRect:
    """Axis-aligned surface given in host pixel coordinates (y grows downward).

    Local coordinates are centred on the rectangle with y pointing up, which
    is what :func:`normalize_local` expects.
    """

    left: float
    top: float
    width: float
    height: float

    @property
    def rect(self) -> LocalRect:
        half_w = float(self.width) / 2.0
        half_h = float(self.height) / 2.0
        return LocalRect(-half_w, -half_h, half_w, half_h)

    def screen_to_local(self, x: float, y: float, camera: Any = None) -> Optional[Tuple[float, float]]:
        if self.width <= 0 or self.height <= 0:
            return None
        cx = float(self.left) + float(self.width) / 2.0
        cy = float(self.top) + float(self.height) / 2.0
        return float(x) - cx, cy - float(y)


def _clamp01(value: float) -> float:
    return 0.0 if value < 0.0 else 1.0 if value > 1.0 else value


def _inverse_lerp(a: float, b: float, value: float) -> float:
    if a == b:
        return 0.0
    return (value - a) / (b - a)


def normalize_local(rect: LocalRect, local_x: float, local_y: float) -> Tuple[int, int]:
    """Map a local point to internal integer coordinates (y flipped)."""

    nx = _clamp01(_inverse_lerp(rect.x_min, rect.x_max, local_x))
    ny = 1.0 - _clamp01(_inverse_lerp(rect.y_min, rect.y_max, local_y))
    x = min(max(int(round(nx * INTERNAL_COORD_MAX)), 0), INTERNAL_COORD_MAX)
    y = min(max(int(round(ny * INTERNAL_COORD_MAX)), 0), INTERNAL_COORD_MAX)
    return x, y


def to_wire(x: int, y: int, scale: CoordScale | int, *, invert_y: bool = False) -> Tuple[int, int]:
    """Convert internal coordinates to the configured wire scale."""

    wire_scale = int(scale)
    if wire_scale == INTERNAL_COORD_MAX:
        send_x, send_y = int(x), int(y)
    else:
        send_x = min(max(int(round(x * wire_scale / INTERNAL_COORD_MAX)), 0), wire_scale)
        send_y = min(max(int(round(y * wire_scale / INTERNAL_COORD_MAX)), 0), wire_scale)
    if invert_y:
        send_y = wire_scale - send_y
    return send_x, send_y


@dataclass
class PointerSession:
    pointer_id: int
    pressed: bool = True
    last_x: Optional[int] = None
    last_y: Optional[int] = None
    last_send_time: Optional[float] = None
    moves_seen: int = 0
    moves_sent: int = 0

    def has_last(self) -> bool:
        return self.last_x is not None and self.last_y is not None


class TouchPad:
    """Maps press/move/release/cancel callbacks onto a touch channel.

    Only one pointer is tracked at a time; other pointers are ignored until
    the active one is released or cancelled.
    """

    def __init__(
        self,
        channel: TouchChannel,
        surface: Optional[TouchSurface] = None,
        *,
        coord_scale: CoordScale | int = CoordScale.SCALE_10000,
        invert_y: bool = False,
        min_send_interval_s: float = DEFAULT_MIN_SEND_INTERVAL_S,
        min_coord_delta: int = DEFAULT_MIN_COORD_DELTA,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._channel = channel
        self.surface = surface
        self.coord_scale = CoordScale(int(coord_scale))
        self.invert_y = bool(invert_y)
        self.min_send_interval_s = max(0.0, float(min_send_interval_s))
        self.min_coord_delta = max(0, int(min_coord_delta))
        self._clock = clock
        self._session: Optional[PointerSession] = None
        self._sent = 0
        self._suppressed = 0

    @property
    def session(self) -> Optional[PointerSession]:
        return self._session

    @property
    def pressed(self) -> bool:
        return self._session is not None and self._session.pressed

    @property
    def sent_count(self) -> int:
        return self._sent

    @property
    def suppressed_count(self) -> int:
        return self._suppressed

    @property
    def ready(self) -> bool:
        return self.surface is not None and self._channel.is_connected()

    # --- Gesture callbacks -----------------------------------------------------------
    def on_press(self, event: PointerEvent) -> None:
        if not self.ready or self.pressed:
            return
        session = PointerSession(pointer_id=int(event.pointer_id))
        self._session = session
        coords = self.resolve(event)
        if coords is None:
            logger.debug("press at unresolvable position %s", (event.x, event.y))
            return
        self._send(session, coords[0], coords[1], STATE_PRESSED)

    def on_move(self, event: PointerEvent) -> None:
        session = self._active_session(event)
        if session is None or not self.ready:
            return
        coords = self.resolve(event)
        if coords is None:
            return
        session.moves_seen += 1
        if not self._should_send(session, coords[0], coords[1]):
            self._suppressed += 1
            return
        session.moves_sent += 1
        self._send(session, coords[0], coords[1], STATE_PRESSED)

    def on_release(self, event: PointerEvent) -> None:
        session = self._active_session(event)
        if session is None:
            return
        self._session = None
        session.pressed = False
        coords = self.resolve(event)
        if coords is not None:
            self._send(session, coords[0], coords[1], STATE_RELEASED)
        elif session.has_last():
            self._transmit(session.last_x, session.last_y, STATE_RELEASED)  # type: ignore[arg-type]

    def on_cancel(self) -> None:
        """Input system cancelled the gesture: lift the touch where it was."""

        self._flush_release()

    def deactivate(self) -> None:
        """Pad is going inactive: lift any held touch."""

        self._flush_release()

    # --- Mapping ---------------------------------------------------------------------
    def resolve(self, event: PointerEvent) -> Optional[Tuple[int, int]]:
        """Return internal coordinates for ``event`` or None if off-surface."""

        surface = self.surface
        if surface is None:
            return None
        try:
            local = surface.screen_to_local(event.x, event.y, event.camera)
        except Exception:
            logger.debug("screen_to_local failed", exc_info=True)
            return None
        if local is None:
            return None
        return normalize_local(surface.rect, local[0], local[1])

    def _should_send(self, session: PointerSession, x: int, y: int) -> bool:
        if session.moves_seen > 1 and self.min_send_interval_s > 0.0 and session.last_send_time is not None:
            if (self._clock() - session.last_send_time) < self.min_send_interval_s:
                return False
        if not session.has_last():
            return True
        dx = abs(x - session.last_x)  # type: ignore[operator]
        dy = abs(y - session.last_y)  # type: ignore[operator]
        return dx >= self.min_coord_delta or dy >= self.min_coord_delta

    # --- Helpers ---------------------------------------------------------------------
    def _active_session(self, event: PointerEvent) -> Optional[PointerSession]:
        session = self._session
        if session is None or not session.pressed:
            return None
        if int(event.pointer_id) != session.pointer_id:
            return None
        return session

    def _flush_release(self) -> None:
        session = self._session
        if session is None:
            return
        self._session = None
        session.pressed = False
        if session.has_last():
            self._transmit(session.last_x, session.last_y, STATE_RELEASED)  # type: ignore[arg-type]

    def _send(self, session: PointerSession, x: int, y: int, state: int) -> None:
        session.last_x = x
        session.last_y = y
        session.last_send_time = self._clock()
        self._transmit(x, y, state)

    def _transmit(self, x: int, y: int, state: int) -> None:
        wire_x, wire_y = to_wire(x, y, self.coord_scale, invert_y=self.invert_y)
        if self._channel.send_touch(wire_x, wire_y, state):
            self._sent += 1
