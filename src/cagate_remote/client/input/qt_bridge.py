from __future__ import annotations

import logging
from typing import Any, Optional, Tuple

from qtpy import QtCore, QtWidgets  # type: ignore

from cagate_remote.client.input.touch_pad import LocalRect, PointerEvent, SurfaceRect, TouchPad

logger = logging.getLogger(__name__)

# Mouse input has no pointer ids; every press uses the same one.
MOUSE_POINTER_ID = 0


def _pointer_xy(event) -> tuple[float, float]:  # type: ignore[no-untyped-def]
    """Return pointer coordinates, asserting the Qt event exposes them."""

    if hasattr(event, 'position'):
        pos = event.position()
        assert pos is not None, "pointer event returned None from position()"
        return float(pos.x()), float(pos.y())
    assert hasattr(event, 'pos'), "pointer event missing position()/pos()"
    pos = event.pos()
    assert pos is not None, "pointer event returned None from pos()"
    return float(pos.x()), float(pos.y())


class WidgetSurface:
    """Touch surface covering a widget's client area."""

    def __init__(self, widget: QtWidgets.QWidget) -> None:  # type: ignore[valid-type]
        self._widget = widget

    def _geometry(self) -> SurfaceRect:
        return SurfaceRect(0.0, 0.0, float(self._widget.width()), float(self._widget.height()))

    @property
    def rect(self) -> LocalRect:
        return self._geometry().rect

    def screen_to_local(self, x: float, y: float, camera: Any = None) -> Optional[Tuple[float, float]]:
        return self._geometry().screen_to_local(x, y)


class TouchPadEventFilter(QtCore.QObject):  # type: ignore[misc]
    """Qt event filter forwarding left-button mouse gestures to a TouchPad.

    - Press/drag/release map to the pad's gesture callbacks.
    - Hiding the widget or losing the window cancels a held touch.
    """

    def __init__(
        self,
        widget: QtWidgets.QWidget,  # type: ignore[valid-type]
        pad: TouchPad,
        *,
        log_info: bool = False,
    ) -> None:
        super().__init__(widget)
        self._widget = widget
        self._pad = pad
        self._log_info = bool(log_info)

    def start(self) -> None:
        self._pad.surface = WidgetSurface(self._widget)
        self._widget.installEventFilter(self)

    def stop(self) -> None:
        self._widget.removeEventFilter(self)
        self._pad.deactivate()

    def eventFilter(self, obj, event):  # type: ignore[no-untyped-def]
        if obj is not self._widget:
            return False
        event_type = event.type()

        if event_type == QtCore.QEvent.MouseButtonPress:  # type: ignore[attr-defined]
            if event.button() != QtCore.Qt.LeftButton:  # type: ignore[attr-defined]
                return False
            self._pad.on_press(self._pointer_event(event))
            event.accept()
            return True

        if event_type == QtCore.QEvent.MouseMove:  # type: ignore[attr-defined]
            if not (event.buttons() & QtCore.Qt.LeftButton):  # type: ignore[attr-defined]
                return False
            self._pad.on_move(self._pointer_event(event))
            event.accept()
            return True

        if event_type == QtCore.QEvent.MouseButtonRelease:  # type: ignore[attr-defined]
            if event.button() != QtCore.Qt.LeftButton:  # type: ignore[attr-defined]
                return False
            self._pad.on_release(self._pointer_event(event))
            event.accept()
            return True

        if event_type in (QtCore.QEvent.Hide, QtCore.QEvent.WindowDeactivate):  # type: ignore[attr-defined]
            if self._pad.pressed and self._log_info:
                logger.info("touch cancelled by %s", event_type)
            self._pad.on_cancel()
            return False

        return False

    def _pointer_event(self, event) -> PointerEvent:  # type: ignore[no-untyped-def]
        x, y = _pointer_xy(event)
        if self._log_info:
            logger.info("pointer %s at (%.1f, %.1f)", event.type(), x, y)
        return PointerEvent(pointer_id=MOUSE_POINTER_ID, x=x, y=y)
