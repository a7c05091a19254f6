from __future__ import annotations

import logging
import threading
import time
from typing import Any, Optional, Protocol

import numpy as np

logger = logging.getLogger(__name__)


class DisplaySink(Protocol):
    """Consumer of decoded video frames (``av.VideoFrame`` from aiortc)."""

    def on_frame(self, frame: Any) -> None:
        ...


class LatestFrameSink:
    """Keeps only the newest decoded frame for a presenter to pick up.

    Frames are opaque here; :meth:`to_rgb` converts the newest one with
    PyAV when a consumer needs pixels.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._frame: Any = None
        self._count = 0
        self._last_arrival: Optional[float] = None

    def on_frame(self, frame: Any) -> None:
        with self._lock:
            self._frame = frame
            self._count += 1
            self._last_arrival = time.perf_counter()
        if self._count == 1:
            logger.info(
                "first video frame received (%sx%s)",
                getattr(frame, "width", "?"),
                getattr(frame, "height", "?"),
            )

    @property
    def latest(self) -> Any:
        with self._lock:
            return self._frame

    @property
    def frame_count(self) -> int:
        with self._lock:
            return self._count

    @property
    def last_arrival(self) -> Optional[float]:
        with self._lock:
            return self._last_arrival

    def to_rgb(self) -> Optional[np.ndarray]:
        frame = self.latest
        if frame is None:
            return None
        try:
            return frame.to_ndarray(format="rgb24")
        except Exception:
            logger.debug("LatestFrameSink: frame conversion failed", exc_info=True)
            return None

    def clear(self) -> None:
        with self._lock:
            self._frame = None
