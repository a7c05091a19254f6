from __future__ import annotations

import asyncio
import logging
import os
import threading
from contextlib import suppress
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Coroutine, Optional

from websockets.asyncio.client import ClientConnection, connect as ws_connect
from websockets.exceptions import ConnectionClosed

from cagate_remote.client.errors import ConnectionFailure
from cagate_remote.protocol import (
    STATE_PRESSED,
    STATE_RELEASED,
    RequestIdSequence,
    build_set_button,
    build_set_touch,
    encode_request,
)

logger = logging.getLogger(__name__)


def _maybe_enable_debug_logger() -> bool:
    flag = (os.getenv("CAGATE_CONTROL_DEBUG") or os.getenv("CAGATE_CLIENT_DEBUG") or "").lower()
    if flag not in ("1", "true", "yes", "on", "dbg", "debug"):
        return False
    has_local = any(getattr(h, "_cagate_local", False) for h in logger.handlers)
    if not has_local:
        handler = logging.StreamHandler()
        fmt = "[%(asctime)s] %(name)s - %(levelname)s - %(message)s"
        handler.setFormatter(logging.Formatter(fmt))
        handler.setLevel(logging.DEBUG)
        setattr(handler, "_cagate_local", True)
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return True


_CONTROL_DEBUG = _maybe_enable_debug_logger()

DEFAULT_BUTTON_HOLD_S = 0.25

ConnectFactory = Callable[..., Awaitable[Any]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


@dataclass
class ControlChannelLoop:
    loop: asyncio.AbstractEventLoop | None = None
    websocket: ClientConnection | None = None
    outbox: asyncio.Queue[str] | None = None
    tasks: set[asyncio.Task[Any]] = field(default_factory=set)
    closers: set[asyncio.Task[Any]] = field(default_factory=set)


class ControlChannel:
    """Owns the websocket that carries button and touch requests to the machine.

    Sends are best effort: while the channel is not open they are dropped
    without raising, since UI input is transient and the next event supersedes
    a lost one. Requests go out in call order through a single sender task and
    carry ids 1, 2, 3, ... per connection. Replies are read only to notice the
    remote closing; their content is ignored.

    There is no reconnect policy. ``connect`` and ``close`` must not be called
    concurrently with themselves; callers serialize them.
    """

    def __init__(
        self,
        url: str,
        *,
        open_timeout_s: float = 10.0,
        button_hold_s: float = DEFAULT_BUTTON_HOLD_S,
        connect_factory: Optional[ConnectFactory] = None,
        on_state_change: Optional[Callable[[ConnectionState], None]] = None,
    ) -> None:
        self.url = url
        self.open_timeout_s = float(open_timeout_s)
        self.button_hold_s = float(button_hold_s)
        self.on_state_change = on_state_change
        self._connect_factory: ConnectFactory = connect_factory or ws_connect
        self._loop_state = ControlChannelLoop()
        self._state = ConnectionState.DISCONNECTED
        self._ids = RequestIdSequence()
        self._send_lock = threading.Lock()
        self._messages_received = 0
        self._last_error: Exception | None = None

    # --- Status ----------------------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def last_request_id(self) -> int:
        return self._ids.last

    @property
    def messages_received(self) -> int:
        return self._messages_received

    @property
    def last_error(self) -> Exception | None:
        return self._last_error

    def is_connected(self) -> bool:
        return self._state is ConnectionState.OPEN and self._loop_state.websocket is not None

    # --- Lifecycle -------------------------------------------------------------------
    async def connect(self) -> bool:
        """Open the websocket and start the sender and receive loops.

        Returns True once the handshake completed. A failed handshake leaves
        the channel disconnected and is not retried.
        """

        if self._state is not ConnectionState.DISCONNECTED:
            logger.debug("ControlChannel.connect ignored in state %s", self._state.value)
            return self.is_connected()

        self._set_state(ConnectionState.CONNECTING)
        self._ids = RequestIdSequence()
        self._last_error = None
        logger.info("Connecting to control channel at %s", self.url)
        try:
            ws = await self._connect_factory(self.url, open_timeout=self.open_timeout_s)
        except asyncio.CancelledError:
            self._set_state(ConnectionState.DISCONNECTED)
            raise
        except Exception as exc:
            msg = str(exc) or exc.__class__.__name__
            self._last_error = ConnectionFailure(f"control channel handshake failed: {msg}")
            logger.warning("Control channel unavailable (%s)", msg)
            self._set_state(ConnectionState.DISCONNECTED)
            return False

        loop_state = self._loop_state
        loop_state.loop = asyncio.get_running_loop()
        loop_state.websocket = ws
        loop_state.outbox = asyncio.Queue()
        self._set_state(ConnectionState.OPEN)
        self._spawn(self._sender(ws, loop_state.outbox), name="control-sender")
        self._spawn(self._receive_loop(ws), name="control-receiver")
        logger.info("Connected to control channel")
        return True

    async def drain(self, timeout_s: float = 0.5) -> None:
        """Wait until queued requests were handed to the websocket."""

        outbox = self._loop_state.outbox
        if outbox is None:
            return
        # Let enqueues scheduled through call_soon_threadsafe land first.
        await asyncio.sleep(0)
        try:
            await asyncio.wait_for(outbox.join(), timeout_s)
        except asyncio.TimeoutError:
            logger.debug("ControlChannel.drain: %d requests still queued", outbox.qsize())

    async def close(self) -> None:
        """Cancel pending work, close the websocket gracefully, then release it.

        Safe to call repeatedly and before any connection was made.
        """

        loop_state = self._loop_state
        ws = loop_state.websocket
        if self._state is ConnectionState.DISCONNECTED and ws is None and not loop_state.tasks:
            await self._await_closers()
            return

        self._set_state(ConnectionState.CLOSING)
        current = asyncio.current_task()
        pending = [task for task in loop_state.tasks if task is not current]
        for task in pending:
            task.cancel()
        if pending:
            results = await asyncio.gather(*pending, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.debug("ControlChannel.close: task ended with %r", result)
        await self._await_closers()

        if ws is not None:
            try:
                await ws.close()
            except Exception:
                logger.debug("ControlChannel.close: graceful close failed", exc_info=True)

        loop_state.websocket = None
        loop_state.outbox = None
        loop_state.loop = None
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Control channel closed")

    # --- Outbound requests -----------------------------------------------------------
    def send_button(self, key: int, state: int) -> bool:
        """Queue a ``setbutton`` request. Returns False when dropped."""

        if not self.is_connected():
            logger.debug("send_button dropped (state=%s)", self._state.value)
            return False
        with self._send_lock:
            request = build_set_button(key, state, request_id=self._ids.next())
            return self._enqueue_text(encode_request(request))

    def send_touch(self, x: int, y: int, state: int) -> bool:
        """Queue a ``settouch`` request. Returns False when dropped."""

        if not self.is_connected():
            logger.debug("send_touch dropped (state=%s)", self._state.value)
            return False
        with self._send_lock:
            request = build_set_touch(x, y, state, request_id=self._ids.next())
            return self._enqueue_text(encode_request(request))

    async def click_button(self, key: int = 0, hold_s: float | None = None) -> bool:
        """Press ``key``, hold it, then release it."""

        if not self.is_connected():
            return False
        hold = self.button_hold_s if hold_s is None else float(hold_s)
        self.send_button(key, STATE_PRESSED)
        await asyncio.sleep(max(0.0, hold))
        return self.send_button(key, STATE_RELEASED)

    def start_click(self, key: int = 0, hold_s: float | None = None) -> asyncio.Task[bool] | None:
        """Schedule :meth:`click_button` as an owned task.

        Must be called from the thread running the channel's event loop.
        """

        if not self.is_connected():
            return None
        return self._spawn(self.click_button(key, hold_s), name=f"control-click-{key}")

    def _enqueue_text(self, text: str) -> bool:
        try:
            loop = self._loop_state.loop
            outbox = self._loop_state.outbox
            if loop is None or outbox is None:
                return False
            loop.call_soon_threadsafe(outbox.put_nowait, text)
            return True
        except Exception:
            logger.debug("ControlChannel: enqueue failed", exc_info=True)
            return False

    # --- Loops -----------------------------------------------------------------------
    async def _sender(self, ws: ClientConnection, outbox: asyncio.Queue[str]) -> None:
        while True:
            msg = await outbox.get()
            if _CONTROL_DEBUG:
                logger.debug("ControlChannel sender -> %s", msg)
            try:
                await ws.send(msg)
            except Exception as exc:
                self._last_error = ConnectionFailure(f"control send failed: {exc}")
                logger.debug("Control sender failed; dropping socket", exc_info=True)
                self._release(ws)
                return
            finally:
                outbox.task_done()

    async def _receive_loop(self, ws: ClientConnection) -> None:
        try:
            while True:
                # Fragmented frames arrive here already joined into one message.
                message = await ws.recv()
                self._messages_received += 1
                if _CONTROL_DEBUG:
                    preview = message if isinstance(message, str) else f"<{len(message)} bytes>"
                    logger.debug("ControlChannel <- %s", preview[:200])
        except ConnectionClosed as exc:
            if exc.rcvd is not None:
                logger.info("Control channel closed by remote (code=%s)", exc.rcvd.code)
                with suppress(Exception):
                    await ws.close()
            else:
                self._last_error = ConnectionFailure(f"control channel lost: {exc}")
                logger.info("Control channel lost (%s)", exc)
            self._release(ws)
        except Exception as exc:
            self._last_error = ConnectionFailure(f"control receive failed: {exc}")
            logger.debug("Control receive loop failed", exc_info=True)
            self._release(ws)

    def _release(self, ws: ClientConnection) -> None:
        """Forget ``ws``, close it in the background and stop the sibling loop."""

        loop_state = self._loop_state
        if loop_state.websocket is not ws:
            return
        loop_state.websocket = None
        loop_state.outbox = None
        current = asyncio.current_task()
        for task in list(loop_state.tasks):
            if task is not current:
                task.cancel()
        closer = asyncio.get_running_loop().create_task(self._close_quietly(ws), name="control-close")
        loop_state.closers.add(closer)
        closer.add_done_callback(loop_state.closers.discard)
        if self._state is not ConnectionState.CLOSING:
            self._set_state(ConnectionState.DISCONNECTED)

    async def _close_quietly(self, ws: ClientConnection) -> None:
        try:
            await ws.close()
        except Exception:
            logger.debug("ControlChannel: closing dropped socket failed", exc_info=True)

    async def _await_closers(self) -> None:
        closers = list(self._loop_state.closers)
        if closers:
            await asyncio.gather(*closers, return_exceptions=True)

    # --- Helpers ---------------------------------------------------------------------
    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        tasks = self._loop_state.tasks
        tasks.add(task)
        task.add_done_callback(tasks.discard)
        return task

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        self._state = state
        if _CONTROL_DEBUG:
            logger.debug("ControlChannel state -> %s", state.value)
        if self.on_state_change:
            try:
                self.on_state_change(state)
            except Exception:
                logger.debug("on_state_change callback failed", exc_info=True)
