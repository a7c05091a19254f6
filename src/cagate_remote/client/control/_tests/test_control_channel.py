from __future__ import annotations

import asyncio
import json
import threading

import pytest

pytest.importorskip("websockets")

from websockets.asyncio.server import serve

from cagate_remote.client.control.control_channel_client import ConnectionState, ControlChannel
from cagate_remote.client.errors import ConnectionFailure


async def _wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.01)


class _Recorder:
    """Minimal websocket server collecting decoded request frames."""

    def __init__(self, close_after: int | None = None) -> None:
        self.messages: list[dict] = []
        self.close_after = close_after

    async def handler(self, ws) -> None:
        async for raw in ws:
            self.messages.append(json.loads(raw))
            if self.close_after is not None and len(self.messages) >= self.close_after:
                await ws.close()
                return


def test_sends_are_dropped_while_disconnected() -> None:
    channel = ControlChannel("ws://127.0.0.1:1")

    assert channel.is_connected() is False
    assert channel.send_button(0, 1) is False
    assert channel.send_touch(10, 20, 1) is False
    assert channel.last_request_id == 0


def test_close_without_connection_is_noop() -> None:
    channel = ControlChannel("ws://127.0.0.1:1")

    async def _run() -> None:
        await channel.close()
        await channel.close()

    asyncio.run(_run())

    assert channel.state is ConnectionState.DISCONNECTED


def test_connect_failure_reports_disconnected() -> None:
    states: list[ConnectionState] = []

    async def _refuse(url, **kwargs):
        raise ConnectionRefusedError("refused")

    channel = ControlChannel(
        "ws://127.0.0.1:1",
        connect_factory=_refuse,
        on_state_change=states.append,
    )

    ok = asyncio.run(channel.connect())

    assert ok is False
    assert channel.state is ConnectionState.DISCONNECTED
    assert isinstance(channel.last_error, ConnectionFailure)
    assert states == [ConnectionState.CONNECTING, ConnectionState.DISCONNECTED]
    assert channel.send_touch(1, 1, 1) is False


def test_requests_reach_server_in_order_with_increasing_ids() -> None:
    recorder = _Recorder()

    async def _run() -> ControlChannel:
        async with serve(recorder.handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            channel = ControlChannel(f"ws://127.0.0.1:{port}")
            assert await channel.connect() is True
            assert channel.is_connected()

            assert channel.send_button(0, 1)
            assert channel.send_touch(100, 200, 1)
            assert channel.send_touch(150, 250, 1)
            assert channel.send_touch(150, 250, 0)
            assert channel.send_button(0, 0)

            await _wait_until(lambda: len(recorder.messages) == 5)
            await channel.close()
            return channel

    channel = asyncio.run(_run())

    ids = [msg["id"] for msg in recorder.messages]
    assert ids == [1, 2, 3, 4, 5]
    assert recorder.messages[0] == {"method": "setbutton", "params": {"key": 0, "state": 1}, "id": 1}
    assert recorder.messages[1] == {"method": "settouch", "params": {"x": 100, "y": 200, "state": 1}, "id": 2}
    assert recorder.messages[3]["params"]["state"] == 0
    assert channel.state is ConnectionState.DISCONNECTED
    assert channel.is_connected() is False


def test_sends_from_another_thread_keep_order() -> None:
    recorder = _Recorder()

    async def _run() -> None:
        async with serve(recorder.handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            channel = ControlChannel(f"ws://127.0.0.1:{port}")
            assert await channel.connect()

            def _worker() -> None:
                for i in range(20):
                    channel.send_touch(i, i, 1)

            thread = threading.Thread(target=_worker)
            thread.start()
            await asyncio.get_running_loop().run_in_executor(None, thread.join)

            await _wait_until(lambda: len(recorder.messages) == 20)
            await channel.close()

    asyncio.run(_run())

    assert [msg["id"] for msg in recorder.messages] == list(range(1, 21))
    assert [msg["params"]["x"] for msg in recorder.messages] == list(range(20))


def test_click_button_presses_then_releases() -> None:
    recorder = _Recorder()

    async def _run() -> None:
        async with serve(recorder.handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            channel = ControlChannel(f"ws://127.0.0.1:{port}", button_hold_s=0.01)
            assert await channel.connect()

            task = channel.start_click(0)
            assert task is not None
            assert await task is True

            await _wait_until(lambda: len(recorder.messages) == 2)
            await channel.close()

    asyncio.run(_run())

    assert [msg["params"]["state"] for msg in recorder.messages] == [1, 0]
    assert all(msg["method"] == "setbutton" for msg in recorder.messages)


def test_click_is_skipped_when_disconnected() -> None:
    channel = ControlChannel("ws://127.0.0.1:1")

    assert channel.start_click(0) is None
    assert asyncio.run(channel.click_button(0, hold_s=0)) is False


def test_remote_close_leaves_channel_disconnected() -> None:
    recorder = _Recorder(close_after=1)

    async def _run() -> ControlChannel:
        async with serve(recorder.handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            channel = ControlChannel(f"ws://127.0.0.1:{port}")
            assert await channel.connect()
            channel.send_button(1, 1)

            await _wait_until(lambda: channel.state is ConnectionState.DISCONNECTED)
            assert channel.send_button(1, 0) is False
            await channel.close()
            return channel

    channel = asyncio.run(_run())

    assert recorder.messages == [{"method": "setbutton", "params": {"key": 1, "state": 1}, "id": 1}]
    assert channel.is_connected() is False


class _BrokenSocket:
    """Fake connection whose sends fail and whose recv blocks until closed."""

    def __init__(self) -> None:
        self.closed = False
        self._gate = asyncio.Event()

    async def send(self, message: str) -> None:
        raise OSError("broken pipe")

    async def recv(self):
        await self._gate.wait()
        raise OSError("socket gone")

    async def close(self) -> None:
        self.closed = True
        self._gate.set()


def test_send_failure_drops_socket() -> None:
    async def _run() -> tuple[ControlChannel, _BrokenSocket]:
        fake = _BrokenSocket()

        async def _factory(url, **kwargs):
            return fake

        channel = ControlChannel("ws://example", connect_factory=_factory)
        assert await channel.connect()
        assert channel.send_touch(1, 2, 1) is True

        await _wait_until(lambda: channel.state is ConnectionState.DISCONNECTED)
        await channel.close()
        return channel, fake

    channel, fake = asyncio.run(_run())

    assert fake.closed
    assert isinstance(channel.last_error, ConnectionFailure)
    assert channel.is_connected() is False


def test_close_cancels_loops_and_closes_socket() -> None:
    states: list[ConnectionState] = []

    async def _run() -> _BrokenSocket:
        fake = _BrokenSocket()

        async def _factory(url, **kwargs):
            return fake

        channel = ControlChannel("ws://example", connect_factory=_factory, on_state_change=states.append)
        assert await channel.connect()
        await channel.close()
        await channel.close()
        return fake

    fake = asyncio.run(_run())

    assert fake.closed is True
    assert states == [
        ConnectionState.CONNECTING,
        ConnectionState.OPEN,
        ConnectionState.CLOSING,
        ConnectionState.DISCONNECTED,
    ]


def test_ids_restart_on_new_connection() -> None:
    async def _run() -> list[int]:
        seen: list[int] = []

        class _Sink:
            async def send(self, message: str) -> None:
                seen.append(json.loads(message)["id"])

            async def recv(self):
                await asyncio.Event().wait()

            async def close(self) -> None:
                return None

        async def _factory(url, **kwargs):
            return _Sink()

        channel = ControlChannel("ws://example", connect_factory=_factory)
        for attempt in range(2):
            assert await channel.connect()
            channel.send_button(0, 1)
            channel.send_button(0, 0)
            expected = 2 * (attempt + 1)
            await _wait_until(lambda: len(seen) == expected)
            await channel.close()
        return seen

    assert asyncio.run(_run()) == [1, 2, 1, 2]


def test_drain_flushes_queue_before_close() -> None:
    recorder = _Recorder()

    async def _run() -> None:
        async with serve(recorder.handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            channel = ControlChannel(f"ws://127.0.0.1:{port}")
            assert await channel.connect() is True
            for x in range(10):
                channel.send_touch(x, x, 1)
            channel.send_touch(9, 9, 0)

            await channel.drain()
            await channel.close()
            await _wait_until(lambda: len(recorder.messages) == 11)

    asyncio.run(_run())

    assert [msg["id"] for msg in recorder.messages] == list(range(1, 12))
    assert recorder.messages[-1]["params"] == {"x": 9, "y": 9, "state": 0}


def test_drain_without_connection_returns() -> None:
    channel = ControlChannel("ws://127.0.0.1:1")

    asyncio.run(channel.drain())

    assert channel.state is ConnectionState.DISCONNECTED


def test_dropped_socket_is_closed_without_explicit_close() -> None:
    async def _run() -> _BrokenSocket:
        fake = _BrokenSocket()

        async def _factory(url, **kwargs):
            return fake

        channel = ControlChannel("ws://example", connect_factory=_factory)
        assert await channel.connect()
        channel.send_button(0, 1)

        await _wait_until(lambda: fake.closed)
        assert channel.state is ConnectionState.DISCONNECTED
        return fake

    assert asyncio.run(_run()).closed
