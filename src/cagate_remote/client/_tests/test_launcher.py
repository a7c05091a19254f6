from __future__ import annotations

import asyncio
from typing import Any

import pytest

from cagate_remote.client import launcher
from cagate_remote.client.config import ClientConfig
from cagate_remote.client.control.control_channel_client import ConnectionState
from cagate_remote.client.remote_session import SessionStatus
from cagate_remote.client.webrtc.whep_receiver import NegotiationState


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    monkeypatch.delenv("CAGATE_CONTROL_URL", raising=False)
    monkeypatch.delenv("CAGATE_WHEP_URL", raising=False)


class FakeSession:
    def __init__(self, config: ClientConfig, *, sink: Any = None, connected: bool = True) -> None:
        self.config = config
        self.sink = sink
        self.connected = connected
        self.events: list[str] = []

    async def start(self) -> bool:
        self.events.append("start")
        return self.connected

    def press_start(self):
        self.events.append("press_start")

        async def click() -> bool:
            return True

        return asyncio.ensure_future(click())

    def poll_status(self) -> SessionStatus:
        self.events.append("poll")
        return SessionStatus(ConnectionState.OPEN, NegotiationState.ANSWER_APPLIED, 0, True)

    async def stop(self) -> None:
        self.events.append("stop")


def _run(click: bool, connected: bool = True, status_interval_s: float = 0.0) -> FakeSession:
    made: list[FakeSession] = []

    def factory(config, *, sink=None):
        session = FakeSession(config, sink=sink, connected=connected)
        made.append(session)
        return session

    async def run() -> None:
        stop = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, stop.set)
        await launcher.run_session(
            ClientConfig(),
            click=click,
            status_interval_s=status_interval_s,
            stop_event=stop,
            session_factory=factory,
        )

    asyncio.run(run())
    return made[0]


def test_parser_defaults() -> None:
    args = launcher.build_parser().parse_args([])

    assert args.click is False
    assert args.debug is False
    assert args.control_url is None
    assert args.status_interval == launcher.DEFAULT_STATUS_INTERVAL_S


def test_urls_from_arguments_override_environment(monkeypatch) -> None:
    monkeypatch.setenv("CAGATE_CONTROL_URL", "ws://env:1/rpc")
    args = launcher.build_parser().parse_args(["--whep-url", "http://cli:2/whep"])

    config = launcher.config_from_args(args)

    assert config.control_url == "ws://env:1/rpc"
    assert config.whep_url == "http://cli:2/whep"


def test_run_session_clicks_when_requested() -> None:
    session = _run(click=True)

    assert session.events == ["start", "press_start", "stop"]
    assert session.sink is not None


def test_run_session_skips_click_without_connection() -> None:
    session = _run(click=True, connected=False)

    assert session.events == ["start", "stop"]


def test_run_session_logs_status_periodically() -> None:
    session = _run(click=False, status_interval_s=0.01)

    assert "poll" in session.events
    assert session.events[-1] == "stop"
