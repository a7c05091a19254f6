"""One machine session: control channel, touch pad and video receiver together."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from cagate_remote.client.config import ClientConfig
from cagate_remote.client.control.control_channel_client import ConnectionState, ControlChannel
from cagate_remote.client.errors import RemoteError
from cagate_remote.client.input.touch_pad import TouchPad, TouchSurface
from cagate_remote.client.webrtc.display_sink import DisplaySink
from cagate_remote.client.webrtc.whep_receiver import NegotiationState, WhepReceiver

logger = logging.getLogger(__name__)

START_BUTTON_KEY = 0


@dataclass(frozen=True)
class SessionStatus:
    connection: ConnectionState
    negotiation: NegotiationState
    frames_received: int
    start_enabled: bool


class RemoteSession:
    """Wires a ControlChannel, a TouchPad and a WhepReceiver from one config.

    The control channel and the video are independent: either may fail while
    the other keeps working. ``stop`` tears down in input → control → video
    order so a held touch is lifted before the socket goes away.
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        *,
        sink: Optional[DisplaySink] = None,
        surface: Optional[TouchSurface] = None,
        channel: Optional[ControlChannel] = None,
        receiver: Optional[WhepReceiver] = None,
    ) -> None:
        self.config = config or ClientConfig.from_env()
        cfg = self.config
        self.channel = channel or ControlChannel(
            cfg.control_url,
            open_timeout_s=cfg.open_timeout_s,
            button_hold_s=cfg.button_hold_s,
        )
        self.touch_pad = TouchPad(
            self.channel,
            surface,
            coord_scale=cfg.coord_scale,
            invert_y=cfg.invert_y,
            min_send_interval_s=cfg.min_send_interval_s,
            min_coord_delta=cfg.min_coord_delta,
        )
        self.receiver = receiver or WhepReceiver(
            cfg.whep_url,
            sink=sink,
            bearer_token=cfg.bearer_token,
            http_timeout_s=cfg.http_timeout_s,
            preferred_codec=cfg.preferred_codec,
            ice_servers=cfg.ice_servers,
        )
        self._started = False

    async def start(self) -> bool:
        """Connect the control channel, then negotiate video.

        Returns whether the control channel is open. Video failures are
        logged and leave the session running without a picture.
        """

        if self._started:
            return self.channel.is_connected()
        self._started = True
        logger.info("Starting session: %s", self.config.as_dict())

        connected = await self.channel.connect()
        if not connected:
            logger.warning("Session running without control channel: %s", self.channel.last_error)

        try:
            await self.receiver.negotiate()
        except RemoteError as exc:
            logger.warning("Session running without video: %s", exc)
        return connected

    async def stop(self) -> None:
        self.touch_pad.deactivate()
        await self.channel.drain()
        await self.channel.close()
        await self.receiver.close()

    def poll_status(self) -> SessionStatus:
        return SessionStatus(
            connection=self.channel.state,
            negotiation=self.receiver.state,
            frames_received=self.receiver.frames_received,
            start_enabled=self.channel.is_connected(),
        )

    def press_start(self) -> Optional[asyncio.Task[Any]]:
        """Click the start button. Returns None when the channel is not open."""

        task = self.channel.start_click(START_BUTTON_KEY)
        if task is None:
            logger.info("Start button ignored: control channel not connected")
        return task
