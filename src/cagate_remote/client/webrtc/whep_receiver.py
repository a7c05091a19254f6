"""Receive-only WebRTC video via a WHEP-style HTTP offer/answer exchange.

One receiver performs one negotiation: build a recvonly video peer, create
and register an offer, POST it to the endpoint, apply the returned answer.
Nothing is retried; a failed attempt leaves the receiver in ``FAILED`` and the
caller decides whether to build a new one.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Coroutine, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

import aiohttp
from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCRtpReceiver, RTCSessionDescription
from aiortc.mediastreams import MediaStreamError

from cagate_remote.client.errors import ProtocolViolation, RemoteError, TransportFailure
from cagate_remote.client.webrtc.display_sink import DisplaySink

logger = logging.getLogger(__name__)

SDP_CONTENT_TYPE = "application/sdp"
SDP_VERSION_MARKER = "v=0"
BODY_EXCERPT_CHARS = 80
DEFAULT_HTTP_TIMEOUT_S = 6.0


class NegotiationState(str, Enum):
    IDLE = "idle"
    OFFER_CREATED = "offer_created"
    OFFER_SET = "offer_set"
    ANSWER_REQUESTED = "answer_requested"
    ANSWER_APPLIED = "answer_applied"
    FAILED = "failed"


@dataclass
class NegotiationSession:
    local_description: Optional[str] = None
    remote_description: Optional[str] = None
    codec_order: Tuple[str, ...] = ()


@runtime_checkable
class SupportsCodecPreferences(Protocol):
    def setCodecPreferences(self, codecs: List[Any]) -> None:
        ...


class MediaStream:
    """Inbound tracks of the session, with an add-track hook."""

    def __init__(self, on_add_track: Optional[Callable[[Any], None]] = None) -> None:
        self._tracks: list[Any] = []
        self.on_add_track = on_add_track

    def add_track(self, track: Any) -> None:
        if track in self._tracks:
            return
        self._tracks.append(track)
        if self.on_add_track:
            try:
                self.on_add_track(track)
            except Exception:
                logger.debug("on_add_track callback failed", exc_info=True)

    def get_tracks(self) -> list[Any]:
        return list(self._tracks)

    def clear(self) -> None:
        self._tracks.clear()


def _mime_type(codec: Any) -> str:
    return str(getattr(codec, "mimeType", "") or "")


def order_codecs(codecs: Sequence[Any], preferred: str) -> list[Any]:
    """Move codecs whose mime type contains ``preferred`` (any case) to the front."""

    needle = preferred.lower()
    matches = [c for c in codecs if _mime_type(c) and needle in _mime_type(c).lower()]
    rest = [c for c in codecs if not (_mime_type(c) and needle in _mime_type(c).lower())]
    return matches + rest


def _default_peer_factory(configuration: RTCConfiguration) -> RTCPeerConnection:
    return RTCPeerConnection(configuration=configuration)


class WhepReceiver:
    """Negotiates one receive-only video session and feeds a display sink."""

    def __init__(
        self,
        whep_url: str,
        *,
        sink: Optional[DisplaySink] = None,
        bearer_token: str = "",
        http_timeout_s: float = DEFAULT_HTTP_TIMEOUT_S,
        preferred_codec: Optional[str] = "video/H264",
        ice_servers: Sequence[str] = (),
        peer_factory: Optional[Callable[[RTCConfiguration], Any]] = None,
        capabilities: Optional[Callable[[str], Any]] = None,
        session_factory: Optional[Callable[..., aiohttp.ClientSession]] = None,
    ) -> None:
        self.whep_url = whep_url
        self.sink = sink
        self.bearer_token = bearer_token
        self.http_timeout_s = float(http_timeout_s)
        self.preferred_codec = preferred_codec
        self.ice_servers = tuple(ice_servers)
        self._peer_factory = peer_factory or _default_peer_factory
        self._capabilities = capabilities or RTCRtpReceiver.getCapabilities
        self._session_factory = session_factory or aiohttp.ClientSession
        self._pc: Any = None
        self._stream: Optional[MediaStream] = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._state = NegotiationState.IDLE
        self._session = NegotiationSession()
        self._last_error: Optional[RemoteError] = None
        self._frames_received = 0

    # --- Status ----------------------------------------------------------------------
    @property
    def state(self) -> NegotiationState:
        return self._state

    @property
    def session(self) -> NegotiationSession:
        return self._session

    @property
    def last_error(self) -> Optional[RemoteError]:
        return self._last_error

    @property
    def frames_received(self) -> int:
        return self._frames_received

    @property
    def stream(self) -> Optional[MediaStream]:
        return self._stream

    # --- Negotiation -----------------------------------------------------------------
    async def negotiate(self) -> NegotiationSession:
        """Run offer → POST → answer once. Raises on failure."""

        if self._state is not NegotiationState.IDLE:
            raise RuntimeError(f"negotiation already attempted (state={self._state.value})")
        try:
            self.create_peer()
            offer = await self.create_offer()
            await self.set_local_description(offer)
            answer = await self.post_offer(self.whep_url, self._session.local_description or offer.sdp)
            await self.apply_answer(answer)
        except RemoteError as exc:
            logger.error("WHEP negotiation failed: %s", exc)
            raise
        logger.info("WHEP session established with %s", self.whep_url)
        return self._session

    def create_peer(self) -> Any:
        """Build the recvonly peer and register the track callbacks."""

        if self._pc is not None:
            return self._pc
        try:
            configuration = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in self.ice_servers])
            pc = self._peer_factory(configuration)
            stream = MediaStream(on_add_track=self._on_stream_track)

            @pc.on("track")
            def _on_track(track: Any) -> None:
                logger.debug("track event received: kind=%s", getattr(track, "kind", None))
                stream.add_track(track)

            @pc.on("connectionstatechange")
            def _on_connection_state() -> None:
                logger.info("connectionState -> %s", getattr(pc, "connectionState", None))

            transceiver = pc.addTransceiver("video", direction="recvonly")
        except Exception as exc:
            raise self._fail(TransportFailure(f"peer construction failed: {exc}"), exc)

        self._pc = pc
        self._stream = stream
        if self.preferred_codec:
            self.apply_codec_preferences(transceiver)
        return pc

    def apply_codec_preferences(self, transceiver: Any) -> list[Any]:
        """Put the preferred codec first on ``transceiver`` when it allows it."""

        preferred = self.preferred_codec
        if not preferred:
            return []
        try:
            codecs = list(self._capabilities("video").codecs)
        except Exception:
            logger.debug("codec capability query failed", exc_info=True)
            return []
        ordered = order_codecs(codecs, preferred)
        self._session.codec_order = tuple(_mime_type(c) for c in ordered)
        if not ordered or preferred.lower() not in _mime_type(ordered[0]).lower():
            logger.debug("no %s codec offered; keeping default order", preferred)
            return ordered
        if not isinstance(transceiver, SupportsCodecPreferences):
            logger.debug("transceiver cannot set codec preferences")
            return ordered
        try:
            transceiver.setCodecPreferences(ordered)
            logger.info("preferring %s (%d codecs)", preferred, len(ordered))
        except Exception:
            logger.debug("setCodecPreferences failed", exc_info=True)
        return ordered

    async def create_offer(self) -> RTCSessionDescription:
        pc = self._require_peer()
        try:
            offer = await pc.createOffer()
        except Exception as exc:
            raise self._fail(TransportFailure(f"CreateOffer error: {exc}"), exc)
        self._state = NegotiationState.OFFER_CREATED
        return offer

    async def set_local_description(self, offer: RTCSessionDescription) -> None:
        pc = self._require_peer()
        try:
            await pc.setLocalDescription(offer)
        except Exception as exc:
            raise self._fail(TransportFailure(f"SetLocalDescription error: {exc}"), exc)
        # aiortc gathers candidates while registering; send the completed SDP.
        local = getattr(pc, "localDescription", None)
        self._session.local_description = local.sdp if local is not None and local.sdp else offer.sdp
        self._state = NegotiationState.OFFER_SET

    async def post_offer(self, url: str, sdp: str) -> str:
        """POST the offer and return the answer SDP text."""

        self._state = NegotiationState.ANSWER_REQUESTED
        headers = {"Content-Type": SDP_CONTENT_TYPE, "Accept": SDP_CONTENT_TYPE}
        token = (self.bearer_token or "").strip()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        timeout = aiohttp.ClientTimeout(total=self.http_timeout_s)
        target = url.rstrip("/")

        try:
            async with self._session_factory(timeout=timeout) as http:
                async with http.post(target, data=sdp.encode("utf-8"), headers=headers) as resp:
                    status = resp.status
                    reason = resp.reason
                    text = (await resp.read()).decode("utf-8", errors="replace")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            msg = str(exc) or exc.__class__.__name__
            raise self._fail(ProtocolViolation(f"WHEP POST failed: {msg}"), exc)

        if not 200 <= status < 300:
            detail = f"HTTP {status}: {reason}"
            if text:
                detail += f"\nServer response: {text}"
            raise self._fail(ProtocolViolation(detail))
        if not text.strip():
            raise self._fail(ProtocolViolation("empty response body"))
        if SDP_VERSION_MARKER not in text:
            excerpt = text[:BODY_EXCERPT_CHARS]
            raise self._fail(ProtocolViolation(f"response is not SDP (first {BODY_EXCERPT_CHARS} chars): {excerpt}"))
        return text

    async def apply_answer(self, sdp: str) -> None:
        pc = self._require_peer()
        if self._session.remote_description is not None:
            raise RuntimeError("answer already applied for this session")
        answer = RTCSessionDescription(sdp=sdp, type="answer")
        try:
            await pc.setRemoteDescription(answer)
        except Exception as exc:
            raise self._fail(TransportFailure(f"SetRemoteDescription error: {exc}"), exc)
        self._session.remote_description = sdp
        self._state = NegotiationState.ANSWER_APPLIED

    # --- Track delivery --------------------------------------------------------------
    def _on_stream_track(self, track: Any) -> None:
        if getattr(track, "kind", None) != "video":
            return
        self._spawn(self._pump_frames(track), name="whep-video-pump")

    async def _pump_frames(self, track: Any) -> None:
        while True:
            try:
                frame = await track.recv()
            except MediaStreamError:
                logger.info("video track ended")
                return
            self._frames_received += 1
            sink = self.sink
            if sink is None:
                continue
            try:
                sink.on_frame(frame)
            except Exception:
                logger.debug("display sink on_frame failed", exc_info=True)

    # --- Teardown --------------------------------------------------------------------
    async def close(self) -> None:
        """Stop tracks, then close the peer. Never raises; safe to repeat."""

        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        stream = self._stream
        self._stream = None
        if stream is not None:
            for track in stream.get_tracks():
                try:
                    track.stop()
                except Exception:
                    logger.debug("track stop failed", exc_info=True)
            stream.clear()

        pc = self._pc
        self._pc = None
        if pc is not None:
            try:
                await pc.close()
            except Exception:
                logger.debug("peer connection close failed", exc_info=True)
            logger.info("WHEP session closed")

    # --- Helpers ---------------------------------------------------------------------
    def _require_peer(self) -> Any:
        if self._pc is None:
            raise self._fail(TransportFailure("peer connection not created"))
        return self._pc

    def _fail(self, error: RemoteError, cause: Optional[BaseException] = None) -> RemoteError:
        self._state = NegotiationState.FAILED
        self._last_error = error
        if cause is not None:
            error.__cause__ = cause
        return error

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
