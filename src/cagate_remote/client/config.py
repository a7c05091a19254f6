"""Environment-derived configuration for the machine client."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Tuple

from cagate_remote.protocol import CoordScale
from cagate_remote.utils.env import env_bool, env_float, env_int, env_list, env_ms, env_str

logger = logging.getLogger(__name__)

DEFAULT_CONTROL_URL = "ws://ghost-wheel.ru:50141/j-rpc/play"
DEFAULT_WHEP_URL = "http://ghost-wheel.ru:50157/wrtc-main/whep"
DEFAULT_PREFERRED_CODEC = "video/H264"

MIN_HTTP_TIMEOUT_S = 1.0


def _coord_scale(raw: int) -> CoordScale:
    try:
        return CoordScale(int(raw))
    except ValueError:
        logger.warning(
            "unsupported coordinate scale %s; falling back to %d",
            raw,
            int(CoordScale.SCALE_10000),
        )
        return CoordScale.SCALE_10000


@dataclass(frozen=True)
class ClientConfig:
    """Knobs for the control channel, touch mapping and video negotiation."""

    # Control channel
    control_url: str = DEFAULT_CONTROL_URL
    open_timeout_s: float = 10.0
    button_hold_s: float = 0.25

    # Video (WHEP)
    whep_url: str = DEFAULT_WHEP_URL
    bearer_token: str = ""
    http_timeout_s: float = 6.0
    preferred_codec: Optional[str] = DEFAULT_PREFERRED_CODEC
    ice_servers: Tuple[str, ...] = field(default_factory=tuple)

    # Touch mapping
    coord_scale: CoordScale = CoordScale.SCALE_10000
    invert_y: bool = False
    min_send_interval_s: float = 0.02
    min_coord_delta: int = 8

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data.get("bearer_token"):
            data["bearer_token"] = "***"
        data["coord_scale"] = int(self.coord_scale)
        return data

    @staticmethod
    def from_env() -> "ClientConfig":
        control_url = env_str("CAGATE_CONTROL_URL", DEFAULT_CONTROL_URL) or DEFAULT_CONTROL_URL
        open_timeout_s = max(0.1, float(env_float("CAGATE_OPEN_TIMEOUT_S", 10.0)))
        button_hold_s = env_ms("CAGATE_BUTTON_HOLD_MS", 250.0)

        whep_url = env_str("CAGATE_WHEP_URL", DEFAULT_WHEP_URL) or DEFAULT_WHEP_URL
        bearer_token = (env_str("CAGATE_BEARER_TOKEN", "") or "").strip()
        http_timeout_s = max(MIN_HTTP_TIMEOUT_S, float(env_float("CAGATE_HTTP_TIMEOUT_S", 6.0)))
        # An empty value switches codec ordering off.
        codec = env_str("CAGATE_PREFERRED_CODEC", DEFAULT_PREFERRED_CODEC)
        preferred_codec = codec.strip() if codec and codec.strip() else None
        ice_servers = env_list("CAGATE_ICE_SERVERS")

        coord_scale = _coord_scale(env_int("CAGATE_COORD_SCALE", int(CoordScale.SCALE_10000)))
        invert_y = env_bool("CAGATE_INVERT_Y", False)
        min_send_interval_s = env_ms("CAGATE_MIN_SEND_INTERVAL_MS", 20.0)
        min_coord_delta = max(0, int(env_int("CAGATE_MIN_COORD_DELTA", 8)))

        return ClientConfig(
            control_url=control_url,
            open_timeout_s=open_timeout_s,
            button_hold_s=button_hold_s,
            whep_url=whep_url,
            bearer_token=bearer_token,
            http_timeout_s=http_timeout_s,
            preferred_codec=preferred_codec,
            ice_servers=ice_servers,
            coord_scale=coord_scale,
            invert_y=invert_y,
            min_send_interval_s=min_send_interval_s,
            min_coord_delta=min_coord_delta,
        )
