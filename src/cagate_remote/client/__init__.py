"""Client components: control channel, touch input and video receiver."""

from __future__ import annotations

from importlib import import_module
from typing import Any

__all__ = ["ClientConfig", "ControlChannel", "RemoteSession", "TouchPad", "WhepReceiver"]


def _lazy_attr(name: str) -> Any:
    module_map = {
        "ClientConfig": ("cagate_remote.client.config", "ClientConfig"),
        "ControlChannel": ("cagate_remote.client.control.control_channel_client", "ControlChannel"),
        "RemoteSession": ("cagate_remote.client.remote_session", "RemoteSession"),
        "TouchPad": ("cagate_remote.client.input.touch_pad", "TouchPad"),
        "WhepReceiver": ("cagate_remote.client.webrtc.whep_receiver", "WhepReceiver"),
    }
    if name not in module_map:
        raise AttributeError(name)
    module_path, attr = module_map[name]
    module = import_module(module_path)
    return getattr(module, attr)


def __getattr__(name: str) -> Any:  # pragma: no cover - trivial delegation
    return _lazy_attr(name)
