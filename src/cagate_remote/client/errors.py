from __future__ import annotations


class RemoteError(RuntimeError):
    """Base class for machine client failures."""


class ConnectionFailure(RemoteError):
    """Control channel handshake, send or receive failed."""


class ProtocolViolation(RemoteError):
    """Negotiation endpoint answered with something other than an SDP answer."""


class TransportFailure(RemoteError):
    """The media transport rejected an offer or a session description."""
