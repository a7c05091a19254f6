"""
cagate-remote: remote play client for networked arcade machines.

Sends button and touch input over a JSON-RPC websocket and receives the
machine's video over WebRTC (WHEP).
"""

__version__ = "0.1.0"
