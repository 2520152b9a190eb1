"""
Signaling Module - Relay Protocol and Client

Bootstraps a peer connection through an interchangeable set of relays.
"""

from .protocol import SignalingMessage, SignalingMessageType
from .client import SignalingClient, websocket_connector

__all__ = [
    'SignalingMessage',
    'SignalingMessageType',
    'SignalingClient',
    'websocket_connector',
]
