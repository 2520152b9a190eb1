"""
Peer Module - Peer Connection Handshake and Transport

Drives the offer/answer exchange over signaling and owns the data channel.
"""

from .transport import DataChannel, PeerConnection
from .session import PeerSession, SessionState, Role, DATA_CHANNEL_LABEL

__all__ = [
    'DataChannel',
    'PeerConnection',
    'PeerSession',
    'SessionState',
    'Role',
    'DATA_CHANNEL_LABEL',
]
