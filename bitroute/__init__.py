"""
BitRoute - Encrypted Peer-to-Peer File Transfer

Two hosts meet through a signaling relay, open a direct data channel and
stream files in encrypted chunks. The relay never sees file contents.
"""

from .config import Config, load_config
from .errors import (
    BitRouteError, SignalingUnavailable, HandshakeRejected, ChannelNotOpen,
    EncryptionFailed, DecryptionFailed, PerFileTransferError,
)
from .node import BitRouteNode, Room

__version__ = '1.0.0'

__all__ = [
    'Config',
    'load_config',
    'BitRouteError',
    'SignalingUnavailable',
    'HandshakeRejected',
    'ChannelNotOpen',
    'EncryptionFailed',
    'DecryptionFailed',
    'PerFileTransferError',
    'BitRouteNode',
    'Room',
]
