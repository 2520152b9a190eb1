"""
Transfer Module - Chunked Encrypted File Transfer

Handles the data channel protocol: sending queued files chunk by chunk
and reassembling them on the other side.
"""

from .protocol import ControlMessage, ControlMessageType
from .progress import (
    TransferStatus, TransferProgress, SpeedEstimator, CancellationToken,
    format_size,
)
from .sender import TransferEngine, OutboundTransfer, chunk_size_for
from .receiver import (
    ReceiveAssembler, InboundTransfer, ReceivedFile, guess_mime_type,
)

__all__ = [
    'ControlMessage',
    'ControlMessageType',
    'TransferStatus',
    'TransferProgress',
    'SpeedEstimator',
    'CancellationToken',
    'format_size',
    'TransferEngine',
    'OutboundTransfer',
    'chunk_size_for',
    'ReceiveAssembler',
    'InboundTransfer',
    'ReceivedFile',
    'guess_mime_type',
]
