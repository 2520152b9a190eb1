"""
Error Taxonomy

Session-establishment errors (SignalingUnavailable, HandshakeRejected)
propagate to whoever is creating or joining a room. Per-chunk and per-file
errors (EncryptionFailed, DecryptionFailed, PerFileTransferError) are
reported through progress events and never stop the transfer queue.
"""


class BitRouteError(Exception):
    """Base class for all BitRoute errors."""


class SignalingUnavailable(BitRouteError):
    """All signaling endpoints and retries are exhausted, or the relay dropped."""


class HandshakeRejected(BitRouteError):
    """The relay or the peer rejected the handshake."""


class ChannelNotOpen(BitRouteError):
    """A send was attempted before the peer channel was ready."""


class EncryptionFailed(BitRouteError):
    """A chunk could not be encrypted."""


class DecryptionFailed(BitRouteError):
    """A chunk payload was malformed, truncated or encrypted for another key."""


class PerFileTransferError(BitRouteError):
    """A file failed mid-transfer; the queue moves on to the next one."""

    def __init__(self, transfer_id: str, message: str):
        super().__init__(message)
        self.transfer_id = transfer_id
