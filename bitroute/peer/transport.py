"""
Transport Interface

The handshake and transfer logic only talk to these two classes. The
production implementation wraps aiortc (see rtc.py); tests use an
in-memory loopback.
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable, List, Union, Dict, Any

logger = logging.getLogger(__name__)

Frame = Union[str, bytes]


class DataChannel(ABC):
    """
    An ordered, reliable, message-oriented channel to the peer.

    Text frames carry control messages, binary frames carry chunk payloads.
    """

    def __init__(self):
        self._open_handlers: List[Callable[[], None]] = []
        self._message_handlers: List[Callable[[Frame], None]] = []
        self._close_handlers: List[Callable[[], None]] = []

    @property
    @abstractmethod
    def ready_state(self) -> str:
        """'connecting', 'open', 'closing' or 'closed'."""

    @property
    @abstractmethod
    def buffered_amount(self) -> int:
        """Bytes queued locally but not yet handed to the network."""

    @abstractmethod
    def send(self, data: Frame):
        """Queue one frame for delivery."""

    @abstractmethod
    def close(self):
        """Close the channel."""

    def on_open(self, handler: Callable[[], None]):
        self._open_handlers.append(handler)

    def on_message(self, handler: Callable[[Frame], None]):
        self._message_handlers.append(handler)

    def on_close(self, handler: Callable[[], None]):
        self._close_handlers.append(handler)

    def _emit_open(self):
        for handler in list(self._open_handlers):
            handler()

    def _emit_message(self, data: Frame):
        for handler in list(self._message_handlers):
            handler(data)

    def _emit_close(self):
        for handler in list(self._close_handlers):
            handler()


class PeerConnection(ABC):
    """
    One peer connection, able to carry a data channel.

    create_offer() and accept_offer() return SDP only after local candidate
    gathering is complete, so candidates never need to be trickled.
    """

    def __init__(self):
        self._datachannel_handlers: List[Callable[[DataChannel], None]] = []

    @abstractmethod
    def create_data_channel(self, label: str) -> DataChannel:
        """Create an ordered data channel (offering side)."""

    @abstractmethod
    async def create_offer(self) -> str:
        """Create and apply a local offer, returning its SDP."""

    @abstractmethod
    async def accept_offer(self, sdp: str) -> str:
        """Apply a remote offer, returning the local answer SDP."""

    @abstractmethod
    async def accept_answer(self, sdp: str):
        """Apply the remote answer."""

    @abstractmethod
    async def add_ice_candidate(self, candidate: Dict[str, Any]):
        """Apply a remote ICE candidate."""

    @abstractmethod
    async def close(self):
        """Tear the connection down."""

    def on_datachannel(self, handler: Callable[[DataChannel], None]):
        """Register a handler for channels opened by the remote side."""
        self._datachannel_handlers.append(handler)

    def _emit_datachannel(self, channel: DataChannel):
        for handler in list(self._datachannel_handlers):
            handler(channel)
