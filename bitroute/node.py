"""
BitRoute Node - Main Controller

This is the entry point callers use. It wires together:
- SignalingClient for the room handshake
- PeerSession for the direct channel and key exchange
- TransferEngine for outgoing files
- ReceiveAssembler for incoming files

Caller-facing operations:
- create_room() -> shareable link (sender)
- join_room(room_or_link, on_file_received) (receiver)
- add_files(paths, on_progress)
- cancel_transfer(id)
- disconnect()
"""

import asyncio
import logging
import secrets
import string
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, List, Iterable, Union, Callable

from .config import Config
from .errors import ChannelNotOpen
from .peer import PeerSession, Role
from .peer.rtc import rtc_peer_factory
from .signaling import SignalingClient
from .signaling.client import Connector
from .transfer import TransferEngine, ReceiveAssembler
from .transfer.progress import ProgressCallback
from .transfer.receiver import FileCallback

logger = logging.getLogger(__name__)

ROOM_ID_LENGTH = 8
ROOM_ID_ALPHABET = string.ascii_lowercase + string.digits
ROOM_PATH = '/transfer/'


def generate_room_id(length: int = ROOM_ID_LENGTH) -> str:
    """Random lowercase base-36 room id."""
    return ''.join(secrets.choice(ROOM_ID_ALPHABET) for _ in range(length))


def room_link(base_url: str, room_id: str) -> str:
    """Shareable link for a room."""
    return f"{base_url.rstrip('/')}{ROOM_PATH}{room_id}"


def parse_room_id(value: str) -> str:
    """
    Accept either a bare room id or a shareable link.

    Raises:
        ValueError: If no room id can be extracted
    """
    value = value.strip()
    if ROOM_PATH in value:
        value = value.rsplit(ROOM_PATH, 1)[1]
    value = value.split('?', 1)[0].split('#', 1)[0].strip('/')
    if not value or '/' in value:
        raise ValueError(f"Not a room id or link: {value!r}")
    return value


@dataclass
class Room:
    """The room this node created or joined."""
    id: str
    role: Role
    link: str


class BitRouteNode:
    """
    One end of a BitRoute transfer.

    A node holds at most one room and one peer session at a time.
    """

    def __init__(self, config: Config = None, connector: Optional[Connector] = None,
                 peer_factory: Optional[Callable] = None):
        """
        Initialize a node.

        Args:
            config: Configuration (uses defaults if not provided)
            connector: Signaling connector override (default: WebSocket)
            peer_factory: Peer connection factory override (default: aiortc)
        """
        self.config = config or Config()
        self._connector = connector
        self._peer_factory = peer_factory or rtc_peer_factory(self.config.ice_servers)

        self.room: Optional[Room] = None
        self.session: Optional[PeerSession] = None
        self.engine: Optional[TransferEngine] = None
        self.assembler: Optional[ReceiveAssembler] = None

        self._closed_event = asyncio.Event()

    @property
    def is_connected(self) -> bool:
        return self.session is not None and self.session.is_ready

    # === Room operations ===

    async def create_room(self, on_file_received: Optional[FileCallback] = None,
                          on_progress: Optional[ProgressCallback] = None) -> str:
        """
        Create a room as the sender.

        Returns:
            Shareable link for the receiver

        Raises:
            SignalingUnavailable: No relay reachable / no reply in time
            HandshakeRejected: Relay refused the room
        """
        room_id = generate_room_id()
        session = self._start_session(on_file_received, on_progress)

        try:
            await session.create_room(room_id)
        except Exception:
            await self._teardown()
            raise

        self.room = Room(room_id, Role.SENDER, room_link(self.config.share_base_url, room_id))
        logger.info(f"Share this link: {self.room.link}")
        return self.room.link

    async def join_room(self, room: str, on_file_received: FileCallback,
                        on_progress: Optional[ProgressCallback] = None):
        """
        Join a room as the receiver.

        Args:
            room: Room id or shareable link
            on_file_received: Called with each completed ReceivedFile
            on_progress: Optional receive-side progress callback
        """
        room_id = parse_room_id(room)
        session = self._start_session(on_file_received, on_progress)

        try:
            await session.join_room(room_id)
        except Exception:
            await self._teardown()
            raise

        self.room = Room(room_id, Role.RECEIVER, room_link(self.config.share_base_url, room_id))

    async def wait_for_peer(self, timeout: Optional[float] = None):
        """Wait until the direct channel is open and keys are exchanged."""
        if self.session is None:
            raise ChannelNotOpen("No room created or joined")
        await self.session.wait_ready(timeout)

    async def wait_closed(self):
        """Wait until the peer session ends."""
        await self._closed_event.wait()

    # === Transfers ===

    def add_files(self, paths: Iterable[Union[str, Path]],
                  on_progress: Optional[ProgressCallback] = None) -> List[str]:
        """
        Queue files for sending to the peer.

        Returns:
            Transfer ids

        Raises:
            ChannelNotOpen: If no room was created or joined
        """
        if self.engine is None or self.session is None or self.session.is_closed:
            raise ChannelNotOpen("No active peer session")
        return self.engine.add_files(paths, on_progress)

    def cancel_transfer(self, transfer_id: str) -> bool:
        """Cancel an outgoing (or incoming) transfer."""
        if self.engine is not None and self.engine.cancel_transfer(transfer_id):
            return True
        if self.assembler is not None and self.assembler.cancel_transfer(transfer_id):
            return True
        return False

    async def disconnect(self):
        """Stop all transfers and close the session."""
        await self._teardown()
        logger.info("Disconnected")

    # === Internals ===

    def _start_session(self, on_file_received, on_progress) -> PeerSession:
        if self.session is not None:
            raise RuntimeError("This node already has a room; disconnect first")

        signaling = SignalingClient(
            urls=self.config.signaling_urls,
            connect_timeout=self.config.connect_timeout,
            max_retries=self.config.max_retries,
            retry_delay=self.config.retry_delay,
            connector=self._connector,
        )
        session = PeerSession(
            signaling,
            self._peer_factory,
            room_timeout=self.config.room_timeout,
        )
        self.engine = TransferEngine(
            session,
            high_water_mark=self.config.high_water_mark,
            buffer_poll_interval=self.config.buffer_poll_interval,
            speed_sample_interval=self.config.speed_sample_interval,
            error_backoff=self.config.error_backoff,
        )
        self.assembler = ReceiveAssembler(session, on_file_received, on_progress)

        self._closed_event.clear()
        session.on_close(self._closed_event.set)
        self.session = session
        return session

    async def _teardown(self):
        engine, self.engine = self.engine, None
        assembler, self.assembler = self.assembler, None
        session, self.session = self.session, None
        self.room = None

        if engine is not None:
            await engine.stop()
        if assembler is not None:
            assembler.reset()
        if session is not None:
            await session.close()
        self._closed_event.set()
