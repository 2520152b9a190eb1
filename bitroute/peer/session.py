"""
Peer Session - Handshake State Machine

States:
```
idle -> signaling_connected -> offer_sent (sender)    -> answer_received -> channel_open -> closed
                            -> awaiting_offer (receiver) -> answer_sent  -> channel_open -> closed
```

Sender path:
1. create{roomId}, wait for room_created
2. Build the peer connection, generate a key pair, open the data channel
3. Send one offer carrying the full SDP and the sender's public key
4. Apply the answer (which carries the receiver's public key)

Receiver path:
1. join{roomId}, wait for room_joined, build the peer connection
2. On offer: keep the sender's key, generate our own, answer with it
3. Wait for the data channel to open

The session is usable (channel_open) only once the local description has
been exchanged, the peer's public key is known and the channel is open.
"""

import asyncio
import logging
from enum import Enum
from typing import Optional, Callable, Dict, List, Any

from ..crypto import KeyPair, generate_key_pair, import_public_key
from ..errors import (
    BitRouteError, SignalingUnavailable, HandshakeRejected, ChannelNotOpen,
)
from ..signaling import SignalingClient, SignalingMessage, SignalingMessageType
from .transport import DataChannel, PeerConnection, Frame

logger = logging.getLogger(__name__)

DATA_CHANNEL_LABEL = 'fileTransfer'


class Role(Enum):
    SENDER = "sender"
    RECEIVER = "receiver"


class SessionState(Enum):
    IDLE = "idle"
    SIGNALING_CONNECTED = "signaling_connected"
    OFFER_SENT = "offer_sent"
    AWAITING_OFFER = "awaiting_offer"
    ANSWER_RECEIVED = "answer_received"
    ANSWER_SENT = "answer_sent"
    CHANNEL_OPEN = "channel_open"
    CLOSED = "closed"


PeerFactory = Callable[[], PeerConnection]


class PeerSession:
    """
    Owns one peer connection, its data channel, and the tables of
    in-flight transfers in both directions.
    """

    def __init__(self, signaling: SignalingClient, peer_factory: PeerFactory,
                 room_timeout: float = 30.0):
        self.signaling = signaling
        self.peer_factory = peer_factory
        self.room_timeout = room_timeout

        self.state = SessionState.IDLE
        self.role: Optional[Role] = None
        self.room_id: Optional[str] = None

        self.key_pair: Optional[KeyPair] = None
        self.peer_public_key = None

        # transfer-id -> transfer state, owned by this session
        self.outbound: Dict[str, Any] = {}
        self.inbound: Dict[str, Any] = {}

        self._pc: Optional[PeerConnection] = None
        self._channel: Optional[DataChannel] = None
        self._channel_open = False
        self._local_description_done = False
        self._remote_description_done = False
        self._pending_candidates: List[Dict[str, Any]] = []

        self._room_event = asyncio.Event()
        self._ready_event = asyncio.Event()
        self._error: Optional[BitRouteError] = None

        self._message_handlers: List[Callable[[Frame], None]] = []
        self._close_handlers: List[Callable[[], None]] = []
        self._background_tasks = set()

        self.signaling.on_message(self._on_signaling_message)
        self.signaling.on_close(self._on_signaling_closed)

    # === Properties ===

    @property
    def is_ready(self) -> bool:
        return self.state == SessionState.CHANNEL_OPEN

    @property
    def is_closed(self) -> bool:
        return self.state == SessionState.CLOSED

    @property
    def buffered_amount(self) -> int:
        if self._channel is None:
            return 0
        return self._channel.buffered_amount

    # === Room operations ===

    async def create_room(self, room_id: str):
        """
        Register a room on the relay as its sender.

        Raises:
            SignalingUnavailable: Relay unreachable or no reply in time
            HandshakeRejected: Relay refused the room
        """
        self.role = Role.SENDER
        self.room_id = room_id
        await self._open_room(SignalingMessage.create(room_id))
        logger.info(f"Room {room_id} created, waiting for a peer")

    async def join_room(self, room_id: str):
        """
        Join an existing room as its receiver.

        Raises:
            SignalingUnavailable: Relay unreachable or no reply in time
            HandshakeRejected: Relay refused the join
        """
        self.role = Role.RECEIVER
        self.room_id = room_id
        await self._open_room(SignalingMessage.join(room_id))
        logger.info(f"Joined room {room_id}, waiting for offer")

    async def _open_room(self, request: SignalingMessage):
        try:
            await asyncio.wait_for(self._request_room(request), timeout=self.room_timeout)
        except asyncio.TimeoutError:
            error = SignalingUnavailable(
                f"No response from signaling server within {self.room_timeout:.0f}s"
            )
            await self._fail(error)
            raise error from None
        except BitRouteError as e:
            await self._fail(e)
            raise

        if self._error is not None:
            raise self._error

    async def _request_room(self, request: SignalingMessage):
        await self.signaling.connect()
        self.state = SessionState.SIGNALING_CONNECTED
        await self.signaling.send(request)
        await self._room_event.wait()

    async def wait_ready(self, timeout: Optional[float] = None):
        """
        Wait until the channel is open and the peer's key is known.

        Raises:
            ChannelNotOpen: If timeout elapses first
            BitRouteError: The failure that aborted the handshake
        """
        if self._error is not None:
            raise self._error
        try:
            await asyncio.wait_for(self._ready_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise ChannelNotOpen(f"No peer connected within {timeout:g}s") from None
        if self._error is not None:
            raise self._error
        if self.state != SessionState.CHANNEL_OPEN:
            raise ChannelNotOpen(f"Session is {self.state.value}")

    # === Channel I/O ===

    def send(self, data: Frame):
        """
        Send one frame over the data channel.

        Raises:
            ChannelNotOpen: If the handshake has not completed
        """
        if self.state != SessionState.CHANNEL_OPEN or self._channel is None:
            raise ChannelNotOpen(f"Cannot send in state {self.state.value}")
        self._channel.send(data)

    def on_message(self, handler: Callable[[Frame], None]):
        """Register a handler for frames arriving on the data channel."""
        self._message_handlers.append(handler)

    def on_close(self, handler: Callable[[], None]):
        """Register a handler called once when the session closes."""
        self._close_handlers.append(handler)

    async def close(self):
        """Tear down the channel, the peer connection and signaling."""
        if self.state == SessionState.CLOSED and self._pc is None:
            return

        self._mark_closed(ChannelNotOpen("Session closed"))

        channel, self._channel = self._channel, None
        if channel is not None:
            channel.close()

        pc, self._pc = self._pc, None
        if pc is not None:
            await pc.close()

        await self.signaling.close()
        logger.info("Peer session closed")

    # === Signaling handlers ===

    async def _on_signaling_message(self, message: SignalingMessage):
        handlers = {
            SignalingMessageType.ROOM_CREATED: self._handle_room_created,
            SignalingMessageType.ROOM_JOINED: self._handle_room_joined,
            SignalingMessageType.OFFER: self._handle_offer,
            SignalingMessageType.ANSWER: self._handle_answer,
            SignalingMessageType.ICE_CANDIDATE: self._handle_ice_candidate,
            SignalingMessageType.ERROR: self._handle_error,
        }
        handler = handlers.get(message.type)
        if handler is None:
            logger.debug(f"Ignoring signaling message {message.type.value}")
            return

        try:
            await handler(message)
        except BitRouteError as e:
            await self._fail(e)
        except Exception as e:
            logger.error(f"Handshake failed on {message.type.value}: {e}")
            await self._fail(HandshakeRejected(str(e)))

    async def _handle_room_created(self, message: SignalingMessage):
        if self.role != Role.SENDER:
            return
        self._room_event.set()

        self._pc = self._build_peer_connection()
        self.key_pair = await self._generate_key_pair()

        self._attach_channel(self._pc.create_data_channel(DATA_CHANNEL_LABEL))

        sdp = await self._pc.create_offer()
        self._local_description_done = True

        await self.signaling.send(SignalingMessage.offer(
            self.room_id, sdp, self.key_pair.export_public_key()
        ))
        self.state = SessionState.OFFER_SENT
        logger.info("Offer sent")

    async def _handle_room_joined(self, message: SignalingMessage):
        if self.role != Role.RECEIVER:
            return
        if self._pc is None:
            self._pc = self._build_peer_connection()
        self.state = SessionState.AWAITING_OFFER
        self._room_event.set()

    async def _handle_offer(self, message: SignalingMessage):
        if self.role != Role.RECEIVER:
            logger.warning("Ignoring offer received as sender")
            return
        if not message.sdp or message.public_key is None:
            raise HandshakeRejected("Offer is missing its SDP or public key")

        self.peer_public_key = import_public_key(message.public_key)
        self.key_pair = await self._generate_key_pair()

        if self._pc is None:
            self._pc = self._build_peer_connection()

        sdp = await self._pc.accept_offer(message.sdp)
        self._remote_description_done = True
        self._local_description_done = True
        await self._flush_candidates()

        self.state = SessionState.ANSWER_SENT
        await self.signaling.send(SignalingMessage.answer(
            self.room_id, sdp, self.key_pair.export_public_key()
        ))
        logger.info("Answer sent")
        self._check_ready()

    async def _handle_answer(self, message: SignalingMessage):
        if self.role != Role.SENDER or self._pc is None:
            logger.warning("Ignoring unexpected answer")
            return
        if not message.sdp or message.public_key is None:
            raise HandshakeRejected("Answer is missing its SDP or public key")

        self.peer_public_key = import_public_key(message.public_key)
        await self._pc.accept_answer(message.sdp)
        self._remote_description_done = True
        await self._flush_candidates()

        self.state = SessionState.ANSWER_RECEIVED
        logger.info("Answer received")
        self._check_ready()

    async def _handle_ice_candidate(self, message: SignalingMessage):
        if message.candidate is None:
            return
        if self._pc is None or not self._remote_description_done:
            self._pending_candidates.append(message.candidate)
            return
        await self._pc.add_ice_candidate(message.candidate)

    async def _handle_error(self, message: SignalingMessage):
        reason = message.message or "Signaling server reported an error"
        logger.error(f"Handshake rejected: {reason}")
        raise HandshakeRejected(reason)

    def _on_signaling_closed(self):
        if self.is_ready or self.is_closed:
            logger.debug("Signaling connection ended")
            return
        task = asyncio.ensure_future(
            self._fail(SignalingUnavailable("Signaling connection lost during handshake"))
        )
        self._background_tasks.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Future):
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Session cleanup failed: {error!r}")

    # === Internals ===

    def _build_peer_connection(self) -> PeerConnection:
        pc = self.peer_factory()
        pc.on_datachannel(self._attach_channel)
        return pc

    async def _generate_key_pair(self) -> KeyPair:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, generate_key_pair)

    async def _flush_candidates(self):
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            await self._pc.add_ice_candidate(candidate)

    def _attach_channel(self, channel: DataChannel):
        if self._channel is not None and self._channel is not channel:
            logger.warning("Ignoring extra data channel")
            return

        self._channel = channel
        channel.on_open(self._on_channel_open)
        channel.on_message(self._on_channel_message)
        channel.on_close(self._on_channel_close)

        if channel.ready_state == 'open':
            self._on_channel_open()

    def _on_channel_open(self):
        if self._channel_open:
            return
        self._channel_open = True
        logger.debug("Data channel open")
        self._check_ready()

    def _check_ready(self):
        if self.state not in (SessionState.ANSWER_RECEIVED, SessionState.ANSWER_SENT):
            return
        if not (self._channel_open and self._local_description_done
                and self.peer_public_key is not None):
            return

        self.state = SessionState.CHANNEL_OPEN
        self._ready_event.set()
        logger.info(f"Peer connected ({self.role.value})")

    def _on_channel_message(self, data: Frame):
        for handler in list(self._message_handlers):
            try:
                handler(data)
            except Exception:
                logger.exception("Data channel message handler failed")

    def _on_channel_close(self):
        if self.state == SessionState.CLOSED:
            return
        logger.info("Data channel closed by peer")
        self._mark_closed(ChannelNotOpen("Data channel closed"))

    def _mark_closed(self, error: BitRouteError):
        if self.state == SessionState.CLOSED:
            return
        if not self._ready_event.is_set() and self._error is None:
            self._error = error
        self.state = SessionState.CLOSED
        self._room_event.set()
        self._ready_event.set()
        for handler in list(self._close_handlers):
            handler()

    async def _fail(self, error: BitRouteError):
        """Abort the handshake with error and release all waiters."""
        if self._error is None:
            self._error = error
        await self.close()
