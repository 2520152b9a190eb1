"""
Transfer Engine - Chunked Send Pipeline

Design Decision: Chunk Size
===========================

Options Considered:
| Size    | Pros                          | Cons                           |
|---------|-------------------------------|--------------------------------|
| 64KB    | Fine-grained progress         | Header + RSA wrap per 64KB     |
| 256KB   | Good balance                  | -                              |
| 1MB     | Lower overhead                | Coarse progress on small files |
| 2MB     | Lowest overhead               | Large buffered bursts          |

Decision: Tiered by file size
| File size  | Chunk size |
|------------|------------|
| < 1 MiB    | 64 KiB     |
| < 10 MiB   | 256 KiB    |
| < 100 MiB  | 1 MiB      |
| >= 100 MiB | 2 MiB      |

Every chunk pays for one JSON header and one RSA key wrap, so larger
files use larger chunks to amortize that cost.

Queueing: one worker, one file at a time. Chunks of two files are never
interleaved on the channel, which keeps receive-side assembly trivial.

Flow control: before each chunk, wait while the channel's buffered bytes
exceed the high-water mark. No timeout; backpressure alone sets the pace.
"""

import asyncio
import logging
import secrets
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, List, Deque, Callable, Iterable, Union

import aiofiles

from ..crypto import encrypt
from ..errors import (
    ChannelNotOpen, EncryptionFailed, PerFileTransferError,
)
from .progress import (
    TransferStatus, TransferProgress, ProgressCallback, SpeedEstimator,
    CancellationToken, percent_of,
)
from .protocol import ControlMessage, ControlMessageType, parse_control

logger = logging.getLogger(__name__)

KIB = 1024
MIB = 1024 * KIB

# (upper bound exclusive, chunk size)
CHUNK_TIERS = [
    (1 * MIB, 64 * KIB),
    (10 * MIB, 256 * KIB),
    (100 * MIB, 1 * MIB),
]
MAX_CHUNK_SIZE = 2 * MIB

DEFAULT_HIGH_WATER_MARK = 8 * MIB


def chunk_size_for(file_size: int) -> int:
    """Chunk size for a file of the given size."""
    for limit, chunk_size in CHUNK_TIERS:
        if file_size < limit:
            return chunk_size
    return MAX_CHUNK_SIZE


def chunk_count(file_size: int, chunk_size: int) -> int:
    """Number of chunks needed for a file of given size."""
    return (file_size + chunk_size - 1) // chunk_size


def new_transfer_id() -> str:
    return secrets.token_hex(8)


@dataclass
class QueuedFile:
    """A file waiting for the worker."""
    id: str
    path: Path
    name: str
    size: int
    on_progress: Optional[ProgressCallback] = None


@dataclass
class OutboundTransfer:
    """State of the file currently being sent."""
    id: str
    path: Path
    name: str
    size: int
    chunk_size: int
    on_progress: Optional[ProgressCallback] = None
    offset: int = 0
    status: TransferStatus = TransferStatus.PREPARING
    speed: SpeedEstimator = field(default_factory=SpeedEstimator)
    token: CancellationToken = field(default_factory=CancellationToken)
    peer_progress: int = 0  # last ack from the receiver, telemetry only

    @property
    def progress_percent(self) -> int:
        return percent_of(self.offset, self.size)

    @property
    def bytes_remaining(self) -> int:
        return self.size - self.offset


class TransferEngine:
    """
    Owns the outbound file queue and streams encrypted chunks to the peer.

    Per-file failures are reported through progress events and never stop
    the queue.
    """

    def __init__(self, session, high_water_mark: int = DEFAULT_HIGH_WATER_MARK,
                 buffer_poll_interval: float = 0.05,
                 speed_sample_interval: float = 0.5,
                 error_backoff: float = 1.0,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize the engine.

        Args:
            session: PeerSession (or compatible) carrying the data channel
            high_water_mark: Pause sending while more bytes than this are buffered
            buffer_poll_interval: Seconds between buffer re-checks while paused
            speed_sample_interval: Minimum seconds between speed samples
            error_backoff: Pause after a failed file before the next one
            clock: Monotonic time source
        """
        self.session = session
        self.high_water_mark = high_water_mark
        self.buffer_poll_interval = buffer_poll_interval
        self.speed_sample_interval = speed_sample_interval
        self.error_backoff = error_backoff
        self.clock = clock

        self._queue: Deque[QueuedFile] = deque()
        self._worker: Optional[asyncio.Task] = None
        self._used_ids = set()

        # Statistics
        self.files_sent = 0
        self.files_failed = 0
        self.bytes_sent = 0

        session.on_message(self.handle_message)

    @property
    def active(self):
        """transfer-id -> OutboundTransfer, owned by the session."""
        return self.session.outbound

    @property
    def queued_ids(self) -> List[str]:
        return [item.id for item in self._queue]

    @property
    def is_idle(self) -> bool:
        return not self._queue and not self.active

    # === Public API ===

    def add_files(self, paths: Iterable[Union[str, Path]],
                  on_progress: Optional[ProgressCallback] = None) -> List[str]:
        """
        Queue files for sending.

        A 'preparing' event is emitted for each file right away.

        Returns:
            Transfer ids, in queue order

        Raises:
            FileNotFoundError: If a path is not an existing file
        """
        items = []
        for raw_path in paths:
            path = Path(raw_path)
            if not path.is_file():
                raise FileNotFoundError(f"File not found: {path}")
            items.append(QueuedFile(
                id=self._allocate_id(),
                path=path,
                name=path.name,
                size=path.stat().st_size,
                on_progress=on_progress,
            ))

        for item in items:
            self._queue.append(item)
            logger.info(f"Queued {item.name} ({item.size:,} bytes) as {item.id}")
            self._notify(item.on_progress, TransferProgress(
                id=item.id,
                filename=item.name,
                size=item.size,
                progress=0,
                status=TransferStatus.PREPARING,
            ))

        self._ensure_worker()
        return [item.id for item in items]

    def cancel_transfer(self, transfer_id: str, notify_peer: bool = True) -> bool:
        """
        Cancel a queued or active transfer.

        Bytes already buffered by the channel cannot be recalled.

        Returns:
            True if the transfer was found
        """
        found = False

        for item in list(self._queue):
            if item.id == transfer_id:
                self._queue.remove(item)
                found = True

        transfer = self.active.pop(transfer_id, None)
        if transfer is not None:
            transfer.token.cancel()
            found = True

        if not found:
            return False

        logger.info(f"Cancelled transfer {transfer_id}")
        if notify_peer:
            try:
                self.session.send(ControlMessage.cancel(transfer_id).to_json())
            except ChannelNotOpen:
                logger.debug(f"Could not notify peer of cancel for {transfer_id}")
        return True

    async def stop(self):
        """Cancel everything and stop the worker."""
        self._queue.clear()
        for transfer in list(self.active.values()):
            transfer.token.cancel()
        self.active.clear()

        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

    async def join(self):
        """Wait until the queue is drained."""
        while self._worker is not None and not self._worker.done():
            await asyncio.wait({self._worker})

    # === Inbound control messages ===

    def handle_message(self, data):
        if not isinstance(data, str):
            return
        message = parse_control(data)
        if message is None:
            return

        if message.type == ControlMessageType.ACK:
            transfer = self.active.get(message.transfer_id)
            if transfer is not None:
                try:
                    transfer.peer_progress = int(message.headers.get('progress', 0))
                except (TypeError, ValueError):
                    logger.warning(f"Ignoring ack with bad progress for {message.transfer_id}")
                    return
                logger.debug(f"Peer acknowledged {transfer.peer_progress}% "
                             f"of {message.transfer_id}")
        elif message.type == ControlMessageType.CANCEL:
            if self.cancel_transfer(message.transfer_id, notify_peer=False):
                logger.info(f"Peer cancelled transfer {message.transfer_id}")

    # === Worker ===

    def _allocate_id(self) -> str:
        transfer_id = new_transfer_id()
        while transfer_id in self._used_ids:
            transfer_id = new_transfer_id()
        self._used_ids.add(transfer_id)
        return transfer_id

    def _ensure_worker(self):
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    async def _run(self):
        """Drain the queue one file at a time."""
        while self._queue:
            item = self._queue.popleft()
            transfer = OutboundTransfer(
                id=item.id,
                path=item.path,
                name=item.name,
                size=item.size,
                chunk_size=chunk_size_for(item.size),
                on_progress=item.on_progress,
                speed=SpeedEstimator(sample_interval=self.speed_sample_interval),
            )
            self.active[transfer.id] = transfer

            try:
                await self._send_file(transfer)
            except PerFileTransferError as e:
                logger.error(f"Transfer of {transfer.name} failed: {e}")
                await self._fail(transfer, str(e))
            except Exception as e:
                logger.exception(f"Unexpected error sending {transfer.name}")
                await self._fail(transfer, str(e) or type(e).__name__)
            finally:
                if self.active.get(transfer.id) is transfer:
                    del self.active[transfer.id]

    async def _send_file(self, transfer: OutboundTransfer):
        try:
            await self.session.wait_ready()
            peer_key = self.session.peer_public_key
            if peer_key is None:
                raise ChannelNotOpen("Peer public key not received")

            if transfer.token.cancelled:
                return

            self.session.send(ControlMessage.file_info(
                transfer.id, transfer.name, transfer.size, transfer.chunk_size
            ).to_json())
            transfer.status = TransferStatus.TRANSFERRING
            transfer.speed.start(self.clock())
            self._emit(transfer)
            logger.info(f"Sending {transfer.name}: {transfer.size:,} bytes in "
                        f"{chunk_count(transfer.size, transfer.chunk_size)} chunks "
                        f"of {transfer.chunk_size:,}")

            async with aiofiles.open(transfer.path, 'rb') as f:
                while transfer.offset < transfer.size:
                    await self._wait_for_drain(transfer.token)
                    if transfer.token.cancelled:
                        return

                    chunk = await f.read(min(transfer.chunk_size, transfer.bytes_remaining))
                    if transfer.token.cancelled:
                        return
                    if not chunk:
                        raise PerFileTransferError(
                            transfer.id,
                            f"{transfer.name} ended after {transfer.offset:,} bytes"
                        )

                    encrypted = encrypt(chunk, peer_key)
                    self.session.send(ControlMessage.chunk_header(
                        transfer.id, encrypted.iv_b64, len(encrypted.payload)
                    ).to_json())
                    self.session.send(encrypted.payload)

                    transfer.offset += len(chunk)
                    self.bytes_sent += len(chunk)
                    transfer.speed.update(self.clock(), transfer.offset)
                    self._emit(transfer)

            if transfer.token.cancelled:
                return

            self.session.send(ControlMessage.file_complete(transfer.id).to_json())
        except (OSError, EncryptionFailed, ChannelNotOpen) as e:
            raise PerFileTransferError(transfer.id, str(e)) from e

        transfer.status = TransferStatus.COMPLETED
        self.files_sent += 1
        logger.info(f"Sent {transfer.name} ({transfer.size:,} bytes)")
        self._emit(transfer)

    async def _fail(self, transfer: OutboundTransfer, reason: str):
        transfer.status = TransferStatus.ERROR
        self.files_failed += 1
        self._emit(transfer, error=reason)
        await asyncio.sleep(self.error_backoff)

    async def _wait_for_drain(self, token: CancellationToken):
        """Pause while the channel holds more than the high-water mark."""
        while self.session.buffered_amount > self.high_water_mark:
            if token.cancelled:
                return
            await asyncio.sleep(self.buffer_poll_interval)

    # === Progress ===

    def _emit(self, transfer: OutboundTransfer, error: Optional[str] = None):
        if transfer.token.cancelled:
            return

        if transfer.status == TransferStatus.COMPLETED:
            progress, eta = 100, 0.0
        else:
            progress = transfer.progress_percent
            if transfer.status == TransferStatus.TRANSFERRING and progress >= 100:
                progress = 99
            eta = transfer.speed.eta(transfer.bytes_remaining)

        self._notify(transfer.on_progress, TransferProgress(
            id=transfer.id,
            filename=transfer.name,
            size=transfer.size,
            progress=progress,
            status=transfer.status,
            speed=transfer.speed.speed,
            eta=eta,
            bytes_transferred=transfer.offset,
            error=error,
        ))

    @staticmethod
    def _notify(callback: Optional[ProgressCallback], event: TransferProgress):
        if callback is None:
            return
        try:
            callback(event)
        except Exception as e:
            logger.error(f"Progress callback failed: {e}")
