"""
Receive Assembler

Rebuilds files from the inbound chunk stream:

1. file_info opens a fresh InboundTransfer (any earlier, unfinished one with
   the same id is discarded; there is no resumption)
2. chunk_header is remembered; the next binary frame is its payload
3. Each payload is decrypted and appended; an ack carrying the percentage
   goes back to the sender (telemetry only, the sender never waits on it)
4. file_complete joins the buffers and hands the file to the caller

Chunks carry no sequence numbers, so this relies on the data channel being
ordered and reliable.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, List, Callable, Any

import aiofiles
import aiofiles.os

from ..crypto import decrypt, decode_iv
from ..errors import ChannelNotOpen, DecryptionFailed
from .progress import TransferStatus, TransferProgress, ProgressCallback, percent_of
from .protocol import ControlMessage, ControlMessageType, parse_control

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = 'application/octet-stream'

MIME_TYPES = {
    # Documents
    'pdf': 'application/pdf',
    'doc': 'application/msword',
    'docx': 'application/vnd.openxmlformats-officedocument.wordprocessingml.document',
    'xls': 'application/vnd.ms-excel',
    'xlsx': 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
    'ppt': 'application/vnd.ms-powerpoint',
    'pptx': 'application/vnd.openxmlformats-officedocument.presentationml.presentation',
    'txt': 'text/plain',
    'md': 'text/markdown',
    'csv': 'text/csv',
    'rtf': 'application/rtf',
    # Web
    'html': 'text/html',
    'htm': 'text/html',
    'css': 'text/css',
    'js': 'text/javascript',
    'json': 'application/json',
    'xml': 'application/xml',
    # Images
    'jpg': 'image/jpeg',
    'jpeg': 'image/jpeg',
    'png': 'image/png',
    'gif': 'image/gif',
    'webp': 'image/webp',
    'svg': 'image/svg+xml',
    'bmp': 'image/bmp',
    'ico': 'image/x-icon',
    # Audio / video
    'mp3': 'audio/mpeg',
    'wav': 'audio/wav',
    'ogg': 'audio/ogg',
    'mp4': 'video/mp4',
    'webm': 'video/webm',
    'mov': 'video/quicktime',
    'avi': 'video/x-msvideo',
    # Archives
    'zip': 'application/zip',
    'gz': 'application/gzip',
    'tar': 'application/x-tar',
    '7z': 'application/x-7z-compressed',
    'rar': 'application/vnd.rar',
}


def guess_mime_type(filename: str) -> str:
    """Content type from the file extension; octet-stream when unknown."""
    if '.' not in filename:
        return DEFAULT_MIME_TYPE
    extension = filename.rsplit('.', 1)[1].lower()
    return MIME_TYPES.get(extension, DEFAULT_MIME_TYPE)


@dataclass
class ReceivedFile:
    """A completely received file."""
    name: str
    data: bytes
    mime_type: str = DEFAULT_MIME_TYPE

    @property
    def size(self) -> int:
        return len(self.data)

    async def save(self, directory: Path) -> Path:
        """
        Write the file into directory without overwriting anything.

        Returns:
            Path of the written file
        """
        directory = Path(directory)
        await aiofiles.os.makedirs(directory, exist_ok=True)

        # Never trust a peer-supplied path
        safe_name = Path(self.name).name or 'download'
        target = directory / safe_name
        stem, suffix = target.stem, target.suffix
        counter = 1
        while target.exists():
            target = directory / f"{stem} ({counter}){suffix}"
            counter += 1

        async with aiofiles.open(target, 'wb') as f:
            await f.write(self.data)

        logger.info(f"Saved {safe_name} to {target}")
        return target


@dataclass
class InboundTransfer:
    """A file being received."""
    id: str
    name: str
    size: int
    chunk_size: int
    buffers: List[bytes] = field(default_factory=list)
    received: int = 0
    failed: bool = False
    error: Optional[str] = None

    @property
    def progress_percent(self) -> int:
        return percent_of(self.received, self.size)


@dataclass
class _PendingHeader:
    transfer_id: str
    iv: str
    size: int


FileCallback = Callable[[ReceivedFile], Any]


class ReceiveAssembler:
    """Turns the inbound frame stream back into files."""

    def __init__(self, session, on_file_received: Optional[FileCallback] = None,
                 on_progress: Optional[ProgressCallback] = None):
        self.session = session
        self.on_file_received = on_file_received
        self.on_progress = on_progress

        self._pending_header: Optional[_PendingHeader] = None
        self._callback_tasks = set()

        # Statistics
        self.files_received = 0
        self.bytes_received = 0

        session.on_message(self.handle_message)

    @property
    def transfers(self):
        """transfer-id -> InboundTransfer, owned by the session."""
        return self.session.inbound

    def handle_message(self, data):
        """Dispatch one data channel frame."""
        if isinstance(data, (bytes, bytearray, memoryview)):
            self._handle_chunk(bytes(data))
            return

        message = parse_control(data)
        if message is None:
            return

        if message.type == ControlMessageType.FILE_INFO:
            self._handle_file_info(message)
        elif message.type == ControlMessageType.CHUNK_HEADER:
            self._handle_chunk_header(message)
        elif message.type == ControlMessageType.FILE_COMPLETE:
            self._handle_file_complete(message)
        elif message.type == ControlMessageType.CANCEL:
            self._discard(message.transfer_id, "cancelled by sender")

    def cancel_transfer(self, transfer_id: str) -> bool:
        """Abort an inbound file and ask the sender to stop."""
        if transfer_id not in self.transfers:
            return False
        self._discard(transfer_id, "cancelled")
        try:
            self.session.send(ControlMessage.cancel(transfer_id).to_json())
        except ChannelNotOpen:
            logger.debug(f"Could not notify peer of cancel for {transfer_id}")
        return True

    def reset(self):
        """Drop all partial files."""
        self.transfers.clear()
        self._pending_header = None

    # === Handlers ===

    def _handle_file_info(self, message: ControlMessage):
        headers = message.headers
        try:
            size = int(headers['size'])
            chunk_size = int(headers.get('chunkSize', 0))
            name = str(headers['name'])
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed file_info: {e}")
            return
        if size < 0:
            logger.warning(f"Ignoring file_info with negative size for {message.transfer_id}")
            return

        if message.transfer_id in self.transfers:
            logger.warning(f"Restarting incomplete transfer {message.transfer_id}")

        transfer = InboundTransfer(
            id=message.transfer_id,
            name=name,
            size=size,
            chunk_size=chunk_size,
        )
        self.transfers[transfer.id] = transfer
        logger.info(f"Receiving {transfer.name} ({transfer.size:,} bytes)")
        self._emit(transfer, TransferStatus.TRANSFERRING)

    def _handle_chunk_header(self, message: ControlMessage):
        if self._pending_header is not None:
            logger.warning(f"Chunk header for {self._pending_header.transfer_id} "
                           f"had no payload")
        try:
            size = int(message.headers['size'])
            iv = str(message.headers['iv'])
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed chunk_header: {e}")
            self._pending_header = _PendingHeader(message.transfer_id, '', -1)
            return
        self._pending_header = _PendingHeader(message.transfer_id, iv, size)

    def _handle_chunk(self, payload: bytes):
        header, self._pending_header = self._pending_header, None
        if header is None:
            logger.warning(f"Dropping {len(payload):,} byte frame without a chunk header")
            return

        transfer = self.transfers.get(header.transfer_id)
        if transfer is None:
            logger.debug(f"Dropping chunk for unknown transfer {header.transfer_id}")
            return
        if transfer.failed:
            return

        if len(payload) != header.size:
            self._fail(transfer, f"chunk length {len(payload)} does not match "
                                 f"header size {header.size}")
            return

        try:
            plaintext = decrypt(decode_iv(header.iv), payload,
                                self.session.key_pair.private_key)
        except DecryptionFailed as e:
            self._fail(transfer, str(e))
            return

        if transfer.received + len(plaintext) > transfer.size:
            self._fail(transfer, "received more data than announced")
            return

        transfer.buffers.append(plaintext)
        transfer.received += len(plaintext)
        self.bytes_received += len(plaintext)

        progress = transfer.progress_percent
        try:
            self.session.send(ControlMessage.ack(transfer.id, progress).to_json())
        except ChannelNotOpen:
            logger.debug(f"Could not ack chunk of {transfer.id}")
        self._emit(transfer, TransferStatus.TRANSFERRING)

    def _handle_file_complete(self, message: ControlMessage):
        transfer = self.transfers.pop(message.transfer_id, None)
        if transfer is None:
            logger.warning(f"file_complete for unknown transfer {message.transfer_id}")
            return

        if transfer.failed:
            transfer.buffers.clear()
            return

        if transfer.received != transfer.size:
            transfer.buffers.clear()
            transfer.failed = True
            transfer.error = (f"incomplete file: {transfer.received:,} of "
                              f"{transfer.size:,} bytes")
            logger.error(f"Discarding {transfer.name}: {transfer.error}")
            self._emit(transfer, TransferStatus.ERROR)
            return

        received = ReceivedFile(
            name=transfer.name,
            data=b''.join(transfer.buffers),
            mime_type=guess_mime_type(transfer.name),
        )
        transfer.buffers.clear()

        self.files_received += 1
        logger.info(f"Received {received.name} ({received.size:,} bytes, {received.mime_type})")
        self._emit(transfer, TransferStatus.COMPLETED)
        self._deliver(received)

    # === Helpers ===

    def _fail(self, transfer: InboundTransfer, reason: str):
        transfer.failed = True
        transfer.error = reason
        transfer.buffers.clear()
        logger.error(f"Transfer of {transfer.name} failed: {reason}")
        self._emit(transfer, TransferStatus.ERROR)

    def _discard(self, transfer_id: str, reason: str):
        transfer = self.transfers.pop(transfer_id, None)
        if transfer is not None:
            transfer.buffers.clear()
            logger.info(f"Discarded {transfer.name}: {reason}")

    def _deliver(self, received: ReceivedFile):
        if self.on_file_received is None:
            return
        try:
            result = self.on_file_received(received)
        except Exception as e:
            logger.error(f"File callback failed for {received.name}: {e}")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._callback_tasks.add(task)
            task.add_done_callback(self._callback_done)

    def _callback_done(self, task: asyncio.Future):
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"File callback failed: {error!r}")

    def _emit(self, transfer: InboundTransfer, status: TransferStatus):
        if self.on_progress is None:
            return
        progress = 100 if status == TransferStatus.COMPLETED else transfer.progress_percent
        event = TransferProgress(
            id=transfer.id,
            filename=transfer.name,
            size=transfer.size,
            progress=progress,
            status=status,
            bytes_transferred=transfer.received,
            error=transfer.error,
        )
        try:
            self.on_progress(event)
        except Exception as e:
            logger.error(f"Progress callback failed: {e}")
