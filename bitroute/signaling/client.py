"""
Signaling Client

Design Decision: Relay Failover
===============================

Options Considered:
1. Single relay URL
   - Simple, but one outage blocks every handshake

2. Random endpoint per attempt
   - Spreads load, but keeps retrying known-dead relays

3. Ordered rotation with a sticky start index
   - Tries endpoints in a fixed order
   - Remembers the last endpoint that worked and starts there next time

Decision: Ordered rotation with sticky preference
- Each attempt bounded by a connect timeout
- After a full rotation fails, back off and retry the whole list
- Fixed retry budget, then SignalingUnavailable

The relay carries JSON control messages only; file data never touches it.
"""

import asyncio
import logging
from typing import List, Optional, Callable, Awaitable, Any

import websockets
from websockets.exceptions import WebSocketException

from .protocol import SignalingMessage
from ..errors import SignalingUnavailable

logger = logging.getLogger(__name__)

# Async callable: url -> connection with send(), async iteration and close()
Connector = Callable[[str], Awaitable[Any]]
MessageHandler = Callable[[SignalingMessage], Awaitable[None]]
CloseHandler = Callable[[], None]


async def websocket_connector(url: str):
    """Open a WebSocket connection to a relay."""
    return await websockets.connect(url)


class SignalingClient:
    """
    Connection to one of several interchangeable signaling relays.

    Incoming messages are parsed and handed to registered async handlers,
    one at a time, in arrival order.
    """

    def __init__(self, urls: List[str], connect_timeout: float = 5.0,
                 max_retries: int = 3, retry_delay: float = 1.0,
                 connector: Optional[Connector] = None):
        if not urls:
            raise ValueError("At least one signaling URL is required")

        self.urls = list(urls)
        self.connect_timeout = connect_timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._connector = connector or websocket_connector

        # Index of the endpoint to try first
        self._start_index = 0

        self._connection = None
        self._reader_task: Optional[asyncio.Task] = None
        self._handlers: List[MessageHandler] = []
        self._close_handlers: List[CloseHandler] = []
        self._closing = False

    @property
    def start_index(self) -> int:
        return self._start_index

    @property
    def current_url(self) -> Optional[str]:
        if self._connection is None:
            return None
        return self.urls[self._start_index]

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    def on_message(self, handler: MessageHandler):
        """Register a handler for incoming signaling messages."""
        self._handlers.append(handler)

    def on_close(self, handler: CloseHandler):
        """Register a handler called when the relay connection drops."""
        self._close_handlers.append(handler)

    async def connect(self):
        """
        Connect to the first reachable relay.

        Returns:
            The underlying connection

        Raises:
            SignalingUnavailable: If every endpoint failed on every retry
        """
        if self._connection is not None:
            return self._connection

        count = len(self.urls)

        for attempt in range(self.max_retries):
            for step in range(count):
                index = (self._start_index + step) % count
                url = self.urls[index]

                try:
                    connection = await asyncio.wait_for(
                        self._connector(url),
                        timeout=self.connect_timeout
                    )
                except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                    logger.warning(f"Signaling endpoint {url} unavailable: {e!r}")
                    continue

                self._start_index = index
                self._connection = connection
                self._closing = False
                self._reader_task = asyncio.create_task(self._read_loop(connection))
                logger.info(f"Connected to signaling server {url}")
                return connection

            if attempt < self.max_retries - 1:
                delay = self.retry_delay * (2 ** attempt)
                logger.info(f"All signaling endpoints failed, retrying in {delay:.1f}s "
                            f"({attempt + 1}/{self.max_retries})")
                await asyncio.sleep(delay)

        raise SignalingUnavailable(
            f"No signaling server reachable after {self.max_retries} attempts"
        )

    async def send(self, message: SignalingMessage):
        """Send a control message to the relay."""
        if self._connection is None:
            raise SignalingUnavailable("Not connected to a signaling server")

        logger.debug(f"Signaling -> {message.type.value}")
        try:
            await self._connection.send(message.to_json())
        except (OSError, WebSocketException) as e:
            raise SignalingUnavailable(f"Signaling send failed: {e}") from e

    async def close(self):
        """Close the relay connection."""
        self._closing = True
        connection, self._connection = self._connection, None

        if self._reader_task and self._reader_task is not asyncio.current_task():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._reader_task = None

        if connection is not None:
            await connection.close()
            logger.debug("Signaling connection closed")

    async def _read_loop(self, connection):
        """Read and dispatch messages until the connection ends."""
        try:
            async for raw in connection:
                if isinstance(raw, bytes):
                    raw = raw.decode('utf-8', errors='replace')
                try:
                    message = SignalingMessage.from_json(raw)
                except ValueError as e:
                    logger.warning(f"Ignoring malformed signaling message: {e}")
                    continue

                logger.debug(f"Signaling <- {message.type.value}")
                for handler in list(self._handlers):
                    await handler(message)
        except (OSError, WebSocketException) as e:
            logger.warning(f"Signaling connection lost: {e!r}")
        finally:
            if connection is self._connection:
                self._connection = None
            if not self._closing:
                for handler in list(self._close_handlers):
                    handler()
