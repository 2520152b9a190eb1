"""
Data Channel Transfer Protocol

Design Decision: Framing
========================

Options Considered:
1. Length-prefixed JSON header inside each binary frame
   - One frame per chunk
   - Sender and receiver must agree on the prefix layout byte for byte

2. JSON header as a text frame, payload as the next binary frame
   - Relies on ordered delivery of the data channel
   - Control and data stay trivially distinguishable (str vs bytes)

Decision: Option 2
- The data channel is opened ordered and reliable
- A chunk_header always immediately precedes its binary payload
- No sequence numbers: out-of-order delivery is not supported

Message Format:
```
text   {"type": "file_info", "id": ..., "name": ..., "size": ..., "chunkSize": ...}
text   {"type": "chunk_header", "id": ..., "iv": <base64>, "size": <payload bytes>}
binary wrapped AES key || AES-GCM ciphertext
...
text   {"type": "file_complete", "id": ...}
text   {"type": "ack", "id": ..., "progress": <0-100>}      receiver -> sender
text   {"type": "cancel", "id": ...}                        either way
```
"""

import json
import logging
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class ControlMessageType(Enum):
    """Data channel control message types."""
    FILE_INFO = "file_info"
    CHUNK_HEADER = "chunk_header"
    FILE_COMPLETE = "file_complete"
    ACK = "ack"
    CANCEL = "cancel"


@dataclass
class ControlMessage:
    """A control message sent as a text frame on the data channel."""
    type: ControlMessageType
    transfer_id: str
    headers: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps({
            'type': self.type.value,
            'id': self.transfer_id,
            **self.headers,
        })

    @classmethod
    def from_json(cls, text: str) -> 'ControlMessage':
        """
        Parse a control message.

        Raises:
            ValueError: If the frame is not a known control message
        """
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("Control message must be a JSON object")

        msg_type = ControlMessageType(data.pop('type', None))
        transfer_id = data.pop('id', None)
        if not isinstance(transfer_id, str) or not transfer_id:
            raise ValueError(f"{msg_type.value} without a transfer id")

        return cls(type=msg_type, transfer_id=transfer_id, headers=data)

    # === Constructors ===

    @classmethod
    def file_info(cls, transfer_id: str, name: str, size: int,
                  chunk_size: int) -> 'ControlMessage':
        return cls(ControlMessageType.FILE_INFO, transfer_id,
                   {'name': name, 'size': size, 'chunkSize': chunk_size})

    @classmethod
    def chunk_header(cls, transfer_id: str, iv: str, size: int) -> 'ControlMessage':
        return cls(ControlMessageType.CHUNK_HEADER, transfer_id,
                   {'iv': iv, 'size': size})

    @classmethod
    def file_complete(cls, transfer_id: str) -> 'ControlMessage':
        return cls(ControlMessageType.FILE_COMPLETE, transfer_id)

    @classmethod
    def ack(cls, transfer_id: str, progress: int) -> 'ControlMessage':
        return cls(ControlMessageType.ACK, transfer_id, {'progress': progress})

    @classmethod
    def cancel(cls, transfer_id: str) -> 'ControlMessage':
        return cls(ControlMessageType.CANCEL, transfer_id)


def parse_control(text: str) -> Optional[ControlMessage]:
    """Parse a text frame, returning None (and logging) if it is not valid."""
    try:
        return ControlMessage.from_json(text)
    except (ValueError, TypeError) as e:
        logger.warning(f"Ignoring malformed control message: {e}")
        return None
