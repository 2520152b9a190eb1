"""
Signaling Message Protocol

JSON text frames exchanged with the relay. The relay only forwards these
messages between the two members of a room; it never sees file data.

Message Types:
- create{roomId}                      sender -> relay
- join{roomId}                        receiver -> relay
- room_created{} / room_joined{}      relay -> client
- offer{roomId, sdp, publicKey}       sender -> receiver
- answer{roomId, sdp, publicKey}      receiver -> sender
- ice_candidate{roomId, candidate}    either way
- error{message}                      relay -> client
"""

import json
from enum import Enum
from dataclasses import dataclass
from typing import Optional, Dict, Any


class SignalingMessageType(Enum):
    """Signaling message types."""
    CREATE = "create"
    JOIN = "join"
    ROOM_CREATED = "room_created"
    ROOM_JOINED = "room_joined"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice_candidate"
    ERROR = "error"


# Python attribute -> wire field
_WIRE_FIELDS = {
    'room_id': 'roomId',
    'sdp': 'sdp',
    'candidate': 'candidate',
    'public_key': 'publicKey',
    'message': 'message',
}


@dataclass
class SignalingMessage:
    """
    A signaling message.

    Only the fields a given type needs are set; the rest stay None and
    are left out of the serialized form.
    """
    type: SignalingMessageType
    room_id: Optional[str] = None
    sdp: Optional[str] = None
    candidate: Optional[Dict[str, Any]] = None
    public_key: Optional[Dict[str, Any]] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'type': self.type.value}
        for attr, wire in _WIRE_FIELDS.items():
            value = getattr(self, attr)
            if value is not None:
                data[wire] = value
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SignalingMessage':
        """
        Build a message from a decoded JSON object.

        Raises:
            ValueError: If the type is missing or unknown
        """
        msg_type = SignalingMessageType(data.get('type'))
        kwargs = {
            attr: data[wire]
            for attr, wire in _WIRE_FIELDS.items()
            if wire in data
        }
        return cls(type=msg_type, **kwargs)

    @classmethod
    def from_json(cls, text: str) -> 'SignalingMessage':
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("Signaling message must be a JSON object")
        return cls.from_dict(data)

    # === Constructors ===

    @classmethod
    def create(cls, room_id: str) -> 'SignalingMessage':
        return cls(SignalingMessageType.CREATE, room_id=room_id)

    @classmethod
    def join(cls, room_id: str) -> 'SignalingMessage':
        return cls(SignalingMessageType.JOIN, room_id=room_id)

    @classmethod
    def offer(cls, room_id: str, sdp: str, public_key: Dict[str, Any]) -> 'SignalingMessage':
        return cls(SignalingMessageType.OFFER, room_id=room_id, sdp=sdp,
                   public_key=public_key)

    @classmethod
    def answer(cls, room_id: str, sdp: str, public_key: Dict[str, Any]) -> 'SignalingMessage':
        return cls(SignalingMessageType.ANSWER, room_id=room_id, sdp=sdp,
                   public_key=public_key)

    @classmethod
    def ice_candidate(cls, room_id: str, candidate: Dict[str, Any]) -> 'SignalingMessage':
        return cls(SignalingMessageType.ICE_CANDIDATE, room_id=room_id,
                   candidate=candidate)

    @classmethod
    def error(cls, message: str) -> 'SignalingMessage':
        return cls(SignalingMessageType.ERROR, message=message)
