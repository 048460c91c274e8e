"""Message protocol definitions for roomlink.

This module defines the two protocols roomlink speaks:

1. **Signaling envelopes**, exchanged through the room's signaling channel
   before a direct link exists.
2. **Data channel messages**, exchanged over the direct link once a peer
   connection is established (chat messages and file transfers).

Signaling Envelope
------------------

Every signaling message is a JSON object::

    {
        "type": "peer-discovery" | "offer" | "answer" | "ice-candidate",
        "from": "<sender peer id>",
        "fromName": "<sender display name>",
        "to": "<target peer id>",     # absent for broadcasts
        "data": {...}                 # negotiation payload, opaque here
    }

**peer-discovery**
    Sent by: every participant, broadcast (no ``to``)
    Purpose: Announces presence in the room. Repeated on a fixed cadence.

**offer**
    Sent by: the initiator (the side with the greater peer id)
    Data: ``{"type": "offer", "sdp": "..."}``

**answer**
    Sent by: the side that received the offer
    Data: ``{"type": "answer", "sdp": "..."}``

**ice-candidate**
    Sent by: either side, once per locally gathered candidate
    Data: ``{"candidate": "...", "sdpMid": "0", "sdpMLineIndex": 0}``

Relay registration (client -> relay server only, never forwarded)::

    {"type": "register", "peer_id": "...", "room_id": "..." | null}

Data Channel Messages
---------------------

**CHAT::{json}**
    Purpose: Application chat message
    Format: ``CHAT::{"id": ..., "peer_id": ..., "peer_name": ..., "content": ..., "timestamp": ...}``

**FILE_META::{transfer_id}::{file_size}::{chunk_count}::{filename}**
    Purpose: Announces an incoming file transfer. The filename comes last
    and may itself contain the separator.

**FILE_CHUNK::{transfer_id}::{chunk_index}::{chunk_data_base64}**
    Purpose: Sends one chunk of file data

**FILE_COMPLETE::{transfer_id}**
    Purpose: Signals all chunks were sent

Message Flow Example
--------------------

Peers ``a`` and ``z`` join the same room:

1. a -> room: peer-discovery
2. z -> room: peer-discovery
3. z -> a: offer            (``"z" > "a"``, so z initiates)
4. a -> z: answer
5. a <-> z: ice-candidate   (any number, any order)
"""

import json
from dataclasses import dataclass
from typing import Any, Optional

# Signaling message types
MSG_PEER_DISCOVERY = "peer-discovery"
MSG_OFFER = "offer"
MSG_ANSWER = "answer"
MSG_ICE_CANDIDATE = "ice-candidate"

SIGNALING_TYPES = frozenset(
    {MSG_PEER_DISCOVERY, MSG_OFFER, MSG_ANSWER, MSG_ICE_CANDIDATE}
)

# Relay registration (consumed by the relay server)
MSG_REGISTER = "register"

# Data channel message types
MSG_CHAT = "CHAT"
MSG_FILE_META = "FILE_META"
MSG_FILE_CHUNK = "FILE_CHUNK"
MSG_FILE_COMPLETE = "FILE_COMPLETE"

# Message separators
MSG_SEPARATOR = "::"


@dataclass(frozen=True)
class SignalingMessage:
    """A single signaling envelope.

    Attributes:
        type: One of the signaling message types.
        sender: Peer id of the sender (``from`` on the wire).
        sender_name: Display name of the sender (``fromName`` on the wire).
        target: Peer id of the recipient, None for broadcasts.
        data: Negotiation payload, opaque to the orchestrator.
    """

    type: str
    sender: str
    sender_name: str = ""
    target: Optional[str] = None
    data: Optional[Any] = None

    def to_dict(self) -> dict:
        message = {"type": self.type, "from": self.sender, "fromName": self.sender_name}
        if self.target is not None:
            message["to"] = self.target
        if self.data is not None:
            message["data"] = self.data
        return message

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> "SignalingMessage":
        """Build a message from a decoded envelope.

        Raises:
            ValueError: If the envelope has an unknown type or no sender.
        """
        msg_type = data.get("type")
        if msg_type not in SIGNALING_TYPES:
            raise ValueError(f"Unknown signaling message type: {msg_type!r}")
        sender = data.get("from")
        if not isinstance(sender, str) or not sender:
            raise ValueError(f"Signaling message {msg_type} has no sender")
        return cls(
            type=msg_type,
            sender=sender,
            sender_name=data.get("fromName") or "",
            target=data.get("to"),
            data=data.get("data"),
        )

    @classmethod
    def from_json(cls, raw: str) -> "SignalingMessage":
        return cls.from_dict(json.loads(raw))


def format_message(msg_type: str, *args) -> str:
    """Format a data channel message with type and arguments.

    Examples:
        >>> format_message(MSG_FILE_COMPLETE, "t1")
        'FILE_COMPLETE::t1'
    """
    if args:
        return (
            f"{msg_type}{MSG_SEPARATOR}{MSG_SEPARATOR.join(str(arg) for arg in args)}"
        )
    return msg_type


def parse_message(message: str, maxsplit: int = -1) -> tuple[str, list[str]]:
    """Parse a data channel message into type and arguments.

    Args:
        message: The message string to parse.
        maxsplit: Maximum number of argument splits (-1 for no limit). Use this
            when the last argument may itself contain the separator.

    Examples:
        >>> parse_message("FILE_META::t1::10::1::a::b.txt", maxsplit=3)
        ('FILE_META', ['t1', '10', '1', 'a::b.txt'])

        >>> parse_message("CHAT::{\\"a\\": 1}", maxsplit=0)
        ('CHAT', ['{"a": 1}'])
    """
    parts = message.split(MSG_SEPARATOR, 1)
    msg_type = parts[0]
    if len(parts) == 1:
        return msg_type, []
    return msg_type, parts[1].split(MSG_SEPARATOR, maxsplit)
