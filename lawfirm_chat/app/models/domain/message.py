"""
Domain model for case chat messages.

An EnrichedMessage is a validated client payload stamped with the sender's
display identity and the server receive time. The same record is broadcast
to the room and persisted to the case's message list, so its field names
follow the message store document shape:

    {
        "message_case_id": "<case id>",
        "message_list": [
            {
                "message_sender_id": ..., "message_sender_name": ...,
                "message_sender_avatar": ..., "message_type": "text",
                "message": "...", "message_sent_date": <datetime>
            },
            ...
        ]
    }
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .user import ConnectionIdentity, SenderIdentity


class MessageKind(str, Enum):
    """Kinds of chat message a room carries."""

    TEXT = "text"
    FILE_REQUEST = "file_request"
    SYSTEM = "system"


def may_send(kind: MessageKind, identity: ConnectionIdentity) -> bool:
    """
    Whether a connection identity may originate a message of this kind.

    Every kind is handled explicitly; adding a kind without a rule here
    fails loudly instead of defaulting to allowed.
    """
    if kind is MessageKind.TEXT:
        return True
    elif kind is MessageKind.FILE_REQUEST:
        return True
    elif kind is MessageKind.SYSTEM:
        return identity.is_admin
    raise ValueError(f"Unhandled message kind: {kind!r}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EnrichedMessage:
    """A chat message with server-resolved sender identity and timestamp."""

    case_id: str
    sender_id: str
    sender_name: str
    sender_avatar: Optional[str]
    kind: MessageKind
    body: str
    sent_at: datetime = field(default_factory=_utcnow)
    file_name: Optional[str] = None

    @classmethod
    def build(
        cls,
        case_id: str,
        sender: SenderIdentity,
        kind: MessageKind,
        body: str,
        file_name: Optional[str] = None,
        sent_at: Optional[datetime] = None
    ) -> "EnrichedMessage":
        return cls(
            case_id=case_id,
            sender_id=sender.user_id,
            sender_name=sender.username,
            sender_avatar=sender.avatar_url,
            kind=kind,
            body=body,
            sent_at=sent_at or _utcnow(),
            file_name=file_name,
        )

    def to_document(self) -> Dict[str, Any]:
        """Record appended to the case's persisted message list."""
        doc = {
            "message_sender_id": self.sender_id,
            "message_sender_name": self.sender_name,
            "message_sender_avatar": self.sender_avatar,
            "message_type": self.kind.value,
            "message": self.body,
            "message_sent_date": self.sent_at,
        }
        if self.file_name is not None:
            doc["message_file_name"] = self.file_name
        return doc

    def to_wire(self) -> Dict[str, Any]:
        """Payload of the `message` event broadcast to the room."""
        payload = self.to_document()
        payload["message_sent_date"] = self.sent_at.isoformat()
        payload["message_case_id"] = self.case_id
        return payload
