"""
Pydantic schemas for the case chat socket protocol and HTTP API.

Socket frames are JSON envelopes of the form {"type": <event>, "data": ...}.
Client events:
- joinRoom:    data is the case id, or {"caseId": ...}
- leaveRoom:   same shape as joinRoom
- chatMessage: {"caseId": ..., "message": ..., "type": "text" | "file_request" | "system"}
Server events: message, roomJoined, roomLeft, roomEvicted, error.
"""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ..domain.message import MessageKind
from ...core.exceptions import ValidationError


class ClientEvent:
    """Event names sent by clients."""
    JOIN_ROOM = "joinRoom"
    LEAVE_ROOM = "leaveRoom"
    CHAT_MESSAGE = "chatMessage"
    PING = "ping"


class ServerEvent:
    """Event names sent by the server."""
    MESSAGE = "message"
    ROOM_JOINED = "roomJoined"
    ROOM_LEFT = "roomLeft"
    ROOM_EVICTED = "roomEvicted"
    ERROR = "error"
    PONG = "pong"


class SocketEnvelope(BaseModel):
    """Outer frame of every socket message."""

    type: str = Field(..., min_length=1, description="Event name")
    data: Any = Field(default=None, description="Event payload")


class _ChatPayloadBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    case_id: str = Field(..., alias="caseId", min_length=1)
    message: str = Field(..., min_length=1)

    @property
    def kind(self) -> MessageKind:
        return MessageKind(self.type)


class TextMessagePayload(_ChatPayloadBase):
    type: Literal["text"] = "text"


class FileRequestPayload(_ChatPayloadBase):
    type: Literal["file_request"]
    file_name: Optional[str] = Field(default=None, alias="fileName", max_length=255)


class SystemMessagePayload(_ChatPayloadBase):
    type: Literal["system"]


ChatPayload = Annotated[
    Union[TextMessagePayload, FileRequestPayload, SystemMessagePayload],
    Field(discriminator="type"),
]

_chat_payload_adapter: TypeAdapter = TypeAdapter(ChatPayload)


def parse_chat_payload(data: Any, max_length: Optional[int] = None) -> ChatPayload:
    """
    Validate a chatMessage payload into its tagged variant.

    A missing or null type is read as "text".

    Raises:
        ValidationError: If the payload is malformed or the body too long
    """
    if not isinstance(data, dict):
        raise ValidationError("chatMessage payload must be an object")

    data = dict(data)
    if data.get("type") is None:
        data["type"] = MessageKind.TEXT.value

    try:
        payload = _chat_payload_adapter.validate_python(data)
    except PydanticValidationError as e:
        raise ValidationError(
            "Invalid chatMessage payload",
            field_errors=[
                {"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()
            ]
        )

    if max_length is not None and len(payload.message) > max_length:
        raise ValidationError(
            f"Message exceeds {max_length} characters",
            field_errors=[{"loc": ["message"], "msg": "too long"}],
            user_message=f"Message is too long (maximum {max_length} characters)"
        )

    return payload


class RoomRequest(BaseModel):
    """joinRoom / leaveRoom payload."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    case_id: str = Field(..., alias="caseId", min_length=1)

    @classmethod
    def parse(cls, data: Any) -> "RoomRequest":
        """Accept either a bare case id string or {"caseId": ...}."""
        if isinstance(data, str):
            data = {"caseId": data}
        if not isinstance(data, dict):
            raise ValidationError("Room request must be a case id")
        try:
            return cls.model_validate(data)
        except PydanticValidationError:
            raise ValidationError("Room request must be a case id")


# HTTP response schemas

class MessageRecordResponse(BaseModel):
    """One persisted message as returned by the history endpoint."""

    message_sender_id: Optional[str] = None
    message_sender_name: Optional[str] = None
    message_sender_avatar: Optional[str] = None
    message_type: str = MessageKind.TEXT.value
    message: str = ""
    message_sent_date: Optional[datetime] = None
    message_file_name: Optional[str] = None


class LastMessageSummary(BaseModel):
    message: str
    sender: Optional[str] = None
    timestamp: Optional[datetime] = None


class CaseWithMessagesResponse(BaseModel):
    """A case visible to the caller with its chat activity summary."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., alias="_id")
    case_title: str
    case_status: Optional[str] = None
    client_id: Optional[str] = None
    assigned_lawyer_id: Optional[str] = None
    message_count: int = Field(0, alias="messageCount")
    last_message: Optional[LastMessageSummary] = Field(None, alias="lastMessage")


class DeleteMessagesResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    deleted_count: int = Field(..., alias="deletedCount")
    discarded_pending: int = Field(0, alias="discardedPending")


class RoomMembersResponse(BaseModel):
    case_id: str
    connections: List[Dict[str, Any]]


class EvictionResponse(BaseModel):
    case_id: str
    user_id: str
    evicted_connections: int
