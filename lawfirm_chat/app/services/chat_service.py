"""
Chat Service - Business Logic Layer

Handles the events a gated chat connection may send:
- joinRoom:    authorize against the case, then add the connection to its room
- leaveRoom:   remove the connection from a room
- chatMessage: validate, re-authorize, enrich with the sender identity,
               broadcast to the room, then hand the message to the batch
               buffer for persistence

Every failure is turned into an `error` event sent to the originating
connection only. Nothing raised while handling an event escapes this layer.
"""

from typing import Any

from ..core.exceptions import (
    AuthorizationError,
    BaseCustomException,
    ErrorCode,
    NotFoundError,
    ValidationError
)
from ..core.websocket_manager import WebSocketManager
from ..models.api.chat_schemas import (
    ClientEvent,
    RoomRequest,
    ServerEvent,
    parse_chat_payload
)
from ..models.domain.message import EnrichedMessage, may_send
from ..models.domain.user import ConnectionIdentity
from ..utils.logging import get_logger, log_business_event, log_security_event
from .case_access import CaseAccessService
from .identity_cache import IdentityCache
from .message_batcher import MessageBatchBuffer

logger = get_logger(__name__)

JOIN_DENIED_MESSAGE = "You do not have access to this case chat"
JOIN_FAILED_MESSAGE = "Failed to join chat room"
SEND_DENIED_MESSAGE = "You do not have permission to send messages"
SEND_FAILED_MESSAGE = "Failed to send message"
KIND_DENIED_MESSAGE = "You do not have permission to send this type of message"
CASE_NOT_FOUND_MESSAGE = "Case not found"
UNKNOWN_EVENT_MESSAGE = "Unknown event"


class ChatService:
    """Per-event handlers for gated chat connections."""

    def __init__(
        self,
        websocket_manager: WebSocketManager,
        case_access: CaseAccessService,
        identity_cache: IdentityCache,
        buffer: MessageBatchBuffer,
        max_message_length: int = 5000
    ):
        self.websocket_manager = websocket_manager
        self.case_access = case_access
        self.identity_cache = identity_cache
        self.buffer = buffer
        self.max_message_length = max_message_length

    async def handle_event(
        self,
        connection_id: str,
        identity: ConnectionIdentity,
        event: str,
        data: Any
    ) -> None:
        """Route one client event to its handler."""
        if event == ClientEvent.JOIN_ROOM:
            await self.join_room(connection_id, identity, data)
        elif event == ClientEvent.LEAVE_ROOM:
            await self.leave_room(connection_id, identity, data)
        elif event == ClientEvent.CHAT_MESSAGE:
            await self.handle_chat_message(connection_id, identity, data)
        elif event == ClientEvent.PING:
            await self.websocket_manager.send_to_connection(connection_id, ServerEvent.PONG, data)
        else:
            logger.warning(
                "Unknown event received",
                connection_id=connection_id,
                message_type=event
            )
            await self._send_error(connection_id, UNKNOWN_EVENT_MESSAGE)

    async def join_room(self, connection_id: str, identity: ConnectionIdentity, data: Any) -> bool:
        """
        Join a case room after checking the user participates in the case.

        Emits roomJoined{caseId, caseTitle} on success, otherwise an error.

        Returns:
            True if the connection joined the room
        """
        try:
            request = RoomRequest.parse(data)
        except ValidationError as e:
            await self._send_error(connection_id, e.user_message)
            return False

        try:
            case = await self.case_access.authorize(
                identity,
                request.case_id,
                action="join_room",
                denied_message=JOIN_DENIED_MESSAGE
            )
        except NotFoundError:
            await self._send_error(connection_id, CASE_NOT_FOUND_MESSAGE)
            return False
        except AuthorizationError:
            await self._send_error(connection_id, JOIN_DENIED_MESSAGE)
            return False
        except Exception as e:
            logger.error(
                "Failed to join chat room",
                connection_id=connection_id,
                user_id=identity.user_id,
                case_id=request.case_id,
                error=str(e)
            )
            await self._send_error(connection_id, JOIN_FAILED_MESSAGE)
            return False

        if not self.websocket_manager.join_room(connection_id, case.case_id):
            return False

        log_business_event(
            "chat_room_joined",
            user_id=identity.user_id,
            case_id=case.case_id,
            connection_id=connection_id
        )
        await self.websocket_manager.send_to_connection(
            connection_id,
            ServerEvent.ROOM_JOINED,
            {"caseId": case.case_id, "caseTitle": case.title}
        )
        return True

    async def leave_room(self, connection_id: str, identity: ConnectionIdentity, data: Any) -> bool:
        """Leave a case room. Leaving a room never joined is a no-op."""
        try:
            request = RoomRequest.parse(data)
        except ValidationError as e:
            await self._send_error(connection_id, e.user_message)
            return False

        left = self.websocket_manager.leave_room(connection_id, request.case_id)
        await self.websocket_manager.send_to_connection(
            connection_id,
            ServerEvent.ROOM_LEFT,
            {"caseId": request.case_id}
        )
        if left:
            log_business_event(
                "chat_room_left",
                user_id=identity.user_id,
                case_id=request.case_id,
                connection_id=connection_id
            )
        return left

    async def handle_chat_message(
        self,
        connection_id: str,
        identity: ConnectionIdentity,
        data: Any
    ) -> bool:
        """
        Run one chat message through the ingest pipeline.

        The message is broadcast to the case room and buffered for
        persistence only if every step succeeds. Buffering immediately
        follows the broadcast with no suspension point between them.

        Returns:
            True if the message was broadcast and buffered
        """
        try:
            payload = parse_chat_payload(data, max_length=self.max_message_length)
        except ValidationError as e:
            await self._send_error(connection_id, e.user_message)
            return False

        if not may_send(payload.kind, identity):
            log_security_event(
                event_type="message_kind_denied",
                user_id=identity.user_id,
                resource_type="case",
                resource_id=payload.case_id,
                action=f"send_{payload.kind.value}",
                success=False,
                role=identity.role,
                error_code=ErrorCode.MESSAGE_FORBIDDEN_TYPE.value
            )
            await self._send_error(connection_id, KIND_DENIED_MESSAGE)
            return False

        try:
            case = await self.case_access.authorize(
                identity,
                payload.case_id,
                action="send_message",
                denied_message=SEND_DENIED_MESSAGE
            )
        except NotFoundError:
            await self._send_error(connection_id, CASE_NOT_FOUND_MESSAGE)
            return False
        except AuthorizationError:
            await self._send_error(connection_id, SEND_DENIED_MESSAGE)
            return False
        except Exception as e:
            self._log_send_failure(connection_id, identity, payload.case_id, e)
            await self._send_error(connection_id, SEND_FAILED_MESSAGE)
            return False

        try:
            sender = await self.identity_cache.get(identity.user_id)
            message = EnrichedMessage.build(
                case_id=case.case_id,
                sender=sender,
                kind=payload.kind,
                body=payload.message,
                file_name=getattr(payload, "file_name", None)
            )
            delivered = await self.websocket_manager.broadcast_to_room(
                case.case_id,
                ServerEvent.MESSAGE,
                message.to_wire()
            )
        except Exception as e:
            self._log_send_failure(connection_id, identity, payload.case_id, e)
            await self._send_error(connection_id, SEND_FAILED_MESSAGE)
            return False

        self.buffer.append(message)

        logger.debug(
            "Chat message accepted",
            connection_id=connection_id,
            user_id=identity.user_id,
            case_id=case.case_id,
            message_type=message.kind.value,
            delivered=delivered
        )
        return True

    def _log_send_failure(
        self,
        connection_id: str,
        identity: ConnectionIdentity,
        case_id: str,
        error: Exception
    ) -> None:
        logger.error(
            "Failed to send message",
            connection_id=connection_id,
            user_id=identity.user_id,
            case_id=case_id,
            error=str(error),
            error_code=error.error_code.value if isinstance(error, BaseCustomException) else None
        )

    async def _send_error(self, connection_id: str, message: str) -> None:
        await self.websocket_manager.send_to_connection(
            connection_id,
            ServerEvent.ERROR,
            {"message": message}
        )
