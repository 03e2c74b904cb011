"""
WebSocket API Routes for the case chat service.

Endpoints:
- /ws/chat: the real-time case chat socket
- /ws/connections/status: connection pool metrics
- /ws/rooms/{case_id}/members: connections currently in a case room
- /ws/rooms/{case_id}/evict: remove a user's connections from a case room
- /ws/batches/status: batch persistence scheduler state and dead letters

The chat socket is gated once, on connect, by the login token carried in
the `token` query parameter (or an Authorization: Bearer header). A socket
without a valid token receives a single error event and is closed with
code 1008 before any chat event is read from it.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError as PydanticValidationError

from ...core.component_manager import ChatComponents
from ...core.exceptions import AuthenticationError, ErrorCode, WebSocketError
from ...core.websocket_manager import WebSocketManager
from ...models.api.chat_schemas import (
    EvictionResponse,
    RoomMembersResponse,
    ServerEvent,
    SocketEnvelope
)
from ...models.domain.user import ConnectionIdentity
from ...services.chat_service import ChatService
from ...services.message_batcher import BatchPersistenceScheduler
from ...utils.logging import (
    correlation_context,
    get_logger,
    log_security_event,
    websocket_logger
)
from ...utils.security import resolve_connection_token
from ..deps import (
    get_components,
    get_scheduler,
    get_websocket_manager,
    require_admin
)

logger = get_logger(__name__)
router = APIRouter()

AUTHENTICATION_ERROR_MESSAGE = "Authentication error"
INVALID_FRAME_MESSAGE = "Invalid message format"
EVENT_FAILED_MESSAGE = "Failed to process event"


@router.websocket("/chat")
async def chat_websocket_endpoint(
    websocket: WebSocket,
    components: ChatComponents = Depends(get_components)
):
    """
    Case chat socket.

    Client events: joinRoom, leaveRoom, chatMessage, ping.
    Server events: roomJoined, roomLeft, roomEvicted, message, error, pong.
    """
    with correlation_context() as correlation_id:
        await _serve_chat_socket(websocket, components, correlation_id)


async def _serve_chat_socket(
    websocket: WebSocket,
    components: ChatComponents,
    correlation_id: str
) -> None:
    client_ip = websocket.client.host if websocket.client else "unknown"
    user_agent = websocket.headers.get("user-agent", "unknown")
    websocket_manager = components.websocket_manager

    await websocket.accept()

    token = resolve_connection_token(
        websocket.query_params,
        websocket.headers,
        components.settings.auth.token_query_param
    )
    try:
        identity = components.token_manager.authenticate(token)
    except AuthenticationError as e:
        log_security_event(
            event_type="authentication_failed",
            resource_type="chat_socket",
            action="connect",
            success=False,
            reason=e.message,
            client_ip=client_ip
        )
        await _reject_connection(websocket, AUTHENTICATION_ERROR_MESSAGE)
        return

    try:
        connection_id = websocket_manager.connect(
            websocket,
            identity,
            client_ip=client_ip,
            user_agent=user_agent
        )
    except WebSocketError as e:
        await _reject_connection(websocket, e.user_message)
        return

    try:
        await _handle_websocket_messages(
            websocket,
            websocket_manager,
            components.chat_service,
            connection_id,
            identity
        )
    except WebSocketDisconnect as e:
        logger.info(
            "WebSocket disconnected",
            connection_id=connection_id,
            user_id=identity.user_id,
            code=e.code,
            correlation_id=correlation_id
        )
    except Exception as exc:
        logger.error(
            "WebSocket connection error",
            connection_id=connection_id,
            user_id=identity.user_id,
            error=str(exc),
            correlation_id=correlation_id
        )
    finally:
        await websocket_manager.disconnect(connection_id, "Client disconnected", close=False)


async def _handle_websocket_messages(
    websocket: WebSocket,
    websocket_manager: WebSocketManager,
    chat_service: ChatService,
    connection_id: str,
    identity: ConnectionIdentity
) -> None:
    """Read envelopes until the peer disconnects or the connection is dropped."""
    while websocket_manager.get_connection(connection_id) is not None:
        raw_message = await websocket.receive_text()
        message_size = len(raw_message.encode())
        websocket_manager.record_received(connection_id, message_size)

        try:
            envelope = SocketEnvelope.model_validate_json(raw_message)
        except PydanticValidationError:
            websocket_logger.error_occurred(
                connection_id=connection_id,
                error="Invalid message envelope",
                error_code=ErrorCode.WEBSOCKET_MESSAGE_INVALID.value
            )
            await websocket_manager.send_to_connection(
                connection_id,
                ServerEvent.ERROR,
                {"message": INVALID_FRAME_MESSAGE}
            )
            continue

        websocket_logger.message_received(
            connection_id=connection_id,
            message_type=envelope.type,
            message_size=message_size
        )

        try:
            await chat_service.handle_event(connection_id, identity, envelope.type, envelope.data)
        except Exception as exc:
            logger.error(
                "Unhandled error in chat event",
                connection_id=connection_id,
                message_type=envelope.type,
                error=str(exc)
            )
            await websocket_manager.send_to_connection(
                connection_id,
                ServerEvent.ERROR,
                {"message": EVENT_FAILED_MESSAGE}
            )


async def _reject_connection(websocket: WebSocket, message: str) -> None:
    """Send one error event, then close with a policy violation."""
    try:
        await websocket.send_json({"type": ServerEvent.ERROR, "data": {"message": message}})
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
    except Exception as exc:
        logger.debug("Failed to reject WebSocket connection", error=str(exc))


# WebSocket Management API Endpoints

@router.get("/connections/status")
async def get_connection_status(
    _: ConnectionIdentity = Depends(require_admin),
    websocket_manager: WebSocketManager = Depends(get_websocket_manager)
) -> Dict[str, Any]:
    """Connection pool metrics."""
    return {
        "status": "healthy",
        "metrics": websocket_manager.get_metrics().model_dump(),
        "connections": websocket_manager.get_connection_count(),
    }


@router.get("/rooms/{case_id}/members", response_model=RoomMembersResponse)
async def get_room_members(
    case_id: str,
    _: ConnectionIdentity = Depends(require_admin),
    websocket_manager: WebSocketManager = Depends(get_websocket_manager)
) -> RoomMembersResponse:
    """List the connections currently joined to a case room."""
    return RoomMembersResponse(
        case_id=case_id,
        connections=websocket_manager.get_room_members(case_id)
    )


@router.post("/rooms/{case_id}/evict", response_model=EvictionResponse)
async def evict_user_from_room(
    case_id: str,
    user_id: str = Query(..., min_length=1, description="User whose connections are removed"),
    admin: ConnectionIdentity = Depends(require_admin),
    websocket_manager: WebSocketManager = Depends(get_websocket_manager)
) -> EvictionResponse:
    """Remove every connection of a user from a case room."""
    evicted = await websocket_manager.evict_user_from_room(case_id, user_id)
    log_security_event(
        event_type="room_eviction",
        user_id=admin.user_id,
        resource_type="case",
        resource_id=case_id,
        action="evict",
        success=True,
        evicted_user_id=user_id,
        evicted_connections=evicted
    )
    return EvictionResponse(case_id=case_id, user_id=user_id, evicted_connections=evicted)


@router.get("/batches/status")
async def get_batch_status(
    _: ConnectionIdentity = Depends(require_admin),
    scheduler: BatchPersistenceScheduler = Depends(get_scheduler)
) -> Dict[str, Any]:
    """Batch persistence scheduler state, including dead-lettered batches."""
    return scheduler.get_status()


__all__ = ["router"]
