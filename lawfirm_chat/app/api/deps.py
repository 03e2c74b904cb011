"""
Dependency injection module for API routes.

Every dependency resolves from the ChatComponents container stored on the
application state during startup, so HTTP routes, WebSocket routes and
tests all see the same instances.
"""

from typing import Optional

from fastapi import Depends, Header
from fastapi.requests import HTTPConnection

from ..core.component_manager import ChatComponents
from ..core.exceptions import AuthorizationError, ErrorCode, raise_auth_error
from ..core.websocket_manager import WebSocketManager
from ..models.domain.user import ConnectionIdentity
from ..services.case_access import CaseAccessService
from ..services.chat_service import ChatService
from ..services.message_batcher import BatchPersistenceScheduler
from ..utils.logging import get_logger
from ..utils.security import TokenManager, extract_bearer_token

logger = get_logger(__name__)


def get_components(connection: HTTPConnection) -> ChatComponents:
    """
    Get the chat component container.

    Raises:
        RuntimeError: If the application has not finished starting up
    """
    components: Optional[ChatComponents] = getattr(connection.app.state, "components", None)
    if components is None:
        raise RuntimeError("Chat components not initialized")
    return components


def get_websocket_manager(
    components: ChatComponents = Depends(get_components)
) -> WebSocketManager:
    return components.websocket_manager


def get_chat_service(components: ChatComponents = Depends(get_components)) -> ChatService:
    return components.chat_service


def get_case_access(components: ChatComponents = Depends(get_components)) -> CaseAccessService:
    return components.case_access


def get_scheduler(
    components: ChatComponents = Depends(get_components)
) -> BatchPersistenceScheduler:
    return components.scheduler


def get_message_repository(components: ChatComponents = Depends(get_components)):
    return components.message_repository


def get_case_repository(components: ChatComponents = Depends(get_components)):
    return components.case_repository


def get_token_manager(components: ChatComponents = Depends(get_components)) -> TokenManager:
    return components.token_manager


def get_current_identity(
    authorization: Optional[str] = Header(None),
    token_manager: TokenManager = Depends(get_token_manager)
) -> ConnectionIdentity:
    """
    Authenticate an HTTP request from its `Authorization: Bearer` header.

    Raises:
        AuthenticationError: If the header is missing or the token invalid
    """
    token = extract_bearer_token(authorization)
    if token is None:
        raise_auth_error("Bearer token is missing", error_code=ErrorCode.AUTH_TOKEN_MISSING)
    return token_manager.authenticate(token)


def require_admin(
    identity: ConnectionIdentity = Depends(get_current_identity)
) -> ConnectionIdentity:
    """
    Restrict an endpoint to admin accounts.

    Raises:
        AuthorizationError: If the caller is not an admin
    """
    if not identity.is_admin:
        raise AuthorizationError(
            f"User {identity.user_id} is not an admin",
            error_code=ErrorCode.AUTH_INSUFFICIENT_PERMISSIONS,
            user_id=identity.user_id,
            role=identity.role,
            user_message="Admin access required"
        )
    return identity
