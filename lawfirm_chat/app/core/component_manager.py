"""
Component wiring for the case chat service.

ChatComponents owns one instance of every stateful part of the chat
subsystem for the lifetime of the application:
- Repositories for cases, users and messages
- Identity cache and case access service
- Message batch buffer and its persistence scheduler
- WebSocket connection/room manager and the chat event service

The container is built once at startup and stored on the application state,
from which routes resolve it. Tests build it directly from in-memory fakes.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from .database import DatabaseManager
from .websocket_manager import WebSocketManager
from ..repositories.mongodb.case_repository import CaseRepository
from ..repositories.mongodb.message_repository import MessageRepository
from ..repositories.mongodb.user_repository import UserRepository
from ..services.case_access import CaseAccessService
from ..services.chat_service import ChatService
from ..services.identity_cache import IdentityCache
from ..services.message_batcher import BatchPersistenceScheduler, MessageBatchBuffer
from ..utils.logging import get_logger
from ..utils.security import TokenManager
from lawfirm_chat.config.settings import Settings

logger = get_logger(__name__)


@dataclass
class ChatComponents:
    """Every long-lived chat component, built once per application."""

    settings: Settings
    token_manager: TokenManager
    case_repository: Any
    user_repository: Any
    message_repository: Any
    identity_cache: IdentityCache
    case_access: CaseAccessService
    buffer: MessageBatchBuffer
    scheduler: BatchPersistenceScheduler
    websocket_manager: WebSocketManager
    chat_service: ChatService
    database_manager: Optional[DatabaseManager] = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        case_repository: Any,
        user_repository: Any,
        message_repository: Any,
        database_manager: Optional[DatabaseManager] = None
    ) -> "ChatComponents":
        """
        Wire the chat components around the given repositories.

        Args:
            settings: Application settings
            case_repository: Provides get_case_participants / list_cases_for
            user_repository: Provides get_sender_identity
            message_repository: Provides the message store operations
            database_manager: Owner of the database connection, if any
        """
        chat_settings = settings.chat

        identity_cache = IdentityCache(user_repository)
        case_access = CaseAccessService(case_repository)
        buffer = MessageBatchBuffer()
        scheduler = BatchPersistenceScheduler(
            buffer,
            message_repository,
            interval_seconds=chat_settings.flush_interval_seconds,
            max_retries=chat_settings.max_flush_retries,
            dead_letter_capacity=chat_settings.dead_letter_capacity
        )
        websocket_manager = WebSocketManager(
            max_connections_per_user=chat_settings.max_connections_per_user
        )
        chat_service = ChatService(
            websocket_manager,
            case_access,
            identity_cache,
            buffer,
            max_message_length=chat_settings.max_message_length
        )

        return cls(
            settings=settings,
            token_manager=TokenManager(settings.auth),
            case_repository=case_repository,
            user_repository=user_repository,
            message_repository=message_repository,
            identity_cache=identity_cache,
            case_access=case_access,
            buffer=buffer,
            scheduler=scheduler,
            websocket_manager=websocket_manager,
            chat_service=chat_service,
            database_manager=database_manager
        )

    @classmethod
    async def from_database(cls, settings: Settings) -> "ChatComponents":
        """
        Connect to MongoDB and wire the components around its collections.

        Raises:
            DatabaseError: If the database cannot be reached
        """
        database_manager = DatabaseManager(settings.database)
        await database_manager.initialize()

        database = database_manager.get_mongodb()
        db_settings = settings.database
        return cls.build(
            settings,
            case_repository=CaseRepository(database, db_settings.cases_collection),
            user_repository=UserRepository(database, db_settings.users_collection),
            message_repository=MessageRepository(database, db_settings.messages_collection),
            database_manager=database_manager
        )

    async def start(self) -> None:
        """Start background work."""
        await self.scheduler.start()
        logger.info("Chat components started")

    async def shutdown(self) -> None:
        """
        Stop everything in reverse start order.

        Sockets are closed before the scheduler's final flush, and the
        final flush runs before the database is closed.
        """
        try:
            await self.websocket_manager.close_all()
        except Exception as e:
            logger.error("Error closing WebSocket connections", error=str(e))

        try:
            await self.scheduler.stop()
        except Exception as e:
            logger.error("Error stopping batch scheduler", error=str(e))

        if self.database_manager:
            try:
                await self.database_manager.shutdown()
            except Exception as e:
                logger.error("Error closing database connections", error=str(e))

        logger.info("Chat components stopped")

    async def health_check(self) -> Dict[str, Any]:
        """Health of every component, for the /health endpoint."""
        if self.database_manager:
            database = await self.database_manager.health_check()
            database_status = database["overall_status"]
        else:
            database_status = "not_configured"

        scheduler_status = "healthy" if self.scheduler.is_running else "stopped"
        overall = "healthy"
        if database_status not in ("healthy", "not_configured") or scheduler_status != "healthy":
            overall = "degraded"

        return {
            "status": overall,
            "services": {
                "database": database_status,
                "batch_scheduler": scheduler_status,
                "websocket": "healthy",
            },
            "connections": self.websocket_manager.get_connection_count(),
            "pending_messages": self.buffer.pending_count,
        }
