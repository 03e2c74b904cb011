"""
Database connection management for the law-firm case chat service.

This module provides:
- MongoDB connection management with async (motor) support
- Index creation for the chat message collection
- Database health checking
- Connection lifecycle and graceful shutdown
"""

import asyncio
import time
from typing import Any, Dict, List, Optional

import pymongo
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import ConnectionFailure, PyMongoError, ServerSelectionTimeoutError

from .exceptions import ErrorCode, raise_database_error
from ..utils.logging import database_logger, get_logger, performance_context
from lawfirm_chat.config.settings import DatabaseSettings

logger = get_logger(__name__)


class MongoDBManager:
    """
    MongoDB connection and lifecycle management.

    Provides the shared motor client used by the case, user and message
    repositories, plus health checking and index management.
    """

    def __init__(self, settings: DatabaseSettings):
        self.settings = settings
        self.client: Optional[AsyncIOMotorClient] = None
        self.database: Optional[AsyncIOMotorDatabase] = None
        self.is_connected: bool = False
        self._connection_lock = asyncio.Lock()

    async def connect(self) -> None:
        """
        Establish connection to MongoDB.

        Raises:
            DatabaseError: If connection fails
        """
        if self.is_connected:
            return

        async with self._connection_lock:
            if self.is_connected:
                return

            try:
                with performance_context("mongodb_connection"):
                    self.client = AsyncIOMotorClient(
                        self.settings.mongodb_uri,
                        serverSelectionTimeoutMS=self.settings.server_selection_timeout_ms,
                        connectTimeoutMS=self.settings.server_selection_timeout_ms,
                        maxPoolSize=self.settings.max_pool_size,
                        retryWrites=True,
                        retryReads=True,
                        tz_aware=True
                    )
                    self.database = self.client[self.settings.mongodb_database]

                    await self.client.admin.command('ping')
                    self.is_connected = True

                    database_logger.connection_established(
                        database_type="mongodb",
                        database_name=self.settings.mongodb_database
                    )
                    logger.info(
                        "MongoDB connection established",
                        database=self.settings.mongodb_database,
                        uri=self.settings.mongodb_uri.split('@')[-1]  # Hide credentials
                    )

            except (ConnectionFailure, ServerSelectionTimeoutError) as e:
                database_logger.connection_failed("mongodb", str(e))
                raise_database_error(
                    f"Failed to connect to MongoDB: {e}",
                    operation="connect",
                    error_code=ErrorCode.DATABASE_CONNECTION_ERROR
                )

    async def disconnect(self) -> None:
        """Close MongoDB connection."""
        if self.client and self.is_connected:
            self.client.close()
            self.is_connected = False
            logger.info("MongoDB connection closed")

    async def health_check(self) -> Dict[str, Any]:
        """
        Perform MongoDB health check.

        Returns:
            Health status information
        """
        if not self.is_connected or self.client is None:
            return {
                "status": "disconnected",
                "error": "Not connected to MongoDB"
            }

        try:
            start_time = time.perf_counter()
            await self.client.admin.command('ping')
            latency = (time.perf_counter() - start_time) * 1000

            return {
                "status": "healthy",
                "latency_ms": round(latency, 2),
            }
        except Exception as e:
            return {
                "status": "unhealthy",
                "error": str(e)
            }

    async def create_indexes(self) -> List[str]:
        """
        Create the indexes the chat subsystem relies on.

        The collections are shared with the main application, so an index
        that cannot be built (e.g. duplicate message documents for one case
        blocking the unique index) is logged and skipped instead of failing
        startup.

        Returns:
            Names of the indexes that could not be created
        """
        database = self.get_database()
        indexes = [
            # One message document per case, upserted by case id
            (self.settings.messages_collection, "message_case_id", "message_case_id_unique", True),
            (self.settings.cases_collection, "client_id", "case_client", False),
            (self.settings.cases_collection, "assigned_lawyer_id", "case_assigned_lawyer", False),
        ]

        failed = []
        with performance_context("mongodb_create_indexes"):
            for collection_name, field_name, index_name, unique in indexes:
                try:
                    await database[collection_name].create_index(
                        [(field_name, pymongo.ASCENDING)],
                        unique=unique,
                        name=index_name
                    )
                except PyMongoError as e:
                    failed.append(index_name)
                    logger.error(
                        "Failed to create MongoDB index",
                        collection=collection_name,
                        index=index_name,
                        error=str(e)
                    )

        if failed:
            logger.warning("MongoDB indexes partially ensured", failed_indexes=failed)
        else:
            logger.info("MongoDB indexes ensured")
        return failed

    def get_database(self) -> AsyncIOMotorDatabase:
        """
        Get the MongoDB database instance.

        Raises:
            DatabaseError: If not connected
        """
        if self.database is None:
            raise_database_error(
                "MongoDB not connected",
                operation="get_database",
                error_code=ErrorCode.DATABASE_CONNECTION_ERROR
            )
        return self.database


class DatabaseManager:
    """
    Central database management coordinator.

    Owns the MongoDB manager for the application lifetime.
    """

    def __init__(self, settings: DatabaseSettings):
        self.mongodb = MongoDBManager(settings)
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """
        Initialize database connections and indexes.

        Raises:
            DatabaseError: If the connection fails
        """
        if self._initialized:
            return

        try:
            with performance_context("database_initialization"):
                await self.mongodb.connect()
                await self.mongodb.create_indexes()
                self._initialized = True
                logger.info("Database connections initialized successfully")

        except Exception as e:
            logger.error("Database initialization failed", error=str(e))
            await self.shutdown()
            raise

    async def shutdown(self) -> None:
        """Gracefully shutdown database connections."""
        await self.mongodb.disconnect()
        self._initialized = False
        logger.info("All database connections closed")

    async def health_check(self) -> Dict[str, Any]:
        """
        Perform health check on the database.

        Returns:
            Health status for the database
        """
        mongodb_health = await self.mongodb.health_check()
        return {
            "overall_status": "healthy" if mongodb_health.get("status") == "healthy" else "degraded",
            "databases": {
                "mongodb": mongodb_health,
            }
        }

    def get_mongodb(self) -> AsyncIOMotorDatabase:
        """Get MongoDB database instance."""
        return self.mongodb.get_database()
