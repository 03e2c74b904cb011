"""
MongoDB repository for user display identities.
"""

from typing import Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase

from lawfirm_chat.app.core.exceptions import raise_database_error
from lawfirm_chat.app.models.domain.user import SenderIdentity
from lawfirm_chat.app.utils.logging import (
    database_logger,
    get_logger,
    performance_context
)

logger = get_logger(__name__)


class UserRepository:
    """Read-only access to the users collection."""

    def __init__(self, database: AsyncIOMotorDatabase, collection_name: str = "users"):
        self._db = database
        self._collection_name = collection_name

    def _get_collection(self) -> AsyncIOMotorCollection:
        return self._db[self._collection_name]

    async def get_sender_identity(self, user_id: str) -> Optional[SenderIdentity]:
        """
        Get the username and avatar of a user.

        Returns:
            SenderIdentity if the user exists, None otherwise

        Raises:
            DatabaseError: If the lookup fails
        """
        if not ObjectId.is_valid(user_id):
            return None

        collection = self._get_collection()

        try:
            with performance_context("mongodb_get_sender_identity", user_id=user_id):
                user_doc = await collection.find_one(
                    {"_id": ObjectId(user_id)},
                    {"username": 1, "avatar_url": 1}
                )

                database_logger.query_executed(
                    database_type="mongodb",
                    operation="find_one",
                    collection=self._collection_name,
                    result_count=1 if user_doc else 0
                )

        except Exception as e:
            raise_database_error(
                f"Failed to get user {user_id}: {e}",
                operation="get_sender_identity",
                collection_name=self._collection_name
            )

        if not user_doc:
            return None
        return SenderIdentity.from_document(user_doc)
