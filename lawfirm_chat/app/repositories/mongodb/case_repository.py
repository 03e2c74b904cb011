"""
MongoDB repository for case lookups used by the case chat service.

Cases are owned by the case-management application. This repository only
reads them, and only the fields the chat layer needs:
- Participant view of a single case for authorization
- Cases visible to a user for the cases-with-messages listing
"""

from typing import Any, Dict, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase

from lawfirm_chat.app.core.exceptions import raise_database_error
from lawfirm_chat.app.models.domain.case import CaseParticipants
from lawfirm_chat.app.models.domain.user import ConnectionIdentity, UserRole
from lawfirm_chat.app.utils.logging import (
    database_logger,
    get_logger,
    performance_context
)

logger = get_logger(__name__)

_PARTICIPANT_PROJECTION = {
    "case_title": 1,
    "client_id": 1,
    "assigned_lawyer_id": 1,
    "case_status": 1,
}


def reference_filter(value: str) -> Any:
    """
    Match a user reference stored either as ObjectId or as a plain string.
    """
    if ObjectId.is_valid(value):
        return {"$in": [ObjectId(value), value]}
    return value


class CaseRepository:
    """Read-only access to the cases collection."""

    def __init__(self, database: AsyncIOMotorDatabase, collection_name: str = "cases"):
        self._db = database
        self._collection_name = collection_name

    def _get_collection(self) -> AsyncIOMotorCollection:
        return self._db[self._collection_name]

    async def get_case_participants(self, case_id: str) -> Optional[CaseParticipants]:
        """
        Get the participant view of a case.

        Args:
            case_id: Case identifier, a hex ObjectId string for cases created
                by the case-management application

        Returns:
            CaseParticipants if found, None otherwise

        Raises:
            DatabaseError: If the lookup fails
        """
        collection = self._get_collection()
        document_id = ObjectId(case_id) if ObjectId.is_valid(case_id) else case_id

        try:
            with performance_context("mongodb_get_case_participants", case_id=case_id):
                case_doc = await collection.find_one(
                    {"_id": document_id},
                    _PARTICIPANT_PROJECTION
                )

                database_logger.query_executed(
                    database_type="mongodb",
                    operation="find_one",
                    collection=self._collection_name,
                    result_count=1 if case_doc else 0
                )

        except Exception as e:
            raise_database_error(
                f"Failed to get case {case_id}: {e}",
                operation="get_case_participants",
                collection_name=self._collection_name
            )

        if not case_doc:
            return None
        return CaseParticipants.from_document(case_doc)

    async def list_cases_for(self, identity: ConnectionIdentity) -> List[CaseParticipants]:
        """
        List the cases a user participates in.

        Clients see the cases they own, lawyers the cases assigned to them,
        admins every case. Other account types see nothing.
        """
        role = identity.user_role
        query_filter: Dict[str, Any]
        if role is UserRole.ADMIN:
            query_filter = {}
        elif role is UserRole.CLIENT:
            query_filter = {"client_id": reference_filter(identity.user_id)}
        elif role is UserRole.LAWYER:
            query_filter = {"assigned_lawyer_id": reference_filter(identity.user_id)}
        else:
            return []

        collection = self._get_collection()

        try:
            with performance_context("mongodb_list_cases_for", user_id=identity.user_id):
                cursor = collection.find(query_filter, _PARTICIPANT_PROJECTION)
                case_docs = await cursor.to_list(length=None)

                database_logger.query_executed(
                    database_type="mongodb",
                    operation="find",
                    collection=self._collection_name,
                    result_count=len(case_docs)
                )

        except Exception as e:
            raise_database_error(
                f"Failed to list cases for user {identity.user_id}: {e}",
                operation="list_cases_for",
                collection_name=self._collection_name
            )

        return [CaseParticipants.from_document(doc) for doc in case_docs]
