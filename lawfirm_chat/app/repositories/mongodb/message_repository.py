"""
MongoDB repository for persisted case chat messages.

Each case owns one document in the messages collection:

    {"message_case_id": "<case id>", "message_list": [<record>, ...]}

Records are only ever appended by the batch scheduler; the HTTP layer reads
them back and may bulk-delete a case's whole document.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase

from lawfirm_chat.app.core.exceptions import raise_database_error
from lawfirm_chat.app.utils.logging import (
    database_logger,
    get_logger,
    performance_context
)

logger = get_logger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _from_epoch_millis(millis: float) -> datetime:
    try:
        return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return _EPOCH


def _sent_date_key(record: Dict[str, Any]) -> datetime:
    # Older records stored the date as a string: epoch milliseconds or ISO 8601
    value = record.get("message_sent_date")
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _from_epoch_millis(value)
    if isinstance(value, str):
        if value.isascii() and value.isdigit():
            return _from_epoch_millis(int(value))
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return _EPOCH
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return _EPOCH


@dataclass
class MessageSummary:
    """Message count and most recently appended record of a case."""

    case_id: str
    message_count: int
    last_message: Optional[Dict[str, Any]] = None


class MessageRepository:
    """Data access for the per-case message documents."""

    def __init__(self, database: AsyncIOMotorDatabase, collection_name: str = "messages"):
        self._db = database
        self._collection_name = collection_name

    def _get_collection(self) -> AsyncIOMotorCollection:
        return self._db[self._collection_name]

    async def append_messages(self, case_id: str, records: Sequence[Dict[str, Any]]) -> int:
        """
        Append records to a case's message list in one write.

        The document is created when the case has none yet. Records keep
        the order they are given in.

        Returns:
            Number of records appended

        Raises:
            DatabaseError: If the write fails
        """
        if not records:
            return 0

        collection = self._get_collection()

        try:
            with performance_context(
                "mongodb_append_messages", case_id=case_id, batch_size=len(records)
            ):
                await collection.update_one(
                    {"message_case_id": case_id},
                    {"$push": {"message_list": {"$each": list(records)}}},
                    upsert=True
                )

                database_logger.query_executed(
                    database_type="mongodb",
                    operation="update_one",
                    collection=self._collection_name,
                    result_count=len(records)
                )

        except Exception as e:
            raise_database_error(
                f"Failed to append {len(records)} messages to case {case_id}: {e}",
                operation="append_messages",
                collection_name=self._collection_name
            )

        return len(records)

    async def get_case_messages(self, case_id: str) -> List[Dict[str, Any]]:
        """
        Get a case's messages, oldest first.

        Returns:
            Message records, empty when the case has no history
        """
        collection = self._get_collection()

        try:
            with performance_context("mongodb_get_case_messages", case_id=case_id):
                message_doc = await collection.find_one({"message_case_id": case_id})

                database_logger.query_executed(
                    database_type="mongodb",
                    operation="find_one",
                    collection=self._collection_name,
                    result_count=1 if message_doc else 0
                )

        except Exception as e:
            raise_database_error(
                f"Failed to get messages for case {case_id}: {e}",
                operation="get_case_messages",
                collection_name=self._collection_name
            )

        if not message_doc or not message_doc.get("message_list"):
            return []

        records = [
            {key: value for key, value in record.items() if key != "_id"}
            for record in message_doc["message_list"]
        ]
        # Stable: records sent in the same instant keep append order
        records.sort(key=_sent_date_key)
        return records

    async def delete_case_messages(self, case_id: str) -> int:
        """
        Delete a case's whole message document.

        Returns:
            Number of documents deleted (0 or 1)
        """
        collection = self._get_collection()

        try:
            with performance_context("mongodb_delete_case_messages", case_id=case_id):
                result = await collection.delete_one({"message_case_id": case_id})

                database_logger.query_executed(
                    database_type="mongodb",
                    operation="delete_one",
                    collection=self._collection_name,
                    result_count=result.deleted_count
                )

        except Exception as e:
            raise_database_error(
                f"Failed to delete messages for case {case_id}: {e}",
                operation="delete_case_messages",
                collection_name=self._collection_name
            )

        logger.info(
            "Case messages deleted",
            case_id=case_id,
            deleted_count=result.deleted_count
        )
        return result.deleted_count

    async def get_message_summaries(self, case_ids: Sequence[str]) -> Dict[str, MessageSummary]:
        """
        Get message count and last message for several cases at once.

        Cases without a message document are absent from the result.
        """
        if not case_ids:
            return {}

        collection = self._get_collection()
        pipeline = [
            {"$match": {"message_case_id": {"$in": list(case_ids)}}},
            {"$project": {
                "_id": 0,
                "message_case_id": 1,
                "message_count": {"$size": {"$ifNull": ["$message_list", []]}},
                "last_message": {"$arrayElemAt": ["$message_list", -1]},
            }},
        ]

        try:
            with performance_context("mongodb_get_message_summaries", case_count=len(case_ids)):
                cursor = collection.aggregate(pipeline)
                rows = await cursor.to_list(length=None)

                database_logger.query_executed(
                    database_type="mongodb",
                    operation="aggregate",
                    collection=self._collection_name,
                    result_count=len(rows)
                )

        except Exception as e:
            raise_database_error(
                f"Failed to summarize messages: {e}",
                operation="get_message_summaries",
                collection_name=self._collection_name
            )

        return {
            row["message_case_id"]: MessageSummary(
                case_id=row["message_case_id"],
                message_count=row.get("message_count", 0),
                last_message=row.get("last_message"),
            )
            for row in rows
        }
