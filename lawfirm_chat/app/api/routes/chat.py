"""
Case chat history API routes.

These endpoints read and bulk-delete the persisted chat history of a case.
They authenticate with the same login token as the chat socket (sent as an
Authorization: Bearer header) and authorize with the same participant rule,
so a user can read exactly the histories of the rooms they may join.
"""

from typing import List

from fastapi import APIRouter, Depends, Path, status

from ...core.exceptions import AuthorizationError, ErrorCode
from ...models.api.chat_schemas import (
    CaseWithMessagesResponse,
    DeleteMessagesResponse,
    LastMessageSummary,
    MessageRecordResponse
)
from ...models.domain.user import ConnectionIdentity
from ...services.case_access import CaseAccessService
from ...services.message_batcher import BatchPersistenceScheduler
from ...utils.logging import get_logger, log_business_event, performance_context
from ..deps import (
    get_case_access,
    get_case_repository,
    get_current_identity,
    get_message_repository,
    get_scheduler
)

logger = get_logger(__name__)
router = APIRouter()


@router.get(
    "/cases/messages",
    response_model=List[CaseWithMessagesResponse],
    summary="List Cases With Messages",
    description="Cases visible to the caller with their message count and last message"
)
async def get_cases_with_messages(
    identity: ConnectionIdentity = Depends(get_current_identity),
    case_repository=Depends(get_case_repository),
    message_repository=Depends(get_message_repository)
) -> List[CaseWithMessagesResponse]:
    """List the caller's cases with a summary of their chat activity."""
    if identity.user_role is None:
        raise AuthorizationError(
            f"Unknown account type {identity.role!r} for user {identity.user_id}",
            error_code=ErrorCode.AUTH_INSUFFICIENT_PERMISSIONS,
            user_id=identity.user_id,
            role=identity.role,
            user_message="Unauthorized access"
        )

    with performance_context("chat_cases_with_messages", user_id=identity.user_id):
        cases = await case_repository.list_cases_for(identity)
        summaries = await message_repository.get_message_summaries(
            [case.case_id for case in cases]
        )

    results = []
    for case in cases:
        summary = summaries.get(case.case_id)
        last_message = None
        if summary and summary.last_message:
            last_message = LastMessageSummary(
                message=summary.last_message.get("message", ""),
                sender=summary.last_message.get("message_sender_name"),
                timestamp=summary.last_message.get("message_sent_date")
            )
        results.append(CaseWithMessagesResponse(
            id=case.case_id,
            case_title=case.title,
            case_status=case.status,
            client_id=case.client_id,
            assigned_lawyer_id=case.assigned_lawyer_id,
            message_count=summary.message_count if summary else 0,
            last_message=last_message
        ))
    return results


@router.get(
    "/cases/{case_id}/messages",
    response_model=List[MessageRecordResponse],
    summary="Get Case Messages",
    description="Persisted chat history of a case, oldest first"
)
async def get_case_messages(
    case_id: str = Path(..., description="Case identifier"),
    identity: ConnectionIdentity = Depends(get_current_identity),
    case_access: CaseAccessService = Depends(get_case_access),
    message_repository=Depends(get_message_repository)
) -> List[MessageRecordResponse]:
    """Get a case's persisted messages."""
    case = await case_access.authorize(identity, case_id, action="read_history")
    return await message_repository.get_case_messages(case.case_id)


@router.delete(
    "/cases/{case_id}/messages",
    response_model=DeleteMessagesResponse,
    status_code=status.HTTP_200_OK,
    summary="Delete Case Messages",
    description="Delete a case's whole chat history, including unflushed messages"
)
async def delete_case_messages(
    case_id: str = Path(..., description="Case identifier"),
    identity: ConnectionIdentity = Depends(get_current_identity),
    case_access: CaseAccessService = Depends(get_case_access),
    message_repository=Depends(get_message_repository),
    scheduler: BatchPersistenceScheduler = Depends(get_scheduler)
) -> DeleteMessagesResponse:
    """Delete every message of a case."""
    case = await case_access.authorize(identity, case_id, action="delete_history")

    async with scheduler.flush_paused():
        deleted_count = await message_repository.delete_case_messages(case.case_id)
        discarded = scheduler.buffer.discard(case.case_id)

    log_business_event(
        "chat_history_deleted",
        user_id=identity.user_id,
        case_id=case.case_id,
        deleted_count=deleted_count,
        discarded_pending=discarded
    )
    return DeleteMessagesResponse(
        message="All messages deleted successfully",
        deleted_count=deleted_count,
        discarded_pending=discarded
    )


__all__ = ["router"]
