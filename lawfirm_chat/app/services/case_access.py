"""
Case authorization for the chat subsystem.

One predicate decides whether a user may take part in a case's chat. It is
shared by room joins, message sends and the chat HTTP endpoints, so the
socket and HTTP layers can never disagree about who is a participant.
"""

from typing import Optional, Protocol

from ..core.exceptions import (
    DatabaseError,
    UpstreamLookupError,
    raise_case_access_denied,
    raise_case_not_found
)
from ..models.domain.case import CaseParticipants
from ..models.domain.user import ConnectionIdentity, UserRole
from ..utils.logging import get_logger, log_security_event

logger = get_logger(__name__)


class CaseLookup(Protocol):
    async def get_case_participants(self, case_id: str) -> Optional[CaseParticipants]:
        ...


def can_access_case(identity: ConnectionIdentity, case: CaseParticipants) -> bool:
    """
    Whether a user participates in a case.

    Admins participate in every case. A client participates in the cases
    they own, a lawyer in the cases assigned to them. A lawyer is never a
    participant of an unassigned case.
    """
    role = identity.user_role
    if role is UserRole.ADMIN:
        return True
    if role is UserRole.CLIENT:
        return case.client_id is not None and case.client_id == identity.user_id
    if role is UserRole.LAWYER:
        return case.has_assigned_lawyer and case.assigned_lawyer_id == identity.user_id
    return False


class CaseAccessService:
    """Resolves a case and applies the participant predicate to it."""

    def __init__(self, case_lookup: CaseLookup):
        self._case_lookup = case_lookup

    async def get_case(self, case_id: str) -> CaseParticipants:
        """
        Resolve a case.

        Raises:
            NotFoundError: If no such case exists
            UpstreamLookupError: If the case store cannot be queried
        """
        try:
            case = await self._case_lookup.get_case_participants(case_id)
        except DatabaseError as e:
            logger.warning("Case lookup failed", case_id=case_id, error=str(e))
            raise UpstreamLookupError(
                f"Failed to load case {case_id}: {e.message}",
                lookup="case",
                key=case_id
            ) from e

        if case is None:
            raise_case_not_found(case_id)
        return case

    async def authorize(
        self,
        identity: ConnectionIdentity,
        case_id: str,
        action: str = "access",
        denied_message: Optional[str] = None
    ) -> CaseParticipants:
        """
        Resolve a case and check the user participates in it.

        Args:
            identity: Verified caller identity
            case_id: Case to authorize against
            action: Action name recorded in the security log
            denied_message: User-facing message carried by a denial

        Returns:
            The resolved case

        Raises:
            NotFoundError: If no such case exists
            AuthorizationError: If the user is not a participant
            UpstreamLookupError: If the case store cannot be queried
        """
        case = await self.get_case(case_id)

        allowed = can_access_case(identity, case)
        if not allowed:
            log_security_event(
                event_type="case_access_denied",
                user_id=identity.user_id,
                resource_type="case",
                resource_id=case_id,
                action=action,
                success=False,
                role=identity.role
            )
            raise_case_access_denied(
                case_id=case_id,
                user_id=identity.user_id,
                role=identity.role,
                user_message=denied_message
            )

        return case
