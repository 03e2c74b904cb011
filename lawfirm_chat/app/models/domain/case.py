"""
Domain model for legal cases as seen by the chat subsystem.

Cases are owned by the case-management application; the chat layer only
needs the participant view of a case: who the client owner is, which lawyer
(if any) is assigned, and the title shown when a room is joined.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class CaseStatus(str, Enum):
    """Case lifecycle states used by the case-management application."""

    OPEN = "Open"
    ASSIGNED = "Assigned"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"
    CLOSED = "Closed"


def _ref_id(value: Any) -> Optional[str]:
    # References may be stored as ObjectId, string, or a populated sub-document
    if value is None:
        return None
    if isinstance(value, dict):
        value = value.get("_id")
        if value is None:
            return None
    return str(value)


@dataclass(frozen=True)
class CaseParticipants:
    """
    Immutable participant view of a case.

    Attributes:
        case_id: Case identifier (string form of the document _id)
        title: Case title shown to room members
        client_id: Owning client user id
        assigned_lawyer_id: Assigned lawyer user id, None while unassigned
        status: Raw case status string
    """

    case_id: str
    title: str
    client_id: Optional[str]
    assigned_lawyer_id: Optional[str] = None
    status: Optional[str] = None

    @property
    def has_assigned_lawyer(self) -> bool:
        return self.assigned_lawyer_id is not None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "CaseParticipants":
        """Convert a cases collection document."""
        return cls(
            case_id=str(doc["_id"]),
            title=doc.get("case_title") or "",
            client_id=_ref_id(doc.get("client_id")),
            assigned_lawyer_id=_ref_id(doc.get("assigned_lawyer_id")),
            status=doc.get("case_status"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.case_id,
            "case_title": self.title,
            "client_id": self.client_id,
            "assigned_lawyer_id": self.assigned_lawyer_id,
            "case_status": self.status,
        }
