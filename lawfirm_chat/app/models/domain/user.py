"""
Domain model for users as seen by the chat subsystem.

Two views of a user exist here:
- ConnectionIdentity: the claims decoded from a login token and attached
  to a live connection or HTTP request
- SenderIdentity: the display identity (username, avatar) stamped onto
  every enriched chat message
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class UserRole(str, Enum):
    """Account types issued by the login flow."""
    CLIENT = "client"
    LAWYER = "lawyer"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: Any) -> Optional["UserRole"]:
        """Return the matching role, or None for unknown values."""
        try:
            return cls(str(value).lower())
        except ValueError:
            return None


@dataclass(frozen=True)
class ConnectionIdentity:
    """
    Verified token claims bound to one connection for its whole lifetime.

    The role is kept as the raw claim string so that an unknown account
    type still authenticates but never matches the admin rule.
    """

    user_id: str
    name: Optional[str]
    role: str
    email: Optional[str] = None

    @property
    def user_role(self) -> Optional[UserRole]:
        return UserRole.parse(self.role)

    @property
    def is_admin(self) -> bool:
        return self.user_role is UserRole.ADMIN

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "ConnectionIdentity":
        """Build an identity from login token claims (userId, name, type, email)."""
        return cls(
            user_id=str(claims["userId"]),
            name=claims.get("name"),
            role=str(claims.get("type", "")),
            email=claims.get("email"),
        )


@dataclass(frozen=True)
class SenderIdentity:
    """Display identity of a message sender."""

    user_id: str
    username: str
    avatar_url: Optional[str] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "SenderIdentity":
        """Convert a users collection document."""
        return cls(
            user_id=str(doc["_id"]),
            username=doc.get("username") or "",
            avatar_url=doc.get("avatar_url"),
        )
