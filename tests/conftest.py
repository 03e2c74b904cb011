"""
Shared fixtures and in-memory collaborators for the case chat tests.

The fakes implement the same async lookup and store interfaces as the
MongoDB repositories, so services and the full application can be tested
without a database.
"""

import asyncio
import json
from datetime import timedelta
from typing import Any, Dict, List, Optional, Set

import pytest

from lawfirm_chat.app.core.exceptions import DatabaseError
from lawfirm_chat.app.models.domain.case import CaseParticipants
from lawfirm_chat.app.models.domain.user import (
    ConnectionIdentity,
    SenderIdentity,
    UserRole
)
from lawfirm_chat.app.repositories.mongodb.message_repository import MessageSummary
from lawfirm_chat.app.utils.security import TokenManager
from lawfirm_chat.config.settings import AuthSettings, ChatSettings, Settings

TEST_SECRET = "test-secret"

CLIENT_ID = "u-client"
LAWYER_ID = "u-lawyer"
OUTSIDER_ID = "u-outsider"
ADMIN_ID = "u-admin"
CASE_ID = "case-42"
CASE_TITLE = "Smith v. Jones"


class FakeCaseRepository:
    """In-memory case lookup."""

    def __init__(self, cases: Optional[List[CaseParticipants]] = None):
        self.cases: Dict[str, CaseParticipants] = {case.case_id: case for case in cases or []}
        self.lookups = 0
        self.fail = False

    async def get_case_participants(self, case_id: str) -> Optional[CaseParticipants]:
        self.lookups += 1
        if self.fail:
            raise DatabaseError("cases collection unavailable")
        return self.cases.get(case_id)

    async def list_cases_for(self, identity: ConnectionIdentity) -> List[CaseParticipants]:
        role = identity.user_role
        if role is UserRole.ADMIN:
            return list(self.cases.values())
        if role is UserRole.CLIENT:
            return [c for c in self.cases.values() if c.client_id == identity.user_id]
        if role is UserRole.LAWYER:
            return [c for c in self.cases.values() if c.assigned_lawyer_id == identity.user_id]
        return []


class FakeUserRepository:
    """In-memory sender lookup that counts calls and can be held open."""

    def __init__(self, users: Optional[List[SenderIdentity]] = None):
        self.users: Dict[str, SenderIdentity] = {user.user_id: user for user in users or []}
        self.lookups = 0
        self.fail = False
        self.gate: Optional[asyncio.Event] = None

    async def get_sender_identity(self, user_id: str) -> Optional[SenderIdentity]:
        self.lookups += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise DatabaseError("users collection unavailable")
        return self.users.get(user_id)


class FakeMessageRepository:
    """In-memory message store keyed by case id."""

    def __init__(self):
        self.documents: Dict[str, List[Dict[str, Any]]] = {}
        self.append_calls: List[tuple] = []
        self.failing_cases: Set[str] = set()

    async def append_messages(self, case_id: str, records) -> int:
        self.append_calls.append((case_id, list(records)))
        if case_id in self.failing_cases:
            raise DatabaseError(f"write to case {case_id} failed")
        self.documents.setdefault(case_id, []).extend(records)
        return len(records)

    async def get_case_messages(self, case_id: str) -> List[Dict[str, Any]]:
        return list(self.documents.get(case_id, []))

    async def delete_case_messages(self, case_id: str) -> int:
        return 1 if self.documents.pop(case_id, None) is not None else 0

    async def get_message_summaries(self, case_ids) -> Dict[str, MessageSummary]:
        return {
            case_id: MessageSummary(
                case_id=case_id,
                message_count=len(self.documents[case_id]),
                last_message=self.documents[case_id][-1] if self.documents[case_id] else None
            )
            for case_id in case_ids
            if case_id in self.documents
        }


class FakeWebSocket:
    """Records frames written by the connection manager."""

    def __init__(self, fail_with: Optional[Exception] = None):
        self.sent: List[str] = []
        self.closed = False
        self.close_code: Optional[int] = None
        self.fail_with = fail_with

    async def send_text(self, data: str) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed = True
        self.close_code = code

    def events(self) -> List[Dict[str, Any]]:
        return [json.loads(frame) for frame in self.sent]

    def events_of(self, event_type: str) -> List[Dict[str, Any]]:
        return [event["data"] for event in self.events() if event["type"] == event_type]


def default_case() -> CaseParticipants:
    return CaseParticipants(
        case_id=CASE_ID,
        title=CASE_TITLE,
        client_id=CLIENT_ID,
        assigned_lawyer_id=LAWYER_ID,
        status="Assigned"
    )


def default_users() -> List[SenderIdentity]:
    return [
        SenderIdentity(user_id=CLIENT_ID, username="alice", avatar_url="https://cdn.example/alice.png"),
        SenderIdentity(user_id=LAWYER_ID, username="bob.counsel"),
        SenderIdentity(user_id=OUTSIDER_ID, username="mallory"),
        SenderIdentity(user_id=ADMIN_ID, username="root"),
    ]


def client_identity() -> ConnectionIdentity:
    return ConnectionIdentity(user_id=CLIENT_ID, name="Alice", role="client")


def lawyer_identity() -> ConnectionIdentity:
    return ConnectionIdentity(user_id=LAWYER_ID, name="Bob", role="lawyer")


def outsider_identity() -> ConnectionIdentity:
    return ConnectionIdentity(user_id=OUTSIDER_ID, name="Mallory", role="client")


def admin_identity() -> ConnectionIdentity:
    return ConnectionIdentity(user_id=ADMIN_ID, name="Root", role="admin")


def make_settings(**chat_overrides: Any) -> Settings:
    chat = {"flush_interval_seconds": 3600.0}
    chat.update(chat_overrides)
    return Settings(
        auth=AuthSettings(jwt_secret=TEST_SECRET),
        chat=ChatSettings(**chat)
    )


def make_token(
    user_id: str,
    role: str,
    name: Optional[str] = None,
    secret: str = TEST_SECRET,
    expires_in: timedelta = timedelta(hours=1)
) -> str:
    manager = TokenManager(AuthSettings(jwt_secret=secret))
    return manager.create_access_token(user_id, role, name=name, expires_in=expires_in)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def case_repository() -> FakeCaseRepository:
    return FakeCaseRepository([default_case()])


@pytest.fixture
def user_repository() -> FakeUserRepository:
    return FakeUserRepository(default_users())


@pytest.fixture
def message_repository() -> FakeMessageRepository:
    return FakeMessageRepository()
