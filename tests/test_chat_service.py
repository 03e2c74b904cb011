"""
Unit tests for the chat event service.

Test Coverage:
- joinRoom authorization and roomJoined acknowledgement
- leaveRoom behavior
- chatMessage validation, re-authorization, enrichment, broadcast and
  buffering
- Error events sent to the originating connection only
"""

from unittest.mock import AsyncMock, MagicMock

from lawfirm_chat.app.core.exceptions import ErrorCode
from lawfirm_chat.app.core.websocket_manager import WebSocketManager
from lawfirm_chat.app.models.domain.case import CaseParticipants
from lawfirm_chat.app.services import chat_service as chat_service_module
from lawfirm_chat.app.services.case_access import CaseAccessService
from lawfirm_chat.app.services.chat_service import (
    CASE_NOT_FOUND_MESSAGE,
    JOIN_DENIED_MESSAGE,
    KIND_DENIED_MESSAGE,
    SEND_DENIED_MESSAGE,
    SEND_FAILED_MESSAGE,
    UNKNOWN_EVENT_MESSAGE,
    ChatService
)
from lawfirm_chat.app.services.identity_cache import IdentityCache
from lawfirm_chat.app.services.message_batcher import MessageBatchBuffer

from conftest import (
    CASE_ID,
    CASE_TITLE,
    FakeCaseRepository,
    FakeUserRepository,
    FakeWebSocket,
    admin_identity,
    client_identity,
    default_case,
    default_users,
    lawyer_identity,
    outsider_identity
)


class TestChatService:
    """Test suite for ChatService."""

    def setup_method(self):
        """Set up test fixtures before each test method."""
        self.cases = FakeCaseRepository([default_case()])
        self.users = FakeUserRepository(default_users())
        self.manager = WebSocketManager()
        self.buffer = MessageBatchBuffer()
        self.service = ChatService(
            self.manager,
            CaseAccessService(self.cases),
            IdentityCache(self.users),
            self.buffer,
            max_message_length=100
        )

        self.client = client_identity()
        self.lawyer = lawyer_identity()
        self.outsider = outsider_identity()
        self.client_ws = FakeWebSocket()
        self.lawyer_ws = FakeWebSocket()
        self.outsider_ws = FakeWebSocket()
        self.client_conn = self.manager.connect(self.client_ws, self.client)
        self.lawyer_conn = self.manager.connect(self.lawyer_ws, self.lawyer)
        self.outsider_conn = self.manager.connect(self.outsider_ws, self.outsider)

    async def send(self, connection_id, identity, text, case_id=CASE_ID, **extra):
        data = {"caseId": case_id, "message": text}
        data.update(extra)
        return await self.service.handle_chat_message(connection_id, identity, data)

    async def test_join_room(self):
        """Test a participant joins and is told the case title."""
        joined = await self.service.join_room(self.client_conn, self.client, CASE_ID)

        assert joined
        assert self.manager.is_member(self.client_conn, CASE_ID)
        assert self.client_ws.events_of("roomJoined") == [
            {"caseId": CASE_ID, "caseTitle": CASE_TITLE}
        ]

    async def test_join_room_object_payload(self):
        """Test joinRoom accepts {"caseId": ...}."""
        await self.service.handle_event(
            self.lawyer_conn, self.lawyer, "joinRoom", {"caseId": CASE_ID}
        )

        assert self.manager.is_member(self.lawyer_conn, CASE_ID)

    async def test_join_room_denied(self):
        """Test a non-participant is refused and not added to the room."""
        joined = await self.service.join_room(self.outsider_conn, self.outsider, CASE_ID)

        assert not joined
        assert not self.manager.is_member(self.outsider_conn, CASE_ID)
        assert self.outsider_ws.events_of("error") == [{"message": JOIN_DENIED_MESSAGE}]

    async def test_join_unknown_case(self):
        """Test joining a case that does not exist."""
        await self.service.join_room(self.client_conn, self.client, "case-404")

        assert self.client_ws.events_of("error") == [{"message": CASE_NOT_FOUND_MESSAGE}]
        assert self.manager.rooms == {}

    async def test_join_with_case_store_down(self):
        """Test a failing case lookup is reported without joining."""
        self.cases.fail = True

        await self.service.join_room(self.client_conn, self.client, CASE_ID)

        assert self.client_ws.events_of("error") == [{"message": "Failed to join chat room"}]

    async def test_join_invalid_payload(self):
        """Test a joinRoom without a case id."""
        await self.service.join_room(self.client_conn, self.client, {"room": 1})

        assert len(self.client_ws.events_of("error")) == 1

    async def test_leave_room(self):
        """Test leaving a joined room."""
        await self.service.join_room(self.client_conn, self.client, CASE_ID)

        left = await self.service.leave_room(self.client_conn, self.client, CASE_ID)

        assert left
        assert not self.manager.is_member(self.client_conn, CASE_ID)
        assert self.client_ws.events_of("roomLeft") == [{"caseId": CASE_ID}]

    async def test_leave_room_never_joined(self):
        """Test leaving a room never joined is acknowledged as a no-op."""
        left = await self.service.leave_room(self.client_conn, self.client, CASE_ID)

        assert not left
        assert self.client_ws.events_of("error") == []

    async def test_message_broadcast_and_buffered(self):
        """Test a message reaches every room member and the buffer."""
        await self.service.join_room(self.client_conn, self.client, CASE_ID)
        await self.service.join_room(self.lawyer_conn, self.lawyer, CASE_ID)

        accepted = await self.service.handle_chat_message(
            self.client_conn, self.client, {"caseId": CASE_ID, "message": "Hello"}
        )

        assert accepted
        for websocket in (self.client_ws, self.lawyer_ws):
            [message] = websocket.events_of("message")
            assert message["message"] == "Hello"
            assert message["message_sender_name"] == "alice"
            assert message["message_sender_avatar"] == "https://cdn.example/alice.png"
            assert message["message_type"] == "text"
            assert message["message_case_id"] == CASE_ID
        assert self.outsider_ws.events_of("message") == []
        assert self.buffer.pending_for(CASE_ID) == 1

    async def test_messages_keep_order(self):
        """Test messages from one sender arrive in send order."""
        await self.service.join_room(self.lawyer_conn, self.lawyer, CASE_ID)

        await self.send(self.client_conn, self.client, "m1")
        await self.send(self.client_conn, self.client, "m2")

        assert [m["message"] for m in self.lawyer_ws.events_of("message")] == ["m1", "m2"]
        batch = self.buffer.drain()[CASE_ID]
        assert [m.body for m in batch.messages] == ["m1", "m2"]

    async def test_sender_identity_looked_up_once(self):
        """Test the sender identity store is read once per user."""
        for text in ("a", "b", "c"):
            await self.send(self.client_conn, self.client, text)

        assert self.users.lookups == 1

    async def test_non_participant_cannot_send(self):
        """Test a non-participant's message is refused and never broadcast."""
        await self.service.join_room(self.client_conn, self.client, CASE_ID)

        accepted = await self.send(self.outsider_conn, self.outsider, "let me in")

        assert not accepted
        assert self.outsider_ws.events_of("error") == [{"message": SEND_DENIED_MESSAGE}]
        assert self.client_ws.events_of("message") == []
        assert self.buffer.pending_count == 0

    async def test_send_reauthorizes_every_message(self):
        """Test losing participation is enforced on the next message."""
        await self.service.join_room(self.lawyer_conn, self.lawyer, CASE_ID)
        await self.send(self.lawyer_conn, self.lawyer, "before")

        reassigned = CaseParticipants(
            case_id=CASE_ID, title=CASE_TITLE, client_id="u-client", assigned_lawyer_id="u-new"
        )
        self.cases.cases[CASE_ID] = reassigned
        await self.send(self.lawyer_conn, self.lawyer, "after")

        assert [m["message"] for m in self.lawyer_ws.events_of("message")] == ["before"]
        assert self.lawyer_ws.events_of("error") == [{"message": SEND_DENIED_MESSAGE}]
        assert self.buffer.pending_for(CASE_ID) == 1

    async def test_system_message_requires_admin(self):
        """Test only admins may send system messages."""
        admin_ws = FakeWebSocket()
        admin_conn = self.manager.connect(admin_ws, admin_identity())
        await self.service.join_room(self.client_conn, self.client, CASE_ID)

        await self.send(self.client_conn, self.client, "Case closed", type="system")
        assert self.client_ws.events_of("error") == [{"message": KIND_DENIED_MESSAGE}]

        await self.send(admin_conn, admin_identity(), "Case closed", type="system")
        [message] = self.client_ws.events_of("message")
        assert message["message_type"] == "system"
        assert message["message_sender_name"] == "root"

    async def test_system_message_denial_is_audited(self, monkeypatch):
        """Test a refused system message is recorded as a security event."""
        audit = MagicMock()
        monkeypatch.setattr(chat_service_module, "log_security_event", audit)

        await self.send(self.client_conn, self.client, "Case closed", type="system")

        audit.assert_called_once()
        assert audit.call_args.kwargs["event_type"] == "message_kind_denied"
        assert audit.call_args.kwargs["error_code"] == ErrorCode.MESSAGE_FORBIDDEN_TYPE.value
        assert self.buffer.pending_count == 0

    async def test_file_request_carries_file_name(self):
        """Test a file request message keeps its file name."""
        await self.service.join_room(self.client_conn, self.client, CASE_ID)

        await self.send(
            self.lawyer_conn, self.lawyer, "Please upload the lease",
            type="file_request", fileName="lease.pdf"
        )

        [message] = self.client_ws.events_of("message")
        assert message["message_type"] == "file_request"
        assert message["message_file_name"] == "lease.pdf"

    async def test_invalid_message_payload(self):
        """Test a malformed chatMessage is answered with an error only."""
        await self.service.handle_event(
            self.client_conn, self.client, "chatMessage", {"caseId": CASE_ID}
        )

        assert len(self.client_ws.events_of("error")) == 1
        assert self.buffer.pending_count == 0

    async def test_message_too_long(self):
        """Test the body length limit."""
        await self.send(self.client_conn, self.client, "x" * 101)

        [error] = self.client_ws.events_of("error")
        assert "maximum 100 characters" in error["message"]

    async def test_unknown_sender_fails_message(self):
        """Test a sender missing from the users store cannot send."""
        del self.users.users["u-client"]

        await self.send(self.client_conn, self.client, "Hello")

        assert self.client_ws.events_of("error") == [{"message": SEND_FAILED_MESSAGE}]
        assert self.buffer.pending_count == 0

    async def test_case_store_down_on_send(self):
        """Test a failing case lookup while sending reports a send failure."""
        await self.service.join_room(self.lawyer_conn, self.lawyer, CASE_ID)
        self.cases.fail = True

        accepted = await self.send(self.client_conn, self.client, "Hello")

        assert not accepted
        assert self.client_ws.events_of("error") == [{"message": SEND_FAILED_MESSAGE}]
        assert self.lawyer_ws.events_of("error") == []
        assert self.lawyer_ws.events_of("message") == []
        assert self.buffer.pending_count == 0

    async def test_broadcast_failure_is_not_buffered(self):
        """Test a broadcast that raises reports a send failure and buffers nothing."""
        await self.service.join_room(self.lawyer_conn, self.lawyer, CASE_ID)
        self.manager.broadcast_to_room = AsyncMock(side_effect=RuntimeError("room registry broken"))

        accepted = await self.send(self.client_conn, self.client, "Hello")

        assert not accepted
        assert self.client_ws.events_of("error") == [{"message": SEND_FAILED_MESSAGE}]
        assert self.lawyer_ws.events_of("error") == []
        assert self.buffer.pending_count == 0

    async def test_unknown_case_on_send(self):
        """Test sending to a case that does not exist."""
        await self.send(self.client_conn, self.client, "Hello", case_id="case-404")

        assert self.client_ws.events_of("error") == [{"message": CASE_NOT_FOUND_MESSAGE}]

    async def test_ping(self):
        """Test ping is answered with pong."""
        await self.service.handle_event(self.client_conn, self.client, "ping", {"n": 7})

        assert self.client_ws.events_of("pong") == [{"n": 7}]

    async def test_unknown_event(self):
        """Test an unknown event name."""
        await self.service.handle_event(self.client_conn, self.client, "shout", None)

        assert self.client_ws.events_of("error") == [{"message": UNKNOWN_EVENT_MESSAGE}]
