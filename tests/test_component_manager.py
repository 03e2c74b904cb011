"""
Unit tests for chat component wiring and lifecycle.
"""

from lawfirm_chat.app.core.component_manager import ChatComponents

from conftest import (
    CASE_ID,
    FakeCaseRepository,
    FakeMessageRepository,
    FakeUserRepository,
    FakeWebSocket,
    client_identity,
    default_case,
    default_users,
    lawyer_identity,
    make_settings
)


class TestChatComponentsShutdown:
    """Test suite for ChatComponents.shutdown."""

    def setup_method(self):
        """Set up test fixtures before each test method."""
        self.store = FakeMessageRepository()
        self.components = ChatComponents.build(
            make_settings(),
            case_repository=FakeCaseRepository([default_case()]),
            user_repository=FakeUserRepository(default_users()),
            message_repository=self.store
        )
        self.manager = self.components.websocket_manager
        self.service = self.components.chat_service

        self.client = client_identity()
        self.client_ws = FakeWebSocket()
        self.lawyer_ws = FakeWebSocket()
        self.client_conn = self.manager.connect(self.client_ws, self.client)
        self.lawyer_conn = self.manager.connect(self.lawyer_ws, lawyer_identity())

    async def say(self, text):
        return await self.service.handle_chat_message(
            self.client_conn, self.client, {"caseId": CASE_ID, "message": text}
        )

    async def test_sockets_closed_before_final_flush(self):
        """Test no socket is still open when the final flush writes."""
        open_at_write = []
        store_append = self.store.append_messages

        async def append_messages(case_id, records):
            open_at_write.append(self.manager.get_connection_count())
            return await store_append(case_id, records)

        self.store.append_messages = append_messages
        await self.components.start()
        await self.say("before shutdown")

        await self.components.shutdown()

        assert open_at_write == [0]
        assert self.client_ws.closed and self.lawyer_ws.closed

    async def test_message_handled_during_final_flush_is_persisted(self):
        """Test a chat message handled while the final flush writes is not lost."""
        store_append = self.store.append_messages

        async def append_messages(case_id, records):
            if not self.store.append_calls:
                await self.say("late")
            return await store_append(case_id, records)

        self.store.append_messages = append_messages
        await self.components.start()
        await self.service.join_room(self.lawyer_conn, lawyer_identity(), CASE_ID)
        await self.say("early")

        await self.components.shutdown()

        assert [r["message"] for r in self.store.documents[CASE_ID]] == ["early", "late"]
        assert self.components.buffer.pending_count == 0
        assert not self.components.scheduler.is_running
