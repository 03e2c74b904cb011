"""
Unit tests for batched message persistence.

Test Coverage:
- Buffer append, drain, requeue and discard
- One append per case per flush, preserving arrival order
- Failure isolation between cases
- Retry ordering and dead-lettering
- Periodic flushing and the final flush on stop
"""

import asyncio
from datetime import datetime, timedelta, timezone

from lawfirm_chat.app.models.domain.message import EnrichedMessage, MessageKind
from lawfirm_chat.app.models.domain.user import SenderIdentity
from lawfirm_chat.app.services.message_batcher import (
    BatchPersistenceScheduler,
    MessageBatchBuffer,
    PendingBatch
)

from conftest import FakeMessageRepository

SENDER = SenderIdentity(user_id="u1", username="alice")
BASE_TIME = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def make_message(case_id: str, body: str, offset: int = 0) -> EnrichedMessage:
    return EnrichedMessage.build(
        case_id=case_id,
        sender=SENDER,
        kind=MessageKind.TEXT,
        body=body,
        sent_at=BASE_TIME + timedelta(seconds=offset)
    )


def bodies(records):
    return [record["message"] for record in records]


class TestMessageBatchBuffer:
    """Test suite for MessageBatchBuffer."""

    def setup_method(self):
        """Set up test fixtures before each test method."""
        self.buffer = MessageBatchBuffer()

    def test_append_groups_by_case(self):
        """Test messages are grouped per case in arrival order."""
        self.buffer.append(make_message("a", "1"))
        self.buffer.append(make_message("b", "2"))
        self.buffer.append(make_message("a", "3"))

        assert self.buffer.pending_for("a") == 2
        assert self.buffer.pending_for("b") == 1
        assert self.buffer.pending_count == 3
        assert self.buffer.case_count == 2
        assert len(self.buffer) == 3

    def test_drain_empties_buffer(self):
        """Test draining takes everything."""
        self.buffer.append(make_message("a", "1"))
        drained = self.buffer.drain()

        assert list(drained) == ["a"]
        assert [m.body for m in drained["a"].messages] == ["1"]
        assert self.buffer.pending_count == 0

    def test_requeue_goes_ahead_of_newer_messages(self):
        """Test a failed batch keeps its place before later arrivals."""
        self.buffer.append(make_message("a", "old"))
        batch = self.buffer.drain()["a"]
        self.buffer.append(make_message("a", "new"))

        self.buffer.requeue(batch)

        assert [m.body for m in self.buffer.drain()["a"].messages] == ["old", "new"]

    def test_requeue_into_empty_buffer(self):
        """Test requeueing when nothing arrived since the drain."""
        batch = PendingBatch(case_id="a", messages=[make_message("a", "1")], attempts=1)
        self.buffer.requeue(batch)

        assert self.buffer.pending_for("a") == 1

    def test_discard(self):
        """Test discarding one case's pending messages."""
        self.buffer.append(make_message("a", "1"))
        self.buffer.append(make_message("a", "2"))
        self.buffer.append(make_message("b", "3"))

        assert self.buffer.discard("a") == 2
        assert self.buffer.discard("a") == 0
        assert self.buffer.pending_count == 1


class TestBatchPersistenceScheduler:
    """Test suite for BatchPersistenceScheduler."""

    def setup_method(self):
        """Set up test fixtures before each test method."""
        self.store = FakeMessageRepository()
        self.buffer = MessageBatchBuffer()
        self.scheduler = BatchPersistenceScheduler(
            self.buffer,
            self.store,
            interval_seconds=3600,
            max_retries=2
        )

    async def test_empty_flush_is_noop(self):
        """Test a tick with nothing buffered writes nothing."""
        report = await self.scheduler.flush_once()

        assert report.is_empty
        assert self.store.append_calls == []
        assert self.scheduler.total_flushes == 0

    async def test_one_append_per_case(self):
        """Test three messages for one case and one for another in one tick."""
        for i, body in enumerate(["m1", "m2", "m3"]):
            self.buffer.append(make_message("case-a", body, offset=i))
        self.buffer.append(make_message("case-b", "other"))

        report = await self.scheduler.flush_once()

        assert sorted(case for case, _ in self.store.append_calls) == ["case-a", "case-b"]
        assert bodies(self.store.documents["case-a"]) == ["m1", "m2", "m3"]
        assert bodies(self.store.documents["case-b"]) == ["other"]
        assert report.persisted == {"case-a": 3, "case-b": 1}
        assert report.total_persisted == 4
        assert self.buffer.pending_count == 0

    async def test_records_use_store_shape(self):
        """Test persisted records carry the sender and receive time."""
        self.buffer.append(make_message("case-a", "hello"))

        await self.scheduler.flush_once()
        record = self.store.documents["case-a"][0]

        assert record["message_sender_id"] == "u1"
        assert record["message_sender_name"] == "alice"
        assert record["message_type"] == "text"
        assert record["message_sent_date"] == BASE_TIME

    async def test_failure_is_isolated_per_case(self):
        """Test one case's write failure does not affect another case."""
        self.store.failing_cases.add("case-a")
        self.buffer.append(make_message("case-a", "lost?"))
        self.buffer.append(make_message("case-b", "safe"))

        report = await self.scheduler.flush_once()

        assert report.persisted == {"case-b": 1}
        assert report.failed == ["case-a"]
        assert bodies(self.store.documents["case-b"]) == ["safe"]
        assert self.buffer.pending_for("case-a") == 1
        assert self.scheduler.total_failures == 1

    async def test_retry_preserves_order(self):
        """Test a retried batch is written before messages that arrived later."""
        self.store.failing_cases.add("case-a")
        self.buffer.append(make_message("case-a", "m1"))
        await self.scheduler.flush_once()

        self.buffer.append(make_message("case-a", "m2", offset=1))
        self.store.failing_cases.clear()
        report = await self.scheduler.flush_once()

        assert report.persisted == {"case-a": 2}
        assert bodies(self.store.documents["case-a"]) == ["m1", "m2"]

    async def test_dead_letter_after_retries(self):
        """Test a batch failing the first attempt and every retry is dead-lettered."""
        self.store.failing_cases.add("case-a")
        self.buffer.append(make_message("case-a", "doomed"))

        first = await self.scheduler.flush_once()
        second = await self.scheduler.flush_once()
        third = await self.scheduler.flush_once()

        assert first.failed == ["case-a"]
        assert second.failed == ["case-a"]
        assert third.dead_lettered == ["case-a"]
        assert self.buffer.pending_count == 0
        assert len(self.scheduler.dead_letters) == 1

        letter = self.scheduler.dead_letters[0]
        assert letter.case_id == "case-a"
        assert letter.attempts == 3
        assert bodies(letter.records) == ["doomed"]

        status = self.scheduler.get_status()
        assert status["dead_letters"][0]["message_count"] == 1

    async def test_dead_letter_log_is_bounded(self):
        """Test the dead-letter log keeps only the most recent batches."""
        scheduler = BatchPersistenceScheduler(
            self.buffer, self.store, max_retries=0, dead_letter_capacity=2
        )
        for case_id in ("c1", "c2", "c3"):
            self.store.failing_cases.add(case_id)
            self.buffer.append(make_message(case_id, "x"))
            await scheduler.flush_once()

        assert [letter.case_id for letter in scheduler.dead_letters] == ["c2", "c3"]

    async def test_stop_flushes_remaining_messages(self):
        """Test shutdown persists whatever is still buffered."""
        await self.scheduler.start()
        assert self.scheduler.is_running

        self.buffer.append(make_message("case-a", "last words"))
        report = await self.scheduler.stop()

        assert not self.scheduler.is_running
        assert report.persisted == {"case-a": 1}
        assert bodies(self.store.documents["case-a"]) == ["last words"]

    async def test_stop_persists_messages_arriving_during_final_flush(self):
        """Test a message buffered while the final flush writes is not lost."""
        store_append = self.store.append_messages

        async def append_then_receive_late_message(case_id, records):
            if not self.store.append_calls:
                self.buffer.append(make_message("case-a", "late", offset=1))
            return await store_append(case_id, records)

        self.store.append_messages = append_then_receive_late_message
        self.buffer.append(make_message("case-a", "early"))

        report = await self.scheduler.stop()

        assert bodies(self.store.documents["case-a"]) == ["early", "late"]
        assert report.persisted == {"case-a": 2}
        assert self.buffer.pending_count == 0

    async def test_stop_dead_letters_batches_that_keep_failing(self):
        """Test the final flush gives up on a failing batch after its retries."""
        self.store.failing_cases.add("case-a")
        self.buffer.append(make_message("case-a", "undeliverable"))

        report = await self.scheduler.stop()

        assert report.failed == ["case-a", "case-a"]
        assert report.dead_lettered == ["case-a"]
        assert self.buffer.pending_count == 0
        assert self.scheduler.dead_letters[0].attempts == 3

    async def test_periodic_flush(self):
        """Test the background task flushes on its interval."""
        scheduler = BatchPersistenceScheduler(self.buffer, self.store, interval_seconds=0.01)
        await scheduler.start()
        try:
            self.buffer.append(make_message("case-a", "tick"))
            for _ in range(200):
                if self.store.documents:
                    break
                await asyncio.sleep(0.01)
        finally:
            await scheduler.stop()

        assert bodies(self.store.documents["case-a"]) == ["tick"]
        assert scheduler.total_flushes >= 1

    async def test_loop_survives_failures(self):
        """Test a failing tick does not stop later ticks."""
        scheduler = BatchPersistenceScheduler(
            self.buffer, self.store, interval_seconds=0.01, max_retries=100
        )
        self.store.failing_cases.add("case-a")
        self.buffer.append(make_message("case-a", "eventually"))
        await scheduler.start()
        try:
            for _ in range(200):
                if scheduler.total_failures >= 2:
                    break
                await asyncio.sleep(0.01)
            self.store.failing_cases.clear()
            for _ in range(200):
                if self.store.documents:
                    break
                await asyncio.sleep(0.01)
        finally:
            await scheduler.stop()

        assert bodies(self.store.documents["case-a"]) == ["eventually"]

    async def test_flush_paused_blocks_flushes(self):
        """Test a flush waits while flushes are paused."""
        self.buffer.append(make_message("case-a", "held"))

        async with self.scheduler.flush_paused():
            flush = asyncio.create_task(self.scheduler.flush_once())
            await asyncio.sleep(0.01)
            assert not flush.done()
            self.buffer.discard("case-a")

        report = await flush
        assert report.is_empty
        assert self.store.append_calls == []
