"""
Batched persistence of chat messages.

Messages are broadcast to a room the moment they arrive, but written to the
message store in batches: the ingest pipeline appends each enriched message
to a MessageBatchBuffer, and a BatchPersistenceScheduler drains the buffer
on a fixed interval and writes one append per case.

Failure handling:
- A failed case batch never affects other cases in the same tick
- It is re-enqueued ahead of messages that arrived after it was drained
- After the configured number of retries it is moved to a bounded
  dead-letter log and reported at error level
"""

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Protocol, Sequence

from ..core.exceptions import PersistenceFlushError
from ..models.domain.message import EnrichedMessage
from ..utils.logging import get_logger, performance_context

logger = get_logger(__name__)


class MessageStore(Protocol):
    async def append_messages(self, case_id: str, records: Sequence[Dict[str, Any]]) -> int:
        ...


@dataclass
class PendingBatch:
    """Unpersisted messages of one case, in arrival order."""
    case_id: str
    messages: List[EnrichedMessage] = field(default_factory=list)
    attempts: int = 0

    def __len__(self) -> int:
        return len(self.messages)


@dataclass
class DeadLetter:
    """A batch given up on after exhausting its retries."""
    case_id: str
    records: List[Dict[str, Any]]
    attempts: int
    error: str
    failed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "case_id": self.case_id,
            "message_count": len(self.records),
            "attempts": self.attempts,
            "error": self.error,
            "failed_at": self.failed_at.isoformat(),
        }


@dataclass
class FlushReport:
    """Outcome of one flush pass."""
    persisted: Dict[str, int] = field(default_factory=dict)
    failed: List[str] = field(default_factory=list)
    dead_lettered: List[str] = field(default_factory=list)

    @property
    def total_persisted(self) -> int:
        return sum(self.persisted.values())

    @property
    def is_empty(self) -> bool:
        return not (self.persisted or self.failed or self.dead_lettered)

    def merge(self, other: "FlushReport") -> None:
        for case_id, count in other.persisted.items():
            self.persisted[case_id] = self.persisted.get(case_id, 0) + count
        self.failed.extend(other.failed)
        self.dead_lettered.extend(other.dead_lettered)


class MessageBatchBuffer:
    """
    In-memory mapping of case id to unpersisted messages.

    All methods are synchronous, so on the event loop each of them runs
    without interleaving with any other coroutine.
    """

    def __init__(self):
        self._batches: Dict[str, PendingBatch] = {}

    def append(self, message: EnrichedMessage) -> None:
        batch = self._batches.get(message.case_id)
        if batch is None:
            batch = self._batches[message.case_id] = PendingBatch(case_id=message.case_id)
        batch.messages.append(message)

    def drain(self) -> Dict[str, PendingBatch]:
        """Take every pending batch, leaving the buffer empty."""
        drained, self._batches = self._batches, {}
        return drained

    def requeue(self, batch: PendingBatch) -> None:
        """Put a failed batch back, ahead of anything appended since the drain."""
        newer = self._batches.get(batch.case_id)
        if newer is not None:
            batch.messages.extend(newer.messages)
        self._batches[batch.case_id] = batch

    def discard(self, case_id: str) -> int:
        """Drop a case's pending messages. Returns how many were dropped."""
        batch = self._batches.pop(case_id, None)
        return len(batch) if batch else 0

    def pending_for(self, case_id: str) -> int:
        batch = self._batches.get(case_id)
        return len(batch) if batch else 0

    @property
    def pending_count(self) -> int:
        return sum(len(batch) for batch in self._batches.values())

    @property
    def case_count(self) -> int:
        return len(self._batches)

    def __len__(self) -> int:
        return self.pending_count


class BatchPersistenceScheduler:
    """
    Background task that flushes the buffer to the message store.

    Each tick drains the whole buffer and issues one append per case. An
    empty buffer makes the tick a no-op. The loop survives any error raised
    by a tick.
    """

    def __init__(
        self,
        buffer: MessageBatchBuffer,
        store: MessageStore,
        interval_seconds: float = 5.0,
        max_retries: int = 3,
        dead_letter_capacity: int = 100
    ):
        self.buffer = buffer
        self.store = store
        self.interval_seconds = interval_seconds
        self.max_retries = max_retries
        self.dead_letters: Deque[DeadLetter] = deque(maxlen=dead_letter_capacity)

        self._flush_lock = asyncio.Lock()
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False

        self.total_flushes = 0
        self.total_persisted = 0
        self.total_failures = 0
        self.last_flush_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the periodic flush task."""
        if self._running:
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._flush_loop())

        logger.info(
            "Batch persistence scheduler started",
            interval_seconds=self.interval_seconds,
            max_retries=self.max_retries
        )

    async def stop(self) -> FlushReport:
        """
        Stop the periodic task and flush whatever is still buffered.

        Flushing repeats until the buffer is empty, so messages appended
        while the final flush is in flight are persisted too. Failing
        batches are retried immediately and dead-lettered once their
        retries run out; the number of passes is bounded.

        Returns:
            Combined report of the final flush passes
        """
        if self._running:
            self._running = False
            self._stop_event.set()
            if self._task:
                await self._task
                self._task = None

        report = FlushReport()
        for _ in range(self.max_retries + 2):
            report.merge(await self.flush_once())
            if not self.buffer.pending_count:
                break

        if self.buffer.pending_count:
            logger.error(
                "Messages left unpersisted at shutdown",
                pending_messages=self.buffer.pending_count,
                pending_cases=self.buffer.case_count
            )
        logger.info(
            "Batch persistence scheduler stopped",
            final_persisted=report.total_persisted,
            still_pending=self.buffer.pending_count
        )
        return report

    async def _flush_loop(self) -> None:
        while self._running:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

            if not self._running:
                break

            try:
                await self.flush_once()
            except Exception as e:
                logger.error("Error in batch flush loop", error=str(e))

    @asynccontextmanager
    async def flush_paused(self) -> AsyncIterator[None]:
        """Hold off flushes, e.g. while a case's history is deleted."""
        async with self._flush_lock:
            yield

    async def flush_once(self) -> FlushReport:
        """Drain the buffer and persist every case batch."""
        async with self._flush_lock:
            batches = self.buffer.drain()
            report = FlushReport()
            if not batches:
                return report

            with performance_context(
                "batch_flush",
                case_count=len(batches),
                message_count=sum(len(b) for b in batches.values())
            ):
                await asyncio.gather(
                    *(self._flush_batch(batch, report) for batch in batches.values())
                )

            self.total_flushes += 1
            self.total_persisted += report.total_persisted
            self.last_flush_at = datetime.now(timezone.utc)

            logger.info(
                "Message batches flushed",
                persisted=report.total_persisted,
                cases=len(report.persisted),
                failed_cases=report.failed,
                dead_lettered_cases=report.dead_lettered
            )
            return report

    async def _flush_batch(self, batch: PendingBatch, report: FlushReport) -> None:
        batch.attempts += 1
        records = [message.to_document() for message in batch.messages]

        try:
            persisted = await self.store.append_messages(batch.case_id, records)
        except asyncio.CancelledError:
            self.buffer.requeue(batch)
            raise
        except Exception as e:
            self.total_failures += 1
            error = PersistenceFlushError(
                f"Failed to persist {len(records)} messages for case {batch.case_id}: {e}",
                case_id=batch.case_id,
                batch_size=len(records),
                attempt=batch.attempts
            )

            if batch.attempts > self.max_retries:
                self._dead_letter(batch, records, error)
                report.dead_lettered.append(batch.case_id)
            else:
                logger.warning(
                    "Message batch flush failed, will retry",
                    case_id=batch.case_id,
                    batch_size=len(records),
                    attempt=batch.attempts,
                    error=str(e)
                )
                self.buffer.requeue(batch)
                report.failed.append(batch.case_id)
            return

        report.persisted[batch.case_id] = persisted

    def _dead_letter(
        self,
        batch: PendingBatch,
        records: List[Dict[str, Any]],
        error: PersistenceFlushError
    ) -> None:
        letter = DeadLetter(
            case_id=batch.case_id,
            records=records,
            attempts=batch.attempts,
            error=error.message
        )
        self.dead_letters.append(letter)
        logger.error(
            "Message batch dead-lettered",
            case_id=batch.case_id,
            batch_size=len(records),
            attempts=batch.attempts,
            error_code=error.error_code.value,
            error=error.message,
            records=records
        )

    def get_status(self) -> Dict[str, Any]:
        """Scheduler state for the operational status endpoint."""
        return {
            "running": self._running,
            "interval_seconds": self.interval_seconds,
            "max_retries": self.max_retries,
            "pending_messages": self.buffer.pending_count,
            "pending_cases": self.buffer.case_count,
            "total_flushes": self.total_flushes,
            "total_persisted": self.total_persisted,
            "total_failures": self.total_failures,
            "last_flush_at": self.last_flush_at.isoformat() if self.last_flush_at else None,
            "dead_letters": [letter.to_dict() for letter in self.dead_letters],
        }
