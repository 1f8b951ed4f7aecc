"""
Dead Letter Queue (DLQ)
=======================

Durable store of operations whose failures survived in-process retry,
queued for asynchronous replay.

Key Features:
1. Best-effort enqueue straight from an agent's failure path
2. Poll loop on a fixed interval, independent of any single agent
3. Replay through the owning agent's registered replay handler
4. Capped exponential backoff between replays
5. Staleness sweep for entries left in ``retrying`` by a crashed consumer

Entry lifecycle::

    pending -> retrying -> resolved                 (replay succeeded)
                        -> pending                  (failed, retries left)
                        -> failed                   (retry_count reached max_retries)

``resolved`` and ``failed`` are terminal and retained for audit; nothing is
deleted unless an operator calls ``purge()``.

Delivery is at-least-once. There is no cross-process locking: either run
one consumer per replay channel or make replay handlers idempotent.
"""

import logging
import traceback
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from unit_talk.config import DeadLetterConfig
from unit_talk.services import alerts
from unit_talk.services.events import AgentEvents
from unit_talk.services.exceptions import (
    AgentError,
    DatabaseError,
    DeadLetterNotFoundError,
    ValidationError,
)
from unit_talk.services.persistence import (
    AGENT_ALERTS_TABLE,
    DEAD_LETTER_TABLE,
    PersistenceLayer,
)
from unit_talk.services.scheduler import Clock, IntervalScheduler, SystemClock

logger = logging.getLogger(__name__)

POLL_JOB_ID = "dead-letter-poll"
FAILED_ALERT_TYPE = "dead_letter_failed"


# =============================================================================
# Enums
# =============================================================================

class DeadLetterStatus(str, Enum):
    """Dead-letter entry lifecycle status."""
    PENDING = "pending"
    RETRYING = "retrying"
    FAILED = "failed"
    RESOLVED = "resolved"


ACTIVE_STATUSES = (DeadLetterStatus.PENDING.value, DeadLetterStatus.RETRYING.value)
TERMINAL_STATUSES = (DeadLetterStatus.FAILED.value, DeadLetterStatus.RESOLVED.value)


# =============================================================================
# Models
# =============================================================================

class DeadLetterErrorInfo(BaseModel):
    """The failure that sent an operation to the queue."""
    message: str
    stack: Optional[str] = None
    code: Optional[str] = None


class DeadLetter(BaseModel):
    """
    Dead-letter entry representing a row in the dead_letter_queue table.

    Attributes:
        id: Unique identifier (UUID)
        agent: Name of the agent that owns the operation
        operation: Operation name the agent knows how to replay
        payload: Opaque JSON payload handed back on replay
        error: Message/stack/code of the original failure
        retry_count: Number of failed replays so far
        max_retries: Failed replays allowed before the entry fails
        next_retry: Earliest time the poll loop may replay the entry
        status: pending, retrying, failed or resolved
        created_at: When the entry was enqueued
        updated_at: Last modification timestamp
    """
    id: UUID
    agent: str
    operation: str
    payload: Any = None
    error: DeadLetterErrorInfo
    retry_count: int = 0
    max_retries: int = Field(..., ge=1)
    next_retry: Optional[datetime] = None
    status: DeadLetterStatus = DeadLetterStatus.PENDING
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status.value in TERMINAL_STATUSES


def error_info(error: BaseException) -> DeadLetterErrorInfo:
    """Capture message, stack and code from an exception."""
    if isinstance(error, AgentError):
        message = error.message
    else:
        message = str(error) or type(error).__name__

    stack = None
    if error.__traceback__ is not None:
        stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))

    code = getattr(error, "code", None)
    return DeadLetterErrorInfo(
        message=message,
        stack=stack,
        code=str(code) if code not in (None, "") else None,
    )


# =============================================================================
# Dead Letter Queue
# =============================================================================

class DeadLetterQueue:
    """
    Persistent queue of failed operations with scheduled replay.

    Usage:
        dlq = DeadLetterQueue(persistence, config, events=events, scheduler=scheduler)
        await dlq.start()

        # From an agent's failure path
        await dlq.enqueue("grading", "grade_pick", {"pick_id": "..."}, error)

        # On shutdown
        await dlq.shutdown()
    """

    def __init__(
        self,
        persistence: PersistenceLayer,
        config: Optional[DeadLetterConfig] = None,
        events: Optional[AgentEvents] = None,
        clock: Optional[Clock] = None,
        scheduler: Optional[IntervalScheduler] = None,
    ):
        self.persistence = persistence
        self.config = config or DeadLetterConfig()
        self.events = events or AgentEvents()
        self.clock = clock or SystemClock()
        self.scheduler = scheduler
        self._processing = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Arm the poll loop on the configured interval."""
        if self.scheduler is None:
            raise ValueError("DeadLetterQueue.start() requires a scheduler")
        self.scheduler.add_interval_job(
            POLL_JOB_ID,
            self.process_queue,
            self.config.processing_interval_ms / 1000.0,
        )
        logger.info(
            "Dead letter queue started (poll every %dms, max_retries=%d)",
            self.config.processing_interval_ms,
            self.config.max_retries,
        )

    async def shutdown(self) -> None:
        """Disarm the poll loop. A tick already running finishes normally."""
        if self.scheduler is not None and self.scheduler.remove_job(POLL_JOB_ID):
            logger.info("Dead letter queue stopped")

    # -------------------------------------------------------------------------
    # Enqueue
    # -------------------------------------------------------------------------

    async def enqueue(
        self,
        agent: str,
        operation: str,
        payload: Any,
        error: BaseException,
    ) -> DeadLetter:
        """
        Persist a failed operation as a ``pending`` entry.

        Args:
            agent: Agent that owns the operation (and will replay it)
            operation: Operation name passed back on replay
            payload: JSON-serialisable payload passed back on replay
            error: The failure that exhausted in-process retry

        Returns:
            The stored DeadLetter

        Raises:
            DatabaseError: The store rejected the write; the entry is lost
        """
        now = self.clock.now()
        letter = DeadLetter(
            id=uuid4(),
            agent=agent,
            operation=operation,
            payload=payload,
            error=error_info(error),
            retry_count=0,
            max_retries=self.config.max_retries,
            next_retry=now + timedelta(milliseconds=self.config.initial_retry_delay_ms),
            status=DeadLetterStatus.PENDING,
            created_at=now,
            updated_at=now,
        )

        try:
            await self.persistence.insert(DEAD_LETTER_TABLE, letter.model_dump(mode="json"))
        except Exception as e:
            logger.error(
                "Failed to enqueue to DLQ, entry lost: agent=%s operation=%s error=%s",
                agent, operation, e,
            )
            if isinstance(e, DatabaseError):
                raise
            raise DatabaseError(
                message=f"Failed to enqueue dead letter: {e}",
                operation="insert",
                table=DEAD_LETTER_TABLE,
                context={"agent": agent, "operation": operation},
                original_error=e,
            ) from e

        logger.info(
            "Message enqueued to DLQ: id=%s agent=%s operation=%s error=%s",
            letter.id, agent, operation, letter.error.message,
        )
        return letter

    # -------------------------------------------------------------------------
    # Poll loop
    # -------------------------------------------------------------------------

    def calculate_next_retry(self, retry_count: int) -> datetime:
        """
        Next replay time after *retry_count* failed replays.

        delay = min(initial_retry_delay * 2 ** retry_count, max_retry_delay)
        """
        delay_ms = min(
            self.config.initial_retry_delay_ms * 2 ** retry_count,
            self.config.max_retry_delay_ms,
        )
        return self.clock.now() + timedelta(milliseconds=delay_ms)

    async def process_queue(self) -> int:
        """
        One poll tick: sweep stale entries, then replay every due entry
        owned by an agent with a replay handler in this process.

        Entries of agents hosted elsewhere (or disabled here) are left
        untouched for their own consumer. Overlapping ticks are skipped.
        Errors are logged, never raised.

        Returns:
            Number of entries processed
        """
        if self._processing:
            logger.debug("DLQ poll already in progress; skipping tick")
            return 0

        self._processing = True
        processed = 0
        try:
            await self.recover_stale_entries()

            agents = self.events.replay_agents()
            if not agents:
                logger.debug("No replay handlers registered; skipping DLQ tick")
                return 0

            rows = await self.persistence.select(
                DEAD_LETTER_TABLE,
                in_={"status": ACTIVE_STATUSES, "agent": agents},
                lte={"next_retry": self.clock.now().isoformat()},
                order_by="next_retry",
                limit=self.config.batch_size,
            )
            for row in rows:
                await self.process_dead_letter(self._parse_entry(row))
                processed += 1
        except Exception as e:
            logger.error("Failed to process DLQ: %s", e, exc_info=True)
        finally:
            self._processing = False

        return processed

    async def process_dead_letter(self, letter: DeadLetter) -> DeadLetterStatus:
        """
        Replay one entry and record the outcome.

        Returns:
            The entry's new status (unchanged for a terminal entry)
        """
        entry_id = str(letter.id)
        if letter.is_terminal:
            logger.debug("Dead letter %s is already %s; not replaying", entry_id, letter.status.value)
            return letter.status

        await self.persistence.update(DEAD_LETTER_TABLE, entry_id, {
            "status": DeadLetterStatus.RETRYING.value,
            "updated_at": self.clock.now().isoformat(),
        })

        try:
            await self.events.replay(letter.agent, letter.operation, letter.payload)
        except Exception as e:
            return await self._record_replay_failure(letter, e)

        await self.persistence.update(DEAD_LETTER_TABLE, entry_id, {
            "status": DeadLetterStatus.RESOLVED.value,
            "updated_at": self.clock.now().isoformat(),
        })
        logger.info(
            "Successfully processed dead letter: id=%s agent=%s operation=%s",
            entry_id, letter.agent, letter.operation,
        )
        if letter.retry_count > 0:
            await alerts.send_recovery_alert(entry_id, letter.agent, letter.operation)
        return DeadLetterStatus.RESOLVED

    async def _record_replay_failure(self, letter: DeadLetter, error: Exception) -> DeadLetterStatus:
        entry_id = str(letter.id)
        retry_count = letter.retry_count + 1
        now = self.clock.now()

        if retry_count >= letter.max_retries:
            status = DeadLetterStatus.FAILED
            update_data: Dict[str, Any] = {
                "status": status.value,
                "retry_count": letter.max_retries,
                "updated_at": now.isoformat(),
            }
        else:
            status = DeadLetterStatus.PENDING
            update_data = {
                "status": status.value,
                "retry_count": retry_count,
                "next_retry": self.calculate_next_retry(retry_count).isoformat(),
                "updated_at": now.isoformat(),
            }

        await self.persistence.update(DEAD_LETTER_TABLE, entry_id, update_data)

        logger.warning(
            "Failed to process dead letter: id=%s agent=%s operation=%s retry_count=%d error=%s",
            entry_id, letter.agent, letter.operation, retry_count, error,
        )

        if status == DeadLetterStatus.FAILED:
            await self._record_failed_alert(letter, update_data["retry_count"], error)

        return status

    async def _record_failed_alert(self, letter: DeadLetter, retry_count: int, error: Exception) -> None:
        entry_id = str(letter.id)
        try:
            await self.persistence.insert(AGENT_ALERTS_TABLE, {
                "agent": letter.agent,
                "alert_type": FAILED_ALERT_TYPE,
                "severity": "high",
                "message": f"{letter.operation} permanently failed after {retry_count} replays",
                "context": {
                    "entry_id": entry_id,
                    "operation": letter.operation,
                    "last_error": str(error),
                },
                "timestamp": self.clock.now().isoformat(),
            })
        except Exception as e:
            logger.error("Failed to record dead letter alert: %s", e)

        await alerts.send_dead_letter_failed_alert(
            entry_id=entry_id,
            agent=letter.agent,
            operation=letter.operation,
            retry_count=retry_count,
            error_summary=str(error),
        )

    async def recover_stale_entries(self) -> int:
        """
        Reset entries stuck in ``retrying`` longer than ``stale_after_ms``.

        A consumer that crashed between claiming an entry and recording the
        outcome leaves it in ``retrying``; this returns it to ``pending`` so
        it is replayed again.

        Returns:
            Number of entries recovered
        """
        threshold = self.clock.now() - timedelta(milliseconds=self.config.stale_after_ms)
        rows = await self.persistence.select(
            DEAD_LETTER_TABLE,
            eq={"status": DeadLetterStatus.RETRYING.value},
            lt={"updated_at": threshold.isoformat()},
        )

        for row in rows:
            await self.persistence.update(DEAD_LETTER_TABLE, str(row["id"]), {
                "status": DeadLetterStatus.PENDING.value,
                "updated_at": self.clock.now().isoformat(),
            })

        if rows:
            logger.info("Recovered %d stale dead letter entries", len(rows))
        return len(rows)

    # -------------------------------------------------------------------------
    # Inspection and operator actions
    # -------------------------------------------------------------------------

    async def get_entry(self, entry_id: str) -> Optional[DeadLetter]:
        rows = await self.persistence.select(DEAD_LETTER_TABLE, eq={"id": str(entry_id)}, limit=1)
        if not rows:
            return None
        return self._parse_entry(rows[0])

    async def get_failed_entries(self, limit: int = 100) -> List[DeadLetter]:
        """Permanently failed entries, oldest first, for human review."""
        rows = await self.persistence.select(
            DEAD_LETTER_TABLE,
            eq={"status": DeadLetterStatus.FAILED.value},
            order_by="created_at",
            limit=limit,
        )
        return [self._parse_entry(row) for row in rows]

    async def get_stats(self) -> Dict[str, int]:
        """Entry counts per status."""
        stats = {}
        for status in DeadLetterStatus:
            rows = await self.persistence.select(DEAD_LETTER_TABLE, eq={"status": status.value})
            stats[status.value] = len(rows)
        return stats

    async def requeue(self, entry_id: str) -> DeadLetter:
        """
        Give a ``failed`` entry a fresh set of replays, starting now.

        Raises:
            DeadLetterNotFoundError: No such entry
            ValidationError: The entry is not ``failed``
        """
        letter = await self.get_entry(entry_id)
        if letter is None:
            raise DeadLetterNotFoundError(str(entry_id))
        if letter.status != DeadLetterStatus.FAILED:
            raise ValidationError(
                message=f"Cannot requeue dead letter in status '{letter.status.value}'",
                field="status",
                context={"entry_id": str(entry_id)},
            )

        now = self.clock.now().isoformat()
        row = await self.persistence.update(DEAD_LETTER_TABLE, str(entry_id), {
            "status": DeadLetterStatus.PENDING.value,
            "retry_count": 0,
            "next_retry": now,
            "updated_at": now,
        })
        logger.info("Dead letter %s requeued by operator", entry_id)
        return self._parse_entry(row) if row else letter

    async def purge(self, older_than: datetime) -> int:
        """
        Delete terminal entries last updated before *older_than*.

        Returns:
            Number of rows deleted
        """
        deleted = await self.persistence.delete(
            DEAD_LETTER_TABLE,
            in_={"status": TERMINAL_STATUSES},
            lt={"updated_at": older_than.isoformat()},
        )
        logger.info("Purged %d terminal dead letter entries", deleted)
        return deleted

    def _parse_entry(self, row: Dict[str, Any]) -> DeadLetter:
        """Parse a database row into a DeadLetter model."""
        return DeadLetter.model_validate(row)
