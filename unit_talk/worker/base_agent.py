"""
Base Agent -- Lifecycle Controller for Long-Running Workers
===========================================================

Every Unit Talk worker (grading, onboarding, alerts, ...) subclasses
``BaseAgent`` and implements ``process_command``. The base class owns:

- the lifecycle state machine
- routing every failure through the shared ``ErrorHandler``
- in-process retry with backoff (``RetryExecutor``)
- dead-lettering every failed operation (retries exhausted or not retryable)
- replaying dead-lettered operations on behalf of the queue
- periodic health and metrics ticks

State machine::

    idle -> initializing -> ready -> running -> stopping -> stopped
      *  -> error          (initialize() failed, or a critical failure)

``stopped`` and ``error`` are terminal. ``start()`` is only legal from
``idle``; ``stop()`` is idempotent.

Usage:
    class GradingAgent(BaseAgent):
        async def process_command(self, command: AgentCommand) -> Any:
            if command.type == "grade_pick":
                return await grade(command.payload)
            raise UnknownCommandError(self.name, command.type)

    agent = GradingAgent(supervisor_config.agent_config("grading"), deps)
    await agent.start()
    await agent.handle_command(AgentCommand(type="grade_pick", payload={...}))
    await agent.stop()
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from unit_talk.config import AgentConfig
from unit_talk.services.dead_letter_queue import DeadLetterQueue
from unit_talk.services.error_handler import ErrorHandler, EscalationPolicy
from unit_talk.services.events import AgentEvents
from unit_talk.services.exceptions import (
    AgentError,
    DatabaseError,
    LifecycleError,
    RetryKeyInUseError,
)
from unit_talk.services.persistence import PersistenceLayer
from unit_talk.services.retry import RetryExecutor, RetryOperation
from unit_talk.services.scheduler import (
    APSchedulerIntervalScheduler,
    Clock,
    IntervalScheduler,
    SystemClock,
)
from unit_talk.worker.health import (
    AgentCounters,
    HealthMonitor,
    HealthRecord,
    MetricsSnapshot,
    evaluate_health,
)
from unit_talk.worker.memory_guard import read_process_memory

logger = logging.getLogger(__name__)


# =============================================================================
# Models
# =============================================================================

class AgentState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    READY = "ready"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class CommandPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class AgentCommand(BaseModel):
    """A unit of work handed to an agent."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    type: str = Field(..., min_length=1)
    payload: Any = None
    priority: CommandPriority = CommandPriority.NORMAL
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AgentDependencies:
    """
    Collaborators shared by the agents of one process.

    Only ``persistence`` and ``error_handler`` are required; the rest fall
    back to process-local defaults. The event hub is shared with the error
    handler so handler-emitted ``error`` events reach the same observers.
    """

    def __init__(
        self,
        persistence: PersistenceLayer,
        error_handler: ErrorHandler,
        dead_letter_queue: Optional[DeadLetterQueue] = None,
        events: Optional[AgentEvents] = None,
        scheduler: Optional[IntervalScheduler] = None,
        clock: Optional[Clock] = None,
        health_monitor: Optional[HealthMonitor] = None,
    ):
        self.persistence = persistence
        self.error_handler = error_handler
        self.dead_letter_queue = dead_letter_queue
        self.events = events or error_handler.events or AgentEvents()
        if error_handler.events is None:
            error_handler.events = self.events
        self.scheduler = scheduler or APSchedulerIntervalScheduler()
        self.clock = clock or SystemClock()
        self.health_monitor = health_monitor or HealthMonitor(persistence, events=self.events)


# =============================================================================
# Base Agent
# =============================================================================

class BaseAgent(ABC):
    """
    Abstract base for every long-running worker.

    Subclasses must implement ``process_command``. They may override
    ``initialize``, ``cleanup``, ``check_health``, ``check_dependencies``,
    ``collect_metrics``, ``should_retry`` and ``replay_operation``.
    """

    def __init__(self, config: AgentConfig, deps: AgentDependencies):
        self.config = config
        self.name = config.name
        self.deps = deps
        self.persistence = deps.persistence
        self.error_handler = deps.error_handler
        self.dead_letter_queue = deps.dead_letter_queue
        self.events = deps.events
        self.scheduler = deps.scheduler
        self.clock = deps.clock
        self.health_monitor = deps.health_monitor

        self.state = AgentState.IDLE
        self.counters = AgentCounters()
        self.retry = RetryExecutor(
            self.error_handler,
            config=config.retry,
            clock=self.clock,
            agent=self.name,
            on_retry=self._on_retry,
            policy=EscalationPolicy(self.should_retry),
        )

        self._timers_armed = False
        self._health_in_flight = False
        self._metrics_in_flight = False
        self._cleaned_up = False
        self._stop_lock = asyncio.Lock()

    @property
    def health_job_id(self) -> str:
        return f"{self.name}:health"

    @property
    def metrics_job_id(self) -> str:
        return f"{self.name}:metrics"

    # -------------------------------------------------------------------------
    # Worker hooks
    # -------------------------------------------------------------------------

    @abstractmethod
    async def process_command(self, command: AgentCommand) -> Any:
        """Do the agent's actual work for one command."""
        pass

    async def initialize(self) -> None:
        """
        Prepare resources before the agent starts running.

        The default verifies the database is reachable. Any exception here
        is fatal: the agent moves to ``error`` and ``start()`` re-raises.
        """
        if not await self.persistence.ping():
            raise DatabaseError(
                message=f"Database unreachable while initializing agent '{self.name}'",
                operation="ping",
            )

    async def cleanup(self) -> None:
        """Release resources. Runs once, from ``stop()``."""
        pass

    async def replay_operation(self, command: AgentCommand) -> Any:
        """Re-run a dead-lettered operation. Defaults to ``process_command``."""
        return await self.process_command(command)

    def should_retry(self, error: AgentError) -> bool:
        """Whether *error* is worth another in-process attempt."""
        return self.error_handler.policy.should_retry(error)

    async def check_dependencies(self) -> Dict[str, bool]:
        """Dependency name -> reachable. Included in every health check."""
        return {"database": await self.persistence.ping()}

    async def check_health(self) -> HealthRecord:
        dependencies = await self.check_dependencies()
        status, details = evaluate_health(
            self.counters.window_error_count,
            dependencies,
            threshold=self.config.error_threshold,
        )
        details["state"] = self.state.value

        try:
            memory = read_process_memory()
            details["memory_rss_mb"] = memory.rss_mb
            details["memory_status"] = memory.status
        except Exception as exc:
            logger.warning("Health: memory metrics failed for %s: %s", self.name, exc)
            details["memory_status"] = "unknown"

        return HealthRecord(
            agent=self.name,
            status=status,
            details=details,
            timestamp=self.clock.now(),
        )

    async def collect_metrics(self) -> MetricsSnapshot:
        return MetricsSnapshot(
            agent=self.name,
            success_count=self.counters.success_count,
            error_count=self.counters.error_count,
            warning_count=self.counters.warning_count,
            processing_time_ms=self.counters.processing_time_ms,
            memory_usage_mb=read_process_memory().rss_mb,
            timestamp=self.clock.now(),
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """
        Initialize the agent, arm its health/metrics ticks and start running.

        Raises:
            LifecycleError: The agent is not ``idle``
            Exception: Whatever ``initialize()`` raised (agent is now ``error``)
        """
        if self.state != AgentState.IDLE:
            raise LifecycleError(agent=self.name, state=self.state.value, action="start")

        if not self.config.enabled:
            logger.info("Agent %s is disabled; not starting", self.name)
            return

        await self._transition(AgentState.INITIALIZING)
        try:
            await self.initialize()
        except Exception as e:
            await self.error_handler.handle_error(e, "initialize", agent=self.name)
            await self._transition(AgentState.ERROR)
            raise

        await self._transition(AgentState.READY)
        self.events.register_replay_handler(self.name, self._replay)
        self._arm_timers()
        await self._transition(AgentState.RUNNING)
        logger.info("Agent %s started", self.name)

    async def stop(self) -> None:
        """
        Disarm ticks, run ``cleanup()`` once and move to ``stopped``.

        An agent in ``error`` is cleaned up but stays in ``error``. A
        cleanup failure is routed to the error handler and re-raised after
        the state change.
        """
        async with self._stop_lock:
            if self.state == AgentState.STOPPED or self._cleaned_up:
                return

            if self.state == AgentState.IDLE:
                await self._transition(AgentState.STOPPED)
                return

            in_error = self.state == AgentState.ERROR
            if not in_error:
                await self._transition(AgentState.STOPPING)

            self._disarm_timers()
            self.events.unregister_replay_handler(self.name)

            self._cleaned_up = True
            cleanup_error: Optional[Exception] = None
            try:
                await self.cleanup()
            except Exception as e:
                await self.error_handler.handle_error(e, "cleanup", agent=self.name)
                cleanup_error = e

            if not in_error:
                await self._transition(AgentState.STOPPED)
            logger.info("Agent %s stopped (state=%s)", self.name, self.state.value)

            if cleanup_error is not None:
                raise cleanup_error

    # -------------------------------------------------------------------------
    # Work
    # -------------------------------------------------------------------------

    async def handle_command(self, command: AgentCommand) -> Any:
        """
        Run *command* through retry, dead-lettering and escalation.

        Raises:
            LifecycleError: The agent is not ``running``
            Exception: The final failure, after it has been handled
        """
        if self.state != AgentState.RUNNING:
            raise LifecycleError(agent=self.name, state=self.state.value, action="handle_command")

        return await self.execute(
            command.type,
            command.payload,
            lambda: self.process_command(command),
            key=f"{command.type}:{command.id}",
        )

    async def execute(
        self,
        operation: str,
        payload: Any,
        func: Callable[[], Awaitable[Any]],
        key: Optional[str] = None,
    ) -> Any:
        """
        Run an arbitrary worker operation with retry.

        Every failure of the operation itself, whether retries ran out or
        ``should_retry`` rejected it, is dead-lettered as
        ``(operation, payload)`` so the queue can replay it later through
        ``replay_operation`` and a terminal failure leaves a ``failed`` row.
        A ``RetryKeyInUseError`` never ran the operation and is not queued.
        """
        started = self.clock.monotonic()
        try:
            result = await self.retry.with_retry(
                func, f"{self.name}.{operation}", key=key,
            )
        except Exception as e:
            self.counters.record_error(self._elapsed_ms(started))
            self._log_if_late(operation)

            agent_error = self.error_handler.classify(e)
            if not isinstance(e, RetryKeyInUseError):
                await self._dead_letter(operation, payload, e)
            if self.error_handler.policy.is_fatal(agent_error):
                await self._enter_error_state(agent_error)
            raise

        self.counters.record_success(self._elapsed_ms(started))
        self._log_if_late(operation)
        return result

    async def _replay(self, operation: str, payload: Any) -> Any:
        """Replay handler registered with the event hub for this agent."""
        command = AgentCommand(type=operation, payload=payload)
        started = self.clock.monotonic()
        try:
            result = await self.replay_operation(command)
        except Exception as e:
            self.counters.record_error(self._elapsed_ms(started))
            agent_error = await self.error_handler.handle_error(
                e, f"{self.name}.{operation} (replay)", agent=self.name,
            )
            if self.error_handler.policy.is_fatal(agent_error):
                await self._enter_error_state(agent_error)
            raise

        self.counters.record_success(self._elapsed_ms(started))
        return result

    async def _dead_letter(self, operation: str, payload: Any, error: BaseException) -> None:
        if self.dead_letter_queue is None:
            logger.warning(
                "No dead letter queue configured; dropping failed operation %s.%s",
                self.name, operation,
            )
            return
        try:
            await self.dead_letter_queue.enqueue(self.name, operation, payload, error)
        except Exception as e:
            logger.error(
                "Could not dead-letter %s.%s, operation lost: %s",
                self.name, operation, e,
            )

    def _on_retry(self, op: RetryOperation, error: BaseException, delay_ms: float) -> None:
        self.counters.record_warning()

    def _log_if_late(self, operation: str) -> None:
        if self.state != AgentState.RUNNING:
            logger.warning(
                "Operation %s.%s completed after agent left running state (state=%s)",
                self.name, operation, self.state.value,
            )

    def _elapsed_ms(self, started: float) -> float:
        return (self.clock.monotonic() - started) * 1000.0

    # -------------------------------------------------------------------------
    # Health and metrics ticks
    # -------------------------------------------------------------------------

    def _arm_timers(self) -> None:
        self._timers_armed = True
        self.scheduler.add_interval_job(
            self.health_job_id,
            self._health_tick,
            self.config.health_check_interval_ms / 1000.0,
        )
        self.scheduler.add_interval_job(
            self.metrics_job_id,
            self._metrics_tick,
            self.config.metrics_interval_ms / 1000.0,
        )
        self.scheduler.start()

    def _disarm_timers(self) -> None:
        self._timers_armed = False
        self.scheduler.remove_job(self.health_job_id)
        self.scheduler.remove_job(self.metrics_job_id)

    async def _health_tick(self) -> None:
        if not self._timers_armed or self._health_in_flight:
            return
        self._health_in_flight = True
        try:
            record = await self.check_health()
            await self.health_monitor.record_health(record)
        except Exception as e:
            await self.error_handler.handle_error(e, "health check", agent=self.name)
        finally:
            self._health_in_flight = False

    async def _metrics_tick(self) -> None:
        if not self._timers_armed or self._metrics_in_flight:
            return
        self._metrics_in_flight = True
        try:
            snapshot = await self.collect_metrics()
            await self.health_monitor.record_metrics(snapshot)
        except Exception as e:
            await self.error_handler.handle_error(e, "metrics collection", agent=self.name)
        finally:
            self.counters.reset_window()
            self._metrics_in_flight = False

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    async def _enter_error_state(self, error: AgentError) -> None:
        if self.state in (AgentState.ERROR, AgentState.STOPPED):
            return
        self._disarm_timers()
        self.events.unregister_replay_handler(self.name)
        logger.critical("Agent %s entering error state: %s", self.name, error.message)
        await self._transition(AgentState.ERROR)

    async def _transition(self, new_state: AgentState) -> None:
        old_state = self.state
        self.state = new_state
        logger.info("Agent %s: %s -> %s", self.name, old_state.value, new_state.value)
        await self.events.emit_state(self.name, old_state, new_state)

    def get_status(self) -> Dict[str, Any]:
        """Snapshot of lifecycle state and counters."""
        return {
            "agent": self.name,
            "state": self.state.value,
            "enabled": self.config.enabled,
            "timers_armed": self._timers_armed,
            "in_flight": len(self.retry.in_flight),
            **self.counters.model_dump(),
        }
