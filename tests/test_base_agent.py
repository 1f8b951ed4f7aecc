"""
Tests for unit_talk.worker.base_agent
=====================================

Lifecycle transitions, command execution through retry / dead-letter /
escalation, replay, and the health and metrics ticks. Uses the
ScriptedAgent from conftest with a VirtualScheduler, so ticks only fire
when virtual time is advanced.
"""

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest

from unit_talk.config import RetryConfig
from unit_talk.services.dead_letter_queue import DeadLetterStatus
from unit_talk.services.exceptions import (
    DatabaseError,
    ErrorKind,
    FatalAgentError,
    LifecycleError,
    RetryKeyInUseError,
    ValidationError,
)
from unit_talk.services.persistence import (
    AGENT_ERRORS_TABLE,
    AGENT_HEALTH_TABLE,
    AGENT_METRICS_TABLE,
    DEAD_LETTER_TABLE,
)
from unit_talk.worker.base_agent import AgentCommand, AgentState
from unit_talk.worker.health import HealthStatus


async def _until(predicate, attempts: int = 50) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


# =========================================================================
# Lifecycle
# =========================================================================

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_reaches_running(self, agent, events, scheduler) -> None:
        transitions = []
        events.on_state(lambda name, old, new: transitions.append((old.value, new.value)))

        await agent.start()

        assert agent.state == AgentState.RUNNING
        assert transitions == [
            ("idle", "initializing"),
            ("initializing", "ready"),
            ("ready", "running"),
        ]
        assert scheduler.has_job(agent.health_job_id)
        assert scheduler.has_job(agent.metrics_job_id)
        assert events.has_replay_handler("grading")

    @pytest.mark.asyncio
    async def test_start_twice_is_rejected(self, agent) -> None:
        await agent.start()
        with pytest.raises(LifecycleError):
            await agent.start()
        assert agent.state == AgentState.RUNNING

    @pytest.mark.asyncio
    async def test_disabled_agent_stays_idle(self, make_agent, scheduler) -> None:
        agent = make_agent(enabled=False)
        await agent.start()
        assert agent.state == AgentState.IDLE
        assert scheduler.jobs == {}

    @pytest.mark.asyncio
    async def test_initialize_failure_moves_to_error(self, agent, persistence, scheduler) -> None:
        agent.initialize_error = RuntimeError("config file unreadable")

        with pytest.raises(RuntimeError):
            await agent.start()

        assert agent.state == AgentState.ERROR
        assert scheduler.jobs == {}
        errors = persistence.rows(AGENT_ERRORS_TABLE)
        assert errors[0]["error_type"] == "configuration"
        assert errors[0]["context"]["operation"] == "initialize"

    @pytest.mark.asyncio
    async def test_unreachable_database_fails_initialize(self, agent, persistence) -> None:
        persistence.fail_with = ConnectionError("down")
        with pytest.raises(Exception):
            await agent.start()
        assert agent.state == AgentState.ERROR

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, agent, scheduler, events) -> None:
        await agent.start()
        await agent.stop()
        await agent.stop()

        assert agent.state == AgentState.STOPPED
        assert agent.cleanup_calls == 1
        assert not scheduler.has_job(agent.health_job_id)
        assert not scheduler.has_job(agent.metrics_job_id)
        assert not events.has_replay_handler("grading")

    @pytest.mark.asyncio
    async def test_concurrent_stops_clean_up_once(self, agent) -> None:
        await agent.start()
        await asyncio.gather(agent.stop(), agent.stop(), agent.stop())
        assert agent.cleanup_calls == 1

    @pytest.mark.asyncio
    async def test_stop_from_error_keeps_error_state(self, agent) -> None:
        agent.initialize_error = RuntimeError("boom")
        with pytest.raises(RuntimeError):
            await agent.start()

        await agent.stop()
        await agent.stop()
        assert agent.state == AgentState.ERROR
        assert agent.cleanup_calls == 1

    @pytest.mark.asyncio
    async def test_stop_idle_agent(self, agent) -> None:
        await agent.stop()
        assert agent.state == AgentState.STOPPED
        assert agent.cleanup_calls == 0

    @pytest.mark.asyncio
    async def test_cleanup_failure_is_routed_and_raised(self, agent, persistence) -> None:
        await agent.start()
        agent.cleanup_error = RuntimeError("socket close failed")

        with pytest.raises(RuntimeError, match="socket close failed"):
            await agent.stop()

        assert agent.state == AgentState.STOPPED
        assert any(
            row["context"].get("operation") == "cleanup"
            for row in persistence.rows(AGENT_ERRORS_TABLE)
        )
        await agent.stop()
        assert agent.cleanup_calls == 1

    @pytest.mark.asyncio
    async def test_start_after_stop_is_rejected(self, agent) -> None:
        await agent.start()
        await agent.stop()
        with pytest.raises(LifecycleError):
            await agent.start()


# =========================================================================
# Commands
# =========================================================================

class TestHandleCommand:
    @pytest.mark.asyncio
    async def test_rejected_unless_running(self, agent) -> None:
        with pytest.raises(LifecycleError):
            await agent.handle_command(AgentCommand(type="grade_pick"))

    @pytest.mark.asyncio
    async def test_success(self, agent) -> None:
        await agent.start()
        result = await agent.handle_command(AgentCommand(type="grade_pick", payload={"pick_id": "p-1"}))
        assert result == {"pick_id": "p-1"}
        assert agent.counters.success_count == 1
        assert agent.counters.error_count == 0

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, agent, clock) -> None:
        await agent.start()
        agent.script = [RuntimeError("timeout"), RuntimeError("timeout"), "graded"]

        assert await agent.handle_command(AgentCommand(type="grade_pick")) == "graded"
        assert len(agent.processed) == 3
        assert agent.counters.warning_count == 2
        assert clock.sleeps == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_exhausted_failure_is_dead_lettered(self, agent, dlq) -> None:
        await agent.start()
        agent.script = [RuntimeError("timeout")] * 3

        with pytest.raises(RuntimeError, match="timeout"):
            await agent.handle_command(AgentCommand(type="grade_pick", payload={"pick_id": "p-9"}))

        assert agent.counters.error_count == 1
        assert agent.state == AgentState.RUNNING
        stats = await dlq.get_stats()
        assert stats["pending"] == 1
        entry = (await dlq.persistence.select(DEAD_LETTER_TABLE))[0]
        assert entry["agent"] == "grading"
        assert entry["operation"] == "grade_pick"
        assert entry["payload"] == {"pick_id": "p-9"}

    @pytest.mark.asyncio
    async def test_validation_failure_is_dead_lettered_without_retry(self, agent, persistence, clock) -> None:
        await agent.start()
        agent.script = [ValidationError("invalid odds", field="odds")]

        with pytest.raises(ValidationError):
            await agent.handle_command(AgentCommand(type="grade_pick", payload={"odds": -1}))

        assert len(agent.processed) == 1
        assert clock.sleeps == []
        rows = persistence.rows(DEAD_LETTER_TABLE)
        assert len(rows) == 1
        assert rows[0]["status"] == DeadLetterStatus.PENDING.value
        assert rows[0]["payload"] == {"odds": -1}

    @pytest.mark.asyncio
    async def test_key_in_use_is_not_dead_lettered(self, agent, persistence) -> None:
        await agent.start()
        gate = asyncio.Event()
        agent.script = [gate]
        command = AgentCommand(type="grade_pick")

        first = asyncio.create_task(agent.handle_command(command))
        await _until(lambda: len(agent.processed) == 1)

        with pytest.raises(RetryKeyInUseError):
            await agent.handle_command(command)

        gate.set()
        assert await first == "late"
        assert persistence.rows(DEAD_LETTER_TABLE) == []

    @pytest.mark.asyncio
    async def test_worker_retry_override(self, make_agent, persistence) -> None:
        template = make_agent()

        class DatabaseOnlyRetryAgent(type(template)):
            def should_retry(self, error) -> bool:
                return error.kind == ErrorKind.DATABASE

        agent = DatabaseOnlyRetryAgent(template.config, template.deps)
        await agent.start()

        with pytest.raises(Exception):
            await agent.handle_command(AgentCommand(type="unknown"))

        assert len(agent.processed) == 1
        rows = persistence.rows(DEAD_LETTER_TABLE)
        assert [r["operation"] for r in rows] == ["unknown"]

    @pytest.mark.asyncio
    async def test_critical_failure_moves_to_error(self, make_agent, scheduler, events) -> None:
        agent = make_agent(retry=RetryConfig(max_retries=1))
        await agent.start()
        agent.script = [FatalAgentError("ledger corrupted")]

        with pytest.raises(FatalAgentError):
            await agent.handle_command(AgentCommand(type="grade_pick"))

        assert agent.state == AgentState.ERROR
        assert not scheduler.has_job(agent.health_job_id)
        assert not events.has_replay_handler("grading")
        with pytest.raises(LifecycleError):
            await agent.handle_command(AgentCommand(type="grade_pick"))

    @pytest.mark.asyncio
    async def test_dead_letter_outage_does_not_mask_error(self, agent, caplog) -> None:
        await agent.start()
        agent.script = [RuntimeError("timeout")] * 3
        agent.dead_letter_queue.enqueue = AsyncMock(side_effect=DatabaseError("dlq insert failed"))

        with caplog.at_level(logging.ERROR, logger="unit_talk.worker.base_agent"):
            with pytest.raises(RuntimeError, match="timeout"):
                await agent.handle_command(AgentCommand(type="grade_pick"))

        assert any("operation lost" in r.message for r in caplog.records)

    @pytest.mark.asyncio
    async def test_late_completion_is_logged(self, agent, caplog) -> None:
        await agent.start()
        gate = asyncio.Event()
        agent.script = [gate]

        task = asyncio.create_task(agent.handle_command(AgentCommand(type="grade_pick")))
        await _until(lambda: len(agent.processed) == 1)
        await agent.stop()

        with caplog.at_level(logging.WARNING, logger="unit_talk.worker.base_agent"):
            gate.set()
            assert await task == "late"

        assert any("after agent left running state" in r.message for r in caplog.records)


# =========================================================================
# Replay
# =========================================================================

class TestReplay:
    @pytest.mark.asyncio
    async def test_replay_dispatches_once(self, agent, events) -> None:
        await agent.start()
        agent.script = [RuntimeError("still down")]

        with pytest.raises(RuntimeError):
            await events.replay("grading", "grade_pick", {"pick_id": "p-1"})

        assert len(agent.processed) == 1
        assert agent.processed[0].type == "grade_pick"
        assert agent.processed[0].payload == {"pick_id": "p-1"}

    @pytest.mark.asyncio
    async def test_dead_letter_round_trip(self, agent, dlq, clock) -> None:
        await agent.start()
        agent.script = [RuntimeError("timeout")] * 3
        with pytest.raises(RuntimeError):
            await agent.handle_command(AgentCommand(type="grade_pick", payload={"pick_id": "p-2"}))

        clock.advance(60)
        assert await dlq.process_queue() == 1

        assert agent.processed[-1].payload == {"pick_id": "p-2"}
        entries = await dlq.persistence.select(DEAD_LETTER_TABLE)
        assert entries[0]["status"] == DeadLetterStatus.RESOLVED.value


# =========================================================================
# Health and metrics ticks
# =========================================================================

class TestTicks:
    @pytest.mark.asyncio
    async def test_health_tick_records_and_emits(self, agent, scheduler, events, persistence) -> None:
        seen = []
        events.on_health(seen.append)
        await agent.start()

        await scheduler.advance(30)

        assert [r.status for r in seen] == [HealthStatus.HEALTHY]
        rows = persistence.rows(AGENT_HEALTH_TABLE)
        assert len(rows) == 1
        assert rows[0]["agent"] == "grading"
        assert rows[0]["details"]["state"] == "running"

    @pytest.mark.asyncio
    async def test_errors_degrade_then_window_resets(self, agent, scheduler, events) -> None:
        seen = []
        events.on_health(seen.append)
        await agent.start()
        agent.counters.record_error()

        await scheduler.advance(30)
        assert seen[-1].status == HealthStatus.DEGRADED

        await scheduler.advance(30)  # metrics tick at 60s resets the window
        await scheduler.advance(30)
        assert seen[-1].status == HealthStatus.HEALTHY
        assert agent.counters.error_count == 1

    @pytest.mark.asyncio
    async def test_error_threshold_is_unhealthy(self, agent) -> None:
        for _ in range(10):
            agent.counters.record_error()
        for _ in range(5):
            agent.counters.record_success()

        record = await agent.check_health()
        assert record.status == HealthStatus.UNHEALTHY

    @pytest.mark.asyncio
    async def test_tick_failure_does_not_change_state(self, agent, scheduler, events, persistence) -> None:
        seen = []
        events.on_health(seen.append)
        await agent.start()
        persistence.fail_with = ConnectionError("down")

        await scheduler.advance(30)

        assert agent.state == AgentState.RUNNING
        assert seen[-1].status == HealthStatus.UNHEALTHY
        assert seen[-1].details["failed_dependencies"] == ["database"]

    @pytest.mark.asyncio
    async def test_metrics_tick(self, agent, scheduler, persistence, events) -> None:
        snapshots = []
        events.on_metrics(snapshots.append)
        await agent.start()
        await agent.handle_command(AgentCommand(type="grade_pick"))

        await scheduler.advance(60)

        assert snapshots[-1].success_count == 1
        rows = persistence.rows(AGENT_METRICS_TABLE)
        assert rows[0]["metrics"]["success_count"] == 1
        assert rows[0]["metrics"]["memory_usage_mb"] > 0

    @pytest.mark.asyncio
    async def test_no_ticks_after_stop(self, agent, scheduler, persistence) -> None:
        await agent.start()
        await agent.stop()

        await scheduler.advance(600)

        assert persistence.rows(AGENT_HEALTH_TABLE) == []
        assert persistence.rows(AGENT_METRICS_TABLE) == []

    @pytest.mark.asyncio
    async def test_overlapping_health_tick_is_skipped(self, agent, persistence) -> None:
        await agent.start()
        agent._health_in_flight = True
        await agent._health_tick()
        assert persistence.rows(AGENT_HEALTH_TABLE) == []


def test_get_status(agent) -> None:
    status = agent.get_status()
    assert status["agent"] == "grading"
    assert status["state"] == "idle"
    assert status["success_count"] == 0
