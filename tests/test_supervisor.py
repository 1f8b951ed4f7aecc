"""
Tests for unit_talk.worker.supervisor
=====================================

Composition (one shared handler / queue / hub for every agent), bulk
start/stop, and the aggregated system status.
"""

import pytest

from unit_talk.config import SupervisorConfig
from unit_talk.worker.base_agent import AgentState
from unit_talk.worker.supervisor import Supervisor


@pytest.fixture
def supervisor(persistence, clock, scheduler, agent) -> Supervisor:
    agent_class = type(agent)
    return Supervisor(
        SupervisorConfig(),
        persistence,
        agent_factories={"grading": agent_class, "onboarding": agent_class},
        clock=clock,
        scheduler=scheduler,
    )


def test_agents_share_collaborators(supervisor) -> None:
    grading, onboarding = supervisor.agents["grading"], supervisor.agents["onboarding"]
    assert grading.error_handler is onboarding.error_handler is supervisor.error_handler
    assert grading.dead_letter_queue is supervisor.dead_letter_queue
    assert grading.events is supervisor.events
    assert supervisor.error_handler.events is supervisor.events


def test_duplicate_agent_rejected(supervisor) -> None:
    with pytest.raises(ValueError):
        supervisor.add_agent(supervisor.agents["grading"])


@pytest.mark.asyncio
async def test_start_and_stop_all(supervisor, scheduler) -> None:
    results = await supervisor.start_all()

    assert results == {"grading": None, "onboarding": None}
    assert scheduler.running
    assert scheduler.has_job("dead-letter-poll")
    assert all(a.state == AgentState.RUNNING for a in supervisor.agents.values())

    await supervisor.stop_all()

    assert all(a.state == AgentState.STOPPED for a in supervisor.agents.values())
    assert scheduler.jobs == {}
    assert not scheduler.running


@pytest.mark.asyncio
async def test_one_failing_agent_does_not_block_others(supervisor) -> None:
    supervisor.agents["grading"].initialize_error = RuntimeError("boom")

    results = await supervisor.start_all()

    assert isinstance(results["grading"], RuntimeError)
    assert results["onboarding"] is None
    assert supervisor.agents["onboarding"].state == AgentState.RUNNING


@pytest.mark.asyncio
async def test_disabled_agents_stay_idle(persistence, clock, scheduler, agent) -> None:
    supervisor = Supervisor(
        SupervisorConfig(),
        persistence,
        agent_factories={"grading": type(agent)},
        clock=clock,
        scheduler=scheduler,
        disabled=["grading"],
    )
    await supervisor.start_all()
    assert supervisor.agents["grading"].state == AgentState.IDLE


@pytest.mark.asyncio
async def test_system_status(supervisor, scheduler) -> None:
    assert supervisor.system_status()["status"] == "unhealthy"

    await supervisor.start_all()
    await scheduler.advance(30)
    status = supervisor.system_status()
    assert status["status"] == "healthy"
    assert status["agents"]["grading"]["state"] == "running"

    supervisor.agents["onboarding"].counters.record_error()
    await scheduler.advance(30)
    assert supervisor.system_status()["status"] == "degraded"
    assert supervisor.agent_status("onboarding")["status"] == "degraded"
    assert supervisor.agent_status("nobody") is None
