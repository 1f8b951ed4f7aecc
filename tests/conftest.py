"""
Shared fixtures for the supervision framework tests.

Everything runs against ``InMemoryPersistence`` and virtual time; the
Slack webhook is blanked so no test ever touches the network.
"""

import asyncio
from typing import Any, Callable, List, Optional

import pytest

from unit_talk.config import AgentConfig, DeadLetterConfig, RetryConfig
from unit_talk.services import alerts
from unit_talk.services.dead_letter_queue import DeadLetterQueue
from unit_talk.services.error_handler import ErrorHandler
from unit_talk.services.events import AgentEvents
from unit_talk.services.exceptions import UnknownCommandError
from unit_talk.services.persistence import InMemoryPersistence
from unit_talk.services.scheduler import VirtualClock, VirtualScheduler
from unit_talk.worker.base_agent import AgentCommand, AgentDependencies, BaseAgent


@pytest.fixture(autouse=True)
def _no_slack(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(alerts, "SLACK_WEBHOOK_URL", "")


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock()


@pytest.fixture
def scheduler(clock: VirtualClock) -> VirtualScheduler:
    return VirtualScheduler(clock)


@pytest.fixture
def persistence() -> InMemoryPersistence:
    return InMemoryPersistence()


@pytest.fixture
def events() -> AgentEvents:
    return AgentEvents()


@pytest.fixture
def error_handler(persistence, events, clock) -> ErrorHandler:
    return ErrorHandler(persistence, events=events, clock=clock)


@pytest.fixture
def dlq(persistence, events, clock, scheduler) -> DeadLetterQueue:
    return DeadLetterQueue(
        persistence,
        DeadLetterConfig(max_retries=3, initial_retry_delay_ms=60_000),
        events=events,
        clock=clock,
        scheduler=scheduler,
    )


@pytest.fixture
def deps(persistence, error_handler, dlq, events, scheduler, clock) -> AgentDependencies:
    return AgentDependencies(
        persistence=persistence,
        error_handler=error_handler,
        dead_letter_queue=dlq,
        events=events,
        scheduler=scheduler,
        clock=clock,
    )


def agent_config(name: str = "grading", **overrides: Any) -> AgentConfig:
    """AgentConfig with fast, jitter-free retries."""
    values = {
        "name": name,
        "health_check_interval_ms": 30_000,
        "metrics_interval_ms": 60_000,
        "retry": RetryConfig(max_retries=3, backoff_ms=100, max_backoff_ms=1000),
    }
    values.update(overrides)
    return AgentConfig(**values)


class ScriptedAgent(BaseAgent):
    """
    Agent whose ``process_command`` pops outcomes from ``script``.

    An exception in the script is raised, an ``asyncio.Event`` is waited
    on (then ``"late"`` is returned), anything else is returned. An empty
    script returns the command payload.
    """

    def __init__(self, config, deps):
        super().__init__(config, deps)
        self.script: List[Any] = []
        self.processed: List[AgentCommand] = []
        self.cleanup_calls = 0
        self.initialize_error: Optional[Exception] = None
        self.cleanup_error: Optional[Exception] = None

    async def initialize(self) -> None:
        if self.initialize_error is not None:
            raise self.initialize_error
        await super().initialize()

    async def cleanup(self) -> None:
        self.cleanup_calls += 1
        if self.cleanup_error is not None:
            raise self.cleanup_error

    async def process_command(self, command: AgentCommand) -> Any:
        self.processed.append(command)
        if command.type == "unknown":
            raise UnknownCommandError(self.name, command.type)
        if self.script:
            outcome = self.script.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            if isinstance(outcome, asyncio.Event):
                await outcome.wait()
                return "late"
            return outcome
        return command.payload


@pytest.fixture
def agent(deps) -> ScriptedAgent:
    return ScriptedAgent(agent_config(), deps)


@pytest.fixture
def make_agent(deps) -> Callable[..., ScriptedAgent]:
    def _make(name: str = "grading", **overrides: Any) -> ScriptedAgent:
        return ScriptedAgent(agent_config(name, **overrides), deps)
    return _make
