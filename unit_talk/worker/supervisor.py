"""
Agent Supervisor
================

Composition root for one worker process. Builds the process-wide
collaborators exactly once and injects them into every agent:

- one ``ErrorHandler`` (shared error sink)
- one ``AgentEvents`` hub (observers + replay channel)
- one ``DeadLetterQueue`` with its poll loop
- one ``HealthMonitor``
- one ``IntervalScheduler`` and one ``Clock``

Usage:
    supervisor = Supervisor(
        load_config_from_env(),
        SupabasePersistence(),
        agent_factories={"grading": GradingAgent},
    )
    await supervisor.start_all()
    ...
    await supervisor.stop_all()
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from unit_talk.config import AgentConfig, SupervisorConfig
from unit_talk.services.dead_letter_queue import DeadLetterQueue
from unit_talk.services.error_handler import ErrorHandler
from unit_talk.services.events import AgentEvents
from unit_talk.services.persistence import PersistenceLayer
from unit_talk.services.scheduler import (
    APSchedulerIntervalScheduler,
    Clock,
    IntervalScheduler,
    SystemClock,
)
from unit_talk.worker.base_agent import AgentDependencies, BaseAgent
from unit_talk.worker.health import HealthMonitor, HealthStatus

logger = logging.getLogger(__name__)

AgentFactory = Callable[[AgentConfig, AgentDependencies], BaseAgent]


class Supervisor:
    """
    Starts, stops and reports on the agents of one process.

    Args:
        config: Process-wide defaults
        persistence: Shared persistence layer
        agent_factories: Agent name -> class (or factory) taking
                         ``(AgentConfig, AgentDependencies)``
        clock: Defaults to the system clock
        scheduler: Defaults to an APScheduler-backed scheduler
        disabled: Names of agents to construct but leave ``idle``
    """

    def __init__(
        self,
        config: SupervisorConfig,
        persistence: PersistenceLayer,
        agent_factories: Optional[Dict[str, AgentFactory]] = None,
        clock: Optional[Clock] = None,
        scheduler: Optional[IntervalScheduler] = None,
        disabled: Optional[List[str]] = None,
    ):
        self.config = config
        self.persistence = persistence
        self.clock = clock or SystemClock()
        self.scheduler = scheduler or APSchedulerIntervalScheduler()
        self.events = AgentEvents()
        self.error_handler = ErrorHandler(persistence, events=self.events, clock=self.clock)
        self.dead_letter_queue = DeadLetterQueue(
            persistence,
            config.dead_letter,
            events=self.events,
            clock=self.clock,
            scheduler=self.scheduler,
        )
        self.health_monitor = HealthMonitor(persistence, events=self.events)
        self.deps = AgentDependencies(
            persistence=persistence,
            error_handler=self.error_handler,
            dead_letter_queue=self.dead_letter_queue,
            events=self.events,
            scheduler=self.scheduler,
            clock=self.clock,
            health_monitor=self.health_monitor,
        )

        disabled_names = set(disabled or [])
        self.agents: Dict[str, BaseAgent] = {}
        for name, factory in (agent_factories or {}).items():
            agent_config = config.agent_config(name, enabled=name not in disabled_names)
            self.add_agent(factory(agent_config, self.deps))

    def add_agent(self, agent: BaseAgent) -> BaseAgent:
        if agent.name in self.agents:
            raise ValueError(f"Agent '{agent.name}' is already registered")
        self.agents[agent.name] = agent
        return agent

    async def start_all(self) -> Dict[str, Optional[Exception]]:
        """
        Start the scheduler, the dead-letter poll loop and every agent.

        One agent failing to initialize does not stop the others.

        Returns:
            Agent name -> the exception its ``start()`` raised (None on success)
        """
        self.scheduler.start()
        await self.dead_letter_queue.start()

        results: Dict[str, Optional[Exception]] = {}
        for name, agent in self.agents.items():
            try:
                await agent.start()
                results[name] = None
            except Exception as exc:
                logger.error("Agent %s failed to start: %s", name, exc)
                results[name] = exc

        started = sum(1 for exc in results.values() if exc is None)
        logger.info("Supervisor started %d of %d agents", started, len(self.agents))
        return results

    async def stop_all(self) -> None:
        """Stop every agent, then the poll loop and the scheduler."""
        for name, agent in self.agents.items():
            try:
                await agent.stop()
            except Exception as exc:
                logger.error("Agent %s failed to stop cleanly: %s", name, exc)

        await self.dead_letter_queue.shutdown()
        self.scheduler.shutdown()
        logger.info("Supervisor stopped")

    def system_status(self) -> Dict[str, Any]:
        """
        Aggregate the newest health record of every agent.

        Overall status is ``healthy`` when every agent is healthy,
        ``degraded`` when some are, ``unhealthy`` when none are (or no
        agent has reported yet).
        """
        latest = self.health_monitor.latest_health()
        agents: Dict[str, Any] = {}
        healthy = 0
        for name, agent in self.agents.items():
            record = latest.get(name)
            status = record.status if record is not None else HealthStatus.UNHEALTHY
            if status == HealthStatus.HEALTHY:
                healthy += 1
            agents[name] = {
                "state": agent.state.value,
                "status": status.value,
                "details": record.details if record is not None else {},
                "last_check": record.timestamp.isoformat() if record is not None else None,
            }

        if agents and healthy == len(agents):
            overall = HealthStatus.HEALTHY
        elif healthy > 0:
            overall = HealthStatus.DEGRADED
        else:
            overall = HealthStatus.UNHEALTHY

        return {
            "status": overall.value,
            "agents": agents,
            "timestamp": self.clock.now().isoformat(),
        }

    def agent_status(self, name: str) -> Optional[Dict[str, Any]]:
        """One agent's entry from ``system_status()``, or None if unknown."""
        if name not in self.agents:
            return None
        entry = self.system_status()["agents"][name]
        return {"agent": name, **entry}
