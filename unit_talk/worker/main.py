"""
Unit Talk Agent Worker Entry Point
==================================

Starts a supervisor for the agents named in ``UNIT_TALK_AGENTS``, the
dead-letter poll loop and a lightweight health-check HTTP server.

Usage::

    UNIT_TALK_AGENTS="unit_talk_agents.grading:GradingAgent" python -m unit_talk.worker

Environment variables:
    UNIT_TALK_AGENTS           -- Comma-separated ``module:Class`` or
                                  ``name=module:Class`` entries (required)
    UNIT_TALK_DISABLED_AGENTS  -- Comma-separated agent names to leave idle
    SUPABASE_URL               -- Supabase project URL (required)
    SUPABASE_SERVICE_ROLE_KEY  -- Supabase service role key (required)
    SLACK_ALERT_WEBHOOK_URL    -- Slack incoming webhook for alerts (optional)
    PORT / AGENT_HEALTH_PORT   -- Health-check HTTP port (default: 8082)
    LOG_LEVEL                  -- Logging verbosity (default: INFO)

Retry, dead-letter and tick settings: see ``unit_talk.config``.
"""

import asyncio
import importlib
import logging
import os
import signal
import sys
from typing import Dict, List, Optional

from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Logging setup (before any other imports that might log)
# ---------------------------------------------------------------------------

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("unit_talk.worker")

from unit_talk.config import SupervisorConfig, load_config_from_env  # noqa: E402
from unit_talk.services.exceptions import ConfigurationError  # noqa: E402
from unit_talk.services.persistence import (  # noqa: E402
    PersistenceLayer,
    SupabasePersistence,
    create_supabase_client,
)
from unit_talk.worker.base_agent import BaseAgent  # noqa: E402
from unit_talk.worker.health_server import HealthServer  # noqa: E402
from unit_talk.worker.supervisor import AgentFactory, Supervisor  # noqa: E402


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _split_names(value: Optional[str]) -> List[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


def load_agent_factories(value: Optional[str]) -> Dict[str, AgentFactory]:
    """
    Resolve ``UNIT_TALK_AGENTS`` into agent name -> agent class.

    Each entry is ``module:Class`` (the agent is named after the class's
    ``agent_name`` attribute, falling back to the class name) or
    ``name=module:Class``.

    Raises:
        ConfigurationError: An entry is malformed, cannot be imported or
                            does not name a ``BaseAgent`` subclass
    """
    factories: Dict[str, AgentFactory] = {}
    for entry in _split_names(value):
        name: Optional[str] = None
        target = entry
        if "=" in entry:
            name, target = (part.strip() for part in entry.split("=", 1))

        module_name, sep, class_name = target.partition(":")
        if not sep or not module_name or not class_name:
            raise ConfigurationError(
                message=f"Invalid agent entry '{entry}', expected module:Class",
                config_key="UNIT_TALK_AGENTS",
            )

        try:
            module = importlib.import_module(module_name)
            agent_class = getattr(module, class_name)
        except (ImportError, AttributeError) as e:
            raise ConfigurationError(
                message=f"Cannot load agent '{target}': {e}",
                config_key="UNIT_TALK_AGENTS",
                original_error=e,
            ) from e

        if not (isinstance(agent_class, type) and issubclass(agent_class, BaseAgent)):
            raise ConfigurationError(
                message=f"'{target}' is not a BaseAgent subclass",
                config_key="UNIT_TALK_AGENTS",
            )

        name = name or getattr(agent_class, "agent_name", None) or class_name
        if name in factories:
            raise ConfigurationError(
                message=f"Agent name '{name}' is configured twice",
                config_key="UNIT_TALK_AGENTS",
            )
        factories[name] = agent_class

    return factories


async def run_supervisor(
    config: SupervisorConfig,
    persistence: PersistenceLayer,
    factories: Dict[str, AgentFactory],
    disabled: Optional[List[str]] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """
    Run a supervisor until *stop_event* is set (or SIGTERM/SIGINT arrives).
    """
    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()

    def _shutdown_handler(sig: signal.Signals) -> None:
        logger.info("Received %s -- requesting graceful shutdown", sig.name)
        stop_event.set()

    installed: List[signal.Signals] = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _shutdown_handler, sig)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handlers unavailable for %s", sig.name)

    supervisor = Supervisor(config, persistence, agent_factories=factories, disabled=disabled)
    health_server = HealthServer(
        supervisor.system_status,
        supervisor.agent_status,
        port=config.health_port,
    )

    try:
        health_server.start()
    except Exception as exc:
        logger.warning("Health server failed to start (non-fatal): %s", exc)

    try:
        await supervisor.start_all()
        await stop_event.wait()
    finally:
        await supervisor.stop_all()
        health_server.stop()
        for sig in installed:
            loop.remove_signal_handler(sig)


def run_worker() -> None:
    """
    Initialise and run the agent worker.

    Steps:
    1. Load environment (.env if present).
    2. Build configuration and resolve agent classes.
    3. Connect to Supabase.
    4. Run the supervisor until SIGTERM / SIGINT.
    """
    load_dotenv()

    config = load_config_from_env()
    try:
        factories = load_agent_factories(os.getenv("UNIT_TALK_AGENTS"))
    except ConfigurationError as exc:
        logger.error("%s", exc)
        sys.exit(1)

    if not factories:
        logger.error("No agents configured; set UNIT_TALK_AGENTS")
        sys.exit(1)

    disabled = _split_names(os.getenv("UNIT_TALK_DISABLED_AGENTS"))

    logger.info("=" * 60)
    logger.info("Unit Talk agent worker starting")
    logger.info("  Agents    : %s", ", ".join(factories))
    logger.info("  Disabled  : %s", ", ".join(disabled) or "-")
    logger.info("  Log level : %s", LOG_LEVEL)
    logger.info("=" * 60)

    try:
        persistence = SupabasePersistence(create_supabase_client())
    except ConfigurationError as exc:
        logger.error("Failed to configure Supabase: %s", exc)
        sys.exit(1)

    try:
        asyncio.run(run_supervisor(config, persistence, factories, disabled=disabled))
    except Exception as exc:
        logger.error("Worker exited with error: %s", exc, exc_info=True)
        sys.exit(1)

    logger.info("Worker shut down cleanly")


# ---------------------------------------------------------------------------
# Module entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    run_worker()
