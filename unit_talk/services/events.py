"""
Agent Event Surface
===================

Typed callback registration for observers of the supervision framework
(dashboards, tests, the health HTTP server):

    error(agent_error, context)     -- every classified error
    health(health_record)           -- every health tick
    metrics(metrics_snapshot)       -- every metrics tick
    state(agent, old, new)          -- every lifecycle transition

Listeners may be plain functions or coroutines. A failing listener is
logged and skipped; it never affects the emitter or other listeners.

Replay is different: each agent registers exactly one replay handler for
its own name, and ``replay()`` awaits it and lets its exception propagate
so the dead-letter queue learns the outcome.
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List

from unit_talk.services.exceptions import ReplayHandlerMissingError

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]
ReplayHandler = Callable[[str, Any], Awaitable[Any]]

ERROR_EVENT = "error"
HEALTH_EVENT = "health"
METRICS_EVENT = "metrics"
STATE_EVENT = "state"


class AgentEvents:
    """In-process event hub shared by every agent of one supervisor."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = {
            ERROR_EVENT: [],
            HEALTH_EVENT: [],
            METRICS_EVENT: [],
            STATE_EVENT: [],
        }
        self._replay_handlers: Dict[str, ReplayHandler] = {}

    # -------------------------------------------------------------------------
    # Observer registration
    # -------------------------------------------------------------------------

    def on_error(self, listener: Listener) -> Listener:
        self._listeners[ERROR_EVENT].append(listener)
        return listener

    def on_health(self, listener: Listener) -> Listener:
        self._listeners[HEALTH_EVENT].append(listener)
        return listener

    def on_metrics(self, listener: Listener) -> Listener:
        self._listeners[METRICS_EVENT].append(listener)
        return listener

    def on_state(self, listener: Listener) -> Listener:
        self._listeners[STATE_EVENT].append(listener)
        return listener

    def remove_listener(self, listener: Listener) -> bool:
        """Detach *listener* from every event. Returns True if it was attached."""
        removed = False
        for listeners in self._listeners.values():
            while listener in listeners:
                listeners.remove(listener)
                removed = True
        return removed

    # -------------------------------------------------------------------------
    # Emission
    # -------------------------------------------------------------------------

    async def _emit(self, event: str, *args: Any) -> None:
        for listener in list(self._listeners[event]):
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.warning(
                    "%s listener %r failed: %s", event, listener, exc, exc_info=True,
                )

    async def emit_error(self, error: Any, context: Any = None) -> None:
        await self._emit(ERROR_EVENT, error, context)

    async def emit_health(self, record: Any) -> None:
        await self._emit(HEALTH_EVENT, record)

    async def emit_metrics(self, snapshot: Any) -> None:
        await self._emit(METRICS_EVENT, snapshot)

    async def emit_state(self, agent: str, old: Any, new: Any) -> None:
        await self._emit(STATE_EVENT, agent, old, new)

    # -------------------------------------------------------------------------
    # Replay channel
    # -------------------------------------------------------------------------

    def register_replay_handler(self, agent: str, handler: ReplayHandler) -> None:
        """Route dead-letter replays for *agent* to *handler* (one per agent)."""
        if agent in self._replay_handlers:
            logger.warning("Replacing replay handler for agent %s", agent)
        self._replay_handlers[agent] = handler

    def unregister_replay_handler(self, agent: str) -> bool:
        return self._replay_handlers.pop(agent, None) is not None

    def has_replay_handler(self, agent: str) -> bool:
        return agent in self._replay_handlers

    def replay_agents(self) -> List[str]:
        """Agents with a registered replay handler in this process."""
        return sorted(self._replay_handlers)

    async def replay(self, agent: str, operation: str, payload: Any) -> Any:
        """
        Re-execute a dead-lettered operation through its agent's handler.

        Raises:
            ReplayHandlerMissingError: No handler is registered for *agent*.
            Exception: Whatever the handler raised; the replay failed.
        """
        handler = self._replay_handlers.get(agent)
        if handler is None:
            raise ReplayHandlerMissingError(agent=agent, operation=operation)
        return await handler(operation, payload)
