"""
Error Classification, Escalation and the Shared Error Handler
=============================================================

Every failure inside an agent goes through ``ErrorHandler.handle_error``:

1. ``classify()`` turns the raw exception into a typed ``AgentError``
2. the error is logged at a level matching its severity
3. an ``agent_errors`` row is persisted (audit / metrics)
4. if ``EscalationPolicy.should_alert`` -- an ``agent_alerts`` row is
   persisted and the alert is posted to Slack
5. the ``error`` event is emitted to observers

Classification is heuristic: untyped errors are matched on message
substrings in a fixed priority order. Code that needs precise typing
should raise an ``AgentError`` subclass, which passes through untouched.
"""

import logging
import traceback
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

from unit_talk.services import alerts
from unit_talk.services.events import AgentEvents
from unit_talk.services.exceptions import AgentError, ErrorKind, Severity
from unit_talk.services.persistence import (
    AGENT_ALERTS_TABLE,
    AGENT_ERRORS_TABLE,
    PersistenceLayer,
)
from unit_talk.services.scheduler import Clock, SystemClock

logger = logging.getLogger(__name__)

RetryPredicate = Callable[[AgentError], bool]

# (substrings, kind, severity) -- first match wins
CLASSIFICATION_RULES = (
    (("database", "sql"), ErrorKind.DATABASE, Severity.HIGH),
    (("validation", "invalid"), ErrorKind.VALIDATION, Severity.MEDIUM),
    (("config",), ErrorKind.CONFIGURATION, Severity.HIGH),
)

SEVERITY_LOG_LEVELS = {
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}

ALERT_SEVERITIES = frozenset({Severity.HIGH, Severity.CRITICAL})
ESCALATION_ALERT_TYPE = "error_escalation"


# =============================================================================
# Classification
# =============================================================================

def classify(error: BaseException) -> AgentError:
    """
    Map a raw failure onto the agent error taxonomy.

    Already-typed errors are returned unchanged. Otherwise the message is
    searched for ``database``/``sql``, then ``validation``/``invalid``, then
    ``config``; anything else is unknown/medium.

    Args:
        error: Any exception

    Returns:
        AgentError wrapping *error* (or *error* itself if already typed)
    """
    if isinstance(error, AgentError):
        return error

    message = str(error) or type(error).__name__
    lowered = message.lower()

    kind, severity = ErrorKind.UNKNOWN, Severity.MEDIUM
    for patterns, rule_kind, rule_severity in CLASSIFICATION_RULES:
        if any(pattern in lowered for pattern in patterns):
            kind, severity = rule_kind, rule_severity
            break

    raw_code = getattr(error, "code", None)
    code = str(raw_code) if raw_code not in (None, "") else type(error).__name__

    return AgentError(
        message=message,
        kind=kind,
        severity=severity,
        original_error=error,
        code=code,
    )


def should_alert(error: AgentError) -> bool:
    """True iff the error is high or critical severity."""
    return error.severity in ALERT_SEVERITIES


def default_should_retry(error: AgentError) -> bool:
    """Retry everything except validation failures."""
    return error.kind != ErrorKind.VALIDATION


# =============================================================================
# Escalation Policy
# =============================================================================

class EscalationPolicy:
    """
    Decides what happens to a classified error.

    Args:
        retry_predicate: Replaces ``default_should_retry`` when a worker has
                         its own idea of which failures are transient.
    """

    def __init__(self, retry_predicate: Optional[RetryPredicate] = None):
        self._retry_predicate = retry_predicate or default_should_retry

    def should_alert(self, error: AgentError) -> bool:
        return should_alert(error)

    def should_retry(self, error: AgentError) -> bool:
        return bool(self._retry_predicate(error))

    def is_fatal(self, error: AgentError) -> bool:
        """Critical errors move an agent into the ``error`` state."""
        return error.severity == Severity.CRITICAL


# =============================================================================
# Shared Error Handler
# =============================================================================

def _context_dict(context: Any) -> Dict[str, Any]:
    if context is None:
        return {}
    if isinstance(context, dict):
        return dict(context)
    return {"operation": str(context)}


def _format_stack(error: AgentError) -> Optional[str]:
    source = error.original_error or error
    if source.__traceback__ is None:
        return None
    return "".join(
        traceback.format_exception(type(source), source, source.__traceback__)
    )


class ErrorHandler:
    """
    Process-wide error sink shared by every agent.

    Usage:
        handler = ErrorHandler(persistence, events=events)
        try:
            await do_work()
        except Exception as e:
            agent_error = await handler.handle_error(e, "grade picks", agent="grading")
            raise

    Persistence and alerting failures are logged and never raised, so
    handling an error cannot itself fail.
    """

    def __init__(
        self,
        persistence: PersistenceLayer,
        policy: Optional[EscalationPolicy] = None,
        events: Optional[AgentEvents] = None,
        clock: Optional[Clock] = None,
        source: str = "unit_talk",
    ):
        self.persistence = persistence
        self.policy = policy or EscalationPolicy()
        self.events = events
        self.clock = clock or SystemClock()
        self.source = source

    def classify(self, error: BaseException) -> AgentError:
        return classify(error)

    async def handle_error(
        self,
        error: BaseException,
        context: Any = None,
        agent: Optional[str] = None,
    ) -> AgentError:
        """
        Classify, log, persist and escalate one failure.

        Args:
            error: The raw or typed exception
            context: Operation description (str) or structured context (dict)
            agent: Name of the agent the error happened in

        Returns:
            The classified AgentError
        """
        agent_error = classify(error)
        agent_name = agent or self.source

        logger.log(
            SEVERITY_LOG_LEVELS[agent_error.severity],
            "[%s] %s error in %s: %s",
            agent_name,
            agent_error.kind.value,
            context or "unknown context",
            agent_error.message,
        )

        await self._record_error(agent_name, agent_error, context)

        if self.policy.should_alert(agent_error):
            await self._record_alert(agent_name, agent_error, context)
            await alerts.send_error_alert(agent_name, agent_error, context)

        if self.events is not None:
            await self.events.emit_error(agent_error, context)

        return agent_error

    async def _record_error(self, agent: str, error: AgentError, context: Any) -> None:
        row = {
            "agent": agent,
            "error_type": error.kind.value,
            "error_code": error.code,
            "message": error.message,
            "severity": error.severity.value,
            "context": {**dict(error.context), **_context_dict(context)},
            "stack": _format_stack(error),
            "timestamp": self.clock.now().isoformat(),
        }
        try:
            await self.persistence.insert(AGENT_ERRORS_TABLE, row)
        except Exception as exc:
            logger.error("Failed to record error in database: %s", exc)

    async def _record_alert(self, agent: str, error: AgentError, context: Any) -> None:
        row = {
            "agent": agent,
            "alert_type": ESCALATION_ALERT_TYPE,
            "severity": error.severity.value,
            "message": error.message,
            "context": {
                "kind": error.kind.value,
                "code": error.code,
                **_context_dict(context),
            },
            "timestamp": self.clock.now().isoformat(),
        }
        try:
            await self.persistence.insert(AGENT_ALERTS_TABLE, row)
        except Exception as exc:
            logger.error("Failed to record alert in database: %s", exc)

    async def get_error_stats(
        self,
        window: timedelta = timedelta(hours=1),
        agent: Optional[str] = None,
    ) -> Dict[str, int]:
        """
        Count persisted errors per severity inside a time window.

        Args:
            window: How far back to look (default: one hour)
            agent: Restrict to one agent

        Returns:
            Mapping of severity value to count; empty if the store is unreachable
        """
        start = (self.clock.now() - window).isoformat()
        try:
            rows = await self.persistence.select(
                AGENT_ERRORS_TABLE,
                eq={"agent": agent} if agent else None,
                gte={"timestamp": start},
            )
        except Exception as exc:
            logger.error("Failed to get error stats: %s", exc)
            return {}

        stats: Dict[str, int] = {}
        for row in rows:
            severity = row.get("severity", Severity.MEDIUM.value)
            stats[severity] = stats.get(severity, 0) + 1
        return stats
