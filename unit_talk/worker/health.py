"""
Agent Health and Metrics
========================

Periodic health checks and metrics snapshots for every agent. Each tick
appends a new row (never updates) to ``agent_health`` / ``agent_metrics``
and emits the record to in-process observers; readers take the newest row
per agent.

Default health policy (``evaluate_health``):
    - ``unhealthy`` : errors in the current metrics window >= threshold (10),
                      or any dependency check failed (e.g. database unreachable)
    - ``degraded``  : some errors in the window, below the threshold
    - ``healthy``   : no errors in the window, all dependencies reachable

Agents override ``BaseAgent.check_health()`` to apply their own policy.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, Field

from unit_talk.config import DEFAULT_ERROR_THRESHOLD
from unit_talk.services.events import AgentEvents
from unit_talk.services.persistence import (
    AGENT_HEALTH_TABLE,
    AGENT_METRICS_TABLE,
    PersistenceLayer,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Models
# =============================================================================

class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class HealthRecord(BaseModel):
    """One health check result for one agent."""

    agent: str
    status: HealthStatus
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class MetricsSnapshot(BaseModel):
    """Counters of one agent at one point in time."""

    agent: str
    success_count: int = 0
    error_count: int = 0
    warning_count: int = 0
    processing_time_ms: float = 0.0
    memory_usage_mb: float = 0.0
    timestamp: datetime


class AgentCounters(BaseModel):
    """
    Running counters for one agent process.

    The cumulative counters live until the process restarts;
    ``window_error_count`` is reset after every metrics tick and drives the
    default health policy.
    """

    success_count: int = 0
    error_count: int = 0
    warning_count: int = 0
    processing_time_ms: float = 0.0
    window_error_count: int = 0

    def record_success(self, duration_ms: float = 0.0) -> None:
        self.success_count += 1
        self.processing_time_ms += duration_ms

    def record_error(self, duration_ms: float = 0.0) -> None:
        self.error_count += 1
        self.window_error_count += 1
        self.processing_time_ms += duration_ms

    def record_warning(self) -> None:
        self.warning_count += 1

    def reset_window(self) -> None:
        self.window_error_count = 0


# =============================================================================
# Policy
# =============================================================================

def evaluate_health(
    error_count: int,
    dependencies: Optional[Dict[str, bool]] = None,
    threshold: int = DEFAULT_ERROR_THRESHOLD,
) -> Tuple[HealthStatus, Dict[str, Any]]:
    """
    Apply the default health policy.

    Args:
        error_count: Errors in the current metrics window
        dependencies: Dependency name -> reachable
        threshold: Error count at which the agent is unhealthy

    Returns:
        (status, details) where details lists what drove the decision
    """
    dependencies = dependencies or {}
    failed = sorted(name for name, ok in dependencies.items() if not ok)

    details: Dict[str, Any] = {
        "error_count": error_count,
        "error_threshold": threshold,
        "dependencies": dict(dependencies),
    }
    if failed:
        details["failed_dependencies"] = failed

    if failed or error_count >= threshold:
        return HealthStatus.UNHEALTHY, details
    if error_count > 0:
        return HealthStatus.DEGRADED, details
    return HealthStatus.HEALTHY, details


# =============================================================================
# Monitor
# =============================================================================

class HealthMonitor:
    """
    Records health/metrics ticks and answers "what is the latest?".

    Records are emitted to observers before they are persisted, so an
    agent whose database is unreachable still reports ``unhealthy``
    in-process even though the row cannot be written.
    """

    def __init__(self, persistence: PersistenceLayer, events: Optional[AgentEvents] = None):
        self.persistence = persistence
        self.events = events
        self._latest_health: Dict[str, HealthRecord] = {}
        self._latest_metrics: Dict[str, MetricsSnapshot] = {}

    async def record_health(self, record: HealthRecord) -> HealthRecord:
        self._latest_health[record.agent] = record
        if self.events is not None:
            await self.events.emit_health(record)

        await self.persistence.insert(AGENT_HEALTH_TABLE, {
            "agent": record.agent,
            "status": record.status.value,
            "details": record.details,
            "timestamp": record.timestamp.isoformat(),
        })
        logger.debug("Health recorded: agent=%s status=%s", record.agent, record.status.value)
        return record

    async def record_metrics(self, snapshot: MetricsSnapshot) -> MetricsSnapshot:
        self._latest_metrics[snapshot.agent] = snapshot
        if self.events is not None:
            await self.events.emit_metrics(snapshot)

        await self.persistence.insert(AGENT_METRICS_TABLE, {
            "agent": snapshot.agent,
            "metrics": snapshot.model_dump(mode="json", exclude={"agent", "timestamp"}),
            "timestamp": snapshot.timestamp.isoformat(),
        })
        logger.debug(
            "Metrics recorded: agent=%s success=%d errors=%d",
            snapshot.agent, snapshot.success_count, snapshot.error_count,
        )
        return snapshot

    def latest_health(self) -> Dict[str, HealthRecord]:
        """Newest health record per agent seen by this process."""
        return dict(self._latest_health)

    async def get_latest_health(self, agent: str) -> Optional[HealthRecord]:
        """Newest persisted health record for *agent*."""
        rows = await self.persistence.select(
            AGENT_HEALTH_TABLE,
            eq={"agent": agent},
            order_by="timestamp",
            descending=True,
            limit=1,
        )
        if not rows:
            return None
        row = rows[0]
        return HealthRecord(
            agent=row["agent"],
            status=row["status"],
            details=row.get("details") or {},
            timestamp=row["timestamp"],
        )

    async def get_latest_metrics(self, agent: str) -> Optional[MetricsSnapshot]:
        """Newest persisted metrics snapshot for *agent*."""
        rows = await self.persistence.select(
            AGENT_METRICS_TABLE,
            eq={"agent": agent},
            order_by="timestamp",
            descending=True,
            limit=1,
        )
        if not rows:
            return None
        row = rows[0]
        return MetricsSnapshot(agent=row["agent"], timestamp=row["timestamp"], **(row.get("metrics") or {}))
