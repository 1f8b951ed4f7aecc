"""
Supervision Configuration
=========================

Pydantic models for the retry executor, dead-letter queue and agent
lifecycle, plus ``load_config_from_env()`` which builds them from
environment variables.

Environment variables:
    AGENT_MAX_RETRIES              -- In-process attempts per operation (default: 3)
    AGENT_BACKOFF_MS               -- Base in-process backoff (default: 200)
    AGENT_MAX_BACKOFF_MS           -- In-process backoff cap (default: 5000)
    AGENT_RETRY_JITTER             -- "true" to randomise backoff (default: false)
    AGENT_RETRY_JITTER_RATIO       -- Jitter bound as a fraction of the delay (default: 0.2)
    AGENT_HEALTH_CHECK_INTERVAL_MS -- Health tick cadence (default: 30000)
    AGENT_METRICS_INTERVAL_MS      -- Metrics tick cadence (default: 60000)
    DLQ_MAX_RETRIES                -- Replays before an entry fails (default: 3)
    DLQ_INITIAL_RETRY_DELAY_MS     -- First replay delay (default: 60000)
    DLQ_MAX_RETRY_DELAY_MS         -- Replay delay cap (default: 3600000)
    DLQ_PROCESSING_INTERVAL_MS     -- Poll cadence (default: 30000)
    DLQ_STALE_AFTER_MS             -- Age at which a ``retrying`` entry is reset (default: 900000)
"""

import os
from typing import Optional

from pydantic import BaseModel, Field

# =============================================================================
# Defaults
# =============================================================================

DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_MS = 200
DEFAULT_MAX_BACKOFF_MS = 5000
DEFAULT_JITTER_RATIO = 0.2

DEFAULT_HEALTH_CHECK_INTERVAL_MS = 30_000
DEFAULT_METRICS_INTERVAL_MS = 60_000
DEFAULT_ERROR_THRESHOLD = 10

DEFAULT_DLQ_MAX_RETRIES = 3
DEFAULT_DLQ_INITIAL_RETRY_DELAY_MS = 60_000
DEFAULT_DLQ_MAX_RETRY_DELAY_MS = 3_600_000
DEFAULT_DLQ_PROCESSING_INTERVAL_MS = 30_000
DEFAULT_DLQ_BATCH_SIZE = 10
DEFAULT_DLQ_STALE_AFTER_MS = 900_000


# =============================================================================
# Models
# =============================================================================

class RetryConfig(BaseModel):
    """In-process retry settings for one agent."""

    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=1)
    backoff_ms: int = Field(default=DEFAULT_BACKOFF_MS, ge=0)
    max_backoff_ms: int = Field(default=DEFAULT_MAX_BACKOFF_MS, ge=0)
    jitter: bool = False
    jitter_ratio: float = Field(default=DEFAULT_JITTER_RATIO, ge=0.0, le=1.0)


class DeadLetterConfig(BaseModel):
    """Dead-letter queue settings."""

    max_retries: int = Field(default=DEFAULT_DLQ_MAX_RETRIES, ge=1)
    initial_retry_delay_ms: int = Field(default=DEFAULT_DLQ_INITIAL_RETRY_DELAY_MS, ge=0)
    max_retry_delay_ms: int = Field(default=DEFAULT_DLQ_MAX_RETRY_DELAY_MS, ge=0)
    processing_interval_ms: int = Field(default=DEFAULT_DLQ_PROCESSING_INTERVAL_MS, gt=0)
    batch_size: int = Field(default=DEFAULT_DLQ_BATCH_SIZE, ge=1)
    stale_after_ms: int = Field(default=DEFAULT_DLQ_STALE_AFTER_MS, gt=0)


class AgentConfig(BaseModel):
    """Lifecycle settings for one agent."""

    name: str = Field(..., min_length=1)
    enabled: bool = True
    health_check_interval_ms: int = Field(default=DEFAULT_HEALTH_CHECK_INTERVAL_MS, gt=0)
    metrics_interval_ms: int = Field(default=DEFAULT_METRICS_INTERVAL_MS, gt=0)
    error_threshold: int = Field(default=DEFAULT_ERROR_THRESHOLD, ge=1)
    retry: RetryConfig = Field(default_factory=RetryConfig)


class SupervisorConfig(BaseModel):
    """Process-wide defaults applied to every agent the supervisor starts."""

    retry: RetryConfig = Field(default_factory=RetryConfig)
    dead_letter: DeadLetterConfig = Field(default_factory=DeadLetterConfig)
    health_check_interval_ms: int = Field(default=DEFAULT_HEALTH_CHECK_INTERVAL_MS, gt=0)
    metrics_interval_ms: int = Field(default=DEFAULT_METRICS_INTERVAL_MS, gt=0)
    health_port: Optional[int] = None

    def agent_config(self, name: str, enabled: bool = True) -> AgentConfig:
        """Build an ``AgentConfig`` for *name* inheriting these defaults."""
        return AgentConfig(
            name=name,
            enabled=enabled,
            health_check_interval_ms=self.health_check_interval_ms,
            metrics_interval_ms=self.metrics_interval_ms,
            retry=self.retry.model_copy(),
        )


# =============================================================================
# Environment loading
# =============================================================================

def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    return int(value) if value not in (None, "") else default


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    return float(value) if value not in (None, "") else default


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value in (None, ""):
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config_from_env() -> SupervisorConfig:
    """Build a ``SupervisorConfig`` from the environment variables above."""
    health_port = os.getenv("PORT") or os.getenv("AGENT_HEALTH_PORT")

    return SupervisorConfig(
        retry=RetryConfig(
            max_retries=_env_int("AGENT_MAX_RETRIES", DEFAULT_MAX_RETRIES),
            backoff_ms=_env_int("AGENT_BACKOFF_MS", DEFAULT_BACKOFF_MS),
            max_backoff_ms=_env_int("AGENT_MAX_BACKOFF_MS", DEFAULT_MAX_BACKOFF_MS),
            jitter=_env_bool("AGENT_RETRY_JITTER", False),
            jitter_ratio=_env_float("AGENT_RETRY_JITTER_RATIO", DEFAULT_JITTER_RATIO),
        ),
        dead_letter=DeadLetterConfig(
            max_retries=_env_int("DLQ_MAX_RETRIES", DEFAULT_DLQ_MAX_RETRIES),
            initial_retry_delay_ms=_env_int(
                "DLQ_INITIAL_RETRY_DELAY_MS", DEFAULT_DLQ_INITIAL_RETRY_DELAY_MS
            ),
            max_retry_delay_ms=_env_int(
                "DLQ_MAX_RETRY_DELAY_MS", DEFAULT_DLQ_MAX_RETRY_DELAY_MS
            ),
            processing_interval_ms=_env_int(
                "DLQ_PROCESSING_INTERVAL_MS", DEFAULT_DLQ_PROCESSING_INTERVAL_MS
            ),
            stale_after_ms=_env_int("DLQ_STALE_AFTER_MS", DEFAULT_DLQ_STALE_AFTER_MS),
        ),
        health_check_interval_ms=_env_int(
            "AGENT_HEALTH_CHECK_INTERVAL_MS", DEFAULT_HEALTH_CHECK_INTERVAL_MS
        ),
        metrics_interval_ms=_env_int(
            "AGENT_METRICS_INTERVAL_MS", DEFAULT_METRICS_INTERVAL_MS
        ),
        health_port=int(health_port) if health_port else None,
    )
