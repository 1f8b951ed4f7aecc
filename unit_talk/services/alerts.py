"""
Alert Notifications
===================

Out-of-band notifications for escalated errors and dead-letter outcomes.

Alert channels:
    - Slack incoming webhook (``SLACK_ALERT_WEBHOOK_URL``)
    - Python ``logging`` at CRITICAL / ERROR / INFO level

Persisting the ``agent_alerts`` row is the caller's job; this module only
notifies humans. Alerting failures are logged and never raised.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from unit_talk.services.exceptions import AgentError, Severity

logger = logging.getLogger(__name__)

SLACK_WEBHOOK_URL: str = os.getenv("SLACK_ALERT_WEBHOOK_URL", "")
SLACK_TIMEOUT_SECONDS: float = 10.0


# ---------------------------------------------------------------------------
# Escalated error alert
# ---------------------------------------------------------------------------

async def send_error_alert(agent: str, error: AgentError, context: Optional[Any] = None) -> None:
    """
    Notify humans about a high or critical severity error.

    Parameters
    ----------
    agent : str
        Name of the agent the error was raised in.
    error : AgentError
        The classified error.
    context : Any, optional
        Where the error happened (operation name, command type, ...).
    """
    timestamp: str = datetime.now(timezone.utc).isoformat()

    message: str = (
        f"[{error.severity.value.upper()}] {agent}: {error.message}\n"
        f"Kind: {error.kind.value}  Code: {error.code}\n"
        f"Context: {context or '-'}\n"
        f"Timestamp: {timestamp}"
    )

    level = logging.CRITICAL if error.severity == Severity.CRITICAL else logging.ERROR
    logger.log(
        level,
        "Agent alert: agent=%s  kind=%s  severity=%s  error=%s",
        agent,
        error.kind.value,
        error.severity.value,
        error.message,
    )

    await _post_to_slack(message)


# ---------------------------------------------------------------------------
# Dead-letter alerts
# ---------------------------------------------------------------------------

async def send_dead_letter_failed_alert(
    entry_id: str,
    agent: str,
    operation: str,
    retry_count: int,
    error_summary: str,
) -> None:
    """
    Alert when a dead-letter entry permanently fails (replays exhausted).

    Parameters
    ----------
    entry_id : str
        Id of the dead-letter row.
    agent : str
        Agent that owns the operation.
    operation : str
        Operation name that could not be replayed.
    retry_count : int
        Number of failed replays.
    error_summary : str
        Human-readable description of the last error.
    """
    timestamp: str = datetime.now(timezone.utc).isoformat()

    message: str = (
        f"[DEAD LETTER FAILURE] {agent}.{operation} (entry {entry_id}) "
        f"permanently failed after {retry_count} replays.\n"
        f"Error: {error_summary}\n"
        f"Timestamp: {timestamp}"
    )

    logger.critical(
        "Dead letter permanently failed: entry_id=%s  agent=%s  operation=%s  "
        "retry_count=%d  error=%s",
        entry_id,
        agent,
        operation,
        retry_count,
        error_summary,
    )

    await _post_to_slack(message)


async def send_recovery_alert(entry_id: str, agent: str, operation: str) -> None:
    """
    Notify when a dead-letter entry that had failed replays finally succeeds.
    """
    timestamp: str = datetime.now(timezone.utc).isoformat()

    message: str = (
        f"[DEAD LETTER RECOVERY] {agent}.{operation} (entry {entry_id}) "
        f"replayed successfully after prior failures.\n"
        f"Timestamp: {timestamp}"
    )

    logger.info(
        "Dead letter recovered: entry_id=%s  agent=%s  operation=%s",
        entry_id, agent, operation,
    )

    await _post_to_slack(message)


# ---------------------------------------------------------------------------
# Slack integration
# ---------------------------------------------------------------------------

async def _post_to_slack(message: str) -> None:
    """
    Post a message to the configured Slack incoming webhook.

    When ``SLACK_ALERT_WEBHOOK_URL`` is not set, the message is logged
    and skipped. Network or HTTP errors are logged as warnings but never
    raised.
    """
    if not SLACK_WEBHOOK_URL:
        logger.debug(
            "Slack webhook not configured; alert logged only: %s",
            message[:200],
        )
        return

    try:
        async with httpx.AsyncClient(timeout=SLACK_TIMEOUT_SECONDS) as client:
            resp = await client.post(
                SLACK_WEBHOOK_URL,
                json={"text": message},
            )
            resp.raise_for_status()
            logger.debug("Slack alert sent successfully.")
    except Exception as exc:
        logger.warning(
            "Failed to send Slack alert: %s", exc, exc_info=True,
        )
