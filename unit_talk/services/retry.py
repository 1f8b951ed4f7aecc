"""
Retry Executor
==============

Runs an async operation with bounded exponential backoff.

Backoff schedule for attempt ``n`` (1-indexed)::

    delay_ms = min(backoff_ms * 2 ** (n - 1), max_backoff_ms)

With jitter enabled the delay is scaled by a uniform factor in
``[1 - jitter_ratio, 1 + jitter_ratio]`` so that many operations failing
together do not retry together.

Each ``with_retry`` call owns its key for its whole lifetime: the key's
``RetryOperation`` is registered on entry and removed on success, terminal
failure or any uncaught exception. Distinct keys never share state.
"""

import logging
import random
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar
from uuid import uuid4

from pydantic import BaseModel, Field

from unit_talk.config import RetryConfig
from unit_talk.services.error_handler import ErrorHandler, EscalationPolicy
from unit_talk.services.exceptions import RetryKeyInUseError
from unit_talk.services.scheduler import Clock, SystemClock

logger = logging.getLogger(__name__)

T = TypeVar("T")
RetryCallback = Callable[["RetryOperation", BaseException, float], Any]


class RetryOperation(BaseModel):
    """In-memory bookkeeping for one in-flight ``with_retry`` call."""

    key: str
    attempts: int = 0
    max_attempts: int = Field(..., ge=1)
    context: str = ""


def compute_backoff_ms(attempts: int, backoff_ms: float, max_backoff_ms: float) -> float:
    """
    Capped exponential backoff for the given attempt number (1-indexed).

    >>> compute_backoff_ms(1, 200, 5000)
    200
    >>> compute_backoff_ms(6, 200, 5000)
    5000
    """
    if attempts < 1:
        raise ValueError("attempts is 1-indexed")
    return min(backoff_ms * 2 ** (attempts - 1), max_backoff_ms)


def apply_jitter(delay_ms: float, jitter_ratio: float, rng: Optional[random.Random] = None) -> float:
    """Scale *delay_ms* by a uniform factor in ``[1 - ratio, 1 + ratio]``."""
    if jitter_ratio <= 0 or delay_ms <= 0:
        return delay_ms
    factor = (rng or random).uniform(-jitter_ratio, jitter_ratio)
    return max(0.0, delay_ms * (1 + factor))


class RetryExecutor:
    """
    Retries operations for one agent.

    Args:
        error_handler: Shared handler; decides retryability and records the
                       final failure
        config: Attempts, backoff and jitter settings
        clock: Used for sleeping between attempts
        agent: Agent name recorded with routed errors
        on_retry: Called as ``on_retry(operation, error, delay_ms)`` before
                  each backoff sleep
        rng: Random source for jitter
        policy: Overrides the handler's escalation policy for retry decisions
    """

    def __init__(
        self,
        error_handler: ErrorHandler,
        config: Optional[RetryConfig] = None,
        clock: Optional[Clock] = None,
        agent: Optional[str] = None,
        on_retry: Optional[RetryCallback] = None,
        rng: Optional[random.Random] = None,
        policy: Optional[EscalationPolicy] = None,
    ):
        self.error_handler = error_handler
        self.policy = policy or error_handler.policy
        self.config = config or RetryConfig()
        self.clock = clock or SystemClock()
        self.agent = agent
        self.on_retry = on_retry
        self.rng = rng or random.Random()
        self.in_flight: Dict[str, RetryOperation] = {}

    def backoff_ms(self, attempts: int) -> float:
        """Delay before the attempt following *attempts*, jitter included."""
        delay = compute_backoff_ms(attempts, self.config.backoff_ms, self.config.max_backoff_ms)
        if self.config.jitter:
            delay = apply_jitter(delay, self.config.jitter_ratio, self.rng)
        return delay

    def get_operation(self, key: str) -> Optional[RetryOperation]:
        return self.in_flight.get(key)

    async def with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        context: str,
        key: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> T:
        """
        Run *operation* until it succeeds or attempts are exhausted.

        Args:
            operation: Zero-argument coroutine function
            context: Human-readable description used in logs and error records
            key: Identifies this operation among concurrent ones (generated if omitted)
            max_attempts: Overrides ``config.max_retries`` for this call

        Returns:
            The operation's result

        Raises:
            RetryKeyInUseError: *key* already belongs to an in-flight call
                                (routed to the error handler first)
            Exception: The last failure, once it is non-retryable or attempts
                       are exhausted (already routed to the error handler)
        """
        key = key or f"{context}:{uuid4().hex}"
        if key in self.in_flight:
            error = RetryKeyInUseError(key)
            await self.error_handler.handle_error(
                error, f"{context} (key in use)", agent=self.agent,
            )
            raise error

        op = RetryOperation(
            key=key,
            max_attempts=max_attempts or self.config.max_retries,
            context=context,
        )
        self.in_flight[key] = op

        try:
            while True:
                op.attempts += 1
                try:
                    return await operation()
                except Exception as exc:
                    agent_error = self.error_handler.classify(exc)

                    if not self.policy.should_retry(agent_error):
                        await self.error_handler.handle_error(
                            exc, f"{context} (not retryable)", agent=self.agent,
                        )
                        raise

                    if op.attempts >= op.max_attempts:
                        logger.error(
                            "%s failed after %d attempts: %s",
                            context, op.attempts, exc,
                        )
                        await self.error_handler.handle_error(
                            exc, f"{context} (final retry)", agent=self.agent,
                        )
                        raise

                    delay_ms = self.backoff_ms(op.attempts)
                    logger.warning(
                        "Retry attempt %d of %d for %s in %.0fms: %s",
                        op.attempts, op.max_attempts, context, delay_ms, exc,
                    )
                    if self.on_retry is not None:
                        self.on_retry(op, exc, delay_ms)
                    await self.clock.sleep(delay_ms / 1000.0)
        finally:
            self.in_flight.pop(key, None)
