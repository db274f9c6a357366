"""Bounded retry for transient external failures.

Only ExternalTransientError is retried. Everything else, including
AccessDeniedError and ExternalPermanentError, propagates on the first
occurrence. Callers decide where retry is allowed; the GitHub client and
the resolver never retry on their own.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from src.fabrication.errors import ExternalTransientError, RateLimitError


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff policy with full jitter.

    Attributes:
        max_retries: Retries after the first attempt (0 disables retry).
        base_delay: Base delay in seconds.
        max_delay: Upper bound for a single delay in seconds.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def backoff(self, attempt: int) -> float:
        """Calculate backoff delay with jitter for a 0-indexed retry attempt."""
        exponential_delay = self.base_delay * (2 ** attempt)
        capped_delay = min(exponential_delay, self.max_delay)
        return random.uniform(0, capped_delay)

    def delay_for(self, error: ExternalTransientError, attempt: int) -> float:
        """Delay before the next attempt, honouring a rate limit's retry_after."""
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            return min(float(error.retry_after), self.max_delay)
        return self.backoff(attempt)


NO_RETRY = RetryPolicy(max_retries=0)


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str,
    context: Optional[Dict[str, Any]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run an async operation, retrying transient failures.

    Args:
        operation: Zero-argument coroutine factory to call per attempt.
        policy: Retry bound and backoff.
        description: Short name of the operation, for logs.
        context: Identifiers attached to logs and to the final error.
        sleep: Awaitable sleep, injectable for tests.

    Returns:
        The operation's result.

    Raises:
        ExternalTransientError: When retries are exhausted (the last error).
        Exception: Any non-transient error, immediately.
    """
    context = context or {}
    attempt = 0
    while True:
        try:
            return await operation()
        except ExternalTransientError as e:
            if attempt >= policy.max_retries:
                logger.error(
                    "Transient failure, retries exhausted",
                    extra={
                        "operation": description,
                        "attempts": attempt + 1,
                        "error": e.message,
                        **context,
                    },
                )
                e.add_context(attempts=attempt + 1, **context)
                raise

            delay = policy.delay_for(e, attempt)
            logger.warning(
                "Transient failure, retrying",
                extra={
                    "operation": description,
                    "attempt": attempt + 1,
                    "max_retries": policy.max_retries,
                    "delay": delay,
                    "status_code": e.status_code,
                    **context,
                },
            )
            await sleep(delay)
            attempt += 1
