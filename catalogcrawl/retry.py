"""
Retry / backoff policy.

Each failure class gets its own exponential curve and cap. Rate limits back
off hardest so the source is not hammered while it is throttling us.

    NETWORK       base * 2^attempt    capped at 30s
    RATE_LIMIT    base * 3^attempt    capped at 60s
    SERVER_ERROR  base * 1.5^attempt  capped at 15s
    PARSE/UNKNOWN base * 2^attempt    capped at 20s

A RATE_LIMIT response carrying Retry-After waits at least that long (up to
the RATE_LIMIT cap).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from .errors import ClassifiedError, ErrorType, StructuralError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class BackoffRule:
    factor: float
    cap: float


BACKOFF_RULES: dict[ErrorType, BackoffRule] = {
    ErrorType.NETWORK: BackoffRule(factor=2.0, cap=30.0),
    ErrorType.RATE_LIMIT: BackoffRule(factor=3.0, cap=60.0),
    ErrorType.SERVER_ERROR: BackoffRule(factor=1.5, cap=15.0),
    ErrorType.PARSE_ERROR: BackoffRule(factor=2.0, cap=20.0),
    ErrorType.UNKNOWN: BackoffRule(factor=2.0, cap=20.0),
}


def compute_delay(error_type: ErrorType, attempt: int, base: float) -> float:
    """Delay in seconds before the attempt following ``attempt`` (0-based)."""
    rule = BACKOFF_RULES[error_type]
    return min(base * (rule.factor ** attempt), rule.cap)


def delay_for(error: ClassifiedError, attempt: int, base: float) -> float:
    """
    Backoff for a classified failure.

    A rate limit that came with a ``Retry-After`` waits at least that long,
    bounded by the RATE_LIMIT cap.
    """
    delay = compute_delay(error.error_type, attempt, base)
    if error.error_type is ErrorType.RATE_LIMIT and error.retry_after:
        cap = BACKOFF_RULES[ErrorType.RATE_LIMIT].cap
        delay = max(delay, min(error.retry_after, cap))
    return delay


@dataclass
class RetryOutcome(Generic[T]):
    """Typed result of a retried operation: a value or a classified error."""
    value: Optional[T] = None
    error: Optional[ClassifiedError] = None
    attempts: int = 0
    delays: list[float] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value or re-raise the final error."""
        if self.error is not None:
            if self.error.exception is not None:
                raise self.error.exception
            raise RuntimeError(self.error.message)
        return self.value  # type: ignore[return-value]


class RetryPolicy:
    """
    Run an async operation up to ``attempts`` times with classified backoff.

    The policy never touches persistent state: turning an exhausted
    operation into a failure record is the caller's job.
    """

    def __init__(
        self,
        attempts: int = 3,
        base_delay: float = 1.0,
        *,
        sleep: Optional[SleepFn] = None,
    ):
        self.attempts = max(1, attempts)
        self.base_delay = base_delay
        self._sleep = sleep or asyncio.sleep

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        context: Optional[dict[str, Any]] = None,
    ) -> RetryOutcome[T]:
        """Execute ``operation`` and return a RetryOutcome; never raises for fetch failures."""
        outcome: RetryOutcome[T] = RetryOutcome()
        context = context or {}

        for attempt in range(self.attempts):
            outcome.attempts = attempt + 1
            try:
                outcome.value = await operation()
                outcome.error = None
                return outcome
            except StructuralError:
                raise
            except Exception as e:
                outcome.error = ClassifiedError.from_exception(e, attempts=attempt + 1)

            if attempt + 1 >= self.attempts:
                logger.warning(
                    "[Retry] Giving up after %d attempts | type=%s | error=%s | context=%s",
                    outcome.attempts, outcome.error.error_type.value, outcome.error.message, context,
                )
                return outcome

            delay = delay_for(outcome.error, attempt, self.base_delay)
            outcome.delays.append(delay)
            logger.warning(
                "[Retry] Attempt %d/%d failed | type=%s | delay=%.2fs | error=%s | context=%s",
                attempt + 1, self.attempts, outcome.error.error_type.value,
                delay, outcome.error.message, context,
            )
            await self._sleep(delay)

        return outcome

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        context: Optional[dict[str, Any]] = None,
    ) -> T:
        """Execute ``operation``; re-raise the final error once the budget is spent."""
        outcome = await self.run(operation, context)
        return outcome.unwrap()


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    context: Optional[dict[str, Any]] = None,
    *,
    policy: Optional[RetryPolicy] = None,
) -> T:
    """Convenience wrapper around ``RetryPolicy.call`` with default settings."""
    return await (policy or RetryPolicy()).call(operation, context)
