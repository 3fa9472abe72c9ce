# ==============================
# Retry Policy
# ==============================
"""
Exponential backoff with jitter, shared by provider calls and storage contention.

The policy evaluation is small and pure:
- No persistence
- No provider calls
- No environment reads

Backoff for the k-th failed attempt (1-based):
  center = min(max_delay, base_delay * multiplier ** (k - 1))
  delay  = center jittered uniformly within +/- jitter * center
A provider-supplied retry-after replaces the computed delay, still capped at max_delay.

Classification:
- Retryable: network failure, timeout, rate limit, 5xx, storage busy/locked
- Everything else (auth, malformed request, not found, other 4xx) fails fast

Streams may only be retried before their first item arrives.
"""

from __future__ import annotations

# ==============================
# Imports
# ==============================

import asyncio
import logging
import random
import sqlite3
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, List, Optional, TypeVar

from tiller.config.schema import RetryConfig
from tiller.contracts.errors import StorageBusyError

T = TypeVar("T")

logger = logging.getLogger("tiller.retry")

Classifier = Callable[[BaseException], bool]
SleepFn = Callable[[float], Awaitable[None]]


# ==============================
# Policy Model
# ==============================
@dataclass(frozen=True)
class RetryPolicy:
    """max_attempts counts retries after the first call (0 disables retrying)."""
    max_attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.1

    @classmethod
    def from_config(cls, cfg: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=cfg.max_attempts,
            base_delay=cfg.base_delay_ms / 1000.0,
            max_delay=cfg.max_delay_ms / 1000.0,
            multiplier=cfg.multiplier,
            jitter=cfg.jitter,
        )

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        return cls(max_attempts=0)

    def center_delay(self, attempt: int) -> float:
        """Unjittered delay for the given 1-based failed attempt."""
        exponent = max(attempt - 1, 0)
        return min(self.max_delay, self.base_delay * (self.multiplier ** exponent))

    def delay_for(
        self,
        attempt: int,
        *,
        retry_after: Optional[float] = None,
        rng: Optional[random.Random] = None,
    ) -> float:
        if retry_after is not None:
            return min(max(retry_after, 0.0), self.max_delay)
        center = self.center_delay(attempt)
        if self.jitter <= 0 or center <= 0:
            return center
        spread = center * self.jitter
        r = rng or random
        return max(0.0, center + r.uniform(-spread, spread))

    def centers(self) -> List[float]:
        return [self.center_delay(k) for k in range(1, self.max_attempts + 1)]


# ==============================
# Decision Model
# ==============================
@dataclass(frozen=True)
class RetryDecision:
    """Result of evaluating whether a retry should occur."""
    should_retry: bool
    reason: str
    next_backoff_seconds: float


# ==============================
# Classification
# ==============================
def is_retryable(exc: BaseException) -> bool:
    flag = getattr(exc, "retryable", None)
    if isinstance(flag, bool):
        return flag
    if isinstance(exc, StorageBusyError):
        return True
    if isinstance(exc, sqlite3.OperationalError):
        msg = str(exc).lower()
        return "locked" in msg or "busy" in msg
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    return False


def retry_after_of(exc: BaseException) -> Optional[float]:
    value = getattr(exc, "retry_after", None)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return None


# ==============================
# Policy Evaluation
# ==============================
def evaluate_retry(
    *,
    attempt_index: int,
    policy: Optional[RetryPolicy],
    error: BaseException,
    classify: Classifier = is_retryable,
    rng: Optional[random.Random] = None,
) -> RetryDecision:
    """
    Evaluate retry decision for a failed attempt.

    Parameters:
    - attempt_index: 1-based count of failed attempts so far
    - policy: RetryPolicy or None
    - error: the exception raised by the attempt

    Returns:
    - RetryDecision including should_retry and backoff
    """
    if policy is None:
        return RetryDecision(False, "no_retry_policy", 0.0)

    if not classify(error):
        return RetryDecision(False, "error_not_retryable", 0.0)

    if attempt_index > policy.max_attempts:
        return RetryDecision(False, "max_attempts_reached", 0.0)

    delay = policy.delay_for(attempt_index, retry_after=retry_after_of(error), rng=rng)
    return RetryDecision(True, "retry_allowed", delay)


# ==============================
# Runners
# ==============================
async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    classify: Classifier = is_retryable,
    sleep: SleepFn = asyncio.sleep,
    rng: Optional[random.Random] = None,
    what: str = "operation",
) -> T:
    """Run `operation` until it succeeds, fails non-retryably, or attempts run out."""
    attempt = 0
    while True:
        try:
            result = await operation()
        except Exception as exc:
            attempt += 1
            decision = evaluate_retry(attempt_index=attempt, policy=policy, error=exc, classify=classify, rng=rng)
            if not decision.should_retry:
                if decision.reason == "max_attempts_reached":
                    logger.warning("%s failed after %d retries: %s", what, attempt - 1, exc)
                raise
            logger.info(
                "%s failed (attempt %d), retrying in %.3fs: %s",
                what,
                attempt,
                decision.next_backoff_seconds,
                exc,
            )
            await sleep(decision.next_backoff_seconds)
            continue
        if attempt:
            logger.info("%s succeeded after %d retries", what, attempt)
        return result


async def retry_stream(
    factory: Callable[[], AsyncIterator[T]],
    policy: RetryPolicy,
    *,
    classify: Classifier = is_retryable,
    sleep: SleepFn = asyncio.sleep,
    rng: Optional[random.Random] = None,
    what: str = "stream",
) -> AsyncIterator[T]:
    """
    Re-open a stream on retryable failures, but only before its first item.

    Once an item has been yielded, any failure propagates to the caller unchanged.
    """
    attempt = 0
    while True:
        started = False
        try:
            async for item in factory():
                started = True
                yield item
            return
        except Exception as exc:
            if started:
                raise
            attempt += 1
            decision = evaluate_retry(attempt_index=attempt, policy=policy, error=exc, classify=classify, rng=rng)
            if not decision.should_retry:
                raise
            logger.info(
                "%s failed before first event (attempt %d), retrying in %.3fs: %s",
                what,
                attempt,
                decision.next_backoff_seconds,
                exc,
            )
            await sleep(decision.next_backoff_seconds)
