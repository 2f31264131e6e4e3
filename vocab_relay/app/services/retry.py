"""
Rate-limited retry scheduler for outbound calls to a quota-limited API.

Every call passes a shared minimum-interval throttle before it is dispatched.
Calls rejected with a rate-limit signal are retried with exponential backoff
plus additive jitter; every other failure is re-raised on first occurrence.
"""

from __future__ import annotations

import asyncio
import functools
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from vocab_relay.app.core.errors import RateLimitExhausted, RetryCancelled
from vocab_relay.app.core.logging import get_logger
from vocab_relay.app.services.throttle import SleepFn, ThrottleState

logger = get_logger(__name__)

T = TypeVar("T")
Operation = Callable[[], Awaitable[T]]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry and pacing configuration. Durations are in seconds."""

    max_retries: int = 3
    min_interval: float = 4.0
    backoff_base: float = 1.0
    jitter_max: float = 0.5

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        if self.backoff_base < 0:
            raise ValueError("backoff_base must be >= 0")
        if self.jitter_max < 0:
            raise ValueError("jitter_max must be >= 0")

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryPolicy":
        return cls(
            max_retries=settings.retry_max_retries,
            min_interval=settings.retry_min_interval_ms / 1000,
            backoff_base=settings.retry_backoff_base_ms / 1000,
            jitter_max=settings.retry_jitter_max_ms / 1000,
        )


@dataclass(frozen=True)
class RateLimited:
    error: Exception
    retry_after: float | None = None


@dataclass(frozen=True)
class UpstreamFailure:
    error: Exception
    status: int | None
    message: str


def classify_error(exc: Exception) -> RateLimited | UpstreamFailure:
    """Tag a raw operation failure as a rate limit or as anything else."""
    status = getattr(exc, "status", None)
    if status is None:
        status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    message = getattr(exc, "message", None) or str(exc)

    if status == 429 or "429" in str(message):
        return RateLimited(error=exc, retry_after=getattr(exc, "retry_after", None))
    return UpstreamFailure(error=exc, status=status, message=str(message))


def backoff_delay(retries: int, policy: RetryPolicy, rng: random.Random | None = None) -> float:
    """Delay before retry number ``retries`` (1-based): base * 2^(n-1) + jitter."""
    rng = rng or random
    jitter = rng.uniform(0, policy.jitter_max) if policy.jitter_max > 0 else 0.0
    return policy.backoff_base * 2 ** (retries - 1) + jitter


class RateLimitedCaller:
    """Runs operations through a shared throttle with bounded 429 retries."""

    def __init__(
        self,
        throttle: ThrottleState,
        policy: RetryPolicy | None = None,
        sleep: SleepFn = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.throttle = throttle
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng or random.Random()

    async def execute(
        self,
        operation: Operation[T],
        policy: RetryPolicy | None = None,
        cancel: asyncio.Event | None = None,
    ) -> T:
        """
        Run ``operation`` until it succeeds, fails for a non rate-limit reason,
        or the retry budget runs out.

        Raises:
            RateLimitExhausted: after ``max_retries`` rate-limited retries.
            RetryCancelled: when ``cancel`` is set before or during a wait.
            Exception: any non rate-limit failure, unchanged.
        """
        policy = policy or self.policy
        retries = 0

        while retries <= policy.max_retries:
            attempt = retries + 1
            if cancel is not None and cancel.is_set():
                raise RetryCancelled(attempts=retries)

            pause = functools.partial(self._pause, cancel=cancel, attempts=retries)
            waited = await self.throttle.acquire(policy.min_interval, sleep=pause)
            if waited > 0:
                logger.debug(
                    "Dispatch delayed by throttle",
                    data={"attempt": attempt, "waited_s": round(waited, 3)},
                )

            try:
                return await operation()
            except Exception as exc:
                failure = classify_error(exc)
                if isinstance(failure, UpstreamFailure):
                    logger.info(
                        "Upstream call failed, not retrying",
                        data={"attempt": attempt, "status": failure.status},
                    )
                    raise

                retries += 1
                if retries > policy.max_retries:
                    logger.error(
                        "Rate limit retries exhausted",
                        data={"attempts": attempt, "max_retries": policy.max_retries},
                    )
                    raise RateLimitExhausted(
                        attempts=attempt, last_error=exc, retry_after=failure.retry_after
                    ) from exc

                delay = backoff_delay(retries, policy, self._rng)
                if failure.retry_after is not None:
                    delay = max(delay, failure.retry_after)
                logger.warning(
                    "Rate limited by upstream, backing off",
                    data={
                        "attempt": attempt,
                        "retry": retries,
                        "max_retries": policy.max_retries,
                        "delay_s": round(delay, 3),
                    },
                )
                await self._pause(delay, cancel=cancel, attempts=attempt)

        # Unreachable: the loop either returns or raises.
        raise AssertionError("retry loop exited without an outcome")

    async def _pause(self, delay: float, cancel: asyncio.Event | None, attempts: int) -> None:
        """Sleep for ``delay`` seconds, aborting early if ``cancel`` fires."""
        if cancel is None:
            if delay > 0:
                await self._sleep(delay)
            return
        if cancel.is_set():
            raise RetryCancelled(attempts=attempts)
        if delay <= 0:
            return

        sleeper = asyncio.ensure_future(self._sleep(delay))
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                if not task.done():
                    task.cancel()
        if waiter in done:
            logger.info("Pending upstream call cancelled", data={"attempts": attempts})
            raise RetryCancelled(attempts=attempts)
