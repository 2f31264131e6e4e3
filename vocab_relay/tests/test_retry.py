import asyncio
import random

import httpx
import pytest

from vocab_relay.app.core.errors import RateLimitExhausted, RetryCancelled, UpstreamError
from vocab_relay.app.services.retry import (
    RateLimited,
    RateLimitedCaller,
    RetryPolicy,
    UpstreamFailure,
    backoff_delay,
    classify_error,
)
from vocab_relay.app.services.throttle import ThrottleState


class CountingOperation:
    """Fails with the scripted errors, then returns ``result``."""

    def __init__(self, *errors, result="ok", always=None):
        self.errors = list(errors)
        self.result = result
        self.always = always
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.always is not None:
            raise self.always
        if self.errors:
            raise self.errors.pop(0)
        return self.result


def rate_limited(retry_after=None):
    return UpstreamError(429, "Resource has been exhausted", retry_after=retry_after)


@pytest.mark.asyncio
async def test_non_rate_limit_error_is_not_retried(make_caller, fake_clock):
    error = UpstreamError(500, "Internal error")
    op = CountingOperation(always=error)
    caller = make_caller(max_retries=5)

    with pytest.raises(UpstreamError) as exc_info:
        await caller.execute(op)

    assert exc_info.value is error
    assert exc_info.value.status == 500
    assert op.calls == 1
    assert fake_clock.sleeps == []


@pytest.mark.asyncio
async def test_arbitrary_exception_propagates_unchanged(make_caller):
    op = CountingOperation(always=KeyError("missing"))
    with pytest.raises(KeyError):
        await make_caller().execute(op)
    assert op.calls == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("max_retries", [0, 1, 3])
async def test_rate_limit_retries_are_bounded(make_caller, max_retries):
    op = CountingOperation(always=rate_limited())
    caller = make_caller(max_retries=max_retries)

    with pytest.raises(RateLimitExhausted) as exc_info:
        await caller.execute(op)

    assert op.calls == max_retries + 1
    assert exc_info.value.attempts == max_retries + 1
    assert isinstance(exc_info.value.last_error, UpstreamError)
    assert exc_info.value.__cause__ is exc_info.value.last_error


@pytest.mark.asyncio
async def test_zero_retries_fails_without_waiting(make_caller, fake_clock):
    op = CountingOperation(always=rate_limited())
    with pytest.raises(RateLimitExhausted):
        await make_caller(max_retries=0).execute(op)
    assert fake_clock.sleeps == []


@pytest.mark.asyncio
async def test_eventual_success_after_rate_limits(make_caller):
    op = CountingOperation(rate_limited(), rate_limited(), result={"words": []})
    result = await make_caller(max_retries=3).execute(op)
    assert result == {"words": []}
    assert op.calls == 3


@pytest.mark.asyncio
async def test_backoff_delays_double(make_caller, fake_clock):
    op = CountingOperation(always=rate_limited())
    caller = make_caller(max_retries=2, min_interval=0, backoff_base=1.0, jitter_max=0)

    with pytest.raises(RateLimitExhausted):
        await caller.execute(op)

    assert fake_clock.sleeps == [1.0, 2.0]


def test_backoff_delay_non_jittered_component_grows():
    policy = RetryPolicy(backoff_base=1.0, jitter_max=0)
    delays = [backoff_delay(n, policy) for n in range(1, 5)]
    assert delays == [1.0, 2.0, 4.0, 8.0]


def test_backoff_jitter_is_additive_and_bounded():
    policy = RetryPolicy(backoff_base=1.0, jitter_max=0.5)
    rng = random.Random(1234)
    for retries in range(1, 6):
        base = 2 ** (retries - 1)
        delay = backoff_delay(retries, policy, rng)
        assert base <= delay <= base + 0.5


@pytest.mark.asyncio
async def test_injected_random_source_controls_jitter(fake_clock):
    class MaxJitter:
        def uniform(self, low, high):
            return high

    caller = RateLimitedCaller(
        ThrottleState(clock=fake_clock),
        RetryPolicy(max_retries=1, min_interval=0, backoff_base=1.0, jitter_max=0.25),
        sleep=fake_clock.sleep,
        rng=MaxJitter(),
    )
    op = CountingOperation(rate_limited())
    assert await caller.execute(op) == "ok"
    assert fake_clock.sleeps == [1.25]


@pytest.mark.asyncio
async def test_retry_after_extends_backoff(make_caller, fake_clock):
    op = CountingOperation(rate_limited(retry_after=5.0))
    await make_caller(backoff_base=1.0).execute(op)
    assert fake_clock.sleeps == [5.0]


@pytest.mark.asyncio
async def test_exhaustion_keeps_last_retry_after(make_caller):
    op = CountingOperation(always=rate_limited(retry_after=7.0))
    with pytest.raises(RateLimitExhausted) as exc_info:
        await make_caller(max_retries=1).execute(op)
    assert exc_info.value.retry_after == 7.0
    assert exc_info.value.code == "QUOTA_EXHAUSTED"
    assert "reduce the batch size" in str(exc_info.value)


@pytest.mark.asyncio
async def test_backoff_and_throttle_compose(make_caller, fake_clock):
    op = CountingOperation(rate_limited())
    caller = make_caller(max_retries=1, min_interval=4.0, backoff_base=1.0)

    assert await caller.execute(op) == "ok"

    # Backoff sleeps first, then the throttle gate waits out the rest of the interval.
    assert fake_clock.sleeps == [1.0, 3.0]


@pytest.mark.asyncio
async def test_per_call_policy_overrides_default(make_caller):
    op = CountingOperation(always=rate_limited())
    caller = make_caller(max_retries=5)
    with pytest.raises(RateLimitExhausted):
        await caller.execute(op, policy=RetryPolicy(max_retries=1, min_interval=0, backoff_base=0, jitter_max=0))
    assert op.calls == 2


@pytest.mark.asyncio
async def test_concurrent_calls_respect_min_interval(make_caller, fake_clock):
    caller = make_caller(min_interval=4.0)
    dispatched: list[float] = []

    async def op():
        dispatched.append(fake_clock())
        await asyncio.sleep(0)
        return "ok"

    results = await asyncio.gather(caller.execute(op), caller.execute(op), caller.execute(op))

    assert results == ["ok", "ok", "ok"]
    assert len(dispatched) == 3
    gaps = [b - a for a, b in zip(dispatched, dispatched[1:])]
    assert all(gap >= 4.0 for gap in gaps)


@pytest.mark.asyncio
async def test_back_to_back_calls_are_paced(make_caller, fake_clock):
    caller = make_caller(min_interval=4.0)
    op = CountingOperation()
    await caller.execute(op)
    first = caller.throttle.last_dispatch
    await caller.execute(op)
    assert caller.throttle.last_dispatch - first >= 4.0
    assert fake_clock.sleeps == [4.0]


@pytest.mark.asyncio
async def test_cancel_before_first_attempt(make_caller):
    op = CountingOperation()
    cancel = asyncio.Event()
    cancel.set()

    with pytest.raises(RetryCancelled) as exc_info:
        await make_caller().execute(op, cancel=cancel)

    assert op.calls == 0
    assert exc_info.value.attempts == 0


@pytest.mark.asyncio
async def test_cancel_during_backoff_stops_retrying():
    caller = RateLimitedCaller(
        ThrottleState(),
        RetryPolicy(max_retries=3, min_interval=0, backoff_base=30.0, jitter_max=0),
    )
    op = CountingOperation(always=rate_limited())
    cancel = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, cancel.set)

    with pytest.raises(RetryCancelled) as exc_info:
        await asyncio.wait_for(caller.execute(op, cancel=cancel), timeout=5)

    assert op.calls == 1
    assert exc_info.value.attempts == 1


@pytest.mark.asyncio
async def test_cancel_during_throttle_wait_does_not_dispatch():
    caller = RateLimitedCaller(
        ThrottleState(),
        RetryPolicy(max_retries=0, min_interval=30.0, backoff_base=0, jitter_max=0),
    )
    op = CountingOperation()
    await caller.execute(op)
    stamp = caller.throttle.last_dispatch

    cancel = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, cancel.set)
    with pytest.raises(RetryCancelled):
        await asyncio.wait_for(caller.execute(op, cancel=cancel), timeout=5)

    assert op.calls == 1
    assert caller.throttle.last_dispatch == stamp


@pytest.mark.asyncio
async def test_task_cancellation_releases_throttle():
    throttle = ThrottleState()
    caller = RateLimitedCaller(throttle, RetryPolicy(max_retries=0, min_interval=30.0, backoff_base=0, jitter_max=0))
    op = CountingOperation()
    await caller.execute(op)

    pending = asyncio.create_task(caller.execute(op))
    await asyncio.sleep(0.05)
    pending.cancel()
    with pytest.raises(asyncio.CancelledError):
        await pending

    quick = RetryPolicy(max_retries=0, min_interval=0, backoff_base=0, jitter_max=0)
    assert await asyncio.wait_for(caller.execute(op, policy=quick), timeout=1) == "ok"
    assert op.calls == 2


def test_classify_status_429():
    failure = classify_error(rate_limited(retry_after=2.0))
    assert isinstance(failure, RateLimited)
    assert failure.retry_after == 2.0


def test_classify_message_containing_429():
    failure = classify_error(RuntimeError("Request failed with status code 429"))
    assert isinstance(failure, RateLimited)
    assert failure.retry_after is None


def test_classify_httpx_status_error():
    request = httpx.Request("POST", "https://upstream.example/generate")
    response = httpx.Response(429, request=request)
    failure = classify_error(httpx.HTTPStatusError("Too many", request=request, response=response))
    assert isinstance(failure, RateLimited)


def test_classify_other_failure_keeps_status_and_message():
    failure = classify_error(UpstreamError(403, "API key not valid"))
    assert isinstance(failure, UpstreamFailure)
    assert failure.status == 403
    assert failure.message == "API key not valid"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_retries": -1},
        {"min_interval": -0.1},
        {"backoff_base": -1},
        {"jitter_max": -1},
    ],
)
def test_policy_rejects_negative_values(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


def test_policy_from_settings_converts_milliseconds():
    class Cfg:
        retry_max_retries = 2
        retry_min_interval_ms = 4000
        retry_backoff_base_ms = 1000
        retry_jitter_max_ms = 250

    policy = RetryPolicy.from_settings(Cfg())
    assert policy == RetryPolicy(max_retries=2, min_interval=4.0, backoff_base=1.0, jitter_max=0.25)
