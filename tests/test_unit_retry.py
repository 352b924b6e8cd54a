import asyncio
import threading

import pytest

from payment_check.exceptions import NotFoundError, PermanentError, RetryExhaustedError, TransientError
from payment_check.services.retry import call_with_retry
from payment_check.services.run_config import RetryPolicy


class Recorder:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self, *args):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _policy(**kwargs) -> RetryPolicy:
    defaults = dict(max_attempts=3, initial_backoff_seconds=1.0, backoff_multiplier=2.0, max_backoff_seconds=3.0)
    defaults.update(kwargs)
    return RetryPolicy(**defaults)


def _run(coro):
    return asyncio.run(coro)


def test_transient_failures_are_retried_with_capped_backoff():
    sleeps: list[float] = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    func = Recorder([TransientError("a"), TransientError("b"), "stripe"])
    result = _run(call_with_retry("lookup", func, "p1", policy=_policy(), sleep=fake_sleep))
    assert result == "stripe"
    assert func.calls == 3
    assert sleeps == [1.0, 2.0]


def test_exhaustion_raises_retry_exhausted_with_last_error():
    async def fake_sleep(seconds):
        return None

    func = Recorder([TransientError("first"), TransientError("second")])
    with pytest.raises(RetryExhaustedError) as info:
        _run(call_with_retry("notify", func, policy=_policy(max_attempts=2), sleep=fake_sleep))
    assert info.value.attempts == 2
    assert str(info.value.last_error) == "second"
    assert isinstance(info.value, TransientError)


@pytest.mark.parametrize("error", [PermanentError("no"), NotFoundError("p9")])
def test_permanent_errors_are_not_retried(error):
    func = Recorder([error, "unused"])
    with pytest.raises(PermanentError):
        _run(call_with_retry("trigger", func, policy=_policy()))
    assert func.calls == 1


def test_attempt_timeout_counts_as_transient():
    attempts = 0

    async def slow():
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            await asyncio.sleep(1.0)
        return "ok"

    async def fake_sleep(seconds):
        return None

    policy = _policy(attempt_timeout_seconds=0.05)
    assert _run(call_with_retry("lookup", slow, policy=policy, sleep=fake_sleep)) == "ok"
    assert attempts == 2


def test_unexpected_errors_propagate():
    func = Recorder([KeyError("boom")])
    with pytest.raises(KeyError):
        _run(call_with_retry("lookup", func, policy=_policy()))


def test_cancelled_run_stops_retrying_before_backoff():
    cancel = threading.Event()
    sleeps: list[float] = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    class CancelOnCall(Recorder):
        async def __call__(self, *args):
            cancel.set()
            return await super().__call__(*args)

    func = CancelOnCall([TransientError("busy")] * 5)
    with pytest.raises(RetryExhaustedError) as exc_info:
        _run(call_with_retry("notify", func, policy=_policy(max_attempts=5), sleep=fake_sleep, cancel_event=cancel))
    assert func.calls == 1
    assert sleeps == []
    assert exc_info.value.attempts == 1


def test_cancel_during_backoff_skips_the_next_attempt():
    cancel = threading.Event()

    async def cancelling_sleep(seconds):
        cancel.set()

    func = Recorder([TransientError("busy")] * 5)
    with pytest.raises(RetryExhaustedError):
        _run(call_with_retry("trigger", func, policy=_policy(max_attempts=5), sleep=cancelling_sleep, cancel_event=cancel))
    assert func.calls == 1
