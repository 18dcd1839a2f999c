"""Tests for retry_result, bounded calls and Backoff."""

import asyncio
from datetime import timedelta

import pytest
from _support import err, ok, run
from kungfu import Error, LazyCoroResult, Ok

from cartflow.checkout import retry_result
from cartflow.config import Backoff
from cartflow.lift import bounded

QUICK = Backoff(attempts=3, initial=0.0, maximum=0.0, jitter=False)


def scripted(outcomes: list):
    """Thunk returning the queued outcomes in order; records call count."""
    calls = []

    def thunk():
        async def attempt():
            calls.append(len(calls) + 1)
            return outcomes.pop(0)
        return LazyCoroResult(attempt)

    return thunk, calls


class TestRetryResult:
    def test_first_success_is_a_single_call(self):
        thunk, calls = scripted([Ok("done")])
        result = run(retry_result(thunk, QUICK, retry_on=lambda e: True))
        assert ok(result) == "done"
        assert calls == [1]

    def test_retries_until_success(self):
        thunk, calls = scripted([Error("busy"), Error("busy"), Ok(42)])
        backoff = Backoff(attempts=5, initial=0.001, factor=2.0, jitter=False)
        result = run(retry_result(thunk, backoff, retry_on=lambda e: e == "busy"))
        assert ok(result) == 42
        assert calls == [1, 2, 3]

    def test_non_retryable_error_stops_immediately(self):
        thunk, calls = scripted([Error("declined"), Ok(1)])
        result = run(retry_result(thunk, QUICK, retry_on=lambda e: e == "busy"))
        assert err(result) == "declined"
        assert calls == [1]

    def test_budget_exhausted_returns_last_error(self):
        thunk, calls = scripted([Error("busy-1"), Error("busy-2"), Error("busy-3"), Ok(1)])
        result = run(retry_result(thunk, QUICK, retry_on=lambda e: True))
        assert err(result) == "busy-3"
        assert calls == [1, 2, 3]

    def test_single_attempt_budget(self):
        thunk, calls = scripted([Error("busy"), Ok(1)])
        result = run(retry_result(thunk, Backoff.none(), retry_on=lambda e: True))
        assert err(result) == "busy"
        assert calls == [1]


class TestBounded:
    def test_result_within_deadline(self):
        async def quick():
            return "ok"

        result = run(bounded(quick, timedelta(seconds=1), on_error=repr))
        assert ok(result) == "ok"

    def test_overrun_reaches_on_error_as_timeout(self):
        async def stuck():
            await asyncio.sleep(5)

        result = run(bounded(stuck, timedelta(milliseconds=20), on_error=type))
        assert err(result) is TimeoutError

    def test_exception_reaches_on_error(self):
        async def broken():
            raise ConnectionError("reset")

        result = run(bounded(broken, timedelta(seconds=1), on_error=lambda e: str(e)))
        assert err(result) == "reset"


class TestBackoff:
    def test_none_is_single_attempt(self):
        assert Backoff.none().attempts == 1

    @pytest.mark.parametrize(
        "kwargs",
        [{"attempts": 0}, {"initial": -1.0}, {"factor": 0.5}],
    )
    def test_rejects_nonsense(self, kwargs):
        with pytest.raises(ValueError):
            Backoff(**kwargs)
