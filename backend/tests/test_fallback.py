"""Tests for the retry-then-fall-back combinator."""

import asyncio

import pytest

from vidscribe.services.fallback import FallbackExhaustedError, OperationAborted, with_fallback


class Flaky(Exception):
    def __init__(self, message: str, retryable: bool):
        super().__init__(message)
        self.retryable = retryable


def _is_retryable(exc: BaseException) -> bool:
    return getattr(exc, "retryable", False)


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.mark.asyncio
async def test_first_candidate_success_short_circuits():
    calls = []

    async def operation(candidate, attempt):
        calls.append((candidate, attempt))
        return f"{candidate}-ok"

    result = await with_fallback(["a", "b"], operation, is_retryable=_is_retryable)

    assert result == "a-ok"
    assert calls == [("a", 0)]


@pytest.mark.asyncio
async def test_retryable_errors_exhaust_attempts_then_fall_back():
    calls = []
    sleep = RecordingSleep()

    async def operation(candidate, attempt):
        calls.append((candidate, attempt))
        if candidate == "primary":
            raise Flaky("503 overloaded", retryable=True)
        return "secondary-ok"

    result = await with_fallback(
        ["primary", "secondary"],
        operation,
        is_retryable=_is_retryable,
        max_attempts=3,
        base_delay=1.0,
        sleep=sleep,
    )

    assert result == "secondary-ok"
    assert calls == [("primary", 0), ("primary", 1), ("primary", 2), ("secondary", 0)]
    # No sleep after the final attempt of a candidate.
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_non_retryable_error_skips_remaining_attempts():
    calls = []

    async def operation(candidate, attempt):
        calls.append((candidate, attempt))
        if candidate == "first":
            raise Flaky("bad request", retryable=False)
        return "ok"

    result = await with_fallback(
        ["first", "second"], operation, is_retryable=_is_retryable, sleep=RecordingSleep()
    )

    assert result == "ok"
    assert calls == [("first", 0), ("second", 0)]


@pytest.mark.asyncio
async def test_three_model_cascade_makes_nine_attempts_then_raises_last_error():
    attempts = []

    async def operation(candidate, attempt):
        attempts.append(candidate)
        raise Flaky(f"{candidate} unavailable", retryable=True)

    with pytest.raises(Flaky, match="m3 unavailable"):
        await with_fallback(
            ["m1", "m2", "m3"],
            operation,
            is_retryable=_is_retryable,
            max_attempts=3,
            base_delay=0,
            sleep=RecordingSleep(),
        )

    assert len(attempts) == 9


@pytest.mark.asyncio
async def test_empty_candidate_list_raises():
    async def operation(candidate, attempt):
        return candidate

    with pytest.raises(FallbackExhaustedError):
        await with_fallback([], operation, is_retryable=_is_retryable)


@pytest.mark.asyncio
async def test_cancellation_is_not_swallowed():
    async def operation(candidate, attempt):
        raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await with_fallback(["a", "b"], operation, is_retryable=lambda exc: True)


@pytest.mark.asyncio
async def test_checkpoint_runs_before_each_attempt_and_can_abort():
    calls = []
    checks = []

    async def operation(candidate, attempt):
        calls.append((candidate, attempt))
        raise Flaky("overloaded", retryable=True)

    async def checkpoint():
        checks.append(len(calls))
        if len(calls) == 2:
            raise OperationAborted("stop")

    with pytest.raises(OperationAborted):
        await with_fallback(
            ["a", "b"],
            operation,
            is_retryable=_is_retryable,
            max_attempts=3,
            base_delay=0,
            checkpoint=checkpoint,
        )

    assert calls == [("a", 0), ("a", 1)]
    assert checks == [0, 1, 2]


@pytest.mark.asyncio
async def test_abort_raised_by_operation_skips_remaining_candidates():
    calls = []

    async def operation(candidate, attempt):
        calls.append(candidate)
        raise OperationAborted("cancelled")

    with pytest.raises(OperationAborted):
        await with_fallback(["a", "b", "c"], operation, is_retryable=lambda exc: True)

    assert calls == ["a"]
