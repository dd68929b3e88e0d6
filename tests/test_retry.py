from __future__ import annotations

import allure
import pytest

from agent_runs.pipeline.backend.base import ModelCallResponse
from agent_runs.pipeline.models import FailureClass
from agent_runs.pipeline.retry import (
    BackoffPolicy,
    CallResult,
    RetryController,
    TerminalFailure,
    TerminalReason,
)
from conftest import FakeClock, error_response

pytestmark = [
    allure.epic("Agent Runs"),
    allure.feature("Retry Controller"),
]


class _Script:
    def __init__(self, responses: list[object]) -> None:
        self.responses = list(responses)
        self.calls: list[tuple[int, float]] = []

    def __call__(self, attempt: int, timeout_seconds: float) -> ModelCallResponse:
        self.calls.append((attempt, timeout_seconds))
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, BaseException):
            raise item
        return item


def _controller(clock: FakeClock) -> RetryController:
    return RetryController(sleep=clock.sleep, clock=clock)


def test_backoff_is_capped_exponential_and_monotonic() -> None:
    policy = BackoffPolicy(base_seconds=1.0, max_seconds=5.0)
    delays = [policy.delay_for(n) for n in range(1, 7)]
    assert delays == [1.0, 2.0, 4.0, 5.0, 5.0, 5.0]
    assert delays == sorted(delays)


def test_success_on_first_attempt() -> None:
    clock = FakeClock()
    script = _Script([ModelCallResponse(raw_output="{}", tokens_used=7)])

    result = _controller(clock).invoke(script, 3, BackoffPolicy(), timeout_seconds=30)

    assert isinstance(result, CallResult)
    assert result.attempts == 1
    assert result.tokens_used == 7
    assert script.calls == [(1, 30)]
    assert clock.sleeps == []


def test_three_transient_failures_exhaust_with_three_attempts() -> None:
    clock = FakeClock()
    script = _Script([error_response("service unavailable", status_code=503, tokens=2)])
    attempts_seen: list[int] = []

    result = _controller(clock).invoke(
        script,
        3,
        BackoffPolicy(base_seconds=1.0, max_seconds=30.0),
        on_attempt=attempts_seen.append,
    )

    assert isinstance(result, TerminalFailure)
    assert result.reason == TerminalReason.RETRY_EXHAUSTED
    assert result.attempts == 3
    assert result.tokens_used == 6
    assert attempts_seen == [1, 2, 3]
    assert [attempt for attempt, _ in script.calls] == [1, 2, 3]
    assert clock.now == pytest.approx(1_000.0 + 1.0 + 2.0)


def test_transient_then_success_sums_tokens() -> None:
    clock = FakeClock()
    script = _Script(
        [
            error_response("HTTP 429 too many requests", status_code=429, tokens=3),
            ModelCallResponse(raw_output='{"items": []}', tokens_used=10),
        ],
    )

    result = _controller(clock).invoke(script, 3, BackoffPolicy())

    assert isinstance(result, CallResult)
    assert result.attempts == 2
    assert result.tokens_used == 13


def test_non_retryable_failure_stops_immediately() -> None:
    clock = FakeClock()
    script = _Script([error_response("Invalid API key: unauthorized", status_code=401)])

    result = _controller(clock).invoke(script, 5, BackoffPolicy(), agent_type="EXTRACTOR")

    assert isinstance(result, TerminalFailure)
    assert result.reason == TerminalReason.NON_RETRYABLE
    assert result.attempts == 1
    assert result.classification is not None
    assert result.classification.failure_class == FailureClass.ACCESS_OR_AUTH
    assert len(script.calls) == 1


def test_raised_timeout_and_connection_errors_are_transient() -> None:
    clock = FakeClock()
    script = _Script(
        [
            TimeoutError("read timed out"),
            ConnectionError("connection reset by peer"),
            ModelCallResponse(raw_output="{}", tokens_used=1),
        ],
    )

    result = _controller(clock).invoke(script, 3, BackoffPolicy())

    assert isinstance(result, CallResult)
    assert result.attempts == 3


def test_unexpected_exceptions_propagate() -> None:
    clock = FakeClock()
    script = _Script([KeyError("bug")])

    with pytest.raises(KeyError):
        _controller(clock).invoke(script, 3, BackoffPolicy())


def test_cancellation_during_backoff_ends_with_canceled() -> None:
    clock = FakeClock()
    script = _Script([error_response("overloaded", status_code=503)])

    def canceled() -> bool:
        return clock.now > 1_000.5

    result = _controller(clock).invoke(
        script,
        3,
        BackoffPolicy(base_seconds=2.0),
        cancel_requested=canceled,
    )

    assert isinstance(result, TerminalFailure)
    assert result.reason == TerminalReason.CANCELED
    assert result.is_timeout
    assert len(script.calls) == 1
    assert clock.now < 1_002.0


def test_cancel_before_first_attempt_never_calls_model() -> None:
    clock = FakeClock()
    script = _Script([ModelCallResponse(raw_output="{}")])

    result = _controller(clock).invoke(script, 3, BackoffPolicy(), cancel_requested=lambda: True)

    assert isinstance(result, TerminalFailure)
    assert result.reason == TerminalReason.CANCELED
    assert script.calls == []


def test_deadline_caps_attempt_timeout_and_stops_retries() -> None:
    clock = FakeClock()
    controller = _controller(clock)
    script = _Script([error_response("service unavailable", status_code=503)])

    result = controller.invoke(
        script,
        5,
        BackoffPolicy(base_seconds=10.0),
        timeout_seconds=60.0,
        deadline=controller.deadline_after(5.0),
    )

    assert isinstance(result, TerminalFailure)
    assert result.reason == TerminalReason.TIMEOUT
    assert script.calls == [(1, 5.0)]


def test_max_retries_must_be_positive() -> None:
    with pytest.raises(ValueError, match="max_retries"):
        _controller(FakeClock()).invoke(_Script([]), 0, BackoffPolicy())
