"""Bounded retry with backoff around a single logical model call."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from agent_runs.pipeline.backend.base import ModelCallError, ModelCallResponse
from agent_runs.pipeline.failure_classifier import (
    CallFailureClassification,
    classify_call_failure,
)

logger = logging.getLogger(__name__)

CallFn = Callable[[int, float], ModelCallResponse]


class TerminalReason(str, Enum):
    """Why the retry loop gave up without output."""

    RETRY_EXHAUSTED = "retry_exhausted"
    NON_RETRYABLE = "non_retryable"
    TIMEOUT = "timeout"
    CANCELED = "canceled"


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """Capped exponential delay; non-decreasing in the retry number."""

    base_seconds: float = 1.0
    max_seconds: float = 30.0
    multiplier: float = 2.0

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1 = first retry)."""

        exponent = max(retry_number - 1, 0)
        return min(self.max_seconds, self.base_seconds * (self.multiplier**exponent))


@dataclass(slots=True)
class CallResult:
    """Model call that produced a response."""

    raw_output: str | None
    tokens_used: int | None
    attempts: int


@dataclass(slots=True)
class TerminalFailure:
    """Model call that ended without a response."""

    reason: TerminalReason
    error: str
    attempts: int
    tokens_used: int | None = None
    classification: CallFailureClassification | None = None

    @property
    def is_timeout(self) -> bool:
        return self.reason in {TerminalReason.TIMEOUT, TerminalReason.CANCELED}


class RetryController:
    """Drive attempts, classify failures and sleep between transient retries."""

    def __init__(
        self,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        poll_seconds: float = 0.1,
    ) -> None:
        self._sleep = sleep
        self._clock = clock
        self._poll_seconds = poll_seconds

    def deadline_after(self, seconds: float) -> float:
        """Absolute deadline on this controller's clock."""

        return self._clock() + seconds

    def invoke(  # noqa: PLR0913
        self,
        call_fn: CallFn,
        max_retries: int,
        backoff_policy: BackoffPolicy,
        *,
        agent_type: str = "unknown",
        model: str = "unknown",
        timeout_seconds: float = 120.0,
        deadline: float | None = None,
        on_attempt: Callable[[int], None] | None = None,
        cancel_requested: Callable[[], bool] | None = None,
    ) -> CallResult | TerminalFailure:
        """Run ``call_fn`` up to ``max_retries`` total attempts.

        ``call_fn`` receives the attempt number and the per-attempt timeout.
        ``deadline`` is an absolute value of the controller clock after which
        no further attempt is started.
        """

        if max_retries < 1:
            raise ValueError("max_retries must be >= 1.")

        is_canceled = cancel_requested or (lambda: False)
        tokens_total: int | None = None
        last_error = ""
        last_classification: CallFailureClassification | None = None

        for attempt in range(1, max_retries + 1):
            if is_canceled():
                return TerminalFailure(
                    reason=TerminalReason.CANCELED,
                    error="Invocation canceled before model call.",
                    attempts=max(attempt - 1, 1),
                    tokens_used=tokens_total,
                    classification=last_classification,
                )

            attempt_timeout = timeout_seconds
            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    return TerminalFailure(
                        reason=TerminalReason.TIMEOUT,
                        error=last_error or "Invocation deadline exceeded before model call.",
                        attempts=max(attempt - 1, 1),
                        tokens_used=tokens_total,
                        classification=last_classification,
                    )
                attempt_timeout = min(attempt_timeout, remaining)

            if on_attempt is not None:
                on_attempt(attempt)

            response = _safe_call(call_fn, attempt=attempt, timeout_seconds=attempt_timeout)
            if response.tokens_used is not None:
                tokens_total = (tokens_total or 0) + response.tokens_used

            if response.error is None:
                return CallResult(
                    raw_output=response.raw_output,
                    tokens_used=tokens_total,
                    attempts=attempt,
                )

            last_error = response.error.message
            if is_canceled():
                return TerminalFailure(
                    reason=TerminalReason.CANCELED,
                    error=last_error,
                    attempts=attempt,
                    tokens_used=tokens_total,
                )

            last_classification = classify_call_failure(
                agent_type=agent_type,
                error=response.error,
            )
            logger.warning(
                "Model call attempt %d/%d failed (%s): %s",
                attempt,
                max_retries,
                last_classification.failure_class.value,
                last_error,
                extra={
                    "call_failure": last_classification.to_log_details(
                        agent_type=agent_type,
                        model=model,
                    ),
                },
            )
            if not last_classification.is_transient:
                return TerminalFailure(
                    reason=TerminalReason.NON_RETRYABLE,
                    error=last_error,
                    attempts=attempt,
                    tokens_used=tokens_total,
                    classification=last_classification,
                )
            if attempt == max_retries:
                break

            delay = backoff_policy.delay_for(attempt)
            if deadline is not None and self._clock() + delay >= deadline:
                return TerminalFailure(
                    reason=TerminalReason.TIMEOUT,
                    error=last_error,
                    attempts=attempt,
                    tokens_used=tokens_total,
                    classification=last_classification,
                )
            if not self._sleep_with_stop(delay, is_canceled):
                return TerminalFailure(
                    reason=TerminalReason.CANCELED,
                    error=last_error,
                    attempts=attempt,
                    tokens_used=tokens_total,
                    classification=last_classification,
                )

        return TerminalFailure(
            reason=TerminalReason.RETRY_EXHAUSTED,
            error=last_error,
            attempts=max_retries,
            tokens_used=tokens_total,
            classification=last_classification,
        )

    def _sleep_with_stop(self, seconds: float, is_canceled: Callable[[], bool]) -> bool:
        deadline = self._clock() + seconds
        while self._clock() < deadline:
            if is_canceled():
                return False
            self._sleep(min(self._poll_seconds, max(0.0, deadline - self._clock())))
        return not is_canceled()


def _safe_call(call_fn: CallFn, *, attempt: int, timeout_seconds: float) -> ModelCallResponse:
    try:
        return call_fn(attempt, timeout_seconds)
    except TimeoutError as error:
        return ModelCallResponse(
            raw_output=None,
            error=ModelCallError(message=str(error) or "timed out", timed_out=True),
        )
    except ConnectionError as error:
        return ModelCallResponse(
            raw_output=None,
            error=ModelCallError(message=f"network error: {error}"),
        )
