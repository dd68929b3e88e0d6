"""Pure mapping from gate, breaker, call and validation results to one outcome.

Rule order is the contract; the first applicable rule wins:

1. gate rejected            -> gate outcome             COMPLETED
2. circuit open             -> CIRCUIT_OPEN             FAILED
3. call timed out/canceled  -> TIMEOUT                  FAILED
4. call gave up otherwise   -> RETRY_EXHAUSTED          FAILED
5. empty output             -> EMPTY_OUTPUT             COMPLETED
6. unparseable output       -> PARSE_FAILED             FAILED
7. invalid output           -> VALIDATION_REJECTED      COMPLETED
8. confidence below minimum -> LOW_CONFIDENCE           COMPLETED
9. zero items               -> SUCCESS_NO_CHANGE        COMPLETED
10. items produced          -> SUCCESS_APPLIED          COMPLETED
"""

from __future__ import annotations

from dataclasses import dataclass

from agent_runs.pipeline.circuit_breaker import BreakerDecision
from agent_runs.pipeline.gate import GateReject, GateResult
from agent_runs.pipeline.models import (
    AgentRunOutcome,
    AgentRunStatus,
    NoChangeCode,
    RunOutcome,
)
from agent_runs.pipeline.retry import CallResult, TerminalFailure, TerminalReason
from agent_runs.pipeline.validator import ValidationResult

# Most specific first.
_NO_CHANGE_PREFERENCE: tuple[NoChangeCode, ...] = (
    NoChangeCode.ALREADY_EXTRACTED,
    NoChangeCode.DUPLICATE_POINTERS,
    NoChangeCode.NO_RELEVANT_CHANGES,
)
_EMPTY_LITERALS = frozenset({"", "null"})

_FAILED_OUTCOMES = frozenset(
    {
        AgentRunOutcome.CIRCUIT_OPEN,
        AgentRunOutcome.TIMEOUT,
        AgentRunOutcome.RETRY_EXHAUSTED,
        AgentRunOutcome.PARSE_FAILED,
    },
)


@dataclass(frozen=True, slots=True)
class Classification:
    """Final outcome and lifecycle status for one run."""

    outcome: RunOutcome
    status: AgentRunStatus


def status_for(outcome: AgentRunOutcome) -> AgentRunStatus:
    """Terminal status implied by an outcome."""

    if outcome in _FAILED_OUTCOMES:
        return AgentRunStatus.FAILED
    return AgentRunStatus.COMPLETED


def is_empty_output(raw_output: str | None) -> bool:
    """True for missing, blank or literal-null output."""

    if raw_output is None:
        return True
    return raw_output.strip().lower() in _EMPTY_LITERALS


def classify(  # noqa: PLR0911
    gate_result: GateResult,
    circuit_result: BreakerDecision | None,
    call_result: CallResult | TerminalFailure | None,
    validation_result: ValidationResult | None,
    *,
    min_confidence: float,
) -> Classification:
    """Apply the ordered decision rules."""

    if isinstance(gate_result, GateReject):
        return _done(gate_result.outcome)

    if circuit_result is not None and not circuit_result.allowed:
        detail = f"breaker {circuit_result.state.value} for {'/'.join(circuit_result.key)}"
        return _done(RunOutcome(outcome=AgentRunOutcome.CIRCUIT_OPEN, detail=detail))

    if call_result is None:
        raise ValueError("call_result is required once gate and breaker allow the call.")

    if isinstance(call_result, TerminalFailure):
        if call_result.is_timeout:
            return _done(
                RunOutcome(outcome=AgentRunOutcome.TIMEOUT, detail=call_result.reason.value),
            )
        detail = call_result.reason.value
        if call_result.reason == TerminalReason.NON_RETRYABLE and call_result.classification:
            detail = f"{detail}:{call_result.classification.reason_code}"
        return _done(RunOutcome(outcome=AgentRunOutcome.RETRY_EXHAUSTED, detail=detail))

    if is_empty_output(call_result.raw_output):
        return _done(RunOutcome(outcome=AgentRunOutcome.EMPTY_OUTPUT))

    if validation_result is None:
        raise ValueError("validation_result is required for non-empty output.")

    return classify_validated(validation_result, min_confidence=min_confidence)


def classify_validated(
    validation_result: ValidationResult,
    *,
    min_confidence: float,
) -> Classification:
    """Rules 6-10, shared with cache-hit revalidation."""

    if not validation_result.parse_ok:
        return _done(
            RunOutcome(
                outcome=AgentRunOutcome.PARSE_FAILED,
                detail=validation_result.error_summary,
            ),
        )

    if not validation_result.is_valid:
        return _done(
            RunOutcome(
                outcome=AgentRunOutcome.VALIDATION_REJECTED,
                no_change_code=NoChangeCode.VALIDATION_BLOCKED,
                detail=validation_result.error_summary,
            ),
        )

    confidence = validation_result.confidence
    if confidence is not None and confidence < min_confidence:
        return _done(
            RunOutcome(
                outcome=AgentRunOutcome.LOW_CONFIDENCE,
                no_change_code=NoChangeCode.BELOW_MIN_CONFIDENCE,
                detail=f"confidence={confidence:.3f} below minimum {min_confidence:.3f}",
            ),
        )

    if validation_result.items_produced == 0:
        return _done(
            RunOutcome(
                outcome=AgentRunOutcome.SUCCESS_NO_CHANGE,
                no_change_code=most_specific_no_change(validation_result.reason_codes),
            ),
        )

    return _done(RunOutcome(outcome=AgentRunOutcome.SUCCESS_APPLIED))


def most_specific_no_change(reason_codes: tuple[str, ...]) -> NoChangeCode:
    """Pick the most specific applicable no-change code."""

    present = {code.strip().upper() for code in reason_codes}
    for candidate in _NO_CHANGE_PREFERENCE:
        if candidate.value in present:
            return candidate
    return NoChangeCode.NO_RELEVANT_CHANGES


def _done(outcome: RunOutcome) -> Classification:
    return Classification(outcome=outcome, status=status_for(outcome.outcome))
