"""One agent invocation end to end: record, gate, guard, call, validate, classify."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from agent_runs.config import Settings
from agent_runs.pipeline.backend.base import ModelCallRequest, ModelCallResponse, ModelClient
from agent_runs.pipeline.cache import CacheLookup, ResultCache
from agent_runs.pipeline.circuit_breaker import BreakerDecision, CircuitBreaker
from agent_runs.pipeline.classifier import (
    Classification,
    classify,
    classify_validated,
    is_empty_output,
)
from agent_runs.pipeline.gate import GatePass, PreCallGate, measure_input
from agent_runs.pipeline.models import (
    AgentRunOutcome,
    AgentRunStatus,
    AgentType,
    CorrelationContext,
    NoChangeCode,
    RunMetrics,
    RunOutcome,
)
from agent_runs.pipeline.prompts import PromptProvenance, PromptRegistry, default_prompt_registry
from agent_runs.pipeline.recorder import AgentRunRecorder, RunHandle
from agent_runs.pipeline.repository import CacheKey
from agent_runs.pipeline.retry import (
    BackoffPolicy,
    CallResult,
    RetryController,
    TerminalFailure,
    TerminalReason,
)
from agent_runs.pipeline.validator import JsonItemsValidator, OutputValidator, ValidationResult

logger = logging.getLogger(__name__)

StopRequested = Callable[[], bool]


@dataclass(slots=True)
class AgentRunResult:
    """What the caller gets back from one invocation."""

    run_pk: str
    agent_type: AgentType
    status: AgentRunStatus
    outcome: RunOutcome
    metrics: RunMetrics
    validation: ValidationResult | None = None
    error: str | None = None
    persisted: bool = True
    items: list[Any] = field(default_factory=list)


def build_circuit_breaker(settings: Settings, **kwargs: Any) -> CircuitBreaker:
    """Process-wide breaker whose per-agent thresholds come from settings."""

    return CircuitBreaker(
        config_for=lambda agent_type: settings.policy_for(AgentType(agent_type)).breaker,
        **kwargs,
    )


class AgentRunner:
    """Execute agent invocations and classify every one of them."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        recorder: AgentRunRecorder,
        model_client: ModelClient,
        breaker: CircuitBreaker,
        prompt_registry: PromptRegistry | None = None,
        validators: Mapping[AgentType, OutputValidator] | None = None,
        default_validator: OutputValidator | None = None,
        gate: PreCallGate | None = None,
        retry_controller: RetryController | None = None,
        result_cache: ResultCache | None = None,
        agent_types: Iterable[AgentType] = tuple(AgentType),
    ) -> None:
        settings.validate()
        self.settings = settings
        self.recorder = recorder
        self.model_client = model_client
        self.breaker = breaker
        self.prompt_registry = prompt_registry or default_prompt_registry()
        self.prompt_registry.require(agent_types)
        self.validators = dict(validators or {})
        self.default_validator = default_validator or JsonItemsValidator()
        self.gate = gate or PreCallGate(
            min_input_bytes={
                agent_type: settings.policy_for(agent_type).min_input_bytes
                for agent_type in AgentType
            },
            default_min_input_bytes=settings.pipeline.min_input_bytes,
        )
        self.retry_controller = retry_controller or RetryController()
        self.result_cache = result_cache

    def run(  # noqa: C901, PLR0912, PLR0915
        self,
        correlation: CorrelationContext,
        agent_type: AgentType,
        payload: Any,
        *,
        stop_requested: StopRequested | None = None,
        deadline_seconds: float | None = None,
    ) -> AgentRunResult:
        """Run one invocation; expected failures come back as outcomes, not exceptions.

        Unexpected exceptions propagate and leave the run RUNNING.
        """

        is_stopped = stop_requested or (lambda: False)
        policy = self.settings.policy_for(agent_type)
        handle = self.recorder.open(correlation, agent_type, payload)

        size = measure_input(payload)
        metrics = RunMetrics(input_chars=size.chars, input_bytes=size.bytes)
        lookup: CacheLookup | None = None
        decision: BreakerDecision | None = None
        breaker_settled = False
        call_result: CallResult | TerminalFailure | None = None
        validation: ValidationResult | None = None

        try:
            provenance = self.prompt_registry.build(agent_type, payload)
            metrics.prompt_template_id = provenance.template_id
            metrics.prompt_template_version = provenance.version
            metrics.prompt_hash = provenance.prompt_hash

            if self.result_cache is not None:
                lookup = self.result_cache.claim_or_find(
                    CacheKey(
                        agent_type=agent_type.value,
                        model=self.model_client.model_id,
                        prompt_hash=provenance.prompt_hash,
                        input_content_hash=handle.input_content_hash,
                    ),
                    owner_run_id=handle.id,
                    cancel_requested=is_stopped,
                )
                if lookup.hit:
                    return self._finish_from_cache(handle, lookup, metrics, policy.min_confidence)

            gate_result = self.gate.evaluate(agent_type, payload)
            if isinstance(gate_result, GatePass):
                decision = self.breaker.acquire(agent_type.value, correlation.queue_name)
                if decision.allowed:
                    call_result = self._call_model(
                        handle,
                        provenance,
                        policy_timeout=policy.call_timeout_seconds,
                        max_retries=policy.max_retries,
                        backoff=BackoffPolicy(
                            base_seconds=policy.retry_base_seconds,
                            max_seconds=policy.retry_max_seconds,
                        ),
                        is_stopped=is_stopped,
                        deadline_seconds=(
                            deadline_seconds
                            if deadline_seconds is not None
                            else policy.deadline_seconds
                        ),
                    )
                    if isinstance(call_result, CallResult) and is_stopped():
                        call_result = TerminalFailure(
                            reason=TerminalReason.CANCELED,
                            error="Invocation canceled after model call.",
                            attempts=call_result.attempts,
                            tokens_used=call_result.tokens_used,
                        )
                    self._settle_breaker(decision, call_result)
                    breaker_settled = True

            if call_result is not None:
                metrics.tokens_used = call_result.tokens_used
                metrics.attempt = call_result.attempts
            if isinstance(call_result, CallResult):
                metrics.raw_output = call_result.raw_output
                if not is_empty_output(call_result.raw_output):
                    validation = self._validator_for(agent_type).validate(
                        call_result.raw_output or "",
                    )

            classification = classify(
                gate_result,
                decision,
                call_result,
                validation,
                min_confidence=policy.min_confidence,
            )
        except Exception:
            if decision is not None and decision.allowed and not breaker_settled:
                self.breaker.release(decision)
            if lookup is not None:
                self.result_cache.release(lookup, owner_run_id=handle.id)
            raise

        if validation is not None:
            metrics.confidence = validation.confidence
            metrics.output = validation.parsed
            if classification.outcome.outcome == AgentRunOutcome.SUCCESS_APPLIED:
                metrics.items_produced = validation.items_produced

        if lookup is not None:
            self.result_cache.complete(
                lookup,
                owner_run_id=handle.id,
                outcome=classification.outcome.outcome,
                output=metrics.output,
                raw_output=metrics.raw_output,
                confidence=metrics.confidence,
                tokens_used=metrics.tokens_used,
            )

        return self._finish(
            handle,
            classification,
            metrics,
            validation=validation,
            error=_error_text(call_result, validation, classification),
        )

    def _call_model(  # noqa: PLR0913
        self,
        handle: RunHandle,
        provenance: PromptProvenance,
        *,
        policy_timeout: float,
        max_retries: int,
        backoff: BackoffPolicy,
        is_stopped: StopRequested,
        deadline_seconds: float | None,
    ) -> CallResult | TerminalFailure:
        def call_fn(attempt: int, timeout_seconds: float) -> ModelCallResponse:
            return self.model_client.call(
                ModelCallRequest(
                    prompt_text=provenance.prompt_text,
                    timeout_seconds=timeout_seconds,
                    attempt=attempt,
                    cancel_requested=is_stopped,
                ),
            )

        deadline = (
            self.retry_controller.deadline_after(deadline_seconds)
            if deadline_seconds is not None
            else None
        )
        return self.retry_controller.invoke(
            call_fn,
            max_retries,
            backoff,
            agent_type=handle.agent_type.value,
            model=self.model_client.model_id,
            timeout_seconds=policy_timeout,
            deadline=deadline,
            on_attempt=lambda attempt: self.recorder.mark_attempt(handle, attempt),
            cancel_requested=is_stopped,
        )

    def _settle_breaker(
        self,
        decision: BreakerDecision,
        call_result: CallResult | TerminalFailure,
    ) -> None:
        if isinstance(call_result, CallResult):
            self.breaker.record_success(decision)
        elif call_result.reason == TerminalReason.CANCELED:
            self.breaker.release(decision)
        else:
            self.breaker.record_failure(decision, error=call_result.error)

    def _finish_from_cache(
        self,
        handle: RunHandle,
        lookup: CacheLookup,
        metrics: RunMetrics,
        min_confidence: float,
    ) -> AgentRunResult:
        entry = lookup.entry
        if entry is None:
            raise ValueError("Cache hit without an entry.")

        metrics.cache_hit = True
        metrics.tokens_used = 0
        metrics.items_produced = 0
        metrics.raw_output = entry.raw_output
        metrics.output = entry.output
        metrics.confidence = entry.confidence

        validation = self._validator_for(handle.agent_type).validate(entry.raw_output or "")
        revalidated = classify_validated(validation, min_confidence=min_confidence)
        if revalidated.outcome.outcome in {
            AgentRunOutcome.SUCCESS_APPLIED,
            AgentRunOutcome.SUCCESS_NO_CHANGE,
        }:
            outcome = RunOutcome(
                outcome=AgentRunOutcome.DUPLICATE_CACHED,
                detail=f"cache_entry={entry.id} hits={entry.hit_count + 1}",
            )
        else:
            outcome = RunOutcome(
                outcome=AgentRunOutcome.VALIDATION_REJECTED,
                no_change_code=NoChangeCode.VALIDATION_BLOCKED,
                detail=(
                    f"cached result failed revalidation: "
                    f"{revalidated.outcome.outcome.value}"
                    + (f" ({revalidated.outcome.detail})" if revalidated.outcome.detail else "")
                ),
            )
        return self._finish(
            handle,
            Classification(outcome=outcome, status=AgentRunStatus.COMPLETED),
            metrics,
            validation=validation,
        )

    def _finish(
        self,
        handle: RunHandle,
        classification: Classification,
        metrics: RunMetrics,
        *,
        validation: ValidationResult | None = None,
        error: str | None = None,
    ) -> AgentRunResult:
        persisted = self.recorder.finalize(
            handle,
            outcome=classification.outcome,
            status=classification.status,
            metrics=metrics,
            error=error,
        )
        logger.info(
            "Agent run %s finished: agent=%s outcome=%s status=%s attempts=%d cache_hit=%s",
            handle.id,
            handle.agent_type.value,
            classification.outcome.outcome.value,
            classification.status.value,
            metrics.attempt,
            metrics.cache_hit,
        )
        items = validation.items if validation is not None and validation.is_valid else []
        return AgentRunResult(
            run_pk=handle.id,
            agent_type=handle.agent_type,
            status=classification.status,
            outcome=classification.outcome,
            metrics=metrics,
            validation=validation,
            error=error,
            persisted=persisted,
            items=items,
        )

    def _validator_for(self, agent_type: AgentType) -> OutputValidator:
        return self.validators.get(agent_type, self.default_validator)


def _error_text(
    call_result: CallResult | TerminalFailure | None,
    validation: ValidationResult | None,
    classification: Classification,
) -> str | None:
    if isinstance(call_result, TerminalFailure):
        return call_result.error
    if classification.status == AgentRunStatus.FAILED and validation is not None:
        return validation.error_summary
    return None
