from __future__ import annotations

import json
from collections.abc import Callable

import allure
import pytest

from agent_runs.config import BreakerSettings, PipelineSettings, Settings
from agent_runs.pipeline.backend import EchoModelClient, ModelCallRequest, ModelCallResponse
from agent_runs.pipeline.circuit_breaker import BreakerState
from agent_runs.pipeline.models import (
    AgentRunOutcome,
    AgentRunStatus,
    AgentType,
    CorrelationContext,
    NoChangeCode,
)
from agent_runs.pipeline.prompts import PromptRegistry, PromptRegistryError, PromptTemplate
from agent_runs.pipeline.repository import AgentRunRepository
from agent_runs.pipeline.runner import AgentRunner
from agent_runs.pipeline.validator import JsonItemsValidator
from conftest import LONG_TEXT, FakeClock, ScriptedModelClient, error_response, ok_response

pytestmark = [
    allure.epic("Agent Runs"),
    allure.feature("Invocation Pipeline"),
]

CORRELATION = CorrelationContext(
    run_id="pipeline-7",
    job_id="job-7",
    parent_job_id="job-1",
    source_slug="acme-contracts",
    queue_name="extraction",
)
MakeRunner = Callable[..., AgentRunner]


def _row(repository: AgentRunRepository, run_pk: str):
    run = repository.get_run(run_pk=run_pk)
    assert run is not None
    return run


def test_large_input_with_items_is_success_applied(
    make_runner: MakeRunner,
    repository: AgentRunRepository,
) -> None:
    client = ScriptedModelClient([ok_response(items=3, confidence=0.9, tokens=321)])
    payload = "x" * 2_048

    result = make_runner(client).run(CORRELATION, AgentType.EXTRACTOR, payload)

    assert result.outcome.outcome == AgentRunOutcome.SUCCESS_APPLIED
    assert result.status == AgentRunStatus.COMPLETED
    assert result.persisted
    assert len(result.items) == 3
    run = _row(repository, result.run_pk)
    assert run.status == AgentRunStatus.COMPLETED
    assert run.outcome == AgentRunOutcome.SUCCESS_APPLIED
    assert run.items_produced == 3
    assert run.tokens_used == 321
    assert run.confidence == 0.9
    assert run.input_bytes == 2_048
    assert run.attempt == 1
    assert run.prompt_template_id == "extractor-v1"
    assert run.prompt_hash is not None
    assert run.job_id == "job-7"
    assert run.queue_name == "extraction"
    assert run.completed_at is not None
    assert run.completed_at >= run.started_at


def test_small_input_never_calls_model(
    make_runner: MakeRunner,
    repository: AgentRunRepository,
) -> None:
    client = ScriptedModelClient([ok_response()])

    result = make_runner(client).run(CORRELATION, AgentType.EXTRACTOR, "x" * 50)

    assert client.calls == 0
    assert result.outcome.outcome == AgentRunOutcome.CONTENT_LOW_QUALITY
    assert result.outcome.no_change_code == NoChangeCode.NO_RELEVANT_CHANGES
    assert result.status == AgentRunStatus.COMPLETED
    run = _row(repository, result.run_pk)
    assert run.tokens_used is None
    assert run.input_bytes == 50
    assert run.no_change_code == NoChangeCode.NO_RELEVANT_CHANGES


def test_literal_null_output_is_empty_output(make_runner: MakeRunner) -> None:
    client = ScriptedModelClient([ModelCallResponse(raw_output="null", tokens_used=9)])

    result = make_runner(client).run(CORRELATION, AgentType.EXTRACTOR, LONG_TEXT)

    assert result.outcome.outcome == AgentRunOutcome.EMPTY_OUTPUT
    assert result.status == AgentRunStatus.COMPLETED
    assert result.metrics.tokens_used == 9


def test_non_json_output_is_parse_failed(
    make_runner: MakeRunner,
    repository: AgentRunRepository,
) -> None:
    client = ScriptedModelClient([ModelCallResponse(raw_output="Here you go: items!", tokens_used=5)])

    result = make_runner(client).run(CORRELATION, AgentType.EXTRACTOR, LONG_TEXT)

    assert result.outcome.outcome == AgentRunOutcome.PARSE_FAILED
    assert result.status == AgentRunStatus.FAILED
    run = _row(repository, result.run_pk)
    assert run.raw_output == "Here you go: items!"
    assert run.error is not None
    assert "not valid JSON" in run.error


@pytest.mark.parametrize(
    "raw_output",
    ["9" * 5_000, "[" * 200_000],
    ids=["oversized-int", "deep-nesting"],
)
def test_undecodable_output_is_finalized_as_parse_failed(
    make_runner: MakeRunner,
    repository: AgentRunRepository,
    raw_output: str,
) -> None:
    client = ScriptedModelClient([ModelCallResponse(raw_output=raw_output, tokens_used=7)])

    result = make_runner(client).run(CORRELATION, AgentType.EXTRACTOR, LONG_TEXT)

    assert result.outcome.outcome == AgentRunOutcome.PARSE_FAILED
    assert result.status == AgentRunStatus.FAILED
    assert result.persisted
    run = _row(repository, result.run_pk)
    assert run.status == AgentRunStatus.FAILED
    assert run.outcome == AgentRunOutcome.PARSE_FAILED
    assert run.tokens_used == 7


def test_overflowing_confidence_is_validation_rejected(
    make_runner: MakeRunner,
    repository: AgentRunRepository,
) -> None:
    raw_output = '{"items": [{"value": "a"}], "confidence": 1' + "0" * 400 + "}"
    client = ScriptedModelClient([ModelCallResponse(raw_output=raw_output, tokens_used=7)])

    result = make_runner(client).run(CORRELATION, AgentType.EXTRACTOR, LONG_TEXT)

    assert result.outcome.outcome == AgentRunOutcome.VALIDATION_REJECTED
    assert result.outcome.no_change_code == NoChangeCode.VALIDATION_BLOCKED
    assert result.status == AgentRunStatus.COMPLETED
    run = _row(repository, result.run_pk)
    assert run.status == AgentRunStatus.COMPLETED
    assert run.items_produced == 0


def test_zero_items_with_high_confidence_is_no_change(make_runner: MakeRunner) -> None:
    client = ScriptedModelClient([ok_response(items=0, confidence=0.95)])

    result = make_runner(client).run(CORRELATION, AgentType.EXTRACTOR, LONG_TEXT)

    assert result.outcome.outcome == AgentRunOutcome.SUCCESS_NO_CHANGE
    assert result.outcome.no_change_code == NoChangeCode.NO_RELEVANT_CHANGES
    assert result.metrics.items_produced == 0


def test_low_confidence_produces_no_items(make_runner: MakeRunner) -> None:
    client = ScriptedModelClient([ok_response(items=2, confidence=0.1)])

    result = make_runner(client).run(CORRELATION, AgentType.EXTRACTOR, LONG_TEXT)

    assert result.outcome.outcome == AgentRunOutcome.LOW_CONFIDENCE
    assert result.outcome.no_change_code == NoChangeCode.BELOW_MIN_CONFIDENCE
    assert result.metrics.items_produced == 0
    assert result.metrics.confidence == 0.1


def test_three_transient_failures_end_retry_exhausted_with_attempt_three(
    make_runner: MakeRunner,
    repository: AgentRunRepository,
) -> None:
    client = ScriptedModelClient([error_response("service unavailable", status_code=503)])

    result = make_runner(client).run(CORRELATION, AgentType.EXTRACTOR, LONG_TEXT)

    assert client.calls == 3
    assert [request.attempt for request in client.requests] == [1, 2, 3]
    assert result.outcome.outcome == AgentRunOutcome.RETRY_EXHAUSTED
    assert result.status == AgentRunStatus.FAILED
    run = _row(repository, result.run_pk)
    assert run.attempt == 3
    assert run.error == "service unavailable"


def test_transient_failure_then_success_records_attempts(
    make_runner: MakeRunner,
    repository: AgentRunRepository,
) -> None:
    client = ScriptedModelClient(
        [error_response("rate limit", status_code=429, tokens=4), ok_response(tokens=10)],
    )

    result = make_runner(client).run(CORRELATION, AgentType.EXTRACTOR, LONG_TEXT)

    assert result.outcome.outcome == AgentRunOutcome.SUCCESS_APPLIED
    run = _row(repository, result.run_pk)
    assert run.attempt == 2
    assert run.tokens_used == 14


def test_non_retryable_failure_is_recorded_with_reason(make_runner: MakeRunner) -> None:
    client = ScriptedModelClient([error_response("invalid api key", status_code=401)])

    result = make_runner(client).run(CORRELATION, AgentType.OCR, LONG_TEXT)

    assert client.calls == 1
    assert result.outcome.outcome == AgentRunOutcome.RETRY_EXHAUSTED
    assert result.outcome.detail == "non_retryable:ocr_access_or_auth"


def test_breaker_opens_then_half_open_trial_closes_it(
    make_runner: MakeRunner,
    repository: AgentRunRepository,
    fake_clock: FakeClock,
) -> None:
    settings = Settings(
        db_path=repository.db_path,
        pipeline=PipelineSettings(max_retries=1),
        breaker=BreakerSettings(failure_threshold=2, window_seconds=300, cooldown_seconds=60),
    )
    client = ScriptedModelClient(
        [
            error_response("overloaded", status_code=503),
            error_response("overloaded", status_code=503),
            ok_response(),
        ],
    )
    runner = make_runner(client, runner_settings=settings)

    first = runner.run(CORRELATION, AgentType.EXTRACTOR, LONG_TEXT)
    second = runner.run(CORRELATION, AgentType.EXTRACTOR, LONG_TEXT)
    blocked = runner.run(CORRELATION, AgentType.EXTRACTOR, LONG_TEXT)

    assert first.outcome.outcome == AgentRunOutcome.RETRY_EXHAUSTED
    assert second.outcome.outcome == AgentRunOutcome.RETRY_EXHAUSTED
    assert blocked.outcome.outcome == AgentRunOutcome.CIRCUIT_OPEN
    assert blocked.status == AgentRunStatus.FAILED
    assert client.calls == 2
    assert _row(repository, blocked.run_pk).tokens_used is None

    other_queue = runner.run(
        CorrelationContext(queue_name="other"),
        AgentType.EXTRACTOR,
        LONG_TEXT,
    )
    assert other_queue.outcome.outcome == AgentRunOutcome.SUCCESS_APPLIED

    fake_clock.advance(60)
    trial = runner.run(CORRELATION, AgentType.EXTRACTOR, LONG_TEXT)

    assert trial.outcome.outcome == AgentRunOutcome.SUCCESS_APPLIED
    assert runner.breaker.state("EXTRACTOR", "extraction") == BreakerState.CLOSED


def test_cancellation_before_call_is_timeout(make_runner: MakeRunner) -> None:
    client = ScriptedModelClient([ok_response()])
    runner = make_runner(client)

    result = runner.run(CORRELATION, AgentType.EXTRACTOR, LONG_TEXT, stop_requested=lambda: True)

    assert client.calls == 0
    assert result.outcome.outcome == AgentRunOutcome.TIMEOUT
    assert result.status == AgentRunStatus.FAILED
    snapshot = runner.breaker.snapshot()[0]
    assert snapshot.total_calls == 0
    assert snapshot.state == BreakerState.CLOSED


def test_cancellation_during_call_discards_output(make_runner: MakeRunner) -> None:
    stop = {"requested": False}

    def respond_then_cancel(request: ModelCallRequest) -> ModelCallResponse:
        stop["requested"] = True
        return ok_response()

    client = ScriptedModelClient([respond_then_cancel])

    result = make_runner(client).run(
        CORRELATION,
        AgentType.EXTRACTOR,
        LONG_TEXT,
        stop_requested=lambda: stop["requested"],
    )

    assert client.calls == 1
    assert result.outcome.outcome == AgentRunOutcome.TIMEOUT
    assert result.outcome.detail == "canceled"
    assert result.items == []


def test_deadline_overrun_is_timeout(make_runner: MakeRunner) -> None:
    client = ScriptedModelClient([error_response("service unavailable", status_code=503)])

    result = make_runner(client).run(
        CORRELATION,
        AgentType.EXTRACTOR,
        LONG_TEXT,
        deadline_seconds=0.5,
    )

    assert client.calls == 1
    assert result.outcome.outcome == AgentRunOutcome.TIMEOUT


def test_configured_deadline_turns_timed_out_attempts_into_timeout(
    make_runner: MakeRunner,
    repository: AgentRunRepository,
) -> None:
    settings = Settings(
        db_path=repository.db_path,
        pipeline=PipelineSettings(deadline_by_agent={AgentType.EXTRACTOR: 2.5}),
    )
    client = ScriptedModelClient([TimeoutError("model call timed out")])
    runner = make_runner(client, runner_settings=settings)

    limited = runner.run(CORRELATION, AgentType.EXTRACTOR, LONG_TEXT)
    unlimited = runner.run(CORRELATION, AgentType.COMPOSER, LONG_TEXT)

    assert limited.outcome.outcome == AgentRunOutcome.TIMEOUT
    assert limited.status == AgentRunStatus.FAILED
    assert limited.metrics.attempt == 2
    assert _row(repository, limited.run_pk).outcome == AgentRunOutcome.TIMEOUT
    assert unlimited.outcome.outcome == AgentRunOutcome.RETRY_EXHAUSTED
    assert unlimited.metrics.attempt == 3


def test_unexpected_exception_propagates_and_run_stays_running(
    make_runner: MakeRunner,
    repository: AgentRunRepository,
) -> None:
    client = ScriptedModelClient([RuntimeError("client bug")])
    runner = make_runner(client)

    with pytest.raises(RuntimeError, match="client bug"):
        runner.run(CORRELATION, AgentType.EXTRACTOR, LONG_TEXT)

    [run] = repository.list_runs()
    assert run.status == AgentRunStatus.RUNNING
    assert run.outcome is None


def test_per_agent_validator_is_used(make_runner: MakeRunner) -> None:
    client = ScriptedModelClient([ModelCallResponse(raw_output=json.dumps({"claims": [{}]}))])
    runner = make_runner(
        client,
        validators={AgentType.CLAIM_EXTRACTOR: JsonItemsValidator(items_key="claims")},
    )

    claims = runner.run(CORRELATION, AgentType.CLAIM_EXTRACTOR, LONG_TEXT)
    other = runner.run(CORRELATION, AgentType.EXTRACTOR, LONG_TEXT)

    assert claims.outcome.outcome == AgentRunOutcome.SUCCESS_APPLIED
    assert other.outcome.outcome == AgentRunOutcome.VALIDATION_REJECTED


def test_missing_prompt_template_fails_at_construction(make_runner: MakeRunner) -> None:
    registry = PromptRegistry(
        [
            PromptTemplate(
                agent_type=AgentType.OCR,
                template_id="ocr-v1",
                version="1.0.0",
                build_prompt=str,
            ),
        ],
    )

    with pytest.raises(PromptRegistryError, match="EXTRACTOR"):
        make_runner(EchoModelClient(), prompt_registry=registry)

    runner = make_runner(EchoModelClient(), prompt_registry=registry, agent_types=[AgentType.OCR])
    assert runner.prompt_registry is registry


def test_every_finished_run_is_terminal_and_consistent(
    make_runner: MakeRunner,
    repository: AgentRunRepository,
) -> None:
    client = ScriptedModelClient(
        [
            ok_response(),
            ModelCallResponse(raw_output="null"),
            ModelCallResponse(raw_output="garbage"),
            error_response("unknown failure"),
        ],
    )
    runner = make_runner(client)
    for payload in (LONG_TEXT, LONG_TEXT + "1", LONG_TEXT + "2", "tiny", LONG_TEXT + "3"):
        runner.run(CORRELATION, AgentType.EXTRACTOR, payload)

    runs = repository.list_runs()
    assert len(runs) == 5
    for run in runs:
        assert run.status in {AgentRunStatus.COMPLETED, AgentRunStatus.FAILED}
        assert run.outcome is not None
        assert run.completed_at is not None
        assert run.completed_at >= run.started_at
        assert run.duration_ms is not None
