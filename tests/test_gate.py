from __future__ import annotations

import allure

from agent_runs.pipeline.gate import GatePass, GateReject, PreCallGate, measure_input
from agent_runs.pipeline.models import AgentRunOutcome, AgentType, NoChangeCode

pytestmark = [
    allure.epic("Agent Runs"),
    allure.feature("Pre-call Gate"),
]


def test_measure_input_counts_utf8_bytes() -> None:
    size = measure_input("héllo")
    assert size.chars == 5
    assert size.bytes == 6


def test_measure_input_uses_canonical_json_for_structures() -> None:
    assert measure_input({"b": 1, "a": [1, 2]}) == measure_input({"a": [1, 2], "b": 1})
    assert measure_input({"a": 1}).chars == len('{"a":1}')


def test_small_input_is_rejected_as_low_quality() -> None:
    gate = PreCallGate(min_input_bytes={}, default_min_input_bytes=100)

    result = gate.evaluate(AgentType.EXTRACTOR, "x" * 50)

    assert isinstance(result, GateReject)
    assert result.rejected
    assert result.outcome.outcome == AgentRunOutcome.CONTENT_LOW_QUALITY
    assert result.outcome.no_change_code == NoChangeCode.NO_RELEVANT_CHANGES
    assert result.size.bytes == 50


def test_threshold_is_per_agent_type() -> None:
    gate = PreCallGate(
        min_input_bytes={AgentType.OCR: 10},
        default_min_input_bytes=100,
    )

    assert isinstance(gate.evaluate(AgentType.OCR, "x" * 50), GatePass)
    assert isinstance(gate.evaluate(AgentType.EXTRACTOR, "x" * 50), GateReject)
    assert gate.min_input_bytes(AgentType.OCR) == 10
    assert gate.min_input_bytes(AgentType.COMPOSER) == 100


def test_input_exactly_at_threshold_passes() -> None:
    gate = PreCallGate(min_input_bytes={}, default_min_input_bytes=100)
    assert not gate.evaluate(AgentType.EXTRACTOR, "x" * 100).rejected


def test_skip_predicate_runs_after_size_check() -> None:
    seen: list[AgentType] = []

    def skip_sentinel(agent_type: AgentType, _payload: object) -> bool:
        seen.append(agent_type)
        return agent_type == AgentType.SENTINEL

    gate = PreCallGate(
        min_input_bytes={},
        default_min_input_bytes=10,
        should_skip=skip_sentinel,
    )

    skipped = gate.evaluate(AgentType.SENTINEL, "x" * 20)
    assert isinstance(skipped, GateReject)
    assert skipped.outcome.outcome == AgentRunOutcome.SKIPPED_DETERMINISTIC
    assert skipped.outcome.no_change_code is None

    too_small = gate.evaluate(AgentType.SENTINEL, "x")
    assert too_small.outcome.outcome == AgentRunOutcome.CONTENT_LOW_QUALITY
    assert seen == [AgentType.SENTINEL]
