from __future__ import annotations

import allure

from agent_runs.pipeline.metrics import build_waste_report, render_waste_lines
from agent_runs.pipeline.models import OutcomeAggregateView

pytestmark = [
    allure.epic("Agent Runs"),
    allure.feature("Waste Analysis"),
]


def _agg(agent: str, outcome: str, runs: int, tokens: int, cache_hits: int = 0):
    return OutcomeAggregateView(
        agent_type=agent,
        outcome=outcome,
        runs=runs,
        tokens_used=tokens,
        duration_ms=runs * 100,
        cache_hits=cache_hits,
    )


def test_waste_report_separates_applied_from_wasted_tokens() -> None:
    aggregates = [
        _agg("EXTRACTOR", "SUCCESS_APPLIED", 4, 400),
        _agg("EXTRACTOR", "PARSE_FAILED", 2, 150),
        _agg("EXTRACTOR", "DUPLICATE_CACHED", 2, 0, cache_hits=2),
        _agg("OCR", "EMPTY_OUTPUT", 1, 50),
        _agg("OCR", "unclassified", 1, 0),
    ]

    report = build_waste_report(
        hours=24,
        aggregates=aggregates,
        today_aggregates=aggregates,
        durations_ms=[100, 200, 300, 400],
        stale_runs=[],
    )

    assert report.total_runs == 10
    assert report.total_tokens == 600
    assert report.wasted_tokens == 200
    assert report.wasted_tokens_by_outcome == {"PARSE_FAILED": 150, "EMPTY_OUTPUT": 50}
    assert report.waste_ratio == 200 / 600
    assert report.cache_hits == 2
    assert report.cache_hit_ratio == 0.2
    assert report.unclassified_runs == 1
    assert report.today_completed == 7
    assert report.today_failed == 2
    assert report.durations.sample_size == 4
    assert report.durations.p50_ms == 250
    assert report.agent_outcome_counts["OCR"] == {"EMPTY_OUTPUT": 1, "unclassified": 1}


def test_empty_report_renders() -> None:
    report = build_waste_report(
        hours=6,
        aggregates=[],
        today_aggregates=[],
        durations_ms=[],
        stale_runs=[],
    )

    lines = render_waste_lines(report)

    assert lines[0] == "Agent runs (window=6h)"
    assert "Outcomes: none" in lines
    assert "Tokens: total=0 wasted=0 waste_ratio=n/a" in lines
    assert "Cache: hits=0 hit_ratio=n/a" in lines
