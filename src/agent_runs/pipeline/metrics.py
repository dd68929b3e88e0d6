"""Waste analysis over finalized agent runs."""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass

from agent_runs.pipeline.classifier import status_for
from agent_runs.pipeline.models import (
    AgentRunOutcome,
    AgentRunStatus,
    AgentRunView,
    OutcomeAggregateView,
)

UNCLASSIFIED = "unclassified"


@dataclass(slots=True)
class DurationPercentiles:
    """Run duration percentiles in milliseconds."""

    sample_size: int
    p50_ms: float
    p90_ms: float
    p99_ms: float


@dataclass(slots=True)
class WasteReport:
    """Aggregated outcome and spend metrics used by the stats command."""

    hours: int
    total_runs: int
    outcome_counts: dict[str, int]
    agent_outcome_counts: dict[str, dict[str, int]]
    total_tokens: int
    wasted_tokens: int
    wasted_tokens_by_outcome: dict[str, int]
    cache_hits: int
    cache_hit_ratio: float | None
    unclassified_runs: int
    durations: DurationPercentiles
    today_completed: int
    today_failed: int
    stale_running: int

    @property
    def waste_ratio(self) -> float | None:
        """Share of tokens spent on runs that applied nothing."""

        if self.total_tokens == 0:
            return None
        return self.wasted_tokens / self.total_tokens


def build_waste_report(  # noqa: PLR0913
    *,
    hours: int,
    aggregates: list[OutcomeAggregateView],
    today_aggregates: list[OutcomeAggregateView],
    durations_ms: list[int],
    stale_runs: list[AgentRunView],
) -> WasteReport:
    """Build one report from grouped aggregates."""

    outcome_counts = Counter[str]()
    agent_outcome_counts: dict[str, Counter[str]] = defaultdict(Counter)
    wasted_by_outcome = Counter[str]()
    total_tokens = 0
    cache_hits = 0

    for row in aggregates:
        outcome_counts[row.outcome] += row.runs
        agent_outcome_counts[row.agent_type][row.outcome] += row.runs
        total_tokens += row.tokens_used
        cache_hits += row.cache_hits
        if row.outcome != AgentRunOutcome.SUCCESS_APPLIED.value:
            wasted_by_outcome[row.outcome] += row.tokens_used

    total_runs = sum(outcome_counts.values())
    today_completed = 0
    today_failed = 0
    for row in today_aggregates:
        if row.outcome == UNCLASSIFIED:
            continue
        if status_for(AgentRunOutcome(row.outcome)) == AgentRunStatus.FAILED:
            today_failed += row.runs
        else:
            today_completed += row.runs

    return WasteReport(
        hours=hours,
        total_runs=total_runs,
        outcome_counts=dict(outcome_counts),
        agent_outcome_counts={
            agent: dict(counts) for agent, counts in agent_outcome_counts.items()
        },
        total_tokens=total_tokens,
        wasted_tokens=sum(wasted_by_outcome.values()),
        wasted_tokens_by_outcome={
            outcome: tokens for outcome, tokens in wasted_by_outcome.items() if tokens
        },
        cache_hits=cache_hits,
        cache_hit_ratio=(cache_hits / total_runs) if total_runs else None,
        unclassified_runs=outcome_counts.get(UNCLASSIFIED, 0),
        durations=DurationPercentiles(
            sample_size=len(durations_ms),
            p50_ms=_percentile(durations_ms, 0.50),
            p90_ms=_percentile(durations_ms, 0.90),
            p99_ms=_percentile(durations_ms, 0.99),
        ),
        today_completed=today_completed,
        today_failed=today_failed,
        stale_running=len(stale_runs),
    )


def render_waste_lines(report: WasteReport) -> list[str]:
    """Render operator-facing report lines for CLI output."""

    lines = [
        f"Agent runs (window={report.hours}h)",
        f"Runs: {report.total_runs}",
        "Outcomes: " + (_fmt_key_value(report.outcome_counts) or "none"),
    ]
    for agent_type in sorted(report.agent_outcome_counts):
        lines.append(
            f"  {agent_type}: " + _fmt_key_value(report.agent_outcome_counts[agent_type]),
        )
    lines.extend(
        [
            (
                f"Tokens: total={report.total_tokens} wasted={report.wasted_tokens} "
                f"waste_ratio={_fmt_ratio(report.waste_ratio)}"
            ),
            "Wasted tokens by outcome: "
            + (_fmt_key_value(report.wasted_tokens_by_outcome) or "none"),
            f"Cache: hits={report.cache_hits} hit_ratio={_fmt_ratio(report.cache_hit_ratio)}",
            (
                f"Duration: n={report.durations.sample_size} "
                f"p50={report.durations.p50_ms:.0f}ms "
                f"p90={report.durations.p90_ms:.0f}ms "
                f"p99={report.durations.p99_ms:.0f}ms"
            ),
            f"Today: completed={report.today_completed} failed={report.today_failed}",
            f"Unclassified (legacy) runs: {report.unclassified_runs}",
            f"Stale RUNNING runs: {report.stale_running}",
        ],
    )
    return lines


def _percentile(values: list[int], percentile: float) -> float:
    if not values:
        return 0.0
    sorted_values = sorted(values)
    if len(sorted_values) == 1:
        return float(sorted_values[0])
    rank = (len(sorted_values) - 1) * percentile
    lower = int(rank)
    upper = min(lower + 1, len(sorted_values) - 1)
    weight = rank - lower
    return sorted_values[lower] * (1.0 - weight) + sorted_values[upper] * weight


def _fmt_ratio(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.2%}"


def _fmt_key_value(values: dict[str, int]) -> str:
    if not values:
        return ""
    return " ".join(f"{key}={values[key]}" for key in sorted(values))
