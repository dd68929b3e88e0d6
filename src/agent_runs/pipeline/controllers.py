"""Controllers for agent run CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from agent_runs.config import Settings
from agent_runs.pipeline.backend import EchoModelClient
from agent_runs.pipeline.cache import ResultCache
from agent_runs.pipeline.metrics import build_waste_report, render_waste_lines
from agent_runs.pipeline.models import (
    AgentRunOutcome,
    AgentRunStatus,
    AgentRunView,
    AgentType,
    CorrelationContext,
)
from agent_runs.pipeline.recorder import AgentRunRecorder
from agent_runs.pipeline.repository import AgentRunRepository
from agent_runs.pipeline.runner import AgentRunner, build_circuit_breaker

DEFAULT_SMOKE_PAYLOAD = (
    "Clause 4.2: the supplier shall deliver all units within thirty days of the "
    "purchase order date, and late deliveries incur a penalty of two percent per week."
)
TINY_SMOKE_PAYLOAD = "ok"


@dataclass(slots=True)
class DbInitCommand:
    """CLI input for schema initialization."""

    db_path: Path | None


@dataclass(slots=True)
class RunsListCommand:
    """CLI input for run listing."""

    db_path: Path | None
    agent_type: str | None
    status: str | None
    outcome: str | None
    queue_name: str | None
    source_slug: str | None
    run_id: str | None
    hours: int | None
    limit: int


@dataclass(slots=True)
class RunsShowCommand:
    """CLI input for one run inspection."""

    db_path: Path | None
    run_pk: str


@dataclass(slots=True)
class RunsStatsCommand:
    """CLI input for the waste report."""

    db_path: Path | None
    hours: int
    agent_type: str | None


@dataclass(slots=True)
class RunsStaleCommand:
    """CLI input for stale RUNNING run listing."""

    db_path: Path | None
    older_than_seconds: int | None
    limit: int


@dataclass(slots=True)
class RunsSmokeCommand:
    """CLI input for an end-to-end pipeline smoke run."""

    db_path: Path | None
    agent_types: tuple[str, ...]
    payload: str
    repeat: int
    queue_name: str


@dataclass(slots=True)
class RunsSmokeResult:
    """Smoke report to render in CLI."""

    lines: list[str]
    success: bool


class AgentRunsCliController:
    """Coordinates schema, inspection, reporting and smoke CLI operations."""

    def init_db(self, command: DbInitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings):
            pass
        return [f"Schema ready: {settings.db_path}"]

    def list_runs(self, command: RunsListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        since = (
            datetime.now(tz=UTC) - timedelta(hours=command.hours)
            if command.hours is not None
            else None
        )
        with _repository(settings) as repository:
            runs = repository.list_runs(
                agent_type=_parse_agent_type(command.agent_type),
                status=AgentRunStatus(command.status.upper()) if command.status else None,
                outcome=AgentRunOutcome(command.outcome.upper()) if command.outcome else None,
                queue_name=command.queue_name,
                source_slug=command.source_slug,
                run_id=command.run_id,
                since=since,
                limit=command.limit,
            )
        if not runs:
            return ["No agent runs found."]
        return [_run_line(run) for run in runs]

    def show_run(self, command: RunsShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            run = repository.get_run(run_pk=command.run_pk)
        if run is None:
            return [f"Agent run not found: {command.run_pk}"]

        completed = run.completed_at.isoformat() if run.completed_at is not None else "-"
        return [
            f"Run: {run.id}",
            f"Agent: {run.agent_type}",
            f"Status: {run.status.value}",
            f"Outcome: {run.outcome.value if run.outcome else 'unclassified'}",
            f"No-change code: {run.no_change_code.value if run.no_change_code else '-'}",
            f"Detail: {run.no_change_detail or '-'}",
            f"Items produced: {run.items_produced}",
            f"Started: {run.started_at.isoformat()}",
            f"Completed: {completed}",
            f"Duration: {_fmt_optional(run.duration_ms, suffix='ms')}",
            f"Attempts: {run.attempt}",
            f"Tokens: {_fmt_optional(run.tokens_used)}",
            f"Confidence: {_fmt_optional(run.confidence)}",
            f"Input: chars={_fmt_optional(run.input_chars)} bytes={_fmt_optional(run.input_bytes)}",
            f"Input hash: {run.input_content_hash or '-'}",
            (
                f"Prompt: {run.prompt_template_id or '-'}@{run.prompt_template_version or '-'} "
                f"hash={run.prompt_hash or '-'}"
            ),
            f"Cache hit: {'yes' if run.cache_hit else 'no'}",
            (
                f"Correlation: run_id={run.run_id or '-'} job_id={run.job_id or '-'} "
                f"parent_job_id={run.parent_job_id or '-'} source={run.source_slug or '-'} "
                f"queue={run.queue_name or '-'}"
            ),
            f"Error: {run.error or '-'}",
        ]

    def stats(self, command: RunsStatsCommand) -> list[str]:
        """Show outcome distribution and token waste for a time window."""

        settings = Settings.from_env(db_path=command.db_path)
        now = datetime.now(tz=UTC)
        since = now - timedelta(hours=max(1, command.hours))
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        agent_type = _parse_agent_type(command.agent_type)
        with _repository(settings) as repository:
            aggregates = repository.outcome_aggregates(since=since, agent_type=agent_type)
            today_aggregates = repository.outcome_aggregates(since=today, agent_type=agent_type)
            durations = repository.duration_samples(since=since, agent_type=agent_type)
            stale_runs = repository.list_stale_running(
                started_before=now
                - timedelta(seconds=settings.storage.stale_running_after_seconds),
            )

        report = build_waste_report(
            hours=command.hours,
            aggregates=aggregates,
            today_aggregates=today_aggregates,
            durations_ms=durations,
            stale_runs=stale_runs,
        )
        return render_waste_lines(report)

    def stale(self, command: RunsStaleCommand) -> list[str]:
        """List RUNNING rows whose finalize never landed."""

        settings = Settings.from_env(db_path=command.db_path)
        older_than = command.older_than_seconds or settings.storage.stale_running_after_seconds
        cutoff = datetime.now(tz=UTC) - timedelta(seconds=older_than)
        with _repository(settings) as repository:
            runs = repository.list_stale_running(started_before=cutoff, limit=command.limit)
        if not runs:
            return [f"No RUNNING agent runs older than {older_than}s."]
        return [f"Stale RUNNING agent runs (older than {older_than}s): {len(runs)}"] + [
            _run_line(run) for run in runs
        ]

    def smoke(self, command: RunsSmokeCommand) -> RunsSmokeResult:
        """Run the full pipeline against the local echo model client."""

        settings = Settings.from_env(db_path=command.db_path)
        try:
            agent_types = (
                tuple(_parse_agent_type(value) for value in command.agent_types)
                if command.agent_types
                else (AgentType.EXTRACTOR,)
            )
            settings.validate()
        except ValueError as error:
            return RunsSmokeResult(lines=["Agent run smoke check:", str(error)], success=False)

        lines = ["Agent run smoke check:"]
        success = True
        with _repository(settings) as repository:
            breaker = build_circuit_breaker(settings)
            runner = AgentRunner(
                settings=settings,
                recorder=AgentRunRecorder(repository),
                model_client=EchoModelClient(),
                breaker=breaker,
                result_cache=(
                    ResultCache(
                        repository,
                        claim_wait_seconds=settings.cache.claim_wait_seconds,
                        claim_ttl_seconds=settings.cache.claim_ttl_seconds,
                        poll_interval_seconds=settings.cache.poll_interval_seconds,
                    )
                    if settings.cache.enabled
                    else None
                ),
            )
            correlation = CorrelationContext(
                run_id=f"smoke-{datetime.now(tz=UTC):%Y%m%dT%H%M%S}",
                source_slug="smoke",
                queue_name=command.queue_name,
            )
            for agent_type in agent_types:
                for _ in range(max(1, command.repeat)):
                    result = runner.run(correlation, agent_type, command.payload)
                    ok = result.status == AgentRunStatus.COMPLETED and result.persisted
                    success = success and ok
                    lines.append(
                        f"[{'OK' if ok else 'FAIL'}] {agent_type.value} run={result.run_pk} "
                        f"outcome={result.outcome.outcome.value} "
                        f"items={result.metrics.items_produced} "
                        f"cache_hit={'yes' if result.metrics.cache_hit else 'no'}",
                    )
                gated = runner.run(correlation, agent_type, TINY_SMOKE_PAYLOAD)
                gate_ok = gated.outcome.outcome == AgentRunOutcome.CONTENT_LOW_QUALITY
                success = success and gate_ok
                lines.append(
                    f"[{'OK' if gate_ok else 'FAIL'}] {agent_type.value} gate "
                    f"outcome={gated.outcome.outcome.value}",
                )

            for snapshot in breaker.snapshot():
                lines.append(
                    f"Breaker {snapshot.agent_type}/{snapshot.queue_name}: "
                    f"state={snapshot.state.value} calls={snapshot.total_calls} "
                    f"success_rate={snapshot.success_rate:.2f} "
                    f"failures_in_window={snapshot.failures_in_window}",
                )
        return RunsSmokeResult(lines=lines, success=success)


def _parse_agent_type(value: str | None) -> AgentType | None:
    if value is None:
        return None
    normalized = value.strip().upper().replace("-", "_")
    try:
        return AgentType(normalized)
    except ValueError as error:
        supported = ", ".join(agent.value for agent in AgentType)
        raise ValueError(f"Unknown agent type {value!r}. Supported: {supported}") from error


def _fmt_optional(value: object | None, *, suffix: str = "") -> str:
    if value is None:
        return "-"
    return f"{value}{suffix}"


def _run_line(run: AgentRunView) -> str:
    return (
        f"{run.id} {run.started_at:%Y-%m-%d %H:%M:%S} agent={run.agent_type} "
        f"status={run.status.value} "
        f"outcome={run.outcome.value if run.outcome else 'unclassified'} "
        f"items={run.items_produced} tokens={_fmt_optional(run.tokens_used)} "
        f"attempts={run.attempt} queue={run.queue_name or '-'}"
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[AgentRunRepository]:
    repository = AgentRunRepository(
        settings.db_path,
        busy_timeout_ms=settings.storage.busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
