"""CLI entrypoint for agent-runs."""

import logging
from pathlib import Path

import rich_click as click

from agent_runs import __version__
from agent_runs.pipeline.controllers import (
    DEFAULT_SMOKE_PAYLOAD,
    AgentRunsCliController,
    DbInitCommand,
    RunsListCommand,
    RunsShowCommand,
    RunsSmokeCommand,
    RunsStaleCommand,
    RunsStatsCommand,
)
from agent_runs.pipeline.models import AgentRunOutcome, AgentRunStatus, AgentType

click.rich_click.USE_MARKDOWN = True
CONTROLLER = AgentRunsCliController()
AGENT_TYPE_CHOICE = click.Choice([agent.value for agent in AgentType], case_sensitive=False)


@click.group()
@click.version_option(version=__version__, prog_name="agent-runs")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for pipeline diagnostics.",
)
def agent_runs(log_level: str) -> None:
    """Agent run ledger CLI."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_runs.group()
def db() -> None:
    """Database commands."""


@db.command("init")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def db_init(db_path: Path | None) -> None:
    """Apply schema migrations."""

    _emit_lines(CONTROLLER.init_db(DbInitCommand(db_path=db_path)))


@agent_runs.group()
def runs() -> None:
    """Agent run inspection and reporting commands."""


@runs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--agent-type", type=AGENT_TYPE_CHOICE, default=None, help="Agent type filter.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in AgentRunStatus], case_sensitive=False),
    default=None,
    help="Status filter.",
)
@click.option(
    "--outcome",
    type=click.Choice([outcome.value for outcome in AgentRunOutcome], case_sensitive=False),
    default=None,
    help="Outcome filter.",
)
@click.option("--queue", "queue_name", default=None, help="Queue name filter.")
@click.option("--source", "source_slug", default=None, help="Source slug filter.")
@click.option("--run-id", default=None, help="Correlation run id filter.")
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=None,
    help="Only runs started within this many hours.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of runs to print.",
)
def runs_list(  # noqa: PLR0913
    db_path: Path | None,
    agent_type: str | None,
    status: str | None,
    outcome: str | None,
    queue_name: str | None,
    source_slug: str | None,
    run_id: str | None,
    hours: int | None,
    limit: int,
) -> None:
    """List recent agent runs, newest first."""

    _emit_lines(
        CONTROLLER.list_runs(
            RunsListCommand(
                db_path=db_path,
                agent_type=agent_type,
                status=status,
                outcome=outcome,
                queue_name=queue_name,
                source_slug=source_slug,
                run_id=run_id,
                hours=hours,
                limit=limit,
            ),
        ),
    )


@runs.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("run_pk")
def runs_show(db_path: Path | None, run_pk: str) -> None:
    """Show one agent run with metrics and correlation ids."""

    _emit_lines(CONTROLLER.show_run(RunsShowCommand(db_path=db_path, run_pk=run_pk)))


@runs.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=24,
    show_default=True,
    help="Time window for aggregation.",
)
@click.option("--agent-type", type=AGENT_TYPE_CHOICE, default=None, help="Agent type filter.")
def runs_stats(db_path: Path | None, hours: int, agent_type: str | None) -> None:
    """Show outcome distribution, token waste and cache effectiveness."""

    _emit_lines(
        CONTROLLER.stats(RunsStatsCommand(db_path=db_path, hours=hours, agent_type=agent_type)),
    )


@runs.command("stale")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--older-than-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Age cutoff; defaults to AGENT_RUNS_STALE_RUNNING_AFTER_SECONDS.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=100,
    show_default=True,
    help="Max number of runs to print.",
)
def runs_stale(db_path: Path | None, older_than_seconds: int | None, limit: int) -> None:
    """List RUNNING runs that were never finalized."""

    _emit_lines(
        CONTROLLER.stale(
            RunsStaleCommand(
                db_path=db_path,
                older_than_seconds=older_than_seconds,
                limit=limit,
            ),
        ),
    )


@runs.command("smoke")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--agent-type",
    "agent_types",
    type=AGENT_TYPE_CHOICE,
    multiple=True,
    help="Agent type to exercise. Can be repeated. Defaults to EXTRACTOR.",
)
@click.option(
    "--payload",
    default=DEFAULT_SMOKE_PAYLOAD,
    show_default=False,
    help="Input text sent through the pipeline.",
)
@click.option(
    "--repeat",
    type=click.IntRange(min=1, max=20),
    default=2,
    show_default=True,
    help="Runs per agent type; repeats exercise the result cache.",
)
@click.option("--queue", "queue_name", default="smoke", show_default=True, help="Queue name.")
def runs_smoke(
    db_path: Path | None,
    agent_types: tuple[str, ...],
    payload: str,
    repeat: int,
    queue_name: str,
) -> None:
    """Run the pipeline end to end against the local echo model client."""

    result = CONTROLLER.smoke(
        RunsSmokeCommand(
            db_path=db_path,
            agent_types=agent_types,
            payload=payload,
            repeat=repeat,
            queue_name=queue_name,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Agent run smoke check failed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_runs()
