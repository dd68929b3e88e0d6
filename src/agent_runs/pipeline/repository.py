"""Persistence facade for agent runs and the result cache."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from agent_runs.pipeline.models import (
    AgentRunFinish,
    AgentRunOpen,
    AgentRunOutcome,
    AgentRunStatus,
    AgentRunView,
    AgentType,
    CachedResultView,
    NoChangeCode,
    OutcomeAggregateView,
)
from agent_runs.storage.alembic_runner import upgrade_head
from agent_runs.storage.common import (
    build_sqlite_engine,
    dump_json_column,
    load_json_column,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_runs.storage.sqlmodel_models import AgentResultCacheEntry, AgentRun

CACHE_STATE_PENDING = "pending"
CACHE_STATE_READY = "ready"


@dataclass(frozen=True, slots=True)
class CacheKey:
    """Identity of one cacheable model result."""

    agent_type: str
    model: str
    prompt_hash: str
    input_content_hash: str


@dataclass(slots=True)
class CacheClaimResult:
    """Outcome of an atomic claim-or-find."""

    claimed: bool
    entry: CachedResultView


class AgentRunRepository:
    """Run ledger persistence backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def insert_run(self, payload: AgentRunOpen) -> AgentRunView:
        """Create a RUNNING row."""

        correlation = payload.correlation
        with Session(self.engine) as session:
            row = AgentRun(
                id=payload.id,
                agent_type=payload.agent_type.value,
                status=AgentRunStatus.RUNNING.value,
                started_at=to_db_datetime(payload.started_at),
                attempt=1,
                run_id=correlation.run_id,
                job_id=correlation.job_id,
                parent_job_id=correlation.parent_job_id,
                source_slug=correlation.source_slug,
                queue_name=correlation.queue_name,
                input_content_hash=payload.input_content_hash,
                input_json=dump_json_column(payload.input_payload),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_run_view(row)

    def update_attempt(self, *, run_pk: str, attempt: int) -> bool:
        """Advance the attempt counter of a RUNNING row; never moves backwards."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AgentRun)
                .where(
                    col(AgentRun.id) == run_pk,
                    col(AgentRun.status) == AgentRunStatus.RUNNING.value,
                    col(AgentRun.attempt) < attempt,
                )
                .values(attempt=attempt),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def finalize_run(self, payload: AgentRunFinish) -> bool:
        """Single terminal write for a RUNNING row."""

        if not payload.status.is_terminal:
            raise ValueError(f"Unsupported terminal status: {payload.status}")

        metrics = payload.metrics
        outcome = payload.outcome
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AgentRun)
                .where(
                    col(AgentRun.id) == payload.id,
                    col(AgentRun.status) == AgentRunStatus.RUNNING.value,
                )
                .values(
                    status=payload.status.value,
                    completed_at=to_db_datetime(payload.completed_at),
                    outcome=outcome.outcome.value,
                    no_change_code=(
                        outcome.no_change_code.value if outcome.no_change_code else None
                    ),
                    no_change_detail=outcome.detail,
                    items_produced=metrics.items_produced,
                    prompt_template_id=metrics.prompt_template_id,
                    prompt_template_version=metrics.prompt_template_version,
                    prompt_hash=metrics.prompt_hash,
                    input_chars=metrics.input_chars,
                    input_bytes=metrics.input_bytes,
                    tokens_used=metrics.tokens_used,
                    duration_ms=metrics.duration_ms,
                    confidence=metrics.confidence,
                    attempt=metrics.attempt,
                    cache_hit=metrics.cache_hit,
                    output_json=dump_json_column(metrics.output),
                    raw_output=metrics.raw_output,
                    error=payload.error,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def get_run(self, *, run_pk: str) -> AgentRunView | None:
        """Return one run by primary key."""

        with Session(self.engine) as session:
            row = session.exec(select(AgentRun).where(AgentRun.id == run_pk)).one_or_none()
        return _to_run_view(row) if row is not None else None

    def list_runs(  # noqa: PLR0913
        self,
        *,
        agent_type: AgentType | None = None,
        status: AgentRunStatus | None = None,
        outcome: AgentRunOutcome | None = None,
        queue_name: str | None = None,
        source_slug: str | None = None,
        run_id: str | None = None,
        input_content_hash: str | None = None,
        since: datetime | None = None,
        limit: int = 50,
    ) -> list[AgentRunView]:
        """List recent runs, newest first, filtered on indexed columns."""

        statement = select(AgentRun)
        if agent_type is not None:
            statement = statement.where(AgentRun.agent_type == agent_type.value)
        if status is not None:
            statement = statement.where(AgentRun.status == status.value)
        if outcome is not None:
            statement = statement.where(AgentRun.outcome == outcome.value)
        if queue_name is not None:
            statement = statement.where(AgentRun.queue_name == queue_name)
        if source_slug is not None:
            statement = statement.where(AgentRun.source_slug == source_slug)
        if run_id is not None:
            statement = statement.where(AgentRun.run_id == run_id)
        if input_content_hash is not None:
            statement = statement.where(AgentRun.input_content_hash == input_content_hash)
        if since is not None:
            statement = statement.where(col(AgentRun.started_at) >= to_db_datetime(since))
        statement = statement.order_by(col(AgentRun.started_at).desc()).limit(limit)

        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_run_view(row) for row in rows]

    def list_stale_running(self, *, started_before: datetime, limit: int = 100) -> list[AgentRunView]:
        """RUNNING rows older than the cutoff; finalize never landed for these."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentRun)
                .where(
                    AgentRun.status == AgentRunStatus.RUNNING.value,
                    col(AgentRun.started_at) < to_db_datetime(started_before),
                )
                .order_by(col(AgentRun.started_at).asc())
                .limit(limit),
            ).all()
        return [_to_run_view(row) for row in rows]

    def outcome_aggregates(
        self,
        *,
        since: datetime | None = None,
        agent_type: AgentType | None = None,
    ) -> list[OutcomeAggregateView]:
        """Grouped counts by agent type and outcome for waste analysis."""

        statement = select(
            AgentRun.agent_type,
            AgentRun.outcome,
            func.count(),
            func.coalesce(func.sum(AgentRun.tokens_used), 0),
            func.coalesce(func.sum(AgentRun.duration_ms), 0),
            func.coalesce(func.sum(AgentRun.cache_hit), 0),
        ).where(AgentRun.status != AgentRunStatus.RUNNING.value)
        if since is not None:
            statement = statement.where(col(AgentRun.started_at) >= to_db_datetime(since))
        if agent_type is not None:
            statement = statement.where(AgentRun.agent_type == agent_type.value)
        statement = statement.group_by(AgentRun.agent_type, AgentRun.outcome).order_by(
            AgentRun.agent_type,
            AgentRun.outcome,
        )

        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [
            OutcomeAggregateView(
                agent_type=str(agent),
                outcome=str(outcome) if outcome is not None else "unclassified",
                runs=int(runs),
                tokens_used=int(tokens),
                duration_ms=int(duration),
                cache_hits=int(cache_hits),
            )
            for agent, outcome, runs, tokens, duration, cache_hits in rows
        ]

    def duration_samples(
        self,
        *,
        since: datetime | None = None,
        agent_type: AgentType | None = None,
    ) -> list[int]:
        """Durations of finalized runs, in milliseconds."""

        statement = select(AgentRun.duration_ms).where(
            AgentRun.status != AgentRunStatus.RUNNING.value,
            col(AgentRun.duration_ms).is_not(None),
        )
        if since is not None:
            statement = statement.where(col(AgentRun.started_at) >= to_db_datetime(since))
        if agent_type is not None:
            statement = statement.where(AgentRun.agent_type == agent_type.value)

        with Session(self.engine) as session:
            return [int(value) for value in session.exec(statement).all()]

    def claim_cache_entry(
        self,
        *,
        key: CacheKey,
        owner_run_id: str,
        stale_before: datetime,
    ) -> CacheClaimResult:
        """Atomically claim a cache key, or return whoever holds it.

        The unique key constraint makes the insert the compare-and-set: exactly
        one concurrent caller wins. A pending claim older than ``stale_before``
        is taken over with a conditional update.
        """

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                row = AgentResultCacheEntry(
                    agent_type=key.agent_type,
                    model=key.model,
                    prompt_hash=key.prompt_hash,
                    input_content_hash=key.input_content_hash,
                    state=CACHE_STATE_PENDING,
                    owner_run_id=owner_run_id,
                    claimed_at=to_db_datetime(now),
                )
                session.add(row)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                else:
                    session.refresh(row)
                    return CacheClaimResult(claimed=True, entry=_to_cache_view(row))

            with Session(self.engine) as session:
                existing = session.exec(_cache_key_query(key)).one_or_none()
                if existing is None:
                    continue
                if existing.state == CACHE_STATE_PENDING and existing.claimed_at < to_db_datetime(
                    stale_before,
                ):
                    result = session.exec(
                        sa_update(AgentResultCacheEntry)
                        .where(
                            col(AgentResultCacheEntry.id) == existing.id,
                            col(AgentResultCacheEntry.state) == CACHE_STATE_PENDING,
                            col(AgentResultCacheEntry.owner_run_id) == existing.owner_run_id,
                        )
                        .values(owner_run_id=owner_run_id, claimed_at=to_db_datetime(now)),
                    )
                    if result.rowcount != 1:
                        session.rollback()
                        continue
                    session.commit()
                    taken = session.exec(_cache_key_query(key)).one()
                    return CacheClaimResult(claimed=True, entry=_to_cache_view(taken))
                return CacheClaimResult(claimed=False, entry=_to_cache_view(existing))

    def get_cache_entry(self, *, key: CacheKey) -> CachedResultView | None:
        """Current cache row for a key, if any."""

        with Session(self.engine) as session:
            row = session.exec(_cache_key_query(key)).one_or_none()
        return _to_cache_view(row) if row is not None else None

    def publish_cache_entry(  # noqa: PLR0913
        self,
        *,
        entry_id: int,
        owner_run_id: str,
        output: object,
        raw_output: str | None,
        confidence: float | None,
        tokens_used: int | None,
    ) -> bool:
        """Fill the owner's pending claim; an already published entry is never overwritten."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AgentResultCacheEntry)
                .where(
                    col(AgentResultCacheEntry.id) == entry_id,
                    col(AgentResultCacheEntry.state) == CACHE_STATE_PENDING,
                    col(AgentResultCacheEntry.owner_run_id) == owner_run_id,
                )
                .values(
                    state=CACHE_STATE_READY,
                    output_json=dump_json_column(output),
                    raw_output=raw_output,
                    confidence=confidence,
                    tokens_used=tokens_used,
                    published_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def release_cache_claim(self, *, entry_id: int, owner_run_id: str) -> bool:
        """Drop the owner's pending claim so another run may claim the key."""

        with Session(self.engine) as session:
            row = session.exec(
                select(AgentResultCacheEntry).where(
                    AgentResultCacheEntry.id == entry_id,
                    AgentResultCacheEntry.state == CACHE_STATE_PENDING,
                    AgentResultCacheEntry.owner_run_id == owner_run_id,
                ),
            ).one_or_none()
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True

    def record_cache_hit(self, *, entry_id: int) -> None:
        """Increment hit counters of a published entry."""

        with Session(self.engine) as session:
            session.exec(
                sa_update(AgentResultCacheEntry)
                .where(col(AgentResultCacheEntry.id) == entry_id)
                .values(
                    hit_count=AgentResultCacheEntry.hit_count + 1,
                    last_hit_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()


def _cache_key_query(key: CacheKey):
    return select(AgentResultCacheEntry).where(
        AgentResultCacheEntry.agent_type == key.agent_type,
        AgentResultCacheEntry.model == key.model,
        AgentResultCacheEntry.prompt_hash == key.prompt_hash,
        AgentResultCacheEntry.input_content_hash == key.input_content_hash,
    )


def _optional_datetime(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_run_view(row: AgentRun) -> AgentRunView:
    return AgentRunView(
        id=row.id,
        agent_type=row.agent_type,
        status=AgentRunStatus(row.status),
        outcome=AgentRunOutcome(row.outcome) if row.outcome is not None else None,
        no_change_code=NoChangeCode(row.no_change_code) if row.no_change_code else None,
        no_change_detail=row.no_change_detail,
        items_produced=row.items_produced,
        started_at=to_utc_aware_datetime(row.started_at),
        completed_at=_optional_datetime(row.completed_at),
        prompt_template_id=row.prompt_template_id,
        prompt_template_version=row.prompt_template_version,
        prompt_hash=row.prompt_hash,
        input_chars=row.input_chars,
        input_bytes=row.input_bytes,
        tokens_used=row.tokens_used,
        duration_ms=row.duration_ms,
        confidence=row.confidence,
        run_id=row.run_id,
        job_id=row.job_id,
        parent_job_id=row.parent_job_id,
        source_slug=row.source_slug,
        queue_name=row.queue_name,
        attempt=row.attempt,
        input_content_hash=row.input_content_hash,
        cache_hit=bool(row.cache_hit),
        input_payload=load_json_column(row.input_json),
        output=load_json_column(row.output_json),
        raw_output=row.raw_output,
        error=row.error,
    )


def _to_cache_view(row: AgentResultCacheEntry) -> CachedResultView:
    return CachedResultView(
        id=row.id or 0,
        agent_type=row.agent_type,
        model=row.model,
        prompt_hash=row.prompt_hash,
        input_content_hash=row.input_content_hash,
        state=row.state,
        owner_run_id=row.owner_run_id,
        output=load_json_column(row.output_json),
        raw_output=row.raw_output,
        confidence=row.confidence,
        tokens_used=row.tokens_used,
        hit_count=row.hit_count,
        claimed_at=to_utc_aware_datetime(row.claimed_at),
        published_at=_optional_datetime(row.published_at),
        last_hit_at=_optional_datetime(row.last_hit_at),
    )
