"""SQLModel ORM tables for agent run storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class AgentRun(SQLModel, table=True):
    __tablename__ = "agent_runs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_agent_runs_type_started", "agent_type", "started_at"),
        Index("idx_agent_runs_outcome_started", "outcome", "started_at"),
        Index("idx_agent_runs_status_started", "status", "started_at"),
    )

    id: str = Field(primary_key=True)
    agent_type: str = Field(index=True)
    status: str = Field(index=True)
    started_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))

    outcome: str | None = Field(default=None, index=True)
    no_change_code: str | None = Field(default=None, index=True)
    no_change_detail: str | None = Field(default=None, sa_column=Column(Text))
    items_produced: int = Field(default=0)

    prompt_template_id: str | None = None
    prompt_template_version: str | None = None
    prompt_hash: str | None = Field(default=None, index=True)

    input_chars: int | None = None
    input_bytes: int | None = None
    tokens_used: int | None = None
    duration_ms: int | None = None
    confidence: float | None = None

    run_id: str | None = Field(default=None, index=True)
    job_id: str | None = Field(default=None, index=True)
    parent_job_id: str | None = None
    source_slug: str | None = Field(default=None, index=True)
    queue_name: str | None = Field(default=None, index=True)

    attempt: int = Field(default=1)
    input_content_hash: str | None = Field(default=None, index=True)
    cache_hit: bool = Field(default=False)

    input_json: str | None = Field(default=None, sa_column=Column(Text))
    output_json: str | None = Field(default=None, sa_column=Column(Text))
    raw_output: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))


class AgentResultCacheEntry(SQLModel, table=True):
    __tablename__ = "agent_result_cache"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "agent_type",
            "model",
            "prompt_hash",
            "input_content_hash",
            name="uq_agent_result_cache_key",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    agent_type: str = Field(index=True)
    model: str
    prompt_hash: str
    input_content_hash: str = Field(index=True)
    state: str = Field(index=True)
    owner_run_id: str
    output_json: str | None = Field(default=None, sa_column=Column(Text))
    raw_output: str | None = Field(default=None, sa_column=Column(Text))
    confidence: float | None = None
    tokens_used: int | None = None
    hit_count: int = Field(default=0)
    claimed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    published_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_hit_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
