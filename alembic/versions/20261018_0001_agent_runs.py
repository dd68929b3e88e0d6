"""Agent run ledger table with outcome taxonomy and correlation fields."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None

_SINGLE_COLUMN_INDEXES: tuple[str, ...] = (
    "agent_type",
    "status",
    "started_at",
    "outcome",
    "no_change_code",
    "prompt_hash",
    "run_id",
    "job_id",
    "source_slug",
    "queue_name",
    "input_content_hash",
)


def upgrade() -> None:
    op.create_table(
        "agent_runs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("agent_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("outcome", sa.String(), nullable=True),
        sa.Column("no_change_code", sa.String(), nullable=True),
        sa.Column("no_change_detail", sa.Text(), nullable=True),
        sa.Column("items_produced", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("prompt_template_id", sa.String(), nullable=True),
        sa.Column("prompt_template_version", sa.String(), nullable=True),
        sa.Column("prompt_hash", sa.String(), nullable=True),
        sa.Column("input_chars", sa.Integer(), nullable=True),
        sa.Column("input_bytes", sa.Integer(), nullable=True),
        sa.Column("tokens_used", sa.Integer(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("run_id", sa.String(), nullable=True),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("parent_job_id", sa.String(), nullable=True),
        sa.Column("source_slug", sa.String(), nullable=True),
        sa.Column("queue_name", sa.String(), nullable=True),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("input_content_hash", sa.String(), nullable=True),
        sa.Column("cache_hit", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("input_json", sa.Text(), nullable=True),
        sa.Column("output_json", sa.Text(), nullable=True),
        sa.Column("raw_output", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("attempt >= 1", name="ck_agent_runs_attempt_positive"),
        sa.CheckConstraint("items_produced >= 0", name="ck_agent_runs_items_non_negative"),
        sa.CheckConstraint(
            "completed_at IS NULL OR completed_at >= started_at",
            name="ck_agent_runs_completed_after_start",
        ),
    )
    for column in _SINGLE_COLUMN_INDEXES:
        op.create_index(f"ix_agent_runs_{column}", "agent_runs", [column], unique=False)
    op.create_index(
        "idx_agent_runs_type_started",
        "agent_runs",
        ["agent_type", "started_at"],
        unique=False,
    )
    op.create_index(
        "idx_agent_runs_outcome_started",
        "agent_runs",
        ["outcome", "started_at"],
        unique=False,
    )
    op.create_index(
        "idx_agent_runs_status_started",
        "agent_runs",
        ["status", "started_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_agent_runs_status_started", table_name="agent_runs")
    op.drop_index("idx_agent_runs_outcome_started", table_name="agent_runs")
    op.drop_index("idx_agent_runs_type_started", table_name="agent_runs")
    for column in reversed(_SINGLE_COLUMN_INDEXES):
        op.drop_index(f"ix_agent_runs_{column}", table_name="agent_runs")
    op.drop_table("agent_runs")
