"""Content-hash result cache with atomic claim rows."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0002"
down_revision = "20261018_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "agent_result_cache",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("agent_type", sa.String(), nullable=False),
        sa.Column("model", sa.String(), nullable=False),
        sa.Column("prompt_hash", sa.String(), nullable=False),
        sa.Column("input_content_hash", sa.String(), nullable=False),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("owner_run_id", sa.String(), nullable=False),
        sa.Column("output_json", sa.Text(), nullable=True),
        sa.Column("raw_output", sa.Text(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("tokens_used", sa.Integer(), nullable=True),
        sa.Column("hit_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_hit_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "agent_type",
            "model",
            "prompt_hash",
            "input_content_hash",
            name="uq_agent_result_cache_key",
        ),
    )
    op.create_index(
        "ix_agent_result_cache_agent_type",
        "agent_result_cache",
        ["agent_type"],
        unique=False,
    )
    op.create_index(
        "ix_agent_result_cache_input_content_hash",
        "agent_result_cache",
        ["input_content_hash"],
        unique=False,
    )
    op.create_index("ix_agent_result_cache_state", "agent_result_cache", ["state"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_agent_result_cache_state", table_name="agent_result_cache")
    op.drop_index("ix_agent_result_cache_input_content_hash", table_name="agent_result_cache")
    op.drop_index("ix_agent_result_cache_agent_type", table_name="agent_result_cache")
    op.drop_table("agent_result_cache")
