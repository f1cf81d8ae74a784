"""Create workflow thread registry and checkpoint tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "workflow_threads",
        sa.Column("thread_id", sa.String(), nullable=False),
        sa.Column("component", sa.String(), nullable=False),
        sa.Column("logical_id", sa.String(), nullable=False),
        sa.Column("suffix", sa.String(), nullable=True),
        sa.Column("latest_checkpoint_id", sa.String(), nullable=True),
        sa.Column("checkpoint_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("thread_id"),
    )
    op.create_index("ix_workflow_threads_component", "workflow_threads", ["component"])
    op.create_index("ix_workflow_threads_logical_id", "workflow_threads", ["logical_id"])
    op.create_index(
        "ix_workflow_threads_last_activity_at",
        "workflow_threads",
        ["last_activity_at"],
    )

    op.create_table(
        "workflow_checkpoints",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("checkpoint_id", sa.String(), nullable=False),
        sa.Column("thread_id", sa.String(), nullable=False),
        sa.Column("parent_checkpoint_id", sa.String(), nullable=True),
        sa.Column("values_json", sa.Text(), nullable=False),
        sa.Column("metadata_json", sa.Text(), nullable=False),
        sa.Column("next_json", sa.Text(), nullable=False),
        sa.Column("tasks_json", sa.Text(), nullable=False),
        sa.Column("config_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["thread_id"],
            ["workflow_threads.thread_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_workflow_checkpoints_checkpoint_id",
        "workflow_checkpoints",
        ["checkpoint_id"],
        unique=True,
    )
    op.create_index(
        "idx_workflow_checkpoints_thread_seq",
        "workflow_checkpoints",
        ["thread_id", "id"],
    )
    op.create_index(
        "idx_workflow_checkpoints_thread_time",
        "workflow_checkpoints",
        ["thread_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_workflow_checkpoints_thread_time", table_name="workflow_checkpoints")
    op.drop_index("idx_workflow_checkpoints_thread_seq", table_name="workflow_checkpoints")
    op.drop_index("ix_workflow_checkpoints_checkpoint_id", table_name="workflow_checkpoints")
    op.drop_table("workflow_checkpoints")
    op.drop_index("ix_workflow_threads_last_activity_at", table_name="workflow_threads")
    op.drop_index("ix_workflow_threads_logical_id", table_name="workflow_threads")
    op.drop_index("ix_workflow_threads_component", table_name="workflow_threads")
    op.drop_table("workflow_threads")
