"""Initial task store schema: main tasks and their sub-tasks."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "main_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("priority", sa.String(), nullable=False, server_default="medium"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_main_tasks_status", "main_tasks", ["status"])
    op.create_index("idx_main_tasks_created", "main_tasks", ["created_at"])

    op.create_table(
        "sub_tasks",
        sa.Column("sub_task_id", sa.String(), nullable=False),
        sa.Column("main_task_id", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("child_session_id", sa.String(), nullable=True),
        sa.Column("model_id", sa.String(), nullable=True),
        sa.Column("task_description", sa.Text(), nullable=False),
        sa.Column("role_prompt", sa.Text(), nullable=False),
        sa.Column("steps_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("current_step_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("estimated_duration_ms", sa.Integer(), nullable=True),
        sa.Column("actual_duration_ms", sa.Integer(), nullable=True),
        sa.Column("error_log", sa.Text(), nullable=True),
        sa.Column("expected_outcome", sa.Text(), nullable=False, server_default=""),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["main_task_id"],
            ["main_tasks.task_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("sub_task_id"),
    )
    op.create_index("ix_sub_tasks_child_session_id", "sub_tasks", ["child_session_id"])
    op.create_index(
        "idx_sub_tasks_main_position",
        "sub_tasks",
        ["main_task_id", "position"],
    )
    op.create_index(
        "idx_sub_tasks_status_started",
        "sub_tasks",
        ["status", "started_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_sub_tasks_status_started", table_name="sub_tasks")
    op.drop_index("idx_sub_tasks_main_position", table_name="sub_tasks")
    op.drop_index("ix_sub_tasks_child_session_id", table_name="sub_tasks")
    op.drop_table("sub_tasks")
    op.drop_index("idx_main_tasks_created", table_name="main_tasks")
    op.drop_index("ix_main_tasks_status", table_name="main_tasks")
    op.drop_table("main_tasks")
