"""SQLModel table definitions for the task store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class MainTaskRow(SQLModel, table=True):
    __tablename__ = "main_tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_main_tasks_created", "created_at"),)

    task_id: str = Field(primary_key=True)
    description: str = Field(sa_column=Column(Text, nullable=False))
    priority: str = Field(default="medium")
    status: str = Field(index=True)
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SubTaskRow(SQLModel, table=True):
    __tablename__ = "sub_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_sub_tasks_main_position", "main_task_id", "position"),
        Index("idx_sub_tasks_status_started", "status", "started_at"),
    )

    sub_task_id: str = Field(primary_key=True)
    main_task_id: str = Field(
        sa_column=Column(
            ForeignKey("main_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    position: int = Field(default=0)
    child_session_id: str | None = Field(default=None, index=True)
    model_id: str | None = None
    task_description: str = Field(sa_column=Column(Text, nullable=False))
    role_prompt: str = Field(sa_column=Column(Text, nullable=False))
    steps_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    current_step_index: int = Field(default=0)
    status: str
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    ended_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    estimated_duration_ms: int | None = None
    actual_duration_ms: int | None = None
    error_log: str | None = Field(default=None, sa_column=Column(Text))
    expected_outcome: str = Field(default="", sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
