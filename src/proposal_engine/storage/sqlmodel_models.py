"""SQLModel ORM tables for workflow checkpoint storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class WorkflowThread(SQLModel, table=True):
    __tablename__ = "workflow_threads"  # type: ignore[bad-override]

    thread_id: str = Field(primary_key=True)
    component: str = Field(index=True)
    logical_id: str = Field(index=True)
    suffix: str | None = None
    latest_checkpoint_id: str | None = None
    checkpoint_count: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_activity_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), index=True, nullable=False),
    )


class WorkflowCheckpoint(SQLModel, table=True):
    __tablename__ = "workflow_checkpoints"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_workflow_checkpoints_thread_seq", "thread_id", "id"),
        Index("idx_workflow_checkpoints_thread_time", "thread_id", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    checkpoint_id: str = Field(unique=True, index=True)
    thread_id: str = Field(
        sa_column=Column(
            ForeignKey("workflow_threads.thread_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    parent_checkpoint_id: str | None = None
    values_json: str = Field(sa_column=Column(Text, nullable=False))
    metadata_json: str = Field(sa_column=Column(Text, nullable=False))
    next_json: str = Field(sa_column=Column(Text, nullable=False))
    tasks_json: str = Field(sa_column=Column(Text, nullable=False))
    config_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
