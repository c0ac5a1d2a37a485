"""SQLModel ORM tables for session storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel

DEFAULT_ACCOUNT_ID = "default_account"
DEFAULT_PROJECT_ID = "default_project"
DEFAULT_USER_ID = "default_user"


class SessionRecord(SQLModel, table=True):
    __tablename__ = "sessions"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_sessions_scope_status", "account_id", "project_id", "status"),
    )

    session_id: str = Field(primary_key=True)
    account_id: str = Field(index=True)
    project_id: str = Field(index=True)
    user_id: str = Field(index=True)
    component_id: str | None = Field(default=None, index=True)
    session_type: str = Field(index=True)
    status: str = Field(index=True)
    execution_mode: str
    state_json: str | None = Field(default=None, sa_column=Column(Text))
    parent_session_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("sessions.session_id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
    )
    external_conversation_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class InteractionRecord(SQLModel, table=True):
    __tablename__ = "interactions"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("session_id", "sequence", name="uq_interactions_session_sequence"),
        Index(
            "uq_interactions_session_open",
            "session_id",
            unique=True,
            sqlite_where=text("result_status IS NULL"),
        ),
    )

    interaction_id: str = Field(primary_key=True)
    session_id: str = Field(
        sa_column=Column(
            ForeignKey("sessions.session_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    sequence: int
    step: str = Field(index=True)
    invocation: str = Field(sa_column=Column(Text, nullable=False))
    command_metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    payload: str | None = Field(default=None, sa_column=Column(Text))
    command_created_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    result_status: str | None = Field(default=None, index=True)
    result_data_json: str | None = Field(default=None, sa_column=Column(Text))
    exit_code: int | None = None
    stdout: str | None = Field(default=None, sa_column=Column(Text))
    stderr: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    duration_ms: int | None = None
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SessionEventRecord(SQLModel, table=True):
    __tablename__ = "session_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_session_events_session_created", "session_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    session_id: str = Field(
        sa_column=Column(
            ForeignKey("sessions.session_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    interaction_id: str | None = Field(default=None, index=True)
    account_id: str = Field(index=True)
    event_type: str = Field(index=True)
    data_json: str | None = Field(default=None, sa_column=Column(Text))
    sent_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
