"""SQLModel database models and tables."""

import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from sqlmodel import SQLModel, Field, Column, JSON
from sqlalchemy import DateTime, UniqueConstraint
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every backend.

    SQLite drops tzinfo on read, so naive values coming back are tagged as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class AutomationRecord(SQLModel, table=True):
    """Automation definition: trigger, node graph and counters."""

    __tablename__ = "automations"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    workspace_id: str = Field(index=True, max_length=64)
    name: str = Field(max_length=255)
    status: str = Field(default="draft", index=True, max_length=20)
    trigger: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    root_node_id: str = Field(max_length=64)
    nodes: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))

    # Counters are separate columns so increments stay atomic
    enrolled_count: int = Field(default=0)
    completed_count: int = Field(default=0)
    exited_count: int = Field(default=0)
    failed_count: int = Field(default=0)

    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(UTCDateTime(), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(UTCDateTime(), nullable=False)
    )
    deleted_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(UTCDateTime(), nullable=True, index=True)
    )


class ContactAutomationRecord(SQLModel, table=True):
    """One contact's run through an automation."""

    __tablename__ = "contact_automations"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    automation_id: str = Field(foreign_key="automations.id", index=True, max_length=36)
    workspace_id: str = Field(max_length=64)
    contact_email: str = Field(index=True, max_length=255)
    status: str = Field(default="active", index=True, max_length=20)
    current_node_id: Optional[str] = Field(default=None, max_length=64)
    scheduled_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(UTCDateTime(), nullable=True, index=True)
    )
    entered_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(UTCDateTime(), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(UTCDateTime(), nullable=False)
    )
    exited_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(UTCDateTime(), nullable=True)
    )
    exit_reason: Optional[str] = Field(default=None, max_length=50)
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    last_error: Optional[str] = Field(default=None, max_length=2000)
    version: int = Field(default=0)  # Optimistic lock, bumped on every write
    context: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))


class TriggerLogRecord(SQLModel, table=True):
    """Deduplication ledger for once-frequency enrollments."""

    __tablename__ = "automation_trigger_log"
    __table_args__ = (
        UniqueConstraint("automation_id", "contact_email", name="uq_trigger_log_automation_contact"),
    )

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    automation_id: str = Field(max_length=36)
    contact_email: str = Field(max_length=255)
    triggered_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(UTCDateTime(), nullable=False)
    )


class NodeExecutionRecord(SQLModel, table=True):
    """Append-only audit trail of node steps."""

    __tablename__ = "automation_node_executions"

    id: Optional[int] = Field(default=None, primary_key=True)  # Insertion order is history order
    contact_automation_id: str = Field(index=True, max_length=36)
    automation_id: str = Field(max_length=36)
    node_id: Optional[str] = Field(default=None, max_length=64)  # None when the run ran off the graph
    node_type: Optional[str] = Field(default=None, max_length=50)
    action: str = Field(max_length=20)
    output: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(UTCDateTime(), nullable=False)
    )


class TimelineEventRecord(SQLModel, table=True):
    """Contact activity timeline (trigger input and automation progress output)."""

    __tablename__ = "contact_timeline"

    id: Optional[int] = Field(default=None, primary_key=True)
    workspace_id: str = Field(index=True, max_length=64)
    contact_email: str = Field(index=True, max_length=255)
    operation: str = Field(default="insert", max_length=20)
    kind: str = Field(index=True, max_length=64)
    entity_type: Optional[str] = Field(default=None, max_length=50)
    entity_id: Optional[str] = Field(default=None, max_length=255)
    changes: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    occurred_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(UTCDateTime(), nullable=False)
    )


class ListRecord(SQLModel, table=True):
    """Contact list definitions."""

    __tablename__ = "lists"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=64)
    workspace_id: str = Field(index=True, max_length=64)
    name: str = Field(max_length=255)
    deleted_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(UTCDateTime(), nullable=True)
    )


class ContactListRecord(SQLModel, table=True):
    """Contact membership in a list."""

    __tablename__ = "contact_lists"
    __table_args__ = (
        UniqueConstraint("workspace_id", "email", "list_id", name="uq_contact_lists_membership"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    workspace_id: str = Field(max_length=64)
    email: str = Field(index=True, max_length=255)
    list_id: str = Field(index=True, max_length=64)
    status: str = Field(max_length=20)
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(UTCDateTime(), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(UTCDateTime(), nullable=False)
    )
    deleted_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(UTCDateTime(), nullable=True)
    )
