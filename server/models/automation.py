"""Pydantic domain models for automations, runs and timeline events."""

from datetime import datetime
from typing import Literal, Optional, Dict, Any, List
from pydantic import BaseModel, Field, field_validator, model_validator

from constants import (
    TRIGGER_EVENT_KINDS,
    EVENT_CUSTOM,
    FREQUENCY_EVERY_TIME,
)
from models.database import utcnow
from models.nodes import AutomationNode


class Trigger(BaseModel):
    """What enrolls a contact into an automation."""
    event_kind: str
    list_id: Optional[str] = None
    segment_id: Optional[str] = None
    custom_event_name: Optional[str] = None
    frequency: Literal["once", "every_time"] = FREQUENCY_EVERY_TIME

    @field_validator("event_kind")
    @classmethod
    def known_kind(cls, v):
        if v not in TRIGGER_EVENT_KINDS:
            raise ValueError(f"unsupported trigger event kind: {v}")
        return v

    @model_validator(mode="after")
    def custom_event_needs_name(self):
        if self.event_kind == EVENT_CUSTOM and not self.custom_event_name:
            raise ValueError("custom_event triggers require custom_event_name")
        return self


class AutomationStats(BaseModel):
    enrolled: int = 0
    completed: int = 0
    exited: int = 0
    failed: int = 0


class AutomationDefinition(BaseModel):
    """Editable part of an automation, as submitted by clients.

    Nodes may be given as a list or as a map keyed by node id.
    """
    name: str = Field(min_length=1, max_length=255)
    trigger: Trigger
    root_node_id: str = Field(min_length=1)
    nodes: Dict[str, AutomationNode]

    @field_validator("nodes", mode="before")
    @classmethod
    def index_nodes(cls, v):
        if isinstance(v, list):
            indexed = {}
            for raw in v:
                node_id = raw.get("id") if isinstance(raw, dict) else getattr(raw, "id", None)
                if node_id in indexed:
                    raise ValueError(f"duplicate node id: {node_id}")
                indexed[node_id] = raw
            return indexed
        return v

    @model_validator(mode="after")
    def keys_match_ids(self):
        for key, node in self.nodes.items():
            if key != node.id:
                raise ValueError(f"node key {key!r} does not match node id {node.id!r}")
        return self


class Automation(AutomationDefinition):
    id: str
    workspace_id: str
    status: Literal["draft", "live", "paused"] = "draft"
    stats: AutomationStats = Field(default_factory=AutomationStats)
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class ContactAutomation(BaseModel):
    """One contact's run through an automation."""
    model_config = {"from_attributes": True}

    id: str
    automation_id: str
    workspace_id: str
    contact_email: str
    status: Literal["active", "completed", "exited", "failed"]
    current_node_id: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    entered_at: datetime
    updated_at: datetime
    exited_at: Optional[datetime] = None
    exit_reason: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    last_error: Optional[str] = None
    version: int = 0
    context: Dict[str, Any] = Field(default_factory=dict)


class NodeExecution(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    contact_automation_id: str
    automation_id: str
    node_id: Optional[str] = None
    node_type: Optional[str] = None
    action: str
    output: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class ActivityEvent(BaseModel):
    """Contact activity that may enroll the contact into automations."""
    workspace_id: str = Field(min_length=1)
    contact_email: str = Field(min_length=3)
    kind: str = Field(min_length=1)
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    changes: Dict[str, Any] = Field(default_factory=dict)
    contact: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)

    def snapshot(self) -> Dict[str, Any]:
        """Flatten into the immutable context stored on each run.

        Changes in timeline form ({"field": {"old": .., "new": ..}}) contribute
        their new value. Reserved keys win over profile and change keys.
        """
        changes = {
            key: value["new"] if isinstance(value, dict) and "new" in value else value
            for key, value in self.changes.items()
        }
        return {
            **self.contact,
            **changes,
            "contact_email": self.contact_email,
            "event_kind": self.kind,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "occurred_at": self.occurred_at.isoformat(),
        }


class TimelineEvent(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    workspace_id: str
    contact_email: str
    operation: str
    kind: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    changes: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime


class AutomationSummary(BaseModel):
    """Compact listing row."""
    id: str
    name: str
    status: str
    trigger: Trigger
    stats: AutomationStats
    updated_at: datetime


class RunHistory(BaseModel):
    run: ContactAutomation
    executions: List[NodeExecution] = Field(default_factory=list)


class IngestResult(BaseModel):
    """Timeline row written for an activity event and the runs it started."""
    event: TimelineEvent
    runs: List[ContactAutomation] = Field(default_factory=list)
