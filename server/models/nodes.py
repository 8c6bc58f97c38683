"""Pydantic models for automation nodes with discriminated unions.

Each node type carries its own config model. Raw node dicts are decoded once
when an automation is loaded, so executors work with typed configs and never
re-parse untyped maps.
"""

from datetime import timedelta
from typing import Literal, Union, Annotated, Optional, Dict, Any, List
from pydantic import BaseModel, BeforeValidator, Field, TypeAdapter, field_validator

from constants import LIST_STATUSES, LEGACY_LIST_STATUS_ALIASES, LIST_STATUS_ACTIVE


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


# Reference to another node in the same automation; empty means "complete here"
NodeRef = Annotated[Optional[str], BeforeValidator(_blank_to_none)]


DELAY_UNITS = {
    "seconds": timedelta(seconds=1),
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
    "weeks": timedelta(weeks=1),
}


# =============================================================================
# NODE CONFIGS
# =============================================================================

class BaseNodeConfig(BaseModel):
    """Base class for all node configs."""
    model_config = {"extra": "ignore"}


class TriggerConfig(BaseNodeConfig):
    pass


class EmailConfig(BaseNodeConfig):
    template_id: str = Field(min_length=1)


class DelayConfig(BaseNodeConfig):
    duration: int = Field(gt=0)
    unit: Literal["seconds", "minutes", "hours", "days", "weeks"] = "minutes"

    def to_timedelta(self) -> timedelta:
        return DELAY_UNITS[self.unit] * self.duration


class BranchPath(BaseModel):
    id: str = Field(min_length=1)
    name: Optional[str] = None
    conditions: Optional[Dict[str, Any]] = None
    next_node_id: NodeRef = None


class BranchConfig(BaseNodeConfig):
    paths: List[BranchPath] = Field(default_factory=list)
    default_path_id: NodeRef = None  # node taken when no path matches


class FilterConfig(BaseNodeConfig):
    conditions: Optional[Dict[str, Any]] = None
    continue_node_id: NodeRef = None
    exit_node_id: NodeRef = None


class ABTestVariant(BaseModel):
    id: str = Field(min_length=1)
    name: Optional[str] = None
    weight: int = Field(gt=0)
    next_node_id: NodeRef = None


class ABTestConfig(BaseNodeConfig):
    variants: List[ABTestVariant] = Field(min_length=1)

    @field_validator("variants")
    @classmethod
    def unique_variant_ids(cls, v):
        ids = [variant.id for variant in v]
        if len(ids) != len(set(ids)):
            raise ValueError("variant ids must be unique")
        return v


class ListStatusBranchConfig(BaseNodeConfig):
    list_id: str = Field(min_length=1)
    active_node_id: NodeRef = None
    non_active_node_id: NodeRef = None
    not_in_list_node_id: NodeRef = None


class AddToListConfig(BaseNodeConfig):
    list_id: str = Field(min_length=1)
    status: str = LIST_STATUS_ACTIVE

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        if v is None or v == "":
            return LIST_STATUS_ACTIVE
        v = LEGACY_LIST_STATUS_ALIASES.get(v, v)
        if v not in LIST_STATUSES:
            raise ValueError(f"unknown list status: {v}")
        return v


class RemoveFromListConfig(BaseNodeConfig):
    list_id: str = Field(min_length=1)


# =============================================================================
# NODES
# =============================================================================

class BaseNode(BaseModel):
    """Fields shared by every node."""
    model_config = {"extra": "ignore"}

    id: str = Field(min_length=1)
    automation_id: Optional[str] = None
    next_node_id: NodeRef = None
    position: Optional[Dict[str, Any]] = None

    def successors(self) -> List[str]:
        """Every node id this node may hand the run to."""
        return [self.next_node_id] if self.next_node_id else []


class TriggerNode(BaseNode):
    type: Literal["trigger"]
    config: TriggerConfig = Field(default_factory=TriggerConfig)


class EmailNode(BaseNode):
    type: Literal["email"]
    config: EmailConfig


class DelayNode(BaseNode):
    type: Literal["delay"]
    config: DelayConfig


class BranchNode(BaseNode):
    type: Literal["branch"]
    config: BranchConfig

    def successors(self) -> List[str]:
        refs = [p.next_node_id for p in self.config.paths] + [self.config.default_path_id]
        return [r for r in refs if r]


class FilterNode(BaseNode):
    type: Literal["filter"]
    config: FilterConfig

    def successors(self) -> List[str]:
        refs = [self.config.continue_node_id, self.config.exit_node_id]
        return [r for r in refs if r]


class ABTestNode(BaseNode):
    type: Literal["ab_test"]
    config: ABTestConfig

    def successors(self) -> List[str]:
        return [v.next_node_id for v in self.config.variants if v.next_node_id]


class ListStatusBranchNode(BaseNode):
    type: Literal["list_status_branch"]
    config: ListStatusBranchConfig

    def successors(self) -> List[str]:
        refs = [
            self.config.active_node_id,
            self.config.non_active_node_id,
            self.config.not_in_list_node_id,
        ]
        return [r for r in refs if r]


class AddToListNode(BaseNode):
    type: Literal["add_to_list"]
    config: AddToListConfig


class RemoveFromListNode(BaseNode):
    type: Literal["remove_from_list"]
    config: RemoveFromListConfig


AutomationNode = Annotated[
    Union[
        TriggerNode,
        EmailNode,
        DelayNode,
        BranchNode,
        FilterNode,
        ABTestNode,
        ListStatusBranchNode,
        AddToListNode,
        RemoveFromListNode,
    ],
    Field(discriminator="type"),
]

_node_adapter = TypeAdapter(AutomationNode)


def parse_node(data: Dict[str, Any]) -> AutomationNode:
    """Decode a raw node dict into its typed model.

    Raises:
        pydantic.ValidationError: unknown type or malformed config
    """
    return _node_adapter.validate_python(data)
