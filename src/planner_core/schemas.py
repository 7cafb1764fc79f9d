"""Pydantic schemas for request/response validation."""
import json
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .config import get_settings
from .models import (
    AgentRequestType,
    CollaboratorRole,
    DecisionStatus,
    DecisionUrgency,
    NodeStatus,
    NodeType,
    PlanStatus,
    PlanVisibility,
)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a timestamp to the naive UTC form stored in the database."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _metadata_field():
    # ORM rows expose the JSON column as ``metadata_``
    return Field(default_factory=dict, validation_alias=AliasChoices("metadata_", "metadata"))


def _check_metadata_size(value: Optional[dict]) -> Optional[dict]:
    if value is None:
        return value
    limit = get_settings().decision_metadata_max_bytes
    if len(json.dumps(value, default=str)) > limit:
        raise ValueError(f"Metadata must be less than {limit // 1024}KB")
    return value


# Plan Schemas

class PlanCreate(BaseModel):
    """Schema for creating a plan (its root node is created with it)."""

    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    status: PlanStatus = PlanStatus.DRAFT
    visibility: PlanVisibility = PlanVisibility.PRIVATE
    organization_id: Optional[UUID] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class PlanUpdate(BaseModel):
    """Schema for updating a plan. Only provided fields are applied."""

    title: Optional[str] = Field(None, min_length=1, max_length=500)
    description: Optional[str] = None
    status: Optional[PlanStatus] = None
    visibility: Optional[PlanVisibility] = None
    metadata: Optional[dict[str, Any]] = None


class PlanResponse(BaseModel):
    """Schema for plan responses."""

    id: UUID
    title: str
    description: Optional[str] = None
    owner_id: UUID
    status: PlanStatus
    visibility: PlanVisibility
    organization_id: Optional[UUID] = None
    metadata: dict[str, Any] = _metadata_field()
    created_at: datetime
    updated_at: datetime
    role: Optional[str] = Field(None, description="Caller's effective role on the plan")

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    @field_validator("metadata", mode="before")
    @classmethod
    def _none_metadata(cls, v):
        return v if v is not None else {}


class PlanListResponse(BaseModel):
    """Plans visible to the caller (owned and shared)."""

    items: list[PlanResponse]
    total: int


class PlanProgressResponse(BaseModel):
    """Completion statistics for a plan; percent_complete is rounded to an integer."""

    plan_id: UUID
    total: int
    not_started: int
    in_progress: int
    completed: int
    blocked: int
    percent_complete: int


# Collaborator Schemas

class CollaboratorCreate(BaseModel):
    """Add (or re-role) a collaborator."""

    user_id: UUID
    role: CollaboratorRole = CollaboratorRole.VIEWER


class CollaboratorResponse(BaseModel):
    id: UUID
    plan_id: UUID
    user_id: UUID
    role: CollaboratorRole
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Node Schemas

class NodeCreate(BaseModel):
    """
    Schema for creating a node.

    parent_id may name a node or the plan itself (meaning its root); omit it
    to create a top-level node under the root.
    """

    node_type: NodeType
    title: str = Field(..., min_length=1, max_length=500)
    parent_id: Optional[UUID] = None
    description: Optional[str] = None
    status: NodeStatus = NodeStatus.NOT_STARTED
    order_index: Optional[int] = Field(None, ge=0, description="Position among siblings; appended when omitted")
    due_date: Optional[datetime] = None
    context: Optional[str] = None
    agent_instructions: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("due_date")
    @classmethod
    def _normalize_due_date(cls, v):
        return to_naive_utc(v)


class NodeUpdate(BaseModel):
    """Schema for updating a node. Only provided fields are applied."""

    node_type: Optional[NodeType] = None
    title: Optional[str] = Field(None, min_length=1, max_length=500)
    description: Optional[str] = None
    status: Optional[NodeStatus] = None
    order_index: Optional[int] = Field(None, ge=0)
    due_date: Optional[datetime] = None
    context: Optional[str] = None
    agent_instructions: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None

    @field_validator("due_date")
    @classmethod
    def _normalize_due_date(cls, v):
        return to_naive_utc(v)


class NodeStatusUpdate(BaseModel):
    status: NodeStatus


class NodeMove(BaseModel):
    """Reparent a node; parent_id may name a node or the plan (its root)."""

    parent_id: UUID
    order_index: Optional[int] = None


class NodeReorder(BaseModel):
    """New position among siblings; out-of-range values are clamped."""

    order_index: int


class AgentRequestCreate(BaseModel):
    request_type: AgentRequestType
    message: Optional[str] = Field(None, max_length=2000)


class AgentAssign(BaseModel):
    agent_id: UUID


class NodeResponse(BaseModel):
    """Schema for node responses."""

    id: UUID
    plan_id: UUID
    parent_id: Optional[UUID] = None
    node_type: NodeType
    title: str
    description: Optional[str] = None
    status: NodeStatus
    order_index: int
    due_date: Optional[datetime] = None
    context: Optional[str] = None
    agent_instructions: Optional[str] = None
    metadata: dict[str, Any] = _metadata_field()

    agent_requested: Optional[AgentRequestType] = None
    agent_requested_at: Optional[datetime] = None
    agent_requested_by: Optional[UUID] = None
    agent_request_message: Optional[str] = None

    assigned_agent_id: Optional[UUID] = None
    assigned_agent_at: Optional[datetime] = None
    assigned_agent_by: Optional[UUID] = None

    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    @field_validator("metadata", mode="before")
    @classmethod
    def _none_metadata(cls, v):
        return v if v is not None else {}


class NodeTreeResponse(NodeResponse):
    """A node with its nested children."""

    children: list["NodeTreeResponse"] = Field(default_factory=list)

    @classmethod
    def from_tree(cls, item) -> "NodeTreeResponse":
        """Build from a nodes.TreeNode."""
        response = cls.model_validate(item.node)
        response.children = [cls.from_tree(child) for child in item.children]
        return response


# Decision Request Schemas

class DecisionOption(BaseModel):
    """One proposed option. Accepts ``option`` as an alias for ``label``."""

    label: str = Field(..., min_length=1, max_length=500, validation_alias=AliasChoices("label", "option"))
    pros: Optional[list[str]] = None
    cons: Optional[list[str]] = None
    recommendation: Optional[bool] = None

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("pros", "cons")
    @classmethod
    def _bounded_points(cls, v):
        if v is not None and any(len(point) > 500 for point in v):
            raise ValueError("Each pro/con must be at most 500 characters")
        return v


class DecisionRequestCreate(BaseModel):
    """Schema for creating a decision request."""

    node_id: Optional[UUID] = None
    title: str = Field(..., min_length=1, max_length=200)
    context: str = Field(..., min_length=1, max_length=5000)
    options: list[DecisionOption] = Field(default_factory=list)
    urgency: DecisionUrgency = DecisionUrgency.CAN_CONTINUE
    expires_at: Optional[datetime] = None
    requested_by_agent_name: Optional[str] = Field(None, max_length=100)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("expires_at")
    @classmethod
    def _normalize_expires_at(cls, v):
        return to_naive_utc(v)

    @field_validator("metadata")
    @classmethod
    def _metadata_size(cls, v):
        return _check_metadata_size(v)


class DecisionRequestUpdate(BaseModel):
    """Add context to a pending request. Only provided fields are applied."""

    title: Optional[str] = Field(None, min_length=1, max_length=200)
    context: Optional[str] = Field(None, min_length=1, max_length=5000)
    options: Optional[list[DecisionOption]] = None
    urgency: Optional[DecisionUrgency] = None
    expires_at: Optional[datetime] = None
    metadata: Optional[dict[str, Any]] = None

    @field_validator("expires_at")
    @classmethod
    def _normalize_expires_at(cls, v):
        return to_naive_utc(v)

    @field_validator("metadata")
    @classmethod
    def _metadata_size(cls, v):
        return _check_metadata_size(v)


class DecisionResolve(BaseModel):
    decision: str = Field(..., min_length=1, max_length=2000)
    rationale: Optional[str] = Field(None, max_length=5000)


class DecisionCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class DecisionRequestResponse(BaseModel):
    """
    Schema for decision request responses.

    status is the effective status: a pending request past its expiry is
    reported as expired.
    """

    id: UUID
    plan_id: UUID
    node_id: Optional[UUID] = None
    requested_by_user_id: UUID
    requested_by_agent_name: Optional[str] = None
    title: str
    context: str
    options: list[DecisionOption] = Field(default_factory=list)
    urgency: DecisionUrgency
    status: DecisionStatus = Field(validation_alias=AliasChoices("current_status", "status"))
    expires_at: Optional[datetime] = None
    decided_by_user_id: Optional[UUID] = None
    decision: Optional[str] = None
    rationale: Optional[str] = None
    decided_at: Optional[datetime] = None
    metadata: dict[str, Any] = _metadata_field()
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    @field_validator("options", "metadata", mode="before")
    @classmethod
    def _none_to_empty(cls, v, info):
        if v is None:
            return [] if info.field_name == "options" else {}
        return v


class DecisionListResponse(BaseModel):
    """Schema for a page of decision requests."""

    items: list[DecisionRequestResponse]
    total: int
    limit: int
    offset: int


class PendingCountResponse(BaseModel):
    plan_id: UUID
    pending: int
