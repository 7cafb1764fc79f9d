"""SQLAlchemy database models."""
from datetime import datetime, timezone
from uuid import uuid4
import enum

from sqlalchemy import (
    JSON,
    Column,
    String,
    Text,
    Integer,
    DateTime,
    ForeignKey,
    Enum,
    CheckConstraint,
    UniqueConstraint,
    Index,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship

# Base class for all models
Base = declarative_base()

# JSON column that becomes JSONB on PostgreSQL
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum(enum_cls, **kwargs):
    return Enum(enum_cls, values_callable=lambda x: [e.value for e in x], **kwargs)


class UserType(str, enum.Enum):
    """User type enum distinguishing humans from agent accounts."""

    HUMAN = "human"
    AGENT = "agent"


class MemberRole(str, enum.Enum):
    """Organization member role enum."""

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class PlanStatus(str, enum.Enum):
    """Plan status enum."""

    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class PlanVisibility(str, enum.Enum):
    """Plan visibility enum."""

    PRIVATE = "private"
    PUBLIC = "public"
    UNLISTED = "unlisted"


class CollaboratorRole(str, enum.Enum):
    """Per-plan collaborator role enum."""

    VIEWER = "viewer"
    EDITOR = "editor"
    ADMIN = "admin"


class NodeType(str, enum.Enum):
    """Plan node type enum."""

    ROOT = "root"
    PHASE = "phase"
    TASK = "task"
    MILESTONE = "milestone"


class NodeStatus(str, enum.Enum):
    """Plan node status enum."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


class AgentRequestType(str, enum.Enum):
    """Kind of help a human asks an agent for on a node."""

    START = "start"
    REVIEW = "review"
    HELP = "help"
    CONTINUE = "continue"


class DecisionUrgency(str, enum.Enum):
    """Decision request urgency enum."""

    BLOCKING = "blocking"
    CAN_CONTINUE = "can_continue"
    INFORMATIONAL = "informational"


class DecisionStatus(str, enum.Enum):
    """Decision request lifecycle status enum.

    pending is the only non-terminal state.
    """

    PENDING = "pending"
    DECIDED = "decided"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class User(Base):
    """
    User model.

    Users are authenticated elsewhere; this table only anchors ownership,
    collaboration and assignment references. Agents are users too.
    """

    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid4)
    email = Column(String(255), nullable=False, unique=True, index=True)
    name = Column(String(255))
    user_type = Column(_enum(UserType), nullable=False, default=UserType.HUMAN, index=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.user_type.value if self.user_type else '?'})>"


class Organization(Base):
    """Organization grouping users and, optionally, plans."""

    __tablename__ = "organizations"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    slug = Column(String(100), nullable=False, unique=True, index=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    members = relationship("OrganizationMember", back_populates="organization", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<Organization {self.slug}: {self.name}>"


class OrganizationMember(Base):
    """
    Junction table linking users to organizations with roles.

    Membership grants read access to the organization's plans.
    """

    __tablename__ = "organization_members"

    id = Column(Uuid, primary_key=True, default=uuid4)
    organization_id = Column(Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(_enum(MemberRole), nullable=False, default=MemberRole.MEMBER)
    joined_at = Column(DateTime, nullable=False, default=utcnow)

    organization = relationship("Organization", back_populates="members")

    __table_args__ = (
        UniqueConstraint("organization_id", "user_id", name="unique_org_user"),
    )

    def __repr__(self) -> str:
        return f"<OrganizationMember {self.role.value}>"


class Plan(Base):
    """
    Plan model: one owner, one root node, a tree of phases/tasks/milestones.

    Deleting a plan removes its nodes, collaborators and decision requests
    through ON DELETE CASCADE.
    """

    __tablename__ = "plans"

    id = Column(Uuid, primary_key=True, default=uuid4)
    title = Column(Text, nullable=False)
    description = Column(Text)
    owner_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(_enum(PlanStatus), nullable=False, default=PlanStatus.DRAFT, index=True)
    visibility = Column(_enum(PlanVisibility), nullable=False, default=PlanVisibility.PRIVATE, index=True)
    organization_id = Column(Uuid, ForeignKey("organizations.id", ondelete="SET NULL"), index=True)
    metadata_ = Column("metadata", JSONType, default=dict)

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Plan {self.id}: {self.title}>"


class Node(Base):
    """
    A node of a plan tree.

    order_index is the position among siblings sharing parent_id. Only the
    plan's root node has parent_id NULL.
    """

    __tablename__ = "plan_nodes"

    id = Column(Uuid, primary_key=True, default=uuid4)
    plan_id = Column(Uuid, ForeignKey("plans.id", ondelete="CASCADE"), nullable=False, index=True)
    parent_id = Column(Uuid, ForeignKey("plan_nodes.id", ondelete="CASCADE"), index=True)
    node_type = Column(_enum(NodeType), nullable=False, index=True)
    title = Column(Text, nullable=False)
    description = Column(Text)
    status = Column(_enum(NodeStatus), nullable=False, default=NodeStatus.NOT_STARTED, index=True)
    order_index = Column(Integer, nullable=False, default=0)
    due_date = Column(DateTime)
    context = Column(Text)
    agent_instructions = Column(Text)
    metadata_ = Column("metadata", JSONType, default=dict)

    # Agent request
    agent_requested = Column(_enum(AgentRequestType))
    agent_requested_at = Column(DateTime)
    agent_requested_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"))
    agent_request_message = Column(Text)

    # Assignment
    assigned_agent_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), index=True)
    assigned_agent_at = Column(DateTime)
    assigned_agent_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"))

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("order_index >= 0", name="non_negative_order_index"),
        CheckConstraint(
            "(node_type = 'root') = (parent_id IS NULL)",
            name="root_has_no_parent",
        ),
        UniqueConstraint(
            "plan_id", "parent_id", "title", "node_type",
            name="plan_nodes_unique_title_per_parent",
        ),
        Index("idx_plan_nodes_plan_parent_order", "plan_id", "parent_id", "order_index"),
    )

    @property
    def is_root(self) -> bool:
        return self.node_type == NodeType.ROOT

    def __repr__(self) -> str:
        return f"<Node {self.node_type.value if self.node_type else '?'}: {self.title}>"


class Collaborator(Base):
    """Explicit per-plan role for a user other than the owner."""

    __tablename__ = "plan_collaborators"

    id = Column(Uuid, primary_key=True, default=uuid4)
    plan_id = Column(Uuid, ForeignKey("plans.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(_enum(CollaboratorRole), nullable=False, default=CollaboratorRole.VIEWER)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("plan_id", "user_id", name="unique_plan_collaborator"),
    )

    def __repr__(self) -> str:
        return f"<Collaborator {self.role.value}>"


class DecisionRequest(Base):
    """
    A structured request for a human decision, scoped to a plan.

    Status moves from pending to exactly one terminal state. A pending request
    whose expires_at has passed reads as expired even before a sweep stores it.
    """

    __tablename__ = "decision_requests"

    id = Column(Uuid, primary_key=True, default=uuid4)
    plan_id = Column(Uuid, ForeignKey("plans.id", ondelete="CASCADE"), nullable=False, index=True)
    node_id = Column(Uuid, ForeignKey("plan_nodes.id", ondelete="SET NULL"), index=True)

    requested_by_user_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    requested_by_agent_name = Column(String(100))

    title = Column(String(200), nullable=False)
    context = Column(Text, nullable=False)
    options = Column(JSONType, default=list)
    urgency = Column(_enum(DecisionUrgency), nullable=False, default=DecisionUrgency.CAN_CONTINUE, index=True)
    status = Column(_enum(DecisionStatus), nullable=False, default=DecisionStatus.PENDING, index=True)
    expires_at = Column(DateTime)

    # Resolution
    decided_by_user_id = Column(Uuid, ForeignKey("users.id"))
    decision = Column(Text)
    rationale = Column(Text)
    decided_at = Column(DateTime)

    metadata_ = Column("metadata", JSONType, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def is_expired(self, now: datetime | None = None) -> bool:
        """True when still pending in storage but past its expiry."""
        if self.status != DecisionStatus.PENDING or self.expires_at is None:
            return False
        return self.expires_at < (now or utcnow())

    def effective_status(self, now: datetime | None = None) -> DecisionStatus:
        """Status as readers should see it, with expiry applied lazily."""
        if self.is_expired(now):
            return DecisionStatus.EXPIRED
        return self.status

    @property
    def current_status(self) -> DecisionStatus:
        return self.effective_status()

    def __repr__(self) -> str:
        return f"<DecisionRequest {self.status.value if self.status else '?'}: {self.title}>"
