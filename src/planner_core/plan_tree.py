"""Plan tree service: plan lifecycle and access-checked node operations.

Every mutating operation resolves the caller's access before touching data, so
a forbidden caller never causes a partial write. Structural rules enforced here
on top of the node repository:

- a plan and its single root node are created in one transaction
- the root node is never created outside plan bootstrap, never retyped,
  moved or deleted directly
- deleting a plan removes its whole tree first, then the plan row

Events are emitted after the mutation has committed.
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union
from uuid import UUID

from sqlalchemy import and_, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import models, nodes
from .access import (
    MANAGE_ROLES,
    AccessResult,
    Role,
    require_plan_access,
    require_plan_owner,
)
from .config import get_settings
from .directory import get_organization, get_user_or_404
from .errors import (
    ConflictError,
    ForbiddenError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
)
from .events import EventType, emit

logger = logging.getLogger("planner-core.plan_tree")

# Node columns a caller may change through update_node
UPDATABLE_NODE_FIELDS = frozenset({
    "node_type",
    "title",
    "description",
    "status",
    "order_index",
    "due_date",
    "context",
    "agent_instructions",
    "metadata",
})

UPDATABLE_PLAN_FIELDS = frozenset({"title", "description", "status", "visibility", "metadata"})


# Parent resolution

@dataclass(frozen=True)
class ResolvedAsNode:
    """The reference named an existing node."""

    node: models.Node


@dataclass(frozen=True)
class ResolvedAsPlanRoot:
    """The reference named a plan; its root node is the effective parent."""

    plan: models.Plan
    root: models.Node


@dataclass(frozen=True)
class ParentNotFound:
    """The reference named neither a node nor a plan."""

    ref_id: UUID


ParentResolution = Union[ResolvedAsNode, ResolvedAsPlanRoot, ParentNotFound]


def resolve_parent(db: Session, ref_id: UUID) -> ParentResolution:
    """
    Resolve a parent reference that may name a node or a plan.

    Node lookup is tried first; when no node matches, the ID is looked up as
    a plan and that plan's root becomes the effective parent.

    Raises:
        InvalidStateError: If the ID names a plan that has no root node
    """
    node = nodes.get_node(db, ref_id)
    if node is not None:
        return ResolvedAsNode(node=node)

    plan = db.query(models.Plan).filter(models.Plan.id == ref_id).first()
    if plan is not None:
        root = nodes.get_root(db, plan.id)
        if root is None:
            logger.error(f"Plan {plan.id} has no root node")
            raise InvalidStateError(f"Plan {plan.id} structure is invalid: no root node")
        return ResolvedAsPlanRoot(plan=plan, root=root)

    return ParentNotFound(ref_id=ref_id)


def _parent_in_plan(db: Session, plan_id: UUID, ref_id: Optional[UUID]) -> models.Node:
    """Resolve ref_id (or the plan root when None) to a parent node inside plan_id."""
    if ref_id is None:
        ref_id = plan_id

    resolution = resolve_parent(db, ref_id)
    if isinstance(resolution, ResolvedAsNode):
        parent = resolution.node
    elif isinstance(resolution, ResolvedAsPlanRoot):
        parent = resolution.root
    else:
        raise NotFoundError(f"Parent {ref_id} not found", resource="node")

    if parent.plan_id != plan_id:
        raise NotFoundError(f"Parent {ref_id} not found in plan {plan_id}", resource="node")
    return parent


def _node_in_plan(db: Session, plan_id: UUID, node_id: UUID) -> models.Node:
    node = nodes.get_node(db, node_id)
    if not node or node.plan_id != plan_id:
        raise NotFoundError(f"Node {node_id} not found in plan {plan_id}", resource="node")
    return node


# Plans

def create_plan(
    db: Session,
    owner_id: UUID,
    title: str,
    description: Optional[str] = None,
    status: models.PlanStatus = models.PlanStatus.DRAFT,
    visibility: models.PlanVisibility = models.PlanVisibility.PRIVATE,
    organization_id: Optional[UUID] = None,
    metadata: Optional[dict] = None,
) -> models.Plan:
    """
    Create a plan together with its root node.

    The root takes the plan's title. Both rows are committed in one
    transaction; on failure neither exists.

    Raises:
        NotFoundError: If the owner or organization does not exist
    """
    get_user_or_404(db, owner_id)
    if organization_id is not None and not get_organization(db, organization_id):
        raise NotFoundError(f"Organization {organization_id} not found", resource="organization")

    db_plan = models.Plan(
        title=title,
        description=description,
        owner_id=owner_id,
        status=status,
        visibility=visibility,
        organization_id=organization_id,
        metadata_=metadata or {},
    )
    try:
        db.add(db_plan)
        db.flush()
        root = nodes.create_node(
            db,
            plan_id=db_plan.id,
            parent_id=None,
            node_type=models.NodeType.ROOT,
            title=title,
            description=description,
            bootstrap=True,
            commit=False,
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    db.refresh(db_plan)

    logger.info(f"Created plan {db_plan.id} ({title!r}) for user {owner_id}")
    emit(db_plan.id, EventType.PLAN_CREATED, node_ids=[root.id], actor_id=owner_id, title=title)
    return db_plan


def get_plan(db: Session, plan_id: UUID, user_id: Optional[UUID]) -> tuple[models.Plan, AccessResult]:
    """Get a plan the caller can read, with the caller's resolved access."""
    return require_plan_access(db, plan_id, user_id)


def update_plan(
    db: Session,
    plan_id: UUID,
    user_id: Optional[UUID],
    updates: dict[str, Any],
) -> models.Plan:
    """
    Update plan fields.

    Requires an edit role; changing visibility requires ownership.

    Raises:
        InvalidInputError: Unknown field in updates
        ForbiddenError: Insufficient role
    """
    unknown = set(updates) - UPDATABLE_PLAN_FIELDS
    if unknown:
        raise InvalidInputError(f"Cannot update plan fields: {', '.join(sorted(unknown))}")

    if "visibility" in updates:
        plan = require_plan_owner(db, plan_id, user_id)
    else:
        plan, _ = require_plan_access(db, plan_id, user_id, edit=True)

    for key, value in updates.items():
        if value is None and key in ("title", "status", "visibility"):
            continue
        setattr(plan, "metadata_" if key == "metadata" else key, value)

    db.commit()
    db.refresh(plan)

    logger.info(f"Updated plan {plan_id}: {sorted(updates)}")
    emit(plan_id, EventType.PLAN_UPDATED, actor_id=user_id, fields=sorted(updates))
    return plan


def delete_plan(db: Session, plan_id: UUID, user_id: Optional[UUID]) -> list[UUID]:
    """
    Delete a plan and everything in it. Owner only.

    The root's subtree is removed first (idempotently, so a retry after a
    partial failure succeeds), then the plan row, whose cascades remove
    collaborators and decision requests.

    Returns:
        IDs of the removed nodes
    """
    plan = require_plan_owner(db, plan_id, user_id)

    removed: list[UUID] = []
    try:
        root = nodes.get_root(db, plan_id)
        if root is not None:
            removed = nodes.delete_subtree(db, root.id, missing_ok=True, commit=False)
        db.delete(plan)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    logger.info(f"Deleted plan {plan_id} ({len(removed)} nodes)")
    emit(plan_id, EventType.PLAN_DELETED, node_ids=removed, actor_id=user_id)
    return removed


def list_plans_for_user(db: Session, user_id: UUID) -> list[tuple[models.Plan, Role]]:
    """
    List plans the user owns or collaborates on, newest activity first.

    Organization and public plans are not included; they are reachable by ID.
    """
    owned = db.query(models.Plan).filter(models.Plan.owner_id == user_id).all()
    shared = (
        db.query(models.Plan, models.Collaborator.role)
        .join(models.Collaborator, models.Collaborator.plan_id == models.Plan.id)
        .filter(
            and_(
                models.Collaborator.user_id == user_id,
                models.Plan.owner_id != user_id,
            )
        )
        .all()
    )

    results: dict[UUID, tuple[models.Plan, Role]] = {}
    for plan in owned:
        results[plan.id] = (plan, Role.OWNER)
    for plan, role in shared:
        results.setdefault(plan.id, (plan, Role(role.value)))

    return sorted(results.values(), key=lambda item: item[0].updated_at, reverse=True)


def list_public_plans(
    db: Session,
    limit: Optional[int] = None,
    offset: int = 0,
) -> tuple[list[models.Plan], int]:
    """
    List public plans for discovery, most recently updated first.

    Unlisted plans stay reachable by ID only and are not included.

    Returns:
        Tuple of (page of plans, total public plans)
    """
    settings = get_settings()
    if limit is None:
        limit = settings.default_page_size
    limit = max(1, min(limit, settings.max_page_size))
    offset = max(0, offset)

    query = db.query(models.Plan).filter(models.Plan.visibility == models.PlanVisibility.PUBLIC)
    total = query.count()
    items = (
        query.order_by(models.Plan.updated_at.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return items, total


def get_plan_progress(db: Session, plan_id: UUID, user_id: Optional[UUID]) -> dict[str, Any]:
    """Count nodes by status and compute the rounded completion percentage."""
    require_plan_access(db, plan_id, user_id)

    rows = (
        db.query(models.Node.status, func.count(models.Node.id))
        .filter(models.Node.plan_id == plan_id)
        .group_by(models.Node.status)
        .all()
    )
    counts = {status.value: 0 for status in models.NodeStatus}
    for status, count in rows:
        counts[status.value] = count

    total = sum(counts.values())
    percent = round(counts[models.NodeStatus.COMPLETED.value] / total * 100) if total else 0
    return {"plan_id": plan_id, "total": total, "percent_complete": percent, **counts}


# Collaborators

def add_collaborator(
    db: Session,
    plan_id: UUID,
    user_id: Optional[UUID],
    target_user_id: UUID,
    role: models.CollaboratorRole = models.CollaboratorRole.VIEWER,
) -> models.Collaborator:
    """
    Grant a user a role on a plan; re-adding an existing collaborator changes the role.

    Requires owner or admin.

    Raises:
        NotFoundError: Plan or target user missing
        ForbiddenError: Caller is not owner/admin
        InvalidInputError: Target is the plan owner
    """
    plan, _ = require_plan_access(db, plan_id, user_id, roles=MANAGE_ROLES)
    get_user_or_404(db, target_user_id)
    if plan.owner_id == target_user_id:
        raise InvalidInputError("The plan owner cannot be added as a collaborator")

    collaborator = (
        db.query(models.Collaborator)
        .filter(
            and_(
                models.Collaborator.plan_id == plan_id,
                models.Collaborator.user_id == target_user_id,
            )
        )
        .first()
    )
    if collaborator:
        collaborator.role = role
    else:
        collaborator = models.Collaborator(plan_id=plan_id, user_id=target_user_id, role=role)
        db.add(collaborator)

    db.commit()
    db.refresh(collaborator)

    logger.info(f"User {target_user_id} is {role.value} on plan {plan_id}")
    emit(plan_id, EventType.COLLABORATOR_ADDED, actor_id=user_id, user_id=str(target_user_id), role=role.value)
    return collaborator


def remove_collaborator(
    db: Session,
    plan_id: UUID,
    user_id: Optional[UUID],
    target_user_id: UUID,
) -> None:
    """Revoke a collaborator's role. Requires owner or admin."""
    require_plan_access(db, plan_id, user_id, roles=MANAGE_ROLES)

    collaborator = (
        db.query(models.Collaborator)
        .filter(
            and_(
                models.Collaborator.plan_id == plan_id,
                models.Collaborator.user_id == target_user_id,
            )
        )
        .first()
    )
    if not collaborator:
        raise NotFoundError(f"User {target_user_id} is not a collaborator on plan {plan_id}", resource="collaborator")

    db.delete(collaborator)
    db.commit()

    logger.info(f"Removed collaborator {target_user_id} from plan {plan_id}")
    emit(plan_id, EventType.COLLABORATOR_REMOVED, actor_id=user_id, user_id=str(target_user_id))


def list_collaborators(db: Session, plan_id: UUID, user_id: Optional[UUID]) -> list[models.Collaborator]:
    require_plan_access(db, plan_id, user_id)
    return (
        db.query(models.Collaborator)
        .filter(models.Collaborator.plan_id == plan_id)
        .order_by(models.Collaborator.created_at)
        .all()
    )


# Nodes: reads

def get_plan_tree(db: Session, plan_id: UUID, user_id: Optional[UUID]) -> list[nodes.TreeNode]:
    """Materialized node tree of a plan (normally a single root)."""
    require_plan_access(db, plan_id, user_id)
    return nodes.get_tree(db, plan_id)


def get_node(db: Session, plan_id: UUID, node_id: UUID, user_id: Optional[UUID]) -> models.Node:
    """Get a node, checking the caller can read its plan and that it belongs there."""
    require_plan_access(db, plan_id, user_id)
    return _node_in_plan(db, plan_id, node_id)


def get_node_children(db: Session, plan_id: UUID, node_id: UUID, user_id: Optional[UUID]) -> list[models.Node]:
    require_plan_access(db, plan_id, user_id)
    _node_in_plan(db, plan_id, node_id)
    return nodes.get_children(db, node_id)


def get_node_ancestry(db: Session, plan_id: UUID, node_id: UUID, user_id: Optional[UUID]) -> list[models.Node]:
    """Path from the plan root down to the node, inclusive."""
    require_plan_access(db, plan_id, user_id)
    _node_in_plan(db, plan_id, node_id)
    return nodes.get_ancestry(db, node_id)


# Nodes: mutations

def create_node(
    db: Session,
    plan_id: UUID,
    user_id: Optional[UUID],
    node_type: models.NodeType,
    title: str,
    parent_id: Optional[UUID] = None,
    order_index: Optional[int] = None,
    description: Optional[str] = None,
    status: models.NodeStatus = models.NodeStatus.NOT_STARTED,
    due_date=None,
    context: Optional[str] = None,
    agent_instructions: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> models.Node:
    """
    Create a node in a plan.

    parent_id may name a node of this plan, or the plan itself (its root).
    When omitted the node goes directly under the root. The node is appended
    after its siblings; a requested order_index then moves it into place.

    Raises:
        NotFoundError: Plan or parent missing, or parent in another plan
        ForbiddenError: Caller lacks edit access
        InvalidInputError: node_type is root
        ConflictError: A sibling already has the same title and type
    """
    require_plan_access(db, plan_id, user_id, edit=True)
    if node_type == models.NodeType.ROOT:
        raise InvalidInputError("Cannot create additional root nodes")

    parent = _parent_in_plan(db, plan_id, parent_id)

    try:
        node = nodes.create_node(
            db,
            plan_id=plan_id,
            parent_id=parent.id,
            node_type=node_type,
            title=title,
            description=description,
            status=status,
            due_date=due_date,
            context=context,
            agent_instructions=agent_instructions,
            metadata=metadata,
            commit=False,
        )
        if order_index is not None:
            nodes.reorder(db, node.id, order_index, commit=False)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError(f"A {node_type.value} titled {title!r} already exists under {parent.id}")
    except SQLAlchemyError:
        db.rollback()
        raise
    db.refresh(node)

    logger.info(f"Created {node_type.value} node {node.id} under {parent.id} in plan {plan_id}")
    emit(
        plan_id,
        EventType.NODE_CREATED,
        node_ids=[node.id],
        actor_id=user_id,
        parent_id=str(parent.id),
        node_type=node_type.value,
        title=title,
    )
    return node


def update_node(
    db: Session,
    plan_id: UUID,
    node_id: UUID,
    user_id: Optional[UUID],
    updates: dict[str, Any],
) -> models.Node:
    """
    Update node fields.

    node_type cannot change on the root, and no node can become a root.
    An order_index update repositions the node among its siblings. A status
    change additionally emits node.status_changed.

    Raises:
        InvalidInputError: Unknown field, or retyping a node to root
        InvalidStateError: Retyping the root node
    """
    unknown = set(updates) - UPDATABLE_NODE_FIELDS
    if unknown:
        raise InvalidInputError(f"Cannot update node fields: {', '.join(sorted(unknown))}")

    require_plan_access(db, plan_id, user_id, edit=True)
    node = _node_in_plan(db, plan_id, node_id)

    updates = dict(updates)
    new_type = updates.get("node_type")
    if new_type is not None and new_type != node.node_type:
        if node.is_root:
            raise InvalidStateError("Cannot change the type of the root node")
        if new_type == models.NodeType.ROOT:
            raise InvalidInputError("Cannot convert a node to root")

    for key in ("node_type", "title", "status"):
        if key in updates and updates[key] is None:
            del updates[key]

    order_index = updates.pop("order_index", None)
    if "metadata" in updates:
        updates["metadata_"] = updates.pop("metadata") or {}

    old_status = node.status
    try:
        nodes.update_fields(db, node, updates, commit=False)
        if order_index is not None:
            nodes.reorder(db, node_id, order_index, commit=False)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError(f"A sibling of node {node_id} already has the same title and type")
    except SQLAlchemyError:
        db.rollback()
        raise
    db.refresh(node)

    changed = sorted(updates) + (["order_index"] if order_index is not None else [])
    logger.info(f"Updated node {node_id} in plan {plan_id}: {changed}")
    emit(plan_id, EventType.NODE_UPDATED, node_ids=[node_id], actor_id=user_id, fields=changed)
    if node.status != old_status:
        emit(
            plan_id,
            EventType.NODE_STATUS_CHANGED,
            node_ids=[node_id],
            actor_id=user_id,
            old_status=old_status.value,
            new_status=node.status.value,
        )
    return node


def update_node_status(
    db: Session,
    plan_id: UUID,
    node_id: UUID,
    user_id: Optional[UUID],
    status: models.NodeStatus,
) -> models.Node:
    return update_node(db, plan_id, node_id, user_id, {"status": status})


def delete_node(db: Session, plan_id: UUID, node_id: UUID, user_id: Optional[UUID]) -> list[UUID]:
    """
    Delete a node and its whole subtree.

    Returns:
        IDs of all removed nodes

    Raises:
        InvalidStateError: The node is the plan root
    """
    require_plan_access(db, plan_id, user_id, edit=True)
    node = _node_in_plan(db, plan_id, node_id)
    if node.is_root:
        raise InvalidStateError("Cannot delete the root node; delete the plan instead")

    removed = nodes.delete_subtree(db, node_id)

    logger.info(f"Deleted node {node_id} from plan {plan_id} ({len(removed)} nodes)")
    emit(plan_id, EventType.NODE_DELETED, node_ids=removed, actor_id=user_id)
    return removed


def reorder_node(
    db: Session,
    plan_id: UUID,
    node_id: UUID,
    user_id: Optional[UUID],
    new_index: int,
) -> models.Node:
    """Move a node to a new position among its siblings (index clamped)."""
    require_plan_access(db, plan_id, user_id, edit=True)
    node = _node_in_plan(db, plan_id, node_id)
    if node.is_root:
        raise InvalidStateError("Cannot reorder the root node")

    node = nodes.reorder(db, node_id, new_index)

    emit(plan_id, EventType.NODE_MOVED, node_ids=[node_id], actor_id=user_id, order_index=node.order_index)
    return node


def move_node(
    db: Session,
    plan_id: UUID,
    node_id: UUID,
    user_id: Optional[UUID],
    new_parent_id: UUID,
    order_index: Optional[int] = None,
) -> models.Node:
    """
    Reparent a node; new_parent_id may name a node or the plan (its root).

    The node is appended under the new parent, then moved to order_index when
    one is given. Naming the current parent without an order_index is a no-op.

    Raises:
        NotFoundError: Node or new parent missing in this plan
        InvalidStateError: The node is the plan root
        InvalidInputError: The new parent is the node or one of its descendants
        ConflictError: The new parent already has a child with the same title and type
    """
    require_plan_access(db, plan_id, user_id, edit=True)
    node = _node_in_plan(db, plan_id, node_id)
    if node.is_root:
        raise InvalidStateError("Cannot move the root node")

    parent = _parent_in_plan(db, plan_id, new_parent_id)
    old_parent_id = node.parent_id
    if parent.id == old_parent_id and order_index is None:
        return node

    try:
        if parent.id != old_parent_id:
            nodes.move(db, node_id, parent.id, commit=False)
        if order_index is not None:
            nodes.reorder(db, node_id, order_index, commit=False)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError(f"Parent {parent.id} already has a {node.node_type.value} titled {node.title!r}")
    except SQLAlchemyError:
        db.rollback()
        raise
    db.refresh(node)

    logger.info(f"Moved node {node_id} from {old_parent_id} to {parent.id} in plan {plan_id}")
    emit(
        plan_id,
        EventType.NODE_MOVED,
        node_ids=[node_id],
        actor_id=user_id,
        old_parent_id=str(old_parent_id),
        new_parent_id=str(parent.id),
        order_index=node.order_index,
    )
    return node


# Agent collaboration on nodes

def request_agent(
    db: Session,
    plan_id: UUID,
    node_id: UUID,
    user_id: Optional[UUID],
    request_type: models.AgentRequestType,
    message: Optional[str] = None,
) -> models.Node:
    """
    Flag a node for agent attention. Any identified reader may ask.

    Raises:
        ForbiddenError: Anonymous caller
    """
    if user_id is None:
        raise ForbiddenError("Agent requests require an identified user")
    require_plan_access(db, plan_id, user_id)
    node = _node_in_plan(db, plan_id, node_id)

    node.agent_requested = request_type
    node.agent_requested_at = models.utcnow()
    node.agent_requested_by = user_id
    node.agent_request_message = message
    db.commit()
    db.refresh(node)

    logger.info(f"Agent requested ({request_type.value}) on node {node_id} by {user_id}")
    emit(
        plan_id,
        EventType.AGENT_REQUESTED,
        node_ids=[node_id],
        actor_id=user_id,
        request_type=request_type.value,
        message=message,
    )
    return node


def clear_agent_request(db: Session, plan_id: UUID, node_id: UUID, user_id: Optional[UUID]) -> models.Node:
    require_plan_access(db, plan_id, user_id)
    node = _node_in_plan(db, plan_id, node_id)

    node.agent_requested = None
    node.agent_requested_at = None
    node.agent_requested_by = None
    node.agent_request_message = None
    db.commit()
    db.refresh(node)

    logger.info(f"Cleared agent request on node {node_id}")
    return node


def assign_agent(
    db: Session,
    plan_id: UUID,
    node_id: UUID,
    user_id: Optional[UUID],
    agent_id: UUID,
) -> models.Node:
    """
    Assign a user (usually an agent account) to a node. Requires edit access.

    Raises:
        NotFoundError: Assignee does not exist
    """
    require_plan_access(db, plan_id, user_id, edit=True)
    node = _node_in_plan(db, plan_id, node_id)
    get_user_or_404(db, agent_id)

    node.assigned_agent_id = agent_id
    node.assigned_agent_at = models.utcnow()
    node.assigned_agent_by = user_id
    db.commit()
    db.refresh(node)

    logger.info(f"Assigned {agent_id} to node {node_id} in plan {plan_id}")
    emit(plan_id, EventType.AGENT_ASSIGNED, node_ids=[node_id], actor_id=user_id, assignee_id=str(agent_id))
    return node


def unassign_agent(db: Session, plan_id: UUID, node_id: UUID, user_id: Optional[UUID]) -> models.Node:
    require_plan_access(db, plan_id, user_id, edit=True)
    node = _node_in_plan(db, plan_id, node_id)

    previous = node.assigned_agent_id
    node.assigned_agent_id = None
    node.assigned_agent_at = None
    node.assigned_agent_by = None
    db.commit()
    db.refresh(node)

    logger.info(f"Unassigned {previous} from node {node_id} in plan {plan_id}")
    emit(
        plan_id,
        EventType.AGENT_UNASSIGNED,
        node_ids=[node_id],
        actor_id=user_id,
        assignee_id=str(previous) if previous else None,
    )
    return node
