"""Node repository: storage, ordering and tree primitives for plan nodes.

Ordering uses a full-rewrite scheme. order_index values among siblings are kept
dense (0..n-1) by reorder, and new or moved nodes are appended after the current
maximum. Gap-based or fractional keys would avoid rewriting every sibling on a
reorder, at the cost of periodic rebalancing; the dense form keeps indices
identical to positions.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional
from uuid import UUID

from sqlalchemy import and_, func, inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .config import get_settings
from .errors import InvalidInputError, InvalidStateError, NotFoundError

logger = logging.getLogger("planner-core.nodes")


@dataclass
class TreeNode:
    """A node with its materialized children."""

    node: Any
    children: list["TreeNode"] = field(default_factory=list)

    @property
    def id(self):
        return self.node.id

    def walk(self) -> Iterable["TreeNode"]:
        """Pre-order traversal of this subtree."""
        stack = [self]
        while stack:
            current = stack.pop()
            yield current
            stack.extend(reversed(current.children))


def get_node(db: Session, node_id: UUID) -> Optional[models.Node]:
    """
    Get a node by ID.

    Args:
        db: Database session
        node_id: Node UUID

    Returns:
        Node instance or None if not found
    """
    return db.query(models.Node).filter(models.Node.id == node_id).first()


def get_node_or_404(db: Session, node_id: UUID) -> models.Node:
    node = get_node(db, node_id)
    if not node:
        raise NotFoundError(f"Node {node_id} not found", resource="node")
    return node


def get_root(db: Session, plan_id: UUID) -> Optional[models.Node]:
    """Get the root node of a plan."""
    return (
        db.query(models.Node)
        .filter(
            and_(
                models.Node.plan_id == plan_id,
                models.Node.node_type == models.NodeType.ROOT,
            )
        )
        .first()
    )


def get_children(db: Session, node_id: UUID) -> list[models.Node]:
    """
    Get the direct children of a node.

    Args:
        db: Database session
        node_id: Parent node UUID

    Returns:
        Children ordered by order_index ascending

    Raises:
        NotFoundError: If the parent node does not exist
    """
    get_node_or_404(db, node_id)
    return _children_query(db, node_id).all()


def list_by_plan(db: Session, plan_id: UUID) -> list[models.Node]:
    """
    Get every node of a plan as a flat list ordered by order_index.

    The result is the input for build_tree.
    """
    return (
        db.query(models.Node)
        .filter(models.Node.plan_id == plan_id)
        .order_by(models.Node.order_index, models.Node.created_at)
        .all()
    )


def _children_query(db: Session, parent_id: UUID):
    return (
        db.query(models.Node)
        .filter(models.Node.parent_id == parent_id)
        .order_by(models.Node.order_index, models.Node.created_at)
    )


def _siblings(db: Session, node: models.Node) -> list[models.Node]:
    """Nodes sharing the node's parent, or its plan's top level when parent is NULL."""
    if node.parent_id is not None:
        return _children_query(db, node.parent_id).all()
    return (
        db.query(models.Node)
        .filter(
            and_(
                models.Node.plan_id == node.plan_id,
                models.Node.parent_id.is_(None),
            )
        )
        .order_by(models.Node.order_index, models.Node.created_at)
        .all()
    )


def next_order_index(
    db: Session,
    parent_id: UUID,
    exclude_node_id: Optional[UUID] = None,
) -> int:
    """Max order_index among the parent's children plus one, or 0 when there are none."""
    query = db.query(func.max(models.Node.order_index)).filter(models.Node.parent_id == parent_id)
    if exclude_node_id is not None:
        query = query.filter(models.Node.id != exclude_node_id)
    current_max = query.scalar()
    return 0 if current_max is None else current_max + 1


def create_node(
    db: Session,
    plan_id: UUID,
    parent_id: Optional[UUID],
    node_type: models.NodeType,
    title: str,
    description: Optional[str] = None,
    status: models.NodeStatus = models.NodeStatus.NOT_STARTED,
    due_date: Optional[datetime] = None,
    context: Optional[str] = None,
    agent_instructions: Optional[str] = None,
    metadata: Optional[dict] = None,
    bootstrap: bool = False,
    commit: bool = True,
) -> models.Node:
    """
    Create a node, appended after its existing siblings.

    Args:
        db: Database session
        plan_id: Owning plan UUID
        parent_id: Parent node UUID (None only for the bootstrap root)
        node_type: Node type
        title: Node title
        description: Optional description
        status: Initial status
        due_date: Optional due date
        context: Optional context text
        agent_instructions: Optional instructions for agents
        metadata: Optional JSON metadata
        bootstrap: True only while creating a plan's root node
        commit: Commit the transaction (False when part of a larger unit)

    Returns:
        Created node instance

    Raises:
        InvalidInputError: Root requested outside bootstrap, or missing parent
        InvalidStateError: Bootstrap requested for a plan that already has a root
        NotFoundError: Parent does not exist in this plan
    """
    if bootstrap:
        if node_type != models.NodeType.ROOT or parent_id is not None:
            raise InvalidInputError("Plan bootstrap creates exactly one parentless root node")
        if get_root(db, plan_id) is not None:
            raise InvalidStateError(f"Plan {plan_id} already has a root node")
        order_index = 0
    else:
        if node_type == models.NodeType.ROOT:
            raise InvalidInputError("Cannot create additional root nodes")
        if parent_id is None:
            raise InvalidInputError("Non-root nodes require a parent")
        parent = get_node(db, parent_id)
        if not parent or parent.plan_id != plan_id:
            raise NotFoundError(f"Parent node {parent_id} not found in plan {plan_id}", resource="node")
        order_index = next_order_index(db, parent_id)

    db_node = models.Node(
        plan_id=plan_id,
        parent_id=parent_id,
        node_type=node_type,
        title=title,
        description=description,
        status=status,
        order_index=order_index,
        due_date=due_date,
        context=context,
        agent_instructions=agent_instructions,
        metadata_=metadata or {},
    )
    db.add(db_node)
    db.flush()
    if commit:
        db.commit()
        db.refresh(db_node)
    logger.debug(f"Created {node_type.value} node {db_node.id} in plan {plan_id} at index {order_index}")
    return db_node


def update_fields(
    db: Session,
    node: models.Node,
    updates: dict[str, Any],
    commit: bool = True,
) -> models.Node:
    """Apply plain column updates to a node."""
    for key, value in updates.items():
        setattr(node, key, value)
    if commit:
        db.commit()
        db.refresh(node)
    return node


def build_tree(nodes: Iterable[Any]) -> list[TreeNode]:
    """
    Materialize a flat node list into trees.

    First pass maps id -> TreeNode; second pass attaches every node to its
    parent, or lists it as a top-level node when its parent is NULL or not in
    the input. Children keep the input order. Pure: nothing is read or written.

    Args:
        nodes: Objects exposing ``id`` and ``parent_id``

    Returns:
        Top-level tree nodes (normally the single root of a plan)
    """
    nodes = list(nodes)
    by_id: dict[Any, TreeNode] = {}
    for node in nodes:
        by_id[node.id] = TreeNode(node=node)

    roots: list[TreeNode] = []
    for node in nodes:
        item = by_id[node.id]
        parent_id = node.parent_id
        if parent_id is not None and parent_id != node.id and parent_id in by_id:
            by_id[parent_id].children.append(item)
        else:
            roots.append(item)
    return roots


def get_tree(db: Session, plan_id: UUID) -> list[TreeNode]:
    return build_tree(list_by_plan(db, plan_id))


def reorder(
    db: Session,
    node_id: UUID,
    new_index: int,
    commit: bool = True,
) -> models.Node:
    """
    Move a node to a new position among its siblings.

    The target is removed from the sibling list, reinserted at new_index
    (clamped into [0, sibling_count - 1]) and every sibling whose position
    differs from its stored order_index is rewritten.

    Args:
        db: Database session
        node_id: Node UUID
        new_index: Requested position

    Returns:
        The reordered node

    Raises:
        NotFoundError: If the node does not exist
    """
    node = get_node_or_404(db, node_id)
    siblings = [s for s in _siblings(db, node) if s.id != node.id]

    position = max(0, min(new_index, len(siblings)))
    siblings.insert(position, node)

    rewritten = 0
    for index, sibling in enumerate(siblings):
        if sibling.order_index != index:
            sibling.order_index = index
            rewritten += 1

    try:
        db.flush()
        if commit:
            db.commit()
            db.refresh(node)
    except SQLAlchemyError:
        db.rollback()
        raise

    logger.debug(f"Reordered node {node_id} to index {position} ({rewritten} siblings rewritten)")
    return node


def is_descendant(db: Session, ancestor_id: UUID, candidate_id: UUID) -> bool:
    """
    True when candidate_id lies in the subtree below ancestor_id.

    Walks parent links upward from the candidate.
    """
    seen: set[UUID] = set()
    current_id = candidate_id
    while current_id is not None and current_id not in seen:
        seen.add(current_id)
        parent_id = (
            db.query(models.Node.parent_id)
            .filter(models.Node.id == current_id)
            .scalar()
        )
        if parent_id == ancestor_id:
            return True
        current_id = parent_id
    return False


def get_ancestry(db: Session, node_id: UUID) -> list[models.Node]:
    """Nodes from the plan root down to node_id inclusive."""
    chain: list[models.Node] = []
    seen: set[UUID] = set()
    node = get_node_or_404(db, node_id)
    while node is not None and node.id not in seen:
        seen.add(node.id)
        chain.append(node)
        if node.parent_id is None:
            break
        node = get_node(db, node.parent_id)
    chain.reverse()
    return chain


def move(
    db: Session,
    node_id: UUID,
    new_parent_id: UUID,
    commit: bool = True,
) -> models.Node:
    """
    Reparent a node, appending it after the new parent's existing children.

    Precise placement needs a follow-up reorder.

    Args:
        db: Database session
        node_id: Node UUID
        new_parent_id: New parent node UUID

    Returns:
        The moved node

    Raises:
        NotFoundError: Node or new parent missing, or parent in another plan
        InvalidStateError: Attempt to move the root node
        InvalidInputError: New parent is the node itself or one of its descendants
    """
    node = get_node_or_404(db, node_id)
    if node.is_root:
        raise InvalidStateError("Cannot move the root node")

    new_parent = get_node(db, new_parent_id)
    if not new_parent or new_parent.plan_id != node.plan_id:
        raise NotFoundError(f"Parent node {new_parent_id} not found in plan {node.plan_id}", resource="node")

    if new_parent_id == node_id or is_descendant(db, node_id, new_parent_id):
        raise InvalidInputError(f"Cannot move node {node_id} under itself or one of its descendants")

    node.order_index = next_order_index(db, new_parent_id, exclude_node_id=node_id)
    node.parent_id = new_parent_id

    try:
        db.flush()
        if commit:
            db.commit()
            db.refresh(node)
    except SQLAlchemyError:
        db.rollback()
        raise

    logger.debug(f"Moved node {node_id} under {new_parent_id} at index {node.order_index}")
    return node


def collect_subtree_ids(db: Session, node_id: UUID) -> list[UUID]:
    """
    Collect a node and all its descendants in pre-order.

    Uses an explicit worklist so deep trees do not grow the call stack.
    """
    collected: list[UUID] = []
    seen: set[UUID] = set()
    stack = [node_id]
    while stack:
        current = stack.pop()
        if current in seen:
            continue
        seen.add(current)
        collected.append(current)
        child_ids = [
            child_id
            for (child_id,) in db.query(models.Node.id)
            .filter(models.Node.parent_id == current)
            .order_by(models.Node.order_index)
            .all()
        ]
        stack.extend(reversed(child_ids))
    return collected


def delete_subtree(
    db: Session,
    node_id: UUID,
    missing_ok: bool = False,
    native_cascade: Optional[bool] = None,
    commit: bool = True,
) -> list[UUID]:
    """
    Delete a node together with its entire descendant subtree.

    With native cascade a single DELETE of the node is issued and the
    node->node foreign key removes the descendants. Without it, descendant
    IDs are collected first and removed in one batched DELETE. Either way the
    work happens in one transaction.

    Args:
        db: Database session
        node_id: Node UUID
        missing_ok: Treat an already-deleted node as success (cascade retry)
        native_cascade: Override the configured cascade mode
        commit: Commit the transaction

    Returns:
        IDs of all removed nodes (empty when missing_ok and nothing was there)

    Raises:
        NotFoundError: If the node does not exist and missing_ok is False
    """
    if native_cascade is None:
        native_cascade = get_settings().native_cascade

    if get_node(db, node_id) is None:
        if missing_ok:
            logger.debug(f"Node {node_id} already deleted; treating as success")
            return []
        raise NotFoundError(f"Node {node_id} not found", resource="node")

    removed = collect_subtree_ids(db, node_id)

    try:
        if native_cascade:
            db.query(models.Node).filter(models.Node.id == node_id).delete(synchronize_session=False)
        else:
            db.query(models.Node).filter(models.Node.id.in_(removed)).delete(synchronize_session=False)
        _expunge_nodes(db, set(removed))
        if commit:
            db.commit()
        else:
            db.flush()
    except SQLAlchemyError:
        db.rollback()
        raise

    logger.debug(f"Deleted subtree of node {node_id} ({len(removed)} nodes)")
    return removed


def _expunge_nodes(db: Session, node_ids: set[UUID]) -> None:
    """Drop session instances of rows deleted by a bulk statement."""
    for obj in list(db.identity_map.values()):
        if not isinstance(obj, models.Node):
            continue
        identity = inspect(obj).identity
        if identity and identity[0] in node_ids:
            db.expunge(obj)
