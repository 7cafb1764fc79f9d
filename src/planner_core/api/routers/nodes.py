"""Plan node API endpoints."""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from planner_core import plan_tree, schemas
from planner_core.database import get_db

from ..deps import get_current_user_id, require_user_id

router = APIRouter(tags=["nodes"])


@router.get("/", response_model=list[schemas.NodeTreeResponse])
def get_tree(
    plan_id: UUID,
    db: Session = Depends(get_db),
    user_id: Optional[UUID] = Depends(get_current_user_id),
):
    """Get the plan's node tree, children ordered by order_index."""
    tree = plan_tree.get_plan_tree(db, plan_id, user_id)
    return [schemas.NodeTreeResponse.from_tree(item) for item in tree]


@router.post("/", response_model=schemas.NodeResponse, status_code=201)
def create_node(
    plan_id: UUID,
    node: schemas.NodeCreate,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(require_user_id),
):
    """
    Create a node.

    parent_id may be a node of this plan or the plan ID itself; when omitted
    the node is created directly under the root.
    """
    return plan_tree.create_node(
        db,
        plan_id,
        user_id,
        node_type=node.node_type,
        title=node.title,
        parent_id=node.parent_id,
        order_index=node.order_index,
        description=node.description,
        status=node.status,
        due_date=node.due_date,
        context=node.context,
        agent_instructions=node.agent_instructions,
        metadata=node.metadata,
    )


@router.get("/{node_id}", response_model=schemas.NodeResponse)
def get_node(
    plan_id: UUID,
    node_id: UUID,
    db: Session = Depends(get_db),
    user_id: Optional[UUID] = Depends(get_current_user_id),
):
    return plan_tree.get_node(db, plan_id, node_id, user_id)


@router.patch("/{node_id}", response_model=schemas.NodeResponse)
def update_node(
    plan_id: UUID,
    node_id: UUID,
    node_update: schemas.NodeUpdate,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(require_user_id),
):
    return plan_tree.update_node(db, plan_id, node_id, user_id, node_update.model_dump(exclude_unset=True))


@router.delete("/{node_id}", status_code=204)
def delete_node(
    plan_id: UUID,
    node_id: UUID,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(require_user_id),
):
    """Delete a node and its whole subtree. The root node cannot be deleted."""
    plan_tree.delete_node(db, plan_id, node_id, user_id)


@router.get("/{node_id}/children", response_model=list[schemas.NodeResponse])
def get_children(
    plan_id: UUID,
    node_id: UUID,
    db: Session = Depends(get_db),
    user_id: Optional[UUID] = Depends(get_current_user_id),
):
    return plan_tree.get_node_children(db, plan_id, node_id, user_id)


@router.get("/{node_id}/ancestry", response_model=list[schemas.NodeResponse])
def get_ancestry(
    plan_id: UUID,
    node_id: UUID,
    db: Session = Depends(get_db),
    user_id: Optional[UUID] = Depends(get_current_user_id),
):
    """Path from the root down to the node."""
    return plan_tree.get_node_ancestry(db, plan_id, node_id, user_id)


@router.put("/{node_id}/status", response_model=schemas.NodeResponse)
def update_status(
    plan_id: UUID,
    node_id: UUID,
    body: schemas.NodeStatusUpdate,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(require_user_id),
):
    return plan_tree.update_node_status(db, plan_id, node_id, user_id, body.status)


@router.post("/{node_id}/move", response_model=schemas.NodeResponse)
def move_node(
    plan_id: UUID,
    node_id: UUID,
    body: schemas.NodeMove,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(require_user_id),
):
    """Reparent a node, optionally placing it at order_index among its new siblings."""
    return plan_tree.move_node(db, plan_id, node_id, user_id, body.parent_id, order_index=body.order_index)


@router.post("/{node_id}/reorder", response_model=schemas.NodeResponse)
def reorder_node(
    plan_id: UUID,
    node_id: UUID,
    body: schemas.NodeReorder,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(require_user_id),
):
    return plan_tree.reorder_node(db, plan_id, node_id, user_id, body.order_index)


# Agent collaboration

@router.post("/{node_id}/agent-request", response_model=schemas.NodeResponse)
def request_agent(
    plan_id: UUID,
    node_id: UUID,
    body: schemas.AgentRequestCreate,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(require_user_id),
):
    """Ask an agent to start, review, help with or continue a node."""
    return plan_tree.request_agent(db, plan_id, node_id, user_id, body.request_type, body.message)


@router.delete("/{node_id}/agent-request", response_model=schemas.NodeResponse)
def clear_agent_request(
    plan_id: UUID,
    node_id: UUID,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(require_user_id),
):
    return plan_tree.clear_agent_request(db, plan_id, node_id, user_id)


@router.put("/{node_id}/assignment", response_model=schemas.NodeResponse)
def assign_agent(
    plan_id: UUID,
    node_id: UUID,
    body: schemas.AgentAssign,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(require_user_id),
):
    return plan_tree.assign_agent(db, plan_id, node_id, user_id, body.agent_id)


@router.delete("/{node_id}/assignment", response_model=schemas.NodeResponse)
def unassign_agent(
    plan_id: UUID,
    node_id: UUID,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(require_user_id),
):
    return plan_tree.unassign_agent(db, plan_id, node_id, user_id)
