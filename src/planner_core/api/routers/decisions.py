"""Decision request API endpoints."""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from planner_core import decisions, models, schemas
from planner_core.database import get_db

from ..deps import get_current_user_id, require_user_id

router = APIRouter(tags=["decisions"])


@router.post("/", response_model=schemas.DecisionRequestResponse, status_code=201)
def create_decision(
    plan_id: UUID,
    request: schemas.DecisionRequestCreate,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(require_user_id),
):
    """Request a decision from the plan's editors."""
    return decisions.create_decision(db, plan_id, user_id, request)


@router.get("/", response_model=schemas.DecisionListResponse)
def list_decisions(
    plan_id: UUID,
    status: Optional[models.DecisionStatus] = Query(None, description="Filter by effective status"),
    urgency: Optional[models.DecisionUrgency] = Query(None, description="Filter by urgency"),
    node_id: Optional[UUID] = Query(None, description="Filter by node"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user_id: Optional[UUID] = Depends(get_current_user_id),
):
    """List decision requests, newest first."""
    items, total = decisions.list_decisions(
        db,
        plan_id,
        user_id,
        status=status,
        urgency=urgency,
        node_id=node_id,
        limit=limit,
        offset=offset,
    )
    return schemas.DecisionListResponse(
        items=[schemas.DecisionRequestResponse.model_validate(item) for item in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/pending-count", response_model=schemas.PendingCountResponse)
def pending_count(
    plan_id: UUID,
    db: Session = Depends(get_db),
    user_id: Optional[UUID] = Depends(get_current_user_id),
):
    return schemas.PendingCountResponse(plan_id=plan_id, pending=decisions.count_pending(db, plan_id, user_id))


@router.get("/{decision_id}", response_model=schemas.DecisionRequestResponse)
def get_decision(
    plan_id: UUID,
    decision_id: UUID,
    db: Session = Depends(get_db),
    user_id: Optional[UUID] = Depends(get_current_user_id),
):
    return decisions.get_decision(db, plan_id, decision_id, user_id)


@router.patch("/{decision_id}", response_model=schemas.DecisionRequestResponse)
def update_decision(
    plan_id: UUID,
    decision_id: UUID,
    update: schemas.DecisionRequestUpdate,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(require_user_id),
):
    """Add context to a pending request."""
    return decisions.update_decision(db, plan_id, decision_id, user_id, update)


@router.post("/{decision_id}/resolve", response_model=schemas.DecisionRequestResponse)
def resolve_decision(
    plan_id: UUID,
    decision_id: UUID,
    body: schemas.DecisionResolve,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(require_user_id),
):
    """
    Resolve a pending request.

    Returns 409 if the request was already decided, cancelled or has expired.
    """
    return decisions.resolve_decision(db, plan_id, decision_id, user_id, body.decision, body.rationale)


@router.post("/{decision_id}/cancel", response_model=schemas.DecisionRequestResponse)
def cancel_decision(
    plan_id: UUID,
    decision_id: UUID,
    body: schemas.DecisionCancel,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(require_user_id),
):
    return decisions.cancel_decision(db, plan_id, decision_id, user_id, body.reason)


@router.delete("/{decision_id}", status_code=204)
def delete_decision(
    plan_id: UUID,
    decision_id: UUID,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(require_user_id),
):
    """Delete a decision request. Plan owner only."""
    decisions.delete_decision(db, plan_id, decision_id, user_id)
