"""Plan and collaborator API endpoints."""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from planner_core import plan_tree, schemas
from planner_core.database import get_db

from ..deps import get_current_user_id, require_user_id

router = APIRouter(tags=["plans"])


@router.post("/", response_model=schemas.PlanResponse, status_code=201)
def create_plan(
    plan: schemas.PlanCreate,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(require_user_id),
):
    """
    Create a plan. The caller becomes its owner and a root node is created with it.
    """
    db_plan = plan_tree.create_plan(
        db,
        owner_id=user_id,
        title=plan.title,
        description=plan.description,
        status=plan.status,
        visibility=plan.visibility,
        organization_id=plan.organization_id,
        metadata=plan.metadata,
    )
    return schemas.PlanResponse.model_validate(db_plan).model_copy(update={"role": "owner"})


@router.get("/", response_model=schemas.PlanListResponse)
def list_plans(
    db: Session = Depends(get_db),
    user_id: UUID = Depends(require_user_id),
):
    """List plans the caller owns or collaborates on, most recently updated first."""
    results = plan_tree.list_plans_for_user(db, user_id)
    items = [
        schemas.PlanResponse.model_validate(plan).model_copy(update={"role": role.value})
        for plan, role in results
    ]
    return schemas.PlanListResponse(items=items, total=len(items))


@router.get("/public", response_model=schemas.PlanListResponse)
def list_public_plans(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    """Discover public plans, most recently updated first. No identity required."""
    plans, total = plan_tree.list_public_plans(db, limit=limit, offset=offset)
    items = [schemas.PlanResponse.model_validate(plan) for plan in plans]
    return schemas.PlanListResponse(items=items, total=total)


@router.get("/{plan_id}", response_model=schemas.PlanResponse)
def get_plan(
    plan_id: UUID,
    db: Session = Depends(get_db),
    user_id: Optional[UUID] = Depends(get_current_user_id),
):
    plan, access = plan_tree.get_plan(db, plan_id, user_id)
    return schemas.PlanResponse.model_validate(plan).model_copy(update={"role": access.role.value})


@router.patch("/{plan_id}", response_model=schemas.PlanResponse)
def update_plan(
    plan_id: UUID,
    plan_update: schemas.PlanUpdate,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(require_user_id),
):
    """Update plan fields. Changing visibility is reserved to the owner."""
    plan = plan_tree.update_plan(db, plan_id, user_id, plan_update.model_dump(exclude_unset=True))
    return plan


@router.delete("/{plan_id}", status_code=204)
def delete_plan(
    plan_id: UUID,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(require_user_id),
):
    """
    Delete a plan with all its nodes, collaborators and decision requests.

    Owner only.
    """
    plan_tree.delete_plan(db, plan_id, user_id)


@router.get("/{plan_id}/progress", response_model=schemas.PlanProgressResponse)
def get_plan_progress(
    plan_id: UUID,
    db: Session = Depends(get_db),
    user_id: Optional[UUID] = Depends(get_current_user_id),
):
    return plan_tree.get_plan_progress(db, plan_id, user_id)


# Collaborators

@router.get("/{plan_id}/collaborators", response_model=list[schemas.CollaboratorResponse])
def list_collaborators(
    plan_id: UUID,
    db: Session = Depends(get_db),
    user_id: Optional[UUID] = Depends(get_current_user_id),
):
    return plan_tree.list_collaborators(db, plan_id, user_id)


@router.post("/{plan_id}/collaborators", response_model=schemas.CollaboratorResponse, status_code=201)
def add_collaborator(
    plan_id: UUID,
    collaborator: schemas.CollaboratorCreate,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(require_user_id),
):
    """Add a collaborator, or change the role of an existing one. Owner or admin only."""
    return plan_tree.add_collaborator(db, plan_id, user_id, collaborator.user_id, collaborator.role)


@router.delete("/{plan_id}/collaborators/{collaborator_user_id}", status_code=204)
def remove_collaborator(
    plan_id: UUID,
    collaborator_user_id: UUID,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(require_user_id),
):
    plan_tree.remove_collaborator(db, plan_id, user_id, collaborator_user_id)
