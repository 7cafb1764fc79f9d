"""Access resolution for plans.

A user's role on a plan is derived from a strict priority chain, first match
wins:

1. plan owner -> owner
2. explicit collaborator row -> that row's role
3. member of the plan's organization -> viewer
4. public or unlisted plan -> viewer (anonymous callers included)
5. otherwise -> none, denied

Resolution is a pure read. Callers resolve on every request and never cache
the result across requests.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy import and_
from sqlalchemy.orm import Session

from . import models
from .errors import ForbiddenError, NotFoundError

logger = logging.getLogger("planner-core.access")


class Role(str, enum.Enum):
    """Effective role of a user on a plan."""

    OWNER = "owner"
    ADMIN = "admin"
    EDITOR = "editor"
    VIEWER = "viewer"
    NONE = "none"


EDIT_ROLES = frozenset({Role.OWNER, Role.ADMIN, Role.EDITOR})
MANAGE_ROLES = frozenset({Role.OWNER, Role.ADMIN})


@dataclass(frozen=True)
class AccessResult:
    """Outcome of resolve_access."""

    allowed: bool
    role: Role

    @property
    def can_edit(self) -> bool:
        return can_edit(self.role)


DENIED = AccessResult(allowed=False, role=Role.NONE)


def can_edit(role: Role) -> bool:
    """Owner, admin and editor may mutate nodes and resolve decisions."""
    return role in EDIT_ROLES


def resolve_access(
    db: Session,
    plan: models.Plan,
    user_id: Optional[UUID],
) -> AccessResult:
    """
    Determine whether a user may access a plan and at what role.

    Args:
        db: Database session
        plan: Plan instance
        user_id: User UUID, or None for an anonymous caller

    Returns:
        AccessResult with allowed flag and role
    """
    if user_id is not None:
        if plan.owner_id == user_id:
            return AccessResult(allowed=True, role=Role.OWNER)

        collaborator = (
            db.query(models.Collaborator)
            .filter(
                and_(
                    models.Collaborator.plan_id == plan.id,
                    models.Collaborator.user_id == user_id,
                )
            )
            .first()
        )
        if collaborator:
            return AccessResult(allowed=True, role=Role(collaborator.role.value))

        if plan.organization_id is not None:
            membership = (
                db.query(models.OrganizationMember.id)
                .filter(
                    and_(
                        models.OrganizationMember.organization_id == plan.organization_id,
                        models.OrganizationMember.user_id == user_id,
                    )
                )
                .first()
            )
            # Organization membership never grants edit rights implicitly
            if membership:
                return AccessResult(allowed=True, role=Role.VIEWER)

    if plan.visibility in (models.PlanVisibility.PUBLIC, models.PlanVisibility.UNLISTED):
        return AccessResult(allowed=True, role=Role.VIEWER)

    return DENIED


def get_plan_or_404(db: Session, plan_id: UUID) -> models.Plan:
    plan = db.query(models.Plan).filter(models.Plan.id == plan_id).first()
    if not plan:
        raise NotFoundError(f"Plan {plan_id} not found", resource="plan")
    return plan


def require_plan_access(
    db: Session,
    plan_id: UUID,
    user_id: Optional[UUID],
    edit: bool = False,
    roles: Optional[frozenset] = None,
) -> tuple[models.Plan, AccessResult]:
    """
    Load a plan and check the caller's role against the operation.

    Args:
        db: Database session
        plan_id: Plan UUID
        user_id: Caller UUID (None for anonymous)
        edit: Require an edit-capable role
        roles: Explicit set of allowed roles (overrides ``edit``)

    Returns:
        Tuple of (plan, access result)

    Raises:
        NotFoundError: If the plan does not exist
        ForbiddenError: If the caller's role is insufficient
    """
    plan = get_plan_or_404(db, plan_id)
    access = resolve_access(db, plan, user_id)

    if not access.allowed:
        logger.warning(f"Access denied: user {user_id} on plan {plan_id}")
        raise ForbiddenError("You do not have access to this plan", role=access.role.value)

    if roles is not None:
        if access.role not in roles:
            logger.warning(
                f"Role {access.role.value} of user {user_id} not in "
                f"{sorted(r.value for r in roles)} on plan {plan_id}"
            )
            raise ForbiddenError(
                f"Role '{access.role.value}' is not permitted to perform this operation",
                role=access.role.value,
            )
    elif edit and not access.can_edit:
        logger.warning(f"Edit denied: user {user_id} is {access.role.value} on plan {plan_id}")
        raise ForbiddenError("You do not have edit access to this plan", role=access.role.value)

    return plan, access


def require_plan_owner(
    db: Session,
    plan_id: UUID,
    user_id: Optional[UUID],
) -> models.Plan:
    """Load a plan the caller owns, or raise NotFoundError / ForbiddenError."""
    plan, _ = require_plan_access(db, plan_id, user_id, roles=frozenset({Role.OWNER}))
    return plan
