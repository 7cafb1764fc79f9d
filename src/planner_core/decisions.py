"""Decision request workflow.

Agents (or humans) ask for a decision on a plan; an editor resolves or cancels
it. Status transitions are validated by decision_state_machine. Expiry is lazy:
a pending request whose expires_at has passed is reported as expired on read,
and sweep_expired can store that transition for downstream consumers.

Resolution and cancellation are conditional updates guarded by
``status = 'pending' AND not expired``, so two concurrent resolvers cannot both
succeed.
"""
import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models, schemas
from .access import require_plan_access, require_plan_owner
from .config import get_settings
from .decision_state_machine import validate_transition
from .errors import ConflictError, InvalidInputError, InvalidStateError, NotFoundError
from .events import EventType, emit

logger = logging.getLogger("planner-core.decisions")

Decision = models.DecisionRequest


def _not_expired(now: datetime):
    return or_(Decision.expires_at.is_(None), Decision.expires_at >= now)


def _effectively_pending(now: datetime):
    return and_(Decision.status == models.DecisionStatus.PENDING, _not_expired(now))


def _effectively_expired(now: datetime):
    return or_(
        Decision.status == models.DecisionStatus.EXPIRED,
        and_(
            Decision.status == models.DecisionStatus.PENDING,
            Decision.expires_at.isnot(None),
            Decision.expires_at < now,
        ),
    )


def _check_options(options: Optional[list]) -> list[dict]:
    if options is None:
        return []
    max_options = get_settings().decision_max_options
    if len(options) > max_options:
        raise InvalidInputError(f"A decision request can have at most {max_options} options")
    return [option.model_dump(exclude_none=True) for option in options]


def _get_in_plan(db: Session, plan_id: UUID, decision_id: UUID) -> models.DecisionRequest:
    decision = db.query(Decision).filter(Decision.id == decision_id).first()
    if not decision or decision.plan_id != plan_id:
        raise NotFoundError(f"Decision request {decision_id} not found in plan {plan_id}", resource="decision_request")
    return decision


def create_decision(
    db: Session,
    plan_id: UUID,
    user_id: Optional[UUID],
    request: schemas.DecisionRequestCreate,
) -> models.DecisionRequest:
    """
    Create a pending decision request on a plan.

    Args:
        db: Database session
        plan_id: Plan UUID
        user_id: Requesting user (edit access required)
        request: Validated request body

    Returns:
        Created decision request

    Raises:
        NotFoundError: Plan missing, or node_id not in this plan
        ForbiddenError: Caller lacks edit access
        InvalidInputError: Too many options, or an expiry already in the past
    """
    require_plan_access(db, plan_id, user_id, edit=True)

    if request.node_id is not None:
        node = db.query(models.Node).filter(models.Node.id == request.node_id).first()
        if not node or node.plan_id != plan_id:
            raise NotFoundError(f"Node {request.node_id} not found in plan {plan_id}", resource="node")

    options = _check_options(request.options)

    now = models.utcnow()
    if request.expires_at is not None and request.expires_at <= now:
        raise InvalidInputError("expires_at must be in the future")

    db_decision = Decision(
        plan_id=plan_id,
        node_id=request.node_id,
        requested_by_user_id=user_id,
        requested_by_agent_name=request.requested_by_agent_name,
        title=request.title,
        context=request.context,
        options=options,
        urgency=request.urgency,
        status=models.DecisionStatus.PENDING,
        expires_at=request.expires_at,
        metadata_=request.metadata or {},
    )
    db.add(db_decision)
    db.commit()
    db.refresh(db_decision)

    logger.info(
        f"Decision requested on plan {plan_id}: {db_decision.id} "
        f"({request.urgency.value}, {len(options)} options)"
    )
    emit(
        plan_id,
        EventType.DECISION_REQUESTED,
        node_ids=[request.node_id] if request.node_id else [],
        actor_id=user_id,
        decision_id=str(db_decision.id),
        title=request.title,
        urgency=request.urgency.value,
        agent_name=request.requested_by_agent_name,
    )
    return db_decision


def get_decision(
    db: Session,
    plan_id: UUID,
    decision_id: UUID,
    user_id: Optional[UUID],
) -> models.DecisionRequest:
    """Get a decision request; any role that can read the plan may read it."""
    require_plan_access(db, plan_id, user_id)
    return _get_in_plan(db, plan_id, decision_id)


def list_decisions(
    db: Session,
    plan_id: UUID,
    user_id: Optional[UUID],
    status: Optional[models.DecisionStatus] = None,
    urgency: Optional[models.DecisionUrgency] = None,
    node_id: Optional[UUID] = None,
    limit: Optional[int] = None,
    offset: int = 0,
) -> tuple[list[models.DecisionRequest], int]:
    """
    List a plan's decision requests, newest first.

    The status filter uses effective status: ``pending`` excludes requests
    past their expiry, ``expired`` includes them.

    Returns:
        Tuple of (page of requests, total matching)
    """
    require_plan_access(db, plan_id, user_id)

    settings = get_settings()
    if limit is None:
        limit = settings.default_page_size
    limit = max(1, min(limit, settings.max_page_size))
    offset = max(0, offset)

    now = models.utcnow()
    query = db.query(Decision).filter(Decision.plan_id == plan_id)

    if status == models.DecisionStatus.PENDING:
        query = query.filter(_effectively_pending(now))
    elif status == models.DecisionStatus.EXPIRED:
        query = query.filter(_effectively_expired(now))
    elif status is not None:
        query = query.filter(Decision.status == status)

    if urgency is not None:
        query = query.filter(Decision.urgency == urgency)
    if node_id is not None:
        query = query.filter(Decision.node_id == node_id)

    total = query.count()
    items = (
        query.order_by(Decision.created_at.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return items, total


def count_pending(db: Session, plan_id: UUID, user_id: Optional[UUID]) -> int:
    """Number of effectively pending decision requests on a plan."""
    require_plan_access(db, plan_id, user_id)
    now = models.utcnow()
    return (
        db.query(Decision)
        .filter(and_(Decision.plan_id == plan_id, _effectively_pending(now)))
        .count()
    )


def update_decision(
    db: Session,
    plan_id: UUID,
    decision_id: UUID,
    user_id: Optional[UUID],
    update: schemas.DecisionRequestUpdate,
) -> models.DecisionRequest:
    """
    Add context to a pending request. Only provided fields change.

    Raises:
        InvalidStateError: Request is no longer pending (or has expired)
    """
    require_plan_access(db, plan_id, user_id, edit=True)
    decision = _get_in_plan(db, plan_id, decision_id)

    current = decision.effective_status()
    if current != models.DecisionStatus.PENDING:
        raise InvalidStateError(f"Cannot update a decision request that is {current.value}")

    fields = update.model_dump(exclude_unset=True)
    if "options" in fields:
        decision.options = _check_options(update.options)
    for key in ("title", "context", "urgency"):
        if fields.get(key) is not None:
            setattr(decision, key, getattr(update, key))
    if "expires_at" in fields:
        decision.expires_at = update.expires_at
    if "metadata" in fields:
        decision.metadata_ = {**(decision.metadata_ or {}), **(update.metadata or {})}

    db.commit()
    db.refresh(decision)

    logger.info(f"Updated decision request {decision_id}: {sorted(fields)}")
    return decision


def _conditional_transition(
    db: Session,
    decision: models.DecisionRequest,
    target: models.DecisionStatus,
    values: dict,
) -> models.DecisionRequest:
    """
    Apply ``values`` only if the request is still effectively pending.

    A zero-row update is re-read to report why: expired, already resolved or
    cancelled, or a concurrent writer that won the race.
    """
    decision_id = decision.id
    now = models.utcnow()
    values = {**values, Decision.status: target, Decision.updated_at: now}

    try:
        updated = (
            db.query(Decision)
            .filter(and_(Decision.id == decision_id, _effectively_pending(now)))
            .update(values, synchronize_session=False)
        )
        if updated == 0:
            db.rollback()
            db.refresh(decision)
            validate_transition(decision.effective_status(now), target)
            raise ConflictError(f"Decision request {decision_id} was modified concurrently")
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    db.refresh(decision)
    return decision


def resolve_decision(
    db: Session,
    plan_id: UUID,
    decision_id: UUID,
    user_id: Optional[UUID],
    decision_text: str,
    rationale: Optional[str] = None,
) -> models.DecisionRequest:
    """
    Resolve a pending request with a decision.

    Raises:
        NotFoundError: Plan or request missing
        ForbiddenError: Caller lacks edit access
        StateTransitionError: Request already decided, cancelled or expired
    """
    require_plan_access(db, plan_id, user_id, edit=True)
    decision = _get_in_plan(db, plan_id, decision_id)

    decision = _conditional_transition(
        db,
        decision,
        models.DecisionStatus.DECIDED,
        {
            Decision.decided_by_user_id: user_id,
            Decision.decision: decision_text,
            Decision.rationale: rationale,
            Decision.decided_at: models.utcnow(),
        },
    )

    logger.info(f"Decision request {decision_id} resolved by {user_id}")
    emit(
        plan_id,
        EventType.DECISION_RESOLVED,
        node_ids=[decision.node_id] if decision.node_id else [],
        actor_id=user_id,
        decision_id=str(decision_id),
        decision=decision_text,
    )
    return decision


def cancel_decision(
    db: Session,
    plan_id: UUID,
    decision_id: UUID,
    user_id: Optional[UUID],
    reason: Optional[str] = None,
) -> models.DecisionRequest:
    """
    Cancel a pending request, recording the reason in its metadata.

    Existing metadata keys are kept; ``cancellation_reason`` is added.

    Raises:
        StateTransitionError: Request already decided, cancelled or expired
    """
    require_plan_access(db, plan_id, user_id, edit=True)
    decision = _get_in_plan(db, plan_id, decision_id)

    values = {}
    if reason is not None:
        values[Decision.metadata_] = {**(decision.metadata_ or {}), "cancellation_reason": reason}

    decision = _conditional_transition(db, decision, models.DecisionStatus.CANCELLED, values)

    logger.info(f"Decision request {decision_id} cancelled by {user_id}")
    emit(
        plan_id,
        EventType.DECISION_CANCELLED,
        node_ids=[decision.node_id] if decision.node_id else [],
        actor_id=user_id,
        decision_id=str(decision_id),
        reason=reason,
    )
    return decision


def delete_decision(
    db: Session,
    plan_id: UUID,
    decision_id: UUID,
    user_id: Optional[UUID],
) -> None:
    """Delete a decision request outright. Plan owner only."""
    require_plan_owner(db, plan_id, user_id)
    decision = _get_in_plan(db, plan_id, decision_id)

    db.delete(decision)
    db.commit()
    logger.info(f"Deleted decision request {decision_id} from plan {plan_id}")


def sweep_expired(
    db: Session,
    plan_id: Optional[UUID] = None,
    now: Optional[datetime] = None,
) -> list[UUID]:
    """
    Store the expired status on pending requests past their expiry.

    Maintenance task; reads already report these requests as expired.

    Args:
        db: Database session
        plan_id: Limit the sweep to one plan
        now: Reference time (defaults to the current UTC time)

    Returns:
        IDs of requests transitioned to expired
    """
    now = now or models.utcnow()
    validate_transition(models.DecisionStatus.PENDING, models.DecisionStatus.EXPIRED)

    criteria = [
        Decision.status == models.DecisionStatus.PENDING,
        Decision.expires_at.isnot(None),
        Decision.expires_at < now,
    ]
    if plan_id is not None:
        criteria.append(Decision.plan_id == plan_id)

    expired_ids = [decision_id for (decision_id,) in db.query(Decision.id).filter(and_(*criteria)).all()]
    if not expired_ids:
        return []

    try:
        db.query(Decision).filter(
            and_(Decision.id.in_(expired_ids), *criteria)
        ).update(
            {Decision.status: models.DecisionStatus.EXPIRED, Decision.updated_at: now},
            synchronize_session=False,
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    logger.info(f"Expired {len(expired_ids)} decision requests")
    return expired_ids
