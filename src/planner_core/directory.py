"""Users and organizations referenced by plans.

Identity management lives outside the core; these helpers only create and
look up the rows that ownership, collaboration and membership point at.
"""
import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import and_
from sqlalchemy.orm import Session

from . import models
from .errors import InvalidInputError, NotFoundError

logger = logging.getLogger("planner-core.directory")


def create_user(
    db: Session,
    email: str,
    name: Optional[str] = None,
    user_type: models.UserType = models.UserType.HUMAN,
) -> models.User:
    """Create a user (human or agent account)."""
    db_user = models.User(email=email, name=name, user_type=user_type)
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    logger.debug(f"Created {user_type.value} user {db_user.id} ({email})")
    return db_user


def get_user(db: Session, user_id: UUID) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.id == user_id).first()


def get_user_or_404(db: Session, user_id: UUID) -> models.User:
    user = get_user(db, user_id)
    if not user:
        raise NotFoundError(f"User {user_id} not found", resource="user")
    return user


def get_user_by_email(db: Session, email: str) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.email == email).first()


def create_organization(db: Session, name: str, slug: str) -> models.Organization:
    """
    Create a new organization.

    Args:
        db: Database session
        name: Organization name
        slug: URL-friendly slug

    Returns:
        Created organization instance
    """
    db_org = models.Organization(name=name, slug=slug)
    db.add(db_org)
    db.commit()
    db.refresh(db_org)
    logger.debug(f"Created organization {db_org.id} ({db_org.slug})")
    return db_org


def get_organization(db: Session, organization_id: UUID) -> Optional[models.Organization]:
    return db.query(models.Organization).filter(models.Organization.id == organization_id).first()


def add_organization_member(
    db: Session,
    organization_id: UUID,
    user_id: UUID,
    role: models.MemberRole = models.MemberRole.MEMBER,
) -> models.OrganizationMember:
    """
    Add a user to an organization with a specific role.

    Raises:
        NotFoundError: If the organization or user does not exist
        InvalidInputError: If the user is already a member
    """
    if not get_organization(db, organization_id):
        raise NotFoundError(f"Organization {organization_id} not found", resource="organization")
    get_user_or_404(db, user_id)

    existing = (
        db.query(models.OrganizationMember)
        .filter(
            and_(
                models.OrganizationMember.organization_id == organization_id,
                models.OrganizationMember.user_id == user_id,
            )
        )
        .first()
    )
    if existing:
        raise InvalidInputError("User is already a member of this organization")

    db_member = models.OrganizationMember(
        organization_id=organization_id,
        user_id=user_id,
        role=role,
    )
    db.add(db_member)
    db.commit()
    db.refresh(db_member)
    logger.debug(f"Added user {user_id} to organization {organization_id} with role {role.value}")
    return db_member


def remove_organization_member(db: Session, organization_id: UUID, user_id: UUID) -> bool:
    """Remove a user from an organization. Returns False when not a member."""
    db_member = (
        db.query(models.OrganizationMember)
        .filter(
            and_(
                models.OrganizationMember.organization_id == organization_id,
                models.OrganizationMember.user_id == user_id,
            )
        )
        .first()
    )
    if not db_member:
        return False

    db.delete(db_member)
    db.commit()
    logger.debug(f"Removed user {user_id} from organization {organization_id}")
    return True
