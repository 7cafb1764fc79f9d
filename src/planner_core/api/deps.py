"""Request dependencies shared by the routers.

Authentication happens upstream; the caller's identity arrives in the
``X-User-Id`` header.
"""
from typing import Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException


def get_current_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
) -> Optional[UUID]:
    """Caller UUID from the X-User-Id header, or None for an anonymous caller."""
    if not x_user_id:
        return None
    try:
        return UUID(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_input", "error": "X-User-Id must be a UUID"},
        )


def require_user_id(user_id: Optional[UUID] = Depends(get_current_user_id)) -> UUID:
    if user_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user_id
