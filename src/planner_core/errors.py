"""Typed failures raised by the planner core.

Each error carries a stable ``code`` the calling layer translates into its own
response (the API maps them to HTTP status codes).
"""
from typing import Optional


class PlannerError(Exception):
    """Base class for all planner core failures."""

    code = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "error": self.message}


class NotFoundError(PlannerError):
    """Plan, node or decision request is absent, or plan/node pairing mismatched."""

    code = "not_found"

    def __init__(self, message: str, resource: Optional[str] = None):
        super().__init__(message)
        self.resource = resource


class ForbiddenError(PlannerError):
    """Resolved role is insufficient for the requested operation."""

    code = "forbidden"

    def __init__(self, message: str, role: Optional[str] = None):
        super().__init__(message)
        self.role = role


class InvalidStateError(PlannerError):
    """Operation conflicts with the current state of the target."""

    code = "invalid_state"


class InvalidInputError(PlannerError):
    """Malformed or disallowed input, including cycle-creating moves."""

    code = "invalid_input"


class ConflictError(PlannerError):
    """Concurrent modification detected."""

    code = "conflict"
