"""API routers for the planner core."""

from . import decisions, nodes, plans

__all__ = ["plans", "nodes", "decisions"]
