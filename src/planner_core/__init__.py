"""Planner core: plan trees, access resolution and decision requests."""

__version__ = "1.0.0"
