"""HTTP layer for the planner core."""
