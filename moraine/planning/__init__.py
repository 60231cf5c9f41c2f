"""Diffing desired declarations against applied state."""

from moraine.planning.plan import Action, Plan, PlanEngine, PlannedOperation

__all__ = [
    "Action",
    "Plan",
    "PlanEngine",
    "PlannedOperation",
]
