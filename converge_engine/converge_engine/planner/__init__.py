"""Attribute comparison and deterministic plan generation."""

from converge_engine.planner.compare import comparable_attributes, diff_attributes, diff_observed
from converge_engine.planner.differ import generate_plan

__all__ = [
    "comparable_attributes",
    "diff_attributes",
    "diff_observed",
    "generate_plan",
]
