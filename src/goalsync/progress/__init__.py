# src/goalsync/progress/__init__.py
"""Pure progress calculation, reporting and validation for goals."""

from .calculator import (
    AlignmentReport,
    GoalMatch,
    apply_progress,
    apply_purchase,
    calculate_difficulty,
    check_product_meets_goals,
    compute_goal_stats,
    compute_progress,
    compute_progress_for_all,
    is_achieved,
    is_product_aligned,
)
from .report import ProgressReport, ProgressStatus, build_progress_report
from .validation import ensure_valid_goal, validate_goal_config, validate_goal_payload

__all__ = [
    "AlignmentReport",
    "GoalMatch",
    "ProgressReport",
    "ProgressStatus",
    "apply_progress",
    "apply_purchase",
    "build_progress_report",
    "calculate_difficulty",
    "check_product_meets_goals",
    "compute_goal_stats",
    "compute_progress",
    "compute_progress_for_all",
    "ensure_valid_goal",
    "is_achieved",
    "is_product_aligned",
    "validate_goal_config",
    "validate_goal_payload",
]
