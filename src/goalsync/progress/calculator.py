# src/goalsync/progress/calculator.py
"""
Progress calculation for sustainability goals.

Everything in this module is a pure function of its arguments: no I/O, no
clock reads, no shared state. The coordinator calls these on the event loop
thread and may call the batch variant for many goals at once.

A purchase "aligns" with a goal when the purchased product satisfies the
goal's criteria:

    grade-based     product grade in target grades
    score-based     product score >= minimum score (missing score counts as 0)
    category-based  product category in categories AND grade in target grades

Progress is a left fold over purchase records, so applying new records to an
existing Progress gives exactly the result of recomputing from the full
history.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from ..models import Goal, GoalStats, GoalType, ProductSnapshot, Progress, PurchaseRecord, Streaks, percentage_of


# =============================================================================
# Alignment
# =============================================================================


def is_product_aligned(goal: Goal, product: ProductSnapshot) -> bool:
    """Check whether a product satisfies the goal's configured criteria."""
    config = goal.goal_config

    if goal.goal_type == GoalType.GRADE_BASED:
        return product.grade is not None and product.grade in config.target_grades

    if goal.goal_type == GoalType.SCORE_BASED:
        if config.minimum_score is None:
            return False
        return (product.score or 0.0) >= config.minimum_score

    if goal.goal_type == GoalType.CATEGORY_BASED:
        return (
            product.category is not None
            and product.category in config.categories
            and product.grade is not None
            and product.grade in config.target_grades
        )

    return False


# =============================================================================
# Progress
# =============================================================================


def apply_purchase(existing: Progress, goal: Goal, new_items: Iterable[PurchaseRecord]) -> Progress:
    """
    Fold new purchase records into existing progress.

    Zero-quantity records contribute nothing and do not touch the streak.

    Args:
        existing: Progress before the new records
        goal: Goal whose criteria decide alignment
        new_items: Records in purchase order

    Returns:
        New Progress; ``existing`` is not modified
    """
    total = existing.total_purchases
    met = existing.goal_met_purchases
    current = existing.streaks.current
    best = existing.streaks.best

    for item in new_items:
        if item.quantity <= 0:
            continue
        total += item.quantity
        if is_product_aligned(goal, item.product):
            met += item.quantity
            current += 1
            best = max(best, current)
        else:
            current = 0

    return Progress(
        total_purchases=total,
        goal_met_purchases=met,
        current_percentage=percentage_of(met, total),
        streaks=Streaks(current=current, best=best),
    )


def compute_progress(goal: Goal, purchase_history: Iterable[PurchaseRecord]) -> Progress:
    """Compute a goal's progress from its full purchase history."""
    return apply_purchase(Progress(), goal, purchase_history)


def compute_progress_for_all(
    goals: Iterable[Goal], purchase_history: Sequence[PurchaseRecord]
) -> Dict[str, Progress]:
    """Compute progress for each goal independently, keyed by goal id."""
    history = list(purchase_history)
    return {goal.id: compute_progress(goal, history) for goal in goals}


def is_achieved(goal: Goal, progress: Progress) -> bool:
    return progress.current_percentage >= goal.goal_config.percentage


def apply_progress(
    goal: Goal,
    progress: Progress,
    now: Optional[datetime] = None,
    confirmed: Optional[bool] = None,
) -> Goal:
    """
    Return a copy of ``goal`` carrying ``progress`` and the matching achievement flag.

    ``achieved_at`` is stamped with ``now`` on a not-achieved to achieved
    transition and cleared when the goal falls back below target.
    """
    achieved = is_achieved(goal, progress)
    if achieved and not goal.is_achieved:
        achieved_at = now or goal.achieved_at
    elif achieved:
        achieved_at = goal.achieved_at
    else:
        achieved_at = None

    update = {"progress": progress, "is_achieved": achieved, "achieved_at": achieved_at}
    if confirmed is not None:
        update["confirmed"] = confirmed
    return goal.model_copy(update=update)


# =============================================================================
# Product / cart alignment
# =============================================================================


@dataclass
class GoalMatch:
    goal_id: str
    goal_title: str
    goal_type: GoalType

    def to_dict(self) -> dict:
        return {"goalId": self.goal_id, "goalTitle": self.goal_title, "goalType": self.goal_type.value}


@dataclass
class AlignmentReport:
    """Which active goals a candidate product would count toward."""

    meets_any_goal: bool = False
    matching_goals: List[GoalMatch] = field(default_factory=list)
    total_goals: int = 0
    alignment_percentage: float = 0.0

    def to_dict(self) -> dict:
        return {
            "meetsAnyGoal": self.meets_any_goal,
            "matchingGoals": [m.to_dict() for m in self.matching_goals],
            "totalGoals": self.total_goals,
            "alignmentPercentage": self.alignment_percentage,
        }


def check_product_meets_goals(product: ProductSnapshot, goals: Iterable[Goal]) -> AlignmentReport:
    """
    Report which active goals a product satisfies.

    Inactive goals are ignored. The alignment percentage is the share of
    active goals matched, rounded to a whole number.
    """
    active = [g for g in goals if g.is_active]
    if not active:
        return AlignmentReport()

    matches = [
        GoalMatch(goal_id=g.id, goal_title=g.title, goal_type=g.goal_type)
        for g in active
        if is_product_aligned(g, product)
    ]
    return AlignmentReport(
        meets_any_goal=bool(matches),
        matching_goals=matches,
        total_goals=len(active),
        alignment_percentage=float(round(len(matches) / len(active) * 100)),
    )


# =============================================================================
# Aggregates
# =============================================================================


def compute_goal_stats(goals: Iterable[Goal]) -> GoalStats:
    """Aggregate counters matching the remote API's stats payload."""
    goals = list(goals)
    stats = GoalStats(total_goals=len(goals))
    if not goals:
        return stats

    stats.active_goals = sum(1 for g in goals if g.is_active)
    stats.achieved_goals = sum(1 for g in goals if g.is_achieved)
    stats.average_progress = round(
        sum(g.progress.current_percentage for g in goals) / len(goals), 1
    )
    for g in goals:
        stats.goal_types[g.goal_type.value] = stats.goal_types.get(g.goal_type.value, 0) + 1
    return stats


def calculate_difficulty(goal: Goal) -> str:
    """
    Rough difficulty of a goal: ``easy``, ``medium`` or ``hard``.

    Higher targets, stricter thresholds and narrower selections score harder.
    """
    config = goal.goal_config
    score = 0

    if config.percentage >= 80:
        score += 2
    elif config.percentage >= 60:
        score += 1

    if goal.goal_type == GoalType.GRADE_BASED:
        if len(config.target_grades) <= 1:
            score += 2
        elif len(config.target_grades) == 2:
            score += 1
    elif goal.goal_type == GoalType.SCORE_BASED:
        minimum = config.minimum_score or 0
        if minimum >= 80:
            score += 2
        elif minimum >= 60:
            score += 1
    elif goal.goal_type == GoalType.CATEGORY_BASED:
        if len(config.categories) <= 1:
            score += 1
        if len(config.target_grades) <= 1:
            score += 1

    if score >= 3:
        return "hard"
    if score >= 2:
        return "medium"
    return "easy"
