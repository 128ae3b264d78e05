# src/goalsync/progress/report.py
"""
Detailed progress reports built on top of the calculator.

A report bundles progress with a status label, breakdowns of the aligned
purchases, human readable insights and a short-term projection. All
functions take ``now`` explicitly so reports are reproducible.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from ..models import Goal, PurchaseRecord, utcnow
from .calculator import compute_progress, is_achieved, is_product_aligned

TIMEFRAME_DAYS = {"week": 7, "month": 30, "quarter": 90, "year": 365}

SCORE_RANGES = [
    ("90-100", 90),
    ("80-89", 80),
    ("70-79", 70),
    ("60-69", 60),
    ("50-59", 50),
    ("0-49", 0),
]

TREND_WINDOW = timedelta(days=30)
TREND_THRESHOLD = 5.0


class ProgressStatus(str, Enum):
    NOT_STARTED = "not_started"
    ACHIEVED = "achieved"
    ALMOST_THERE = "almost_there"
    ON_TRACK = "on_track"
    GETTING_STARTED = "getting_started"
    NEEDS_IMPROVEMENT = "needs_improvement"


@dataclass
class Insight:
    type: str
    message: str
    priority: str = "low"


@dataclass
class Projection:
    trend: str = "stable"
    recent_percentage: float = 0.0
    projected_percentage: float = 0.0
    purchases_to_target: Optional[int] = None


@dataclass
class Breakdown:
    by_category: Dict[str, int] = field(default_factory=dict)
    by_grade: Dict[str, int] = field(default_factory=dict)
    by_score_range: Dict[str, int] = field(default_factory=dict)
    by_month: Dict[str, Dict[str, int]] = field(default_factory=dict)


@dataclass
class ProgressReport:
    goal_id: str
    timeframe: str
    total_purchases: int
    goal_met_purchases: int
    current_percentage: float
    target_percentage: float
    is_achieved: bool
    status: ProgressStatus
    best_streak: int
    current_streak: int
    total_value: float
    aligned_value: float
    breakdown: Breakdown
    insights: List[Insight]
    projection: Projection

    def to_dict(self) -> Dict[str, Any]:
        return {
            "goalId": self.goal_id,
            "timeframe": self.timeframe,
            "totalPurchases": self.total_purchases,
            "goalMetPurchases": self.goal_met_purchases,
            "currentPercentage": self.current_percentage,
            "targetPercentage": self.target_percentage,
            "isAchieved": self.is_achieved,
            "status": self.status.value,
            "streaks": {"current": self.current_streak, "best": self.best_streak},
            "totalValue": self.total_value,
            "alignedValue": self.aligned_value,
            "breakdown": {
                "byCategory": self.breakdown.by_category,
                "byGrade": self.breakdown.by_grade,
                "byScoreRange": self.breakdown.by_score_range,
                "byMonth": self.breakdown.by_month,
            },
            "insights": [{"type": i.type, "message": i.message, "priority": i.priority} for i in self.insights],
            "projection": {
                "trend": self.projection.trend,
                "recentPercentage": self.projection.recent_percentage,
                "projectedPercentage": self.projection.projected_percentage,
                "purchasesToTarget": self.projection.purchases_to_target,
            },
        }


def filter_by_timeframe(
    history: Sequence[PurchaseRecord], timeframe: str = "all", now: Optional[datetime] = None
) -> List[PurchaseRecord]:
    """
    Keep records dated within the timeframe (``all``, ``week``, ``month``, ``quarter``, ``year``).
    Undated records are only kept for ``all``; unknown timeframes mean ``all``.
    """
    days = TIMEFRAME_DAYS.get(timeframe)
    if days is None:
        return list(history)
    cutoff = (now or utcnow()) - timedelta(days=days)
    return [r for r in history if r.purchase_date is not None and r.purchase_date >= cutoff]


def progress_status(goal: Goal, total_purchases: int, current_percentage: float) -> ProgressStatus:
    """Classify progress by its ratio to the goal target."""
    if total_purchases == 0:
        return ProgressStatus.NOT_STARTED

    target = goal.goal_config.percentage
    if current_percentage >= target:
        return ProgressStatus.ACHIEVED

    ratio = current_percentage / target if target > 0 else 0.0
    if ratio >= 0.8:
        return ProgressStatus.ALMOST_THERE
    if ratio >= 0.5:
        return ProgressStatus.ON_TRACK
    if ratio >= 0.25:
        return ProgressStatus.GETTING_STARTED
    return ProgressStatus.NEEDS_IMPROVEMENT


def _score_range(score: float) -> str:
    for label, floor in SCORE_RANGES:
        if score >= floor:
            return label
    return SCORE_RANGES[-1][0]


def build_breakdown(goal: Goal, history: Sequence[PurchaseRecord]) -> Breakdown:
    """Count aligned units by category, grade and score range, and all units by month."""
    by_category: Counter = Counter()
    by_grade: Counter = Counter()
    by_score: Counter = Counter()
    by_month: Dict[str, Dict[str, int]] = {}

    for item in history:
        if item.quantity <= 0:
            continue
        aligned = is_product_aligned(goal, item.product)

        if item.purchase_date is not None:
            month = by_month.setdefault(item.purchase_date.strftime("%Y-%m"), {"total": 0, "aligned": 0})
            month["total"] += item.quantity
            if aligned:
                month["aligned"] += item.quantity

        if not aligned:
            continue
        by_category[item.product.category or "Unknown"] += item.quantity
        if item.product.grade is not None:
            by_grade[item.product.grade.value] += item.quantity
        if item.product.score is not None:
            by_score[_score_range(item.product.score)] += item.quantity

    return Breakdown(
        by_category=dict(sorted(by_category.items())),
        by_grade=dict(sorted(by_grade.items())),
        by_score_range=dict(by_score),
        by_month=dict(sorted(by_month.items())),
    )


def _purchases_to_target(met: int, total: int, target: float) -> Optional[int]:
    """Smallest number of additional aligned units that reaches the target, None if unreachable."""
    if target >= 100:
        return None if met < total else 0
    needed = 0
    while (met + needed) / max(total + needed, 1) * 100 < target:
        needed += 1
        if needed > 10_000:
            return None
    return needed


def build_projection(
    goal: Goal, history: Sequence[PurchaseRecord], now: Optional[datetime] = None
) -> Projection:
    """Compare the last 30 days against overall progress."""
    now = now or utcnow()
    overall = compute_progress(goal, history)
    recent_items = [r for r in history if r.purchase_date is not None and r.purchase_date >= now - TREND_WINDOW]
    recent = compute_progress(goal, recent_items)

    trend = "stable"
    if recent.total_purchases > 0:
        delta = recent.current_percentage - overall.current_percentage
        if delta > TREND_THRESHOLD:
            trend = "improving"
        elif delta < -TREND_THRESHOLD:
            trend = "declining"

    projected = overall.current_percentage
    if recent.total_purchases > 0:
        projected = round((overall.current_percentage + recent.current_percentage) / 2, 1)

    return Projection(
        trend=trend,
        recent_percentage=recent.current_percentage,
        projected_percentage=projected,
        purchases_to_target=_purchases_to_target(
            overall.goal_met_purchases, overall.total_purchases, goal.goal_config.percentage
        ),
    )


def build_insights(goal: Goal, report: "ProgressReport") -> List[Insight]:
    insights: List[Insight] = []
    target = goal.goal_config.percentage

    if report.status == ProgressStatus.ACHIEVED:
        insights.append(Insight("achievement", f"Goal reached: {report.current_percentage}% of purchases aligned.", "high"))
    elif report.status == ProgressStatus.ALMOST_THERE:
        gap = round(target - report.current_percentage, 1)
        insights.append(Insight("proximity", f"Only {gap} points away from the {target:g}% target.", "high"))
    elif report.status == ProgressStatus.NOT_STARTED:
        insights.append(Insight("getting_started", "No purchases recorded for this goal yet.", "medium"))

    if report.current_streak >= 3:
        insights.append(Insight("streak", f"{report.current_streak} aligned purchases in a row.", "medium"))

    if report.breakdown.by_category:
        top_category = max(report.breakdown.by_category.items(), key=lambda kv: (kv[1], kv[0]))[0]
        insights.append(Insight("category", f"Most aligned purchases are in {top_category}.", "low"))

    if report.projection.trend == "improving":
        insights.append(Insight("trend", "Recent purchases are improving on your average.", "medium"))
    elif report.projection.trend == "declining":
        insights.append(Insight("trend", "Recent purchases are below your average.", "medium"))

    return insights


def build_progress_report(
    goal: Goal,
    purchase_history: Sequence[PurchaseRecord],
    timeframe: str = "all",
    now: Optional[datetime] = None,
) -> ProgressReport:
    """
    Build a full progress report for one goal.

    Args:
        goal: Goal to report on
        purchase_history: Purchase records in purchase order
        timeframe: ``all``, ``week``, ``month``, ``quarter`` or ``year``
        now: Reference time for timeframe and trend windows

    Returns:
        ProgressReport
    """
    now = now or utcnow()
    history = filter_by_timeframe(purchase_history, timeframe, now)
    progress = compute_progress(goal, history)

    total_value = 0.0
    aligned_value = 0.0
    for item in history:
        value = item.unit_price * item.quantity
        total_value += value
        if is_product_aligned(goal, item.product):
            aligned_value += value

    report = ProgressReport(
        goal_id=goal.id,
        timeframe=timeframe if timeframe in TIMEFRAME_DAYS else "all",
        total_purchases=progress.total_purchases,
        goal_met_purchases=progress.goal_met_purchases,
        current_percentage=progress.current_percentage,
        target_percentage=goal.goal_config.percentage,
        is_achieved=is_achieved(goal, progress),
        status=progress_status(goal, progress.total_purchases, progress.current_percentage),
        best_streak=progress.streaks.best,
        current_streak=progress.streaks.current,
        total_value=round(total_value, 2),
        aligned_value=round(aligned_value, 2),
        breakdown=build_breakdown(goal, history),
        insights=[],
        projection=build_projection(goal, history, now),
    )
    report.insights = build_insights(goal, report)
    return report
