# tests/progress/test_calculator.py
"""
Tests for the progress calculator.

Covers:
- Alignment rules per goal type
- Progress bounds and the incremental/recompute equivalence
- Streak accounting
- Achievement stamping via apply_progress
- Product alignment reports, stats and difficulty
"""

import random
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from goalsync.models import Progress
from goalsync.progress.calculator import (
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

GRADES = ["A", "B", "C", "D", "E", "F", None]
CATEGORIES = ["Electronics", "Fashion", "Home"]


def _random_history(rng, make_purchase, length):
    return [
        make_purchase(
            grade=rng.choice(GRADES),
            quantity=rng.randint(0, 4),
            category=rng.choice(CATEGORIES),
            score=rng.choice([None, rng.uniform(0, 100)]),
        )
        for _ in range(length)
    ]


# =============================================================================
# Alignment
# =============================================================================


class TestAlignment:
    """Tests for is_product_aligned."""

    def test_grade_based(self, make_goal, make_purchase):
        goal = make_goal(goal_type="grade-based")
        assert is_product_aligned(goal, make_purchase(grade="A").product)
        assert is_product_aligned(goal, make_purchase(grade="B").product)
        assert not is_product_aligned(goal, make_purchase(grade="C").product)
        assert not is_product_aligned(goal, make_purchase(grade=None).product)

    def test_score_based_missing_score_counts_as_zero(self, make_goal, make_purchase):
        goal = make_goal(goal_type="score-based", config={"minimumScore": 70, "percentage": 50})
        assert is_product_aligned(goal, make_purchase(score=70).product)
        assert not is_product_aligned(goal, make_purchase(score=69.9).product)
        assert not is_product_aligned(goal, make_purchase(score=None).product)

        zero_goal = make_goal(goal_type="score-based", config={"minimumScore": 0, "percentage": 50})
        assert is_product_aligned(zero_goal, make_purchase(score=None).product)

    def test_category_based_requires_both(self, make_goal, make_purchase):
        goal = make_goal(goal_type="category-based")
        assert is_product_aligned(goal, make_purchase(grade="A", category="Electronics").product)
        assert not is_product_aligned(goal, make_purchase(grade="B", category="Electronics").product)
        assert not is_product_aligned(goal, make_purchase(grade="A", category="Fashion").product)


# =============================================================================
# Progress
# =============================================================================


class TestComputeProgress:
    """Tests for compute_progress and apply_purchase."""

    def test_empty_history(self, make_goal):
        progress = compute_progress(make_goal(), [])
        assert progress.total_purchases == 0
        assert progress.goal_met_purchases == 0
        assert progress.current_percentage == 0.0
        assert progress.streaks.current == 0
        assert progress.streaks.best == 0

    def test_nine_of_ten_reaches_ninety_percent(self, make_goal, make_purchase):
        goal = make_goal(config={"targetGrades": ["A", "B"], "percentage": 80})
        history = [make_purchase(grade="A") for _ in range(9)] + [make_purchase(grade="D")]

        progress = compute_progress(goal, history)

        assert progress.total_purchases == 10
        assert progress.goal_met_purchases == 9
        assert progress.current_percentage == 90.0
        assert is_achieved(goal, progress) is True

    def test_quantities_are_summed(self, make_goal, make_purchase):
        goal = make_goal()
        progress = compute_progress(goal, [make_purchase(grade="A", quantity=3), make_purchase(grade="E", quantity=1)])
        assert progress.total_purchases == 4
        assert progress.goal_met_purchases == 3
        assert progress.current_percentage == 75.0

    def test_percentage_rounded_to_one_decimal(self, make_goal, make_purchase):
        goal = make_goal()
        progress = compute_progress(goal, [make_purchase(grade="A"), make_purchase(grade="F"), make_purchase(grade="F")])
        assert progress.current_percentage == 33.3

    def test_zero_quantity_is_ignored(self, make_goal, make_purchase):
        goal = make_goal()
        progress = compute_progress(goal, [make_purchase(grade="A"), make_purchase(grade="F", quantity=0)])
        assert progress.total_purchases == 1
        assert progress.streaks.current == 1

    def test_streaks(self, make_goal, make_purchase):
        goal = make_goal()
        grades = ["A", "A", "A", "F", "B", "A"]
        progress = compute_progress(goal, [make_purchase(grade=g) for g in grades])
        assert progress.streaks.best == 3
        assert progress.streaks.current == 2

    def test_streak_counts_records_not_units(self, make_goal, make_purchase):
        goal = make_goal()
        progress = compute_progress(goal, [make_purchase(grade="A", quantity=5)])
        assert progress.streaks.current == 1
        assert progress.streaks.best == 1

    def test_existing_progress_is_not_modified(self, make_goal, make_purchase):
        goal = make_goal()
        existing = compute_progress(goal, [make_purchase(grade="A")])
        apply_purchase(existing, goal, [make_purchase(grade="F")])
        assert existing.total_purchases == 1
        assert existing.goal_met_purchases == 1

    @pytest.mark.parametrize("seed", [1, 7, 42, 1234])
    def test_bounds_hold_for_random_histories(self, seed, make_goal, make_purchase):
        rng = random.Random(seed)
        for goal_type in ("grade-based", "score-based", "category-based"):
            goal = make_goal(goal_type=goal_type)
            progress = compute_progress(goal, _random_history(rng, make_purchase, 40))
            assert 0 <= progress.goal_met_purchases <= progress.total_purchases
            assert 0.0 <= progress.current_percentage <= 100.0
            assert progress.streaks.best >= progress.streaks.current >= 0

    @pytest.mark.parametrize("seed", [3, 11, 99])
    def test_incremental_matches_recompute(self, seed, make_goal, make_purchase):
        rng = random.Random(seed)
        goal = make_goal(goal_type="score-based")
        history = _random_history(rng, make_purchase, 30)
        split = rng.randint(0, len(history))

        incremental = apply_purchase(compute_progress(goal, history[:split]), goal, history[split:])

        assert incremental == compute_progress(goal, history)

    def test_progress_for_all_is_independent(self, make_goal, make_purchase):
        grade_goal = make_goal("g1", "grade-based")
        category_goal = make_goal("g2", "category-based")
        history = [make_purchase(grade="A", category="Electronics"), make_purchase(grade="B", category="Fashion")]

        result = compute_progress_for_all([grade_goal, category_goal], history)

        assert result["g1"].goal_met_purchases == 2
        assert result["g2"].goal_met_purchases == 1
        assert result["g1"] == compute_progress(grade_goal, history)


class TestApplyProgress:
    """Tests for apply_progress achievement stamping."""

    NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)

    def test_stamps_achieved_at_on_transition(self, make_goal):
        goal = make_goal()
        progress = Progress(total_purchases=10, goal_met_purchases=9)

        updated = apply_progress(goal, progress, now=self.NOW)

        assert updated.is_achieved is True
        assert updated.achieved_at == self.NOW
        assert goal.is_achieved is False

    def test_keeps_existing_achieved_at(self, make_goal):
        goal = apply_progress(make_goal(), Progress(total_purchases=10, goal_met_purchases=9), now=self.NOW)
        later = datetime(2024, 6, 1, tzinfo=timezone.utc)

        updated = apply_progress(goal, Progress(total_purchases=11, goal_met_purchases=10), now=later)

        assert updated.achieved_at == self.NOW

    def test_clears_achieved_at_when_dropping_below_target(self, make_goal):
        goal = apply_progress(make_goal(), Progress(total_purchases=10, goal_met_purchases=9), now=self.NOW)

        updated = apply_progress(goal, Progress(total_purchases=20, goal_met_purchases=9), now=self.NOW)

        assert updated.is_achieved is False
        assert updated.achieved_at is None

    def test_confirmed_flag(self, make_goal):
        goal = make_goal()
        assert apply_progress(goal, Progress(), confirmed=False).confirmed is False
        assert apply_progress(goal, Progress()).confirmed is True


# =============================================================================
# Alignment report, stats, difficulty
# =============================================================================


class TestCheckProductMeetsGoals:
    """Tests for check_product_meets_goals."""

    def test_only_active_goals_count(self, make_goal, make_purchase):
        goals = [
            make_goal("g1", "grade-based"),
            make_goal("g2", "category-based"),
            make_goal("g3", "grade-based", isActive=False),
        ]
        report = check_product_meets_goals(make_purchase(grade="A", category="Fashion").product, goals)

        assert report.meets_any_goal is True
        assert report.total_goals == 2
        assert [m.goal_id for m in report.matching_goals] == ["g1"]
        assert report.alignment_percentage == 50.0

    def test_no_active_goals(self, make_goal, make_purchase):
        report = check_product_meets_goals(make_purchase().product, [make_goal(isActive=False)])
        assert report.meets_any_goal is False
        assert report.total_goals == 0
        assert report.alignment_percentage == 0.0

    def test_to_dict(self, make_goal, make_purchase):
        data = check_product_meets_goals(make_purchase(grade="A").product, [make_goal()]).to_dict()
        assert data["meetsAnyGoal"] is True
        assert data["matchingGoals"] == [{"goalId": "g1", "goalTitle": "Goal g1", "goalType": "grade-based"}]
        assert data["alignmentPercentage"] == 100.0


class TestGoalStats:
    """Tests for compute_goal_stats."""

    def test_empty(self):
        stats = compute_goal_stats([])
        assert stats.total_goals == 0
        assert stats.goal_types == {"grade-based": 0, "score-based": 0, "category-based": 0}

    def test_counts(self, make_goal):
        achieved = apply_progress(make_goal("g1"), Progress(total_purchases=10, goal_met_purchases=10))
        halfway = apply_progress(make_goal("g2", "score-based", isActive=False), Progress(total_purchases=2, goal_met_purchases=1))

        stats = compute_goal_stats([achieved, halfway])

        assert stats.total_goals == 2
        assert stats.active_goals == 1
        assert stats.achieved_goals == 1
        assert stats.average_progress == 75.0
        assert stats.goal_types["grade-based"] == 1
        assert stats.goal_types["score-based"] == 1


class TestDifficulty:
    """Tests for calculate_difficulty."""

    def test_hard_single_grade_high_target(self, make_goal):
        goal = make_goal(config={"targetGrades": ["A"], "percentage": 90})
        assert calculate_difficulty(goal) == "hard"

    def test_easy_many_grades_low_target(self, make_goal):
        goal = make_goal(config={"targetGrades": ["A", "B", "C"], "percentage": 40})
        assert calculate_difficulty(goal) == "easy"

    def test_medium_score_based(self, make_goal):
        goal = make_goal(goal_type="score-based", config={"minimumScore": 65, "percentage": 60})
        assert calculate_difficulty(goal) == "medium"
