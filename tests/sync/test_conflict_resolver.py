# tests/sync/test_conflict_resolver.py
"""Tests for merging local and server goal lists."""

import random
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from goalsync.exceptions import ConflictDetected
from goalsync.sync.conflict_resolver import ConflictResolver, differing_fields

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def at(minutes):
    return (T0 + timedelta(minutes=minutes)).isoformat()


@pytest.fixture
def resolver():
    return ConflictResolver()


class TestResolve:
    """Tests for ConflictResolver.resolve."""

    def test_union_and_order(self, resolver, make_goal):
        local = [make_goal("l1"), make_goal("shared")]
        server = [make_goal("s1"), make_goal("shared"), make_goal("s2")]

        result = resolver.resolve(local, server)

        assert [g.id for g in result.resolved] == ["l1", "shared", "s1", "s2"]
        assert result.has_conflicts is False

    def test_equal_fields_take_server_progress(self, resolver, make_goal):
        local = make_goal("g1")
        server = make_goal("g1", progress={"totalPurchases": 10, "goalMetPurchases": 9})

        result = resolver.resolve([local], [server])

        assert result.resolved[0].progress.current_percentage == 90.0
        assert result.conflicts == []

    def test_divergent_edit_local_newer_wins(self, resolver, make_goal):
        local = make_goal("g1", title="Local title", updatedAt=at(10))
        server = make_goal("g1", title="Server title", updatedAt=at(5))

        result = resolver.resolve([local], [server])

        assert result.resolved[0].title == "Local title"
        assert len(result.conflicts) == 1
        conflict = result.conflicts[0]
        assert conflict.goal_id == "g1"
        assert conflict.local_newer is True
        assert conflict.resolution == "local"
        assert conflict.differing_fields == ["title"]
        assert conflict.to_dict()["local"]["title"] == "Local title"
        assert conflict.to_dict()["server"]["title"] == "Server title"

    def test_server_newer_wins(self, resolver, make_goal):
        local = make_goal("g1", isActive=False, updatedAt=at(1))
        server = make_goal("g1", isActive=True, updatedAt=at(2))

        result = resolver.resolve([local], [server])

        assert result.resolved[0].is_active is True
        assert result.conflicts[0].resolution == "server"

    def test_tie_goes_to_server(self, resolver, make_goal):
        local = make_goal("g1", title="Mine", updatedAt=at(3))
        server = make_goal("g1", title="Theirs", updatedAt=at(3))

        result = resolver.resolve([local], [server])

        assert result.resolved[0].title == "Theirs"
        assert result.conflicts[0].local_newer is False

    def test_falls_back_to_created_at(self, resolver, make_goal):
        local = make_goal("g1", title="Mine", updatedAt=None, createdAt=at(9))
        server = make_goal("g1", title="Theirs", updatedAt=None, createdAt=at(1))

        assert resolver.resolve([local], [server]).resolved[0].title == "Mine"

    def test_config_difference_is_a_conflict(self, make_goal):
        local = make_goal("g1", config={"targetGrades": ["A"], "percentage": 80})
        server = make_goal("g1", config={"targetGrades": ["A"], "percentage": 70})
        assert differing_fields(local, server) == ["goal_config"]

    def test_tombstoned_server_goal_is_dropped(self, resolver, make_goal):
        server = [make_goal("g1"), make_goal("g2")]

        result = resolver.resolve([make_goal("g2")], server, tombstones={"g1"})

        assert [g.id for g in result.resolved] == ["g2"]

    def test_local_only_goal_is_kept(self, resolver, make_goal):
        result = resolver.resolve([make_goal("temp_abc")], [])
        assert [g.id for g in result.resolved] == ["temp_abc"]

    def test_raise_for_conflicts(self, resolver, make_goal):
        result = resolver.resolve(
            [make_goal("g1", title="a", updatedAt=at(2))],
            [make_goal("g1", title="b", updatedAt=at(1))],
        )
        with pytest.raises(ConflictDetected) as exc_info:
            result.raise_for_conflicts()
        assert len(exc_info.value.conflicts) == 1

        resolver.resolve([], []).raise_for_conflicts()


class TestResolverProperties:
    """Determinism and idempotence over random goal sets."""

    def _random_side(self, rng, make_goal, prefix):
        goals = []
        for i in rng.sample(range(12), rng.randint(0, 10)):
            goals.append(
                make_goal(
                    f"g{i}",
                    title=rng.choice(["Alpha", "Beta", f"{prefix}{i}"]),
                    isActive=rng.choice([True, False]),
                    updatedAt=at(rng.randint(0, 5)),
                    progress={"totalPurchases": 4, "goalMetPurchases": rng.randint(0, 4)},
                )
            )
        return goals

    @pytest.mark.parametrize("seed", [0, 5, 17, 2024])
    def test_deterministic(self, seed, resolver, make_goal):
        rng = random.Random(seed)
        local = self._random_side(rng, make_goal, "L")
        server = self._random_side(rng, make_goal, "S")

        first = resolver.resolve(local, server)
        second = ConflictResolver().resolve(local, server)

        assert first.resolved == second.resolved
        assert [c.to_dict() for c in first.conflicts] == [c.to_dict() for c in second.conflicts]

    @pytest.mark.parametrize("seed", [1, 8, 33])
    def test_idempotent_against_same_server(self, seed, resolver, make_goal):
        rng = random.Random(seed)
        local = self._random_side(rng, make_goal, "L")
        server = self._random_side(rng, make_goal, "S")

        once = resolver.resolve(local, server).resolved
        twice = resolver.resolve(once, server).resolved

        assert [g.id for g in twice] == [g.id for g in once]
        assert twice == once

    def test_resolved_ids_are_unique(self, resolver, make_goal):
        result = resolver.resolve([make_goal("g1"), make_goal("g1")], [make_goal("g1"), make_goal("g2")])
        ids = [g.id for g in result.resolved]
        assert len(ids) == len(set(ids))

    def test_does_not_mutate_inputs(self, resolver, make_goal):
        local = [make_goal("g1", title="x", updatedAt=at(5))]
        server = [make_goal("g1", title="y", updatedAt=at(1))]
        snapshot = [g.model_copy(deep=True) for g in local + server]

        resolver.resolve(local, server)

        assert local + server == snapshot
