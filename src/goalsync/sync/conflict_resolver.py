# src/goalsync/sync/conflict_resolver.py
"""
Reconciliation of local and server goal lists.

Rules, per goal id in the union of both sides:

- only local: kept (a creation the server has not seen yet)
- only on the server: adopted, unless a local deletion of that id is still
  pending (tombstoned), in which case it stays out
- on both sides: the user-editable fields ``title``, ``goal_type``,
  ``goal_config`` and ``is_active`` are compared. Equal fields take the
  server version, whose progress is authoritative. Differing fields are a
  conflict, resolved last-write-wins on ``updated_at`` (falling back to
  ``created_at``); ties go to the server.

Resolution is a pure function: the same inputs always produce the same
resolved list (local order first, then server-only goals in server order)
and the same conflict records.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from ..exceptions import ConflictDetected
from ..models import Goal

CONFLICT_FIELDS = ("title", "goal_type", "goal_config", "is_active")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class ConflictRecord:
    """Both versions of a goal edited on each side, kept for inspection."""

    goal_id: str
    local: Goal
    server: Goal
    local_newer: bool
    differing_fields: List[str] = field(default_factory=list)

    @property
    def resolution(self) -> str:
        return "local" if self.local_newer else "server"

    @property
    def winner(self) -> Goal:
        return self.local if self.local_newer else self.server

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.goal_id,
            "local": self.local.to_wire(),
            "server": self.server.to_wire(),
            "localNewer": self.local_newer,
            "differingFields": list(self.differing_fields),
            "resolution": self.resolution,
        }


@dataclass
class ResolutionResult:
    resolved: List[Goal] = field(default_factory=list)
    conflicts: List[ConflictRecord] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    def raise_for_conflicts(self) -> None:
        """Raise ConflictDetected when any conflict was recorded."""
        if self.conflicts:
            raise ConflictDetected(self.conflicts)


def _field_value(goal: Goal, name: str) -> Any:
    value = getattr(goal, name)
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    if hasattr(value, "value"):
        return value.value
    return value


def differing_fields(local: Goal, server: Goal) -> List[str]:
    """Names of the user-editable fields whose values differ."""
    return [name for name in CONFLICT_FIELDS if _field_value(local, name) != _field_value(server, name)]


def _modified_at(goal: Goal) -> datetime:
    return goal.last_modified or _EPOCH


class ConflictResolver:
    """
    Merges a local goal set with a server goal set.

    Stateless; one instance can be shared by every sync pass.

    Example:
        result = ConflictResolver().resolve(local_goals, server_goals)
        for conflict in result.conflicts:
            print(conflict.goal_id, conflict.resolution)
    """

    def resolve(
        self,
        local_goals: Iterable[Goal],
        server_goals: Iterable[Goal],
        tombstones: Optional[Iterable[str]] = None,
    ) -> ResolutionResult:
        local_list = list(local_goals)
        server_list = list(server_goals)
        deleted = set(tombstones or ())

        local_by_id: Dict[str, Goal] = {}
        for goal in local_list:
            local_by_id.setdefault(goal.id, goal)
        server_by_id: Dict[str, Goal] = {}
        for goal in server_list:
            server_by_id.setdefault(goal.id, goal)

        ordered_ids = list(local_by_id)
        ordered_ids.extend(gid for gid in server_by_id if gid not in local_by_id)

        result = ResolutionResult()
        for goal_id in ordered_ids:
            local = local_by_id.get(goal_id)
            server = server_by_id.get(goal_id)

            if server is None:
                result.resolved.append(local)
                continue

            if local is None:
                if goal_id not in deleted:
                    result.resolved.append(server)
                continue

            diff = differing_fields(local, server)
            if not diff:
                result.resolved.append(server)
                continue

            local_newer = _modified_at(local) > _modified_at(server)
            conflict = ConflictRecord(
                goal_id=goal_id,
                local=local,
                server=server,
                local_newer=local_newer,
                differing_fields=diff,
            )
            result.conflicts.append(conflict)
            result.resolved.append(conflict.winner)

        return result
