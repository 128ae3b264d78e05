# src/goalsync/progress/validation.py
"""
Shape and range checks for goal payloads.

Goal payloads are validated before anything is persisted or queued, so a
rejected goal never reaches the local store or the offline change log.
"""

from typing import Any, Dict, List, Mapping

from ..exceptions import ValidationError
from ..models import Grade, GoalType

MAX_TITLE_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 300

_VALID_GRADES = {g.value for g in Grade}


def _get(mapping: Mapping[str, Any], camel: str, snake: str, default: Any = None) -> Any:
    if camel in mapping:
        return mapping[camel]
    return mapping.get(snake, default)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_goal_config(goal_type: Any, config: Mapping[str, Any] | None) -> List[str]:
    """
    Validate a goal config against its goal type.

    Args:
        goal_type: ``grade-based``, ``score-based`` or ``category-based``
        config: Config mapping in camelCase or snake_case

    Returns:
        Error messages, empty when valid
    """
    errors: List[str] = []
    config = config or {}

    try:
        kind = GoalType(goal_type)
    except ValueError:
        return ["Invalid goal type"]

    percentage = config.get("percentage")
    if not _is_number(percentage) or not 1 <= percentage <= 100:
        errors.append("Percentage must be between 1 and 100")

    grades = _get(config, "targetGrades", "target_grades", []) or []
    categories = _get(config, "categories", "categories", []) or []

    if kind in (GoalType.GRADE_BASED, GoalType.CATEGORY_BASED) and not grades:
        errors.append("At least one target grade must be selected")
    invalid = sorted(
        str(g) for g in grades if str(getattr(g, "value", g)).upper() not in _VALID_GRADES
    )
    if invalid:
        errors.append(f"Invalid grades: {', '.join(invalid)}")

    if kind == GoalType.SCORE_BASED:
        minimum = _get(config, "minimumScore", "minimum_score")
        if not _is_number(minimum) or not 0 <= minimum <= 100:
            errors.append("Minimum score must be between 0 and 100")

    if kind == GoalType.CATEGORY_BASED:
        if not [c for c in categories if isinstance(c, str) and c.strip()]:
            errors.append("At least one category must be selected")

    return errors


def validate_goal_payload(payload: Mapping[str, Any], partial: bool = False) -> List[str]:
    """
    Validate a full goal payload (title, description, type and config).

    With ``partial=True`` only the fields present are checked, as for an update.
    A config update without a type cannot be checked and is reported.
    """
    errors: List[str] = []

    if not partial or "title" in payload:
        title = payload.get("title")
        if not isinstance(title, str) or not title.strip():
            errors.append("Title is required")
        elif len(title.strip()) > MAX_TITLE_LENGTH:
            errors.append(f"Title must be at most {MAX_TITLE_LENGTH} characters")

    description = payload.get("description")
    if description is not None:
        if not isinstance(description, str):
            errors.append("Description must be text")
        elif len(description) > MAX_DESCRIPTION_LENGTH:
            errors.append(f"Description must be at most {MAX_DESCRIPTION_LENGTH} characters")

    goal_type = _get(payload, "goalType", "goal_type")
    config = _get(payload, "goalConfig", "goal_config")

    if not partial or goal_type is not None or config is not None:
        if goal_type is None:
            errors.append("Goal type is required")
        elif config is None and not partial:
            errors.append("Goal config is required")
        elif config is not None:
            errors.extend(validate_goal_config(goal_type, config))
        else:
            try:
                GoalType(goal_type)
            except ValueError:
                errors.append("Invalid goal type")

    active = _get(payload, "isActive", "is_active")
    if active is not None and not isinstance(active, bool):
        errors.append("isActive must be a boolean")

    return errors


def ensure_valid_goal(payload: Mapping[str, Any], partial: bool = False) -> Dict[str, Any]:
    """
    Validate a payload and return it normalized to camelCase keys.

    Raises:
        ValidationError: With every message found
    """
    errors = validate_goal_payload(payload, partial=partial)
    if errors:
        raise ValidationError(errors)

    normalized: Dict[str, Any] = {}
    for camel, snake in (
        ("title", "title"),
        ("description", "description"),
        ("goalType", "goal_type"),
        ("goalConfig", "goal_config"),
        ("isActive", "is_active"),
    ):
        if camel in payload or snake in payload:
            value = _get(payload, camel, snake)
            if camel == "title" and isinstance(value, str):
                value = value.strip()
            if camel == "goalType":
                value = GoalType(value).value
            if camel == "goalConfig":
                value = _normalize_config(value)
            normalized[camel] = value
    return normalized


def _normalize_config(config: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for camel, snake in (
        ("targetGrades", "target_grades"),
        ("minimumScore", "minimum_score"),
        ("categories", "categories"),
        ("percentage", "percentage"),
    ):
        if camel in config or snake in config:
            out[camel] = _get(config, camel, snake)
    if "targetGrades" in out:
        out["targetGrades"] = [Grade(getattr(g, "value", g)).value for g in out["targetGrades"]]
    return out
