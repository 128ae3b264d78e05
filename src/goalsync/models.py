# src/goalsync/models.py
"""
Pydantic models for the goal engine's data structures.

Every model reads and writes the camelCase wire format used by the remote
goal API (``goalType``, ``goalConfig``, ``isActive`` ...) while exposing
snake_case attributes to Python callers.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

T = TypeVar("T")

TEMP_ID_PREFIX = "temp_"


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(v: Any) -> Optional[datetime]:
    """
    Coerce ISO strings, epoch milliseconds and datetimes into aware UTC datetimes.
    Naive values are assumed to be UTC. Returns None for empty input.
    """
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        parsed = v
    elif isinstance(v, (int, float)):
        parsed = datetime.fromtimestamp(v / 1000.0, tz=timezone.utc)
    elif isinstance(v, str):
        text = v[:-1] + "+00:00" if v.endswith("Z") else v
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class Grade(str, Enum):
    """Sustainability grade of a product, A best to F worst."""
    A = "A"
    B = "B"
    C = "C"
    D = "D"
    E = "E"
    F = "F"

    @classmethod
    def _missing_(cls, value: object):  # type: ignore[misc]
        """Accept lowercase grades."""
        if isinstance(value, str):
            upper_value = value.strip().upper()
            for member in cls:
                if member.value == upper_value:
                    return member
        return None


class GoalType(str, Enum):
    """Variant tag selecting how a goal's config is interpreted."""
    GRADE_BASED = "grade-based"
    SCORE_BASED = "score-based"
    CATEGORY_BASED = "category-based"

    @classmethod
    def _missing_(cls, value: object):  # type: ignore[misc]
        """Handle case-insensitive matching and underscore spellings such as ``grade_based``."""
        if isinstance(value, str):
            normalized = value.strip().lower().replace("_", "-")
            for member in cls:
                if member.value == normalized:
                    return member
        return None


class ChangeType(str, Enum):
    """Kind of mutation recorded in the offline change log."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class WireModel(BaseModel):
    """Base for models exchanged with the remote API and the local store."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dict using camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


class GoalConfig(WireModel):
    """
    Type-specific goal configuration.

    grade-based goals use ``target_grades``, score-based goals use
    ``minimum_score``, category-based goals use ``categories`` and
    ``target_grades``. ``percentage`` is the share of aligned purchases
    the user is aiming for. Range checks live in
    :mod:`goalsync.progress.validation`; this model only normalizes.
    """

    target_grades: List[Grade] = Field(default_factory=list)
    minimum_score: Optional[float] = None
    categories: List[str] = Field(default_factory=list)
    percentage: float = 80.0

    @field_validator("target_grades", mode="after")
    @classmethod
    def sort_grades(cls, v: List[Grade]) -> List[Grade]:
        return sorted(set(v), key=lambda g: g.value)

    @field_validator("categories", mode="after")
    @classmethod
    def sort_categories(cls, v: List[str]) -> List[str]:
        return sorted({c.strip() for c in v if c and c.strip()})


class Streaks(WireModel):
    current: int = 0
    best: int = 0

    @model_validator(mode="after")
    def clamp(self) -> "Streaks":
        self.current = max(0, self.current)
        self.best = max(0, self.best, self.current)
        return self


class Progress(WireModel):
    """
    Derived progress metrics of a goal.

    ``current_percentage`` is always recomputed from the purchase counts
    so the stored value can never drift from them.
    """

    total_purchases: int = 0
    goal_met_purchases: int = 0
    current_percentage: float = 0.0
    streaks: Streaks = Field(default_factory=Streaks)

    @model_validator(mode="after")
    def enforce_invariants(self) -> "Progress":
        self.total_purchases = max(0, self.total_purchases)
        self.goal_met_purchases = min(max(0, self.goal_met_purchases), self.total_purchases)
        self.current_percentage = percentage_of(self.goal_met_purchases, self.total_purchases)
        return self


def percentage_of(met: int, total: int) -> float:
    """Share of ``met`` in ``total`` as a percentage rounded to one decimal."""
    if total <= 0:
        return 0.0
    return round(met / total * 100, 1)


class Goal(WireModel):
    """A user-authored sustainability purchasing target."""

    id: str
    user_id: Optional[str] = None
    title: str = ""
    description: str = ""
    goal_type: GoalType
    goal_config: GoalConfig = Field(default_factory=GoalConfig)
    is_active: bool = True
    progress: Progress = Field(default_factory=Progress)
    is_achieved: bool = False
    achieved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    # False while the goal carries a tentative local purchase update
    confirmed: bool = True

    @model_validator(mode="before")
    @classmethod
    def accept_server_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and "id" not in data and "_id" in data:
            data = {**data, "id": str(data["_id"])}
            data.pop("_id", None)
        return data

    @field_validator("achieved_at", "created_at", "updated_at", mode="before")
    @classmethod
    def ensure_utc_timestamp(cls, v: Any) -> Optional[datetime]:
        return parse_timestamp(v)

    @model_validator(mode="after")
    def derive_achievement(self) -> "Goal":
        self.is_achieved = self.progress.current_percentage >= self.goal_config.percentage
        return self

    @property
    def target_percentage(self) -> float:
        return self.goal_config.percentage

    @property
    def progress_ratio(self) -> float:
        """Current percentage as a fraction of the goal's target."""
        if self.goal_config.percentage <= 0:
            return 0.0
        return self.progress.current_percentage / self.goal_config.percentage

    @property
    def last_modified(self) -> Optional[datetime]:
        return self.updated_at or self.created_at

    @property
    def is_temporary(self) -> bool:
        """True for goals created offline that have no server id yet."""
        return self.id.startswith(TEMP_ID_PREFIX)


class ProductSnapshot(WireModel):
    """
    Product attributes captured at purchase time.

    Frozen so later rating changes to the live product never alter past purchases.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    product_id: Optional[str] = None
    name: str = ""
    grade: Optional[Grade] = None
    score: Optional[float] = None
    category: Optional[str] = None
    price: float = 0.0

    @model_validator(mode="before")
    @classmethod
    def accept_product_aliases(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "grade" not in data and "sustainabilityGrade" in data:
            data["grade"] = data.pop("sustainabilityGrade")
        if "score" not in data and "sustainabilityScore" in data:
            data["score"] = data.pop("sustainabilityScore")
        if "productId" not in data and "product_id" not in data and "_id" in data:
            data["productId"] = str(data.pop("_id"))
        return data

    @field_validator("grade", mode="before")
    @classmethod
    def lenient_grade(cls, v: Any) -> Optional[Grade]:
        if v is None or isinstance(v, Grade):
            return v
        try:
            return Grade(v)
        except ValueError:
            return None

    @field_validator("score", mode="before")
    @classmethod
    def lenient_score(cls, v: Any) -> Optional[float]:
        if v is None:
            return None
        try:
            return float(v)
        except (TypeError, ValueError):
            return None


class PurchaseRecord(WireModel):
    """One line item of a completed order. Each record is one purchase event."""

    product: ProductSnapshot
    quantity: int = 1
    purchase_date: Optional[datetime] = None
    order_id: Optional[str] = None
    price: Optional[float] = None

    @field_validator("quantity", mode="before")
    @classmethod
    def clamp_quantity(cls, v: Any) -> int:
        """Negative or malformed quantities count as zero."""
        try:
            return max(0, int(v))
        except (TypeError, ValueError):
            return 0

    @field_validator("purchase_date", mode="before")
    @classmethod
    def ensure_utc_timestamp(cls, v: Any) -> Optional[datetime]:
        return parse_timestamp(v)

    @property
    def unit_price(self) -> float:
        return self.price if self.price is not None else self.product.price


class OfflineChange(WireModel):
    """A goal mutation recorded while the remote authority was unreachable."""

    id: str
    type: ChangeType
    goal_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    synced: bool = False
    synced_at: Optional[datetime] = None

    @field_validator("timestamp", "synced_at", mode="before")
    @classmethod
    def ensure_utc_timestamp(cls, v: Any) -> Optional[datetime]:
        return parse_timestamp(v)


class CacheEntry(WireModel, Generic[T]):
    """Wrapper persisted around every cached payload."""

    data: T
    timestamp: datetime = Field(default_factory=utcnow)
    from_server: bool = False
    version: int = 1


class GoalStats(WireModel):
    """Aggregate counters over a user's goals, as served by the remote API."""

    total_goals: int = 0
    active_goals: int = 0
    achieved_goals: int = 0
    average_progress: float = 0.0
    goal_types: Dict[str, int] = Field(
        default_factory=lambda: {t.value: 0 for t in GoalType}
    )


class UserPreferences(WireModel):
    auto_sync: bool = True
    animations_enabled: bool = True
    notifications_enabled: bool = True
    # milliseconds
    cache_expiration: int = 10 * 60 * 1000
