"""
Cooling Session Model
One record per batch of cooked food being cooled before refrigeration
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, field_validator, model_validator


class CoolingStatus(str, Enum):
    ACTIVE = "active"
    WARNING = "warning"
    OVERDUE = "overdue"
    CLOSED = "closed"
    DISCARDED = "discarded"


class FoodCategory(str, Enum):
    SAUCE = "sauce"
    SOUP = "soup"
    MEAT = "meat"
    VEGETABLE = "vegetable"
    OTHER = "other"


class CloseAction(str, Enum):
    IN_FRIDGE = "in_fridge"
    DISCARDED = "discarded"
    EXCEPTION = "exception"


TERMINAL_STATUSES = frozenset({CoolingStatus.CLOSED, CoolingStatus.DISCARDED})


def to_utc(value: datetime) -> datetime:
    """Naive timestamps are taken as UTC; aware ones are converted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CoolingSession(BaseModel):
    """
    Cooling session record

    Frozen: the engine replaces a session with model_copy(update=...) rather
    than mutating it, so snapshots handed to subscribers never change underneath them.
    """
    model_config = ConfigDict(frozen=True, use_enum_values=False)

    id: str
    site_id: str
    item_name: str
    category: FoodCategory = FoodCategory.OTHER
    started_at: datetime
    soft_due_at: datetime
    hard_due_at: datetime
    status: CoolingStatus = CoolingStatus.ACTIVE
    staff_name: Optional[str] = None
    start_temperature: Optional[float] = None

    closed_at: Optional[datetime] = None
    closing_temperature: Optional[float] = None
    close_action: Optional[CloseAction] = None
    closed_by: Optional[str] = None
    discard_reason: Optional[str] = None
    exception_reason: Optional[str] = None
    exception_approved_by: Optional[str] = None

    synced_at: Optional[datetime] = None

    @field_validator("started_at", "soft_due_at", "hard_due_at", "closed_at", "synced_at")
    @classmethod
    def _normalize_timestamp(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is None:
            return None
        return to_utc(value)

    @model_validator(mode="after")
    def _check_deadlines(self):
        if not (self.started_at < self.soft_due_at < self.hard_due_at):
            raise ValueError("expected started_at < soft_due_at < hard_due_at")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
