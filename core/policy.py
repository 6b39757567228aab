"""
Deadline Policy
FSAI SC3 two-stage cooling rule: warning at 90 minutes, violation at 120 minutes
"""
from datetime import datetime, timedelta
from typing import Optional, Tuple

from models.cooling import CoolingSession, CoolingStatus, TERMINAL_STATUSES, to_utc


SOFT_LIMIT = timedelta(minutes=90)
HARD_LIMIT = timedelta(minutes=120)

# Food must be below this when it goes into the fridge
SAFE_FRIDGE_TEMPERATURE_C = 8.0

_SEVERITY = {
    CoolingStatus.ACTIVE: 0,
    CoolingStatus.WARNING: 1,
    CoolingStatus.OVERDUE: 2,
}


def due_times(started_at: datetime) -> Tuple[datetime, datetime]:
    """
    Soft and hard deadlines for a session started at started_at

    Returns:
        (soft_due_at, hard_due_at) in UTC
    """
    started = to_utc(started_at)
    return started + SOFT_LIMIT, started + HARD_LIMIT


def is_terminal(status: CoolingStatus) -> bool:
    return status in TERMINAL_STATUSES


def severity(status: CoolingStatus) -> int:
    """
    Ordering active < warning < overdue. Terminal statuses rank above all of them
    so nothing can be moved out of a terminal state by comparing severities.
    """
    if is_terminal(status):
        return len(_SEVERITY)
    return _SEVERITY[status]


def evaluate_status(now: datetime, session: CoolingSession) -> CoolingStatus:
    """
    Compute the status a session should have at `now`

    Pure function: no I/O, no clock access. Terminal sessions are returned unchanged.
    """
    if is_terminal(session.status):
        return session.status

    now = to_utc(now)
    if now >= session.hard_due_at:
        return CoolingStatus.OVERDUE
    if now >= session.soft_due_at:
        return CoolingStatus.WARNING
    return CoolingStatus.ACTIVE


def supersedes(incoming: CoolingSession, current: CoolingSession) -> bool:
    """
    Whether `incoming` may replace `current` (two copies of the same session)

    A terminal copy is never replaced. Otherwise status may only move forward;
    at equal status the incoming copy wins if it differs.
    """
    if current.is_terminal:
        return False
    if incoming.is_terminal:
        return True
    if severity(incoming.status) != severity(current.status):
        return severity(incoming.status) > severity(current.status)
    return incoming.model_dump(exclude={"synced_at"}) != current.model_dump(exclude={"synced_at"})


def is_temperature_compliant(temperature: Optional[float]) -> Optional[bool]:
    if temperature is None:
        return None
    return temperature < SAFE_FRIDGE_TEMPERATURE_C


def elapsed_minutes(started_at: datetime, now: datetime) -> int:
    return int((to_utc(now) - to_utc(started_at)).total_seconds() // 60)
