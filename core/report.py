"""
Compliance Report
Period summary of cooling sessions for inspectors
"""
from datetime import datetime
from typing import Iterable, List, Optional
from pydantic import BaseModel

from models.cooling import CloseAction, CoolingSession, CoolingStatus, to_utc


class ComplianceSummary(BaseModel):
    period_start: datetime
    period_end: datetime
    total_sessions: int = 0
    completed_on_time: int = 0
    completed_late: int = 0
    discarded: int = 0
    exceptions: int = 0
    open: int = 0
    overdue_open: int = 0
    session_ids: List[str] = []


def summarize(sessions: Iterable[CoolingSession], start: datetime, end: datetime) -> ComplianceSummary:
    """
    Summarize sessions started in [start, end)

    Closed into the fridge at or before hard_due_at counts as on time.
    """
    start, end = to_utc(start), to_utc(end)
    summary = ComplianceSummary(period_start=start, period_end=end)

    for session in sessions:
        if not (start <= session.started_at < end):
            continue
        summary.total_sessions += 1
        summary.session_ids.append(session.id)

        if session.status == CoolingStatus.DISCARDED:
            summary.discarded += 1
        elif session.status == CoolingStatus.CLOSED:
            if session.close_action == CloseAction.EXCEPTION:
                summary.exceptions += 1
            elif _closed_on_time(session.closed_at, session.hard_due_at):
                summary.completed_on_time += 1
            else:
                summary.completed_late += 1
        else:
            summary.open += 1
            if session.status == CoolingStatus.OVERDUE:
                summary.overdue_open += 1

    return summary


def _closed_on_time(closed_at: Optional[datetime], hard_due_at: datetime) -> bool:
    return closed_at is not None and closed_at <= hard_due_at
