"""
Event Models
Status change notifications, audit log entries, alerts and kiosk WebSocket events
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from models.cooling import CoolingSession, CoolingStatus


class StatusChanged(BaseModel):
    """
    Emitted by the engine whenever a session's stored status changes
    """
    session: CoolingSession
    old_status: CoolingStatus
    new_status: CoolingStatus
    at: datetime


class CoolingEventType(str, Enum):
    STARTED = "started"
    WARNING_TRIGGERED = "warning_triggered"
    OVERDUE_TRIGGERED = "overdue_triggered"
    CLOSED = "closed"
    DISCARDED = "discarded"
    EXCEPTION_ADDED = "exception_added"


class CoolingEvent(BaseModel):
    """
    Append-only audit log entry for a cooling session

    synced_at is device-local: set once the remote store holds the event.
    """
    id: str
    session_id: str
    site_id: str
    event_type: CoolingEventType
    timestamp: datetime
    payload: Dict[str, Any] = Field(default_factory=dict)
    synced_at: Optional[datetime] = None


class AlertType(str, Enum):
    WARNING = "warning"
    OVERDUE = "overdue"


class Alert(BaseModel):
    id: str
    session_id: str
    type: AlertType
    message: str
    triggered_at: datetime
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None


class KioskWebEvent(BaseModel):
    """
    Event pushed to kiosk clients over the WebSocket
    """
    type: str  # "system", "cooling", "alert"
    event: str
    data: Any
