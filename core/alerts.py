"""
Alert Board
Turns status changes into acknowledgeable warning/overdue alerts
"""
import logging
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from core.clock import Clock, SystemClock
from core.errors import NotFoundError
from models.cooling import CoolingStatus, to_utc
from models.events import Alert, AlertType, StatusChanged
from utils.text_utils import alert_message

logger = logging.getLogger(__name__)


class AlertBoard:
    """
    Subscribe with engine.subscribe(board.on_status_changed)

    Args:
        clock: stamps acknowledgements; pass the engine's clock
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self._alerts: Dict[str, Alert] = {}

    def on_status_changed(self, change: StatusChanged):
        if change.new_status == CoolingStatus.WARNING and change.old_status == CoolingStatus.ACTIVE:
            alert_type = AlertType.WARNING
        elif change.new_status == CoolingStatus.OVERDUE:
            alert_type = AlertType.OVERDUE
        else:
            return

        alert = Alert(
            id=str(uuid.uuid4()),
            session_id=change.session.id,
            type=alert_type,
            message=alert_message(change.session.item_name, alert_type),
            triggered_at=change.at,
        )
        self._alerts[alert.id] = alert
        logger.info("Alert raised: %s", alert.message)

    def alerts(self, session_id: Optional[str] = None) -> List[Alert]:
        alerts = sorted(self._alerts.values(), key=lambda a: a.triggered_at)
        if session_id is not None:
            alerts = [a for a in alerts if a.session_id == session_id]
        return alerts

    def unacknowledged(self) -> List[Alert]:
        return [a for a in self.alerts() if not a.acknowledged]

    def acknowledge(self, alert_id: str, by: Optional[str] = None, at: Optional[datetime] = None) -> Alert:
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise NotFoundError(alert_id)
        if alert.acknowledged:
            return alert
        updated = alert.model_copy(update={
            "acknowledged": True,
            "acknowledged_at": to_utc(at or self.clock.now()),
            "acknowledged_by": by,
        })
        self._alerts[alert_id] = updated
        return updated
