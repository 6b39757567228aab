"""
Alert board tests
"""
import pytest
from datetime import datetime, timedelta, timezone

from core.alerts import AlertBoard
from core.clock import FixedClock
from core.engine import CoolingEngine
from core.errors import NotFoundError
from core.session_store import InMemorySessionStore
from models.events import AlertType


T0 = datetime(2026, 1, 17, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
async def wired():
    engine = CoolingEngine(InMemorySessionStore(), "site-1", clock=FixedClock(T0))
    board = AlertBoard(clock=engine.clock)
    engine.subscribe(board.on_status_changed)
    return engine, board


@pytest.mark.asyncio
async def test_warning_then_overdue_alerts(wired):
    engine, board = wired
    session = await engine.start_cooling("Bolognese Sauce")

    await engine.sweep(T0 + timedelta(minutes=91))
    await engine.sweep(T0 + timedelta(minutes=121))

    alerts = board.alerts(session.id)
    assert [a.type for a in alerts] == [AlertType.WARNING, AlertType.OVERDUE]
    assert alerts[0].message == "Bolognese Sauce cooling for 90 minutes - check soon!"
    assert alerts[1].message == "Bolognese Sauce OVERDUE - action required NOW!"
    assert alerts[1].triggered_at == T0 + timedelta(minutes=121)


@pytest.mark.asyncio
async def test_no_alert_for_close(wired):
    engine, board = wired
    session = await engine.start_cooling("Soup")
    await engine.close_cooling(session.id, 3.0)
    assert board.alerts() == []


@pytest.mark.asyncio
async def test_acknowledge(wired):
    engine, board = wired
    await engine.start_cooling("Soup")
    await engine.sweep(T0 + timedelta(minutes=91))

    alert = board.unacknowledged()[0]
    acked = board.acknowledge(alert.id, "Sean", at=T0 + timedelta(minutes=92))

    assert acked.acknowledged is True
    assert acked.acknowledged_by == "Sean"
    assert acked.acknowledged_at == T0 + timedelta(minutes=92)
    assert board.unacknowledged() == []
    assert board.acknowledge(alert.id, "Someone else").acknowledged_by == "Sean"


def test_acknowledge_unknown():
    with pytest.raises(NotFoundError):
        AlertBoard().acknowledge("missing")


@pytest.mark.asyncio
async def test_acknowledge_stamped_from_clock(wired):
    engine, board = wired
    await engine.start_cooling("Soup")
    await engine.sweep(T0 + timedelta(minutes=121))
    engine.clock.set(T0 + timedelta(minutes=125))

    acked = [board.acknowledge(alert.id, "Sean") for alert in board.unacknowledged()]

    assert [a.type for a in acked] == [AlertType.WARNING, AlertType.OVERDUE]
    assert all(a.acknowledged_at == T0 + timedelta(minutes=125) for a in acked)
