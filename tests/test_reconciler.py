"""
Sync reconciler tests
Merge rules and the engine-facing driver, against an in-process fake remote
"""
import pytest
from datetime import datetime, timedelta, timezone

from core.clock import FixedClock
from core.engine import CoolingEngine
from core.errors import SyncError
from core.policy import due_times
from core.reconciler import SyncReconciler, reconcile
from core.session_store import InMemorySessionStore
from models.cooling import CoolingSession, CoolingStatus
from models.events import CoolingEventType


T0 = datetime(2026, 1, 17, 12, 0, tzinfo=timezone.utc)
FETCHED_AT = T0 + timedelta(minutes=5)


def make_session(session_id, status=CoolingStatus.ACTIVE, started_at=T0, **kwargs):
    soft, hard = due_times(started_at)
    return CoolingSession(
        id=session_id,
        site_id="site-1",
        item_name=kwargs.pop("item_name", f"Item {session_id}"),
        started_at=started_at,
        soft_due_at=soft,
        hard_due_at=hard,
        status=status,
        **kwargs
    )


class FakeRemote:
    """Remote store double: list/put with switchable failures"""

    def __init__(self, sessions=None):
        self.sessions = {s.id: s for s in (sessions or [])}
        self.fail_list = False
        self.fail_put = 0
        self.list_calls = 0
        self.put_calls = []
        self.empty_reads = 0
        self.events = {}
        self.fail_event_put = 0

    async def list(self, site_id):
        self.list_calls += 1
        if self.fail_list:
            raise SyncError("offline")
        if self.empty_reads > 0:
            self.empty_reads -= 1
            return []
        return [s for s in self.sessions.values() if s.site_id == site_id]

    async def get(self, session_id):
        return self.sessions.get(session_id)

    async def put(self, session):
        self.put_calls.append(session.id)
        if self.fail_put > 0:
            self.fail_put -= 1
            raise SyncError("503")
        self.sessions[session.id] = session

    async def put_event(self, event):
        if self.fail_event_put > 0:
            self.fail_event_put -= 1
            raise SyncError("503")
        assert event.session_id in self.sessions
        self.events[event.id] = event


def fetch_returning(sessions):
    async def fetch():
        return sessions
    return fetch


async def failing_fetch():
    raise SyncError("connection refused")


class TestReconcile:

    @pytest.mark.asyncio
    async def test_empty_remote_keeps_local(self):
        local = [make_session("a"), make_session("b"), make_session("c")]
        result = await reconcile(local, fetch_returning([]))

        assert result.sessions == local
        assert result.retry is True
        assert result.to_push == []

    @pytest.mark.asyncio
    async def test_fetch_failure_keeps_local(self):
        local = [make_session("a"), make_session("b")]
        result = await reconcile(local, failing_fetch)

        assert result.sessions == local
        assert result.remote_ok is False

    @pytest.mark.asyncio
    async def test_both_empty(self):
        result = await reconcile([], fetch_returning([]))
        assert result.sessions == []
        assert result.retry is False

    @pytest.mark.asyncio
    async def test_remote_authoritative_for_its_sessions(self):
        local = [make_session("a", item_name="Soup")]
        remote = [make_session("a", item_name="Vegetable Soup")]
        result = await reconcile(local, fetch_returning(remote), fetched_at=FETCHED_AT)

        assert len(result.sessions) == 1
        assert result.sessions[0].item_name == "Vegetable Soup"
        assert result.sessions[0].synced_at == FETCHED_AT
        assert result.to_push == []

    @pytest.mark.asyncio
    async def test_union_with_local_only_sessions(self):
        local = [make_session("a"), make_session("local-only", started_at=T0 + timedelta(minutes=1))]
        remote = [make_session("a"), make_session("remote-only", started_at=T0 - timedelta(minutes=1))]
        result = await reconcile(local, fetch_returning(remote), fetched_at=FETCHED_AT)

        assert [s.id for s in result.sessions] == ["local-only", "a", "remote-only"]
        assert [s.id for s in result.to_push] == ["local-only"]

    @pytest.mark.asyncio
    async def test_local_terminal_beats_stale_remote(self):
        closed = make_session("a", status=CoolingStatus.CLOSED, closed_at=T0 + timedelta(minutes=40))
        remote = [make_session("a", status=CoolingStatus.WARNING)]
        result = await reconcile([closed], fetch_returning(remote))

        assert result.sessions == [closed]
        assert result.to_push == [closed]

    @pytest.mark.asyncio
    async def test_remote_terminal_beats_open_local(self):
        local = [make_session("a", status=CoolingStatus.OVERDUE)]
        remote = [make_session("a", status=CoolingStatus.DISCARDED, closed_at=T0 + timedelta(minutes=150))]
        result = await reconcile(local, fetch_returning(remote), fetched_at=FETCHED_AT)

        assert result.sessions[0].status == CoolingStatus.DISCARDED


@pytest.fixture
def clock():
    return FixedClock(T0)


@pytest.fixture
def engine(clock):
    return CoolingEngine(InMemorySessionStore(), "site-1", clock=clock, sync_events=True)


class TestSyncReconciler:

    @pytest.mark.asyncio
    async def test_disabled_without_remote(self, engine):
        reconciler = SyncReconciler(engine, None)
        assert reconciler.enabled is False
        assert await reconciler.sync() is None
        assert await reconciler.push("anything") is False

    @pytest.mark.asyncio
    async def test_sync_pulls_remote_sessions_into_engine(self, engine):
        remote = FakeRemote([make_session("r1"), make_session("r2")])
        reconciler = SyncReconciler(engine, remote, retry_delay=0)

        await reconciler.sync()

        assert {s.id for s in engine.list_sessions()} == {"r1", "r2"}
        assert all(s.synced_at is not None for s in engine.list_sessions())

    @pytest.mark.asyncio
    async def test_sync_pushes_local_only_sessions(self, engine):
        remote = FakeRemote([make_session("r1")])
        reconciler = SyncReconciler(engine, remote, retry_delay=0)
        local = await engine.start_cooling("Soup")

        await reconciler.sync()

        assert local.id in remote.sessions
        assert engine.get_session(local.id).synced_at is not None

    @pytest.mark.asyncio
    async def test_empty_remote_read_does_not_erase_and_retries(self, engine):
        remote = FakeRemote()
        reconciler = SyncReconciler(engine, remote, max_retries=3, retry_delay=0)
        for name in ("Soup", "Stew", "Stock"):
            await engine.start_cooling(name)
        remote.empty_reads = 1
        # The three sessions are pushed once the retry sees a real (non-empty) remote
        remote.sessions = {"seed": make_session("seed")}

        result = await reconciler.sync()
        assert result.retry is True
        assert len(engine.list_sessions()) == 3

        await reconciler.drain()
        assert remote.list_calls >= 2
        assert len(engine.list_sessions()) == 4
        assert {s.item_name for s in remote.sessions.values()} >= {"Soup", "Stew", "Stock"}

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, engine):
        remote = FakeRemote()
        remote.fail_list = True
        reconciler = SyncReconciler(engine, remote, max_retries=2, retry_delay=0)
        await engine.start_cooling("Soup")

        await reconciler.sync()
        await reconciler.drain()

        assert remote.list_calls == 3
        assert len(engine.list_sessions()) == 1

    @pytest.mark.asyncio
    async def test_push_retries_then_succeeds(self, engine):
        remote = FakeRemote()
        remote.fail_put = 2
        reconciler = SyncReconciler(engine, remote, max_retries=3, retry_delay=0)
        session = await engine.start_cooling("Soup")

        assert await reconciler.push(session.id) is True
        assert remote.put_calls == [session.id] * 3

    @pytest.mark.asyncio
    async def test_push_gives_up_without_raising(self, engine):
        remote = FakeRemote()
        remote.fail_put = 10
        reconciler = SyncReconciler(engine, remote, max_retries=3, retry_delay=0)
        session = await engine.start_cooling("Soup")

        assert await reconciler.push(session.id) is False
        assert len(remote.put_calls) == 3
        assert engine.get_session(session.id).synced_at is None

    @pytest.mark.asyncio
    async def test_write_hook_pushes_in_background(self, engine):
        remote = FakeRemote()
        reconciler = SyncReconciler(engine, remote, retry_delay=0)
        engine.on_write = reconciler.schedule_push

        session = await engine.start_cooling("Soup")
        await reconciler.drain()
        assert remote.sessions[session.id].status == CoolingStatus.ACTIVE

        await engine.close_cooling(session.id, 3.0)
        await reconciler.drain()
        assert remote.sessions[session.id].status == CoolingStatus.CLOSED

    @pytest.mark.asyncio
    async def test_offline_skips_push_and_reconnect_syncs(self, engine):
        remote = FakeRemote([make_session("r1")])
        reconciler = SyncReconciler(engine, remote, retry_delay=0)
        engine.on_write = reconciler.schedule_push

        await reconciler.set_online(False)
        session = await engine.start_cooling("Soup")
        await reconciler.drain()
        assert session.id not in remote.sessions

        result = await reconciler.set_online(True)
        assert result is not None
        assert session.id in remote.sessions
        assert engine.get_session("r1") is not None

    @pytest.mark.asyncio
    async def test_sync_does_not_reopen_closed_session(self, engine):
        session = await engine.start_cooling("Soup")
        remote = FakeRemote([session])
        reconciler = SyncReconciler(engine, remote, retry_delay=0)
        await engine.close_cooling(session.id, 3.0)

        await reconciler.sync()

        assert engine.get_session(session.id).status == CoolingStatus.CLOSED
        assert remote.sessions[session.id].status == CoolingStatus.CLOSED


class TestEventPush:

    @pytest.mark.asyncio
    async def test_session_push_carries_its_events(self, engine):
        remote = FakeRemote()
        reconciler = SyncReconciler(engine, remote, retry_delay=0)
        engine.on_write = reconciler.schedule_push

        session = await engine.start_cooling("Soup")
        await reconciler.drain()
        await engine.close_cooling(session.id, 3.0)
        await reconciler.drain()

        sent = sorted(remote.events.values(), key=lambda e: e.timestamp)
        assert {e.event_type for e in sent} == {CoolingEventType.STARTED, CoolingEventType.CLOSED}
        assert all(e.session_id == session.id for e in sent)
        assert engine.unsynced_events() == []

    @pytest.mark.asyncio
    async def test_offline_events_queued_until_reconnect(self, engine):
        remote = FakeRemote([make_session("r1")])
        reconciler = SyncReconciler(engine, remote, retry_delay=0)
        engine.on_write = reconciler.schedule_push

        await reconciler.set_online(False)
        session = await engine.start_cooling("Soup")
        await engine.discard_cooling(session.id, "dropped")
        await reconciler.drain()
        assert remote.events == {}
        assert len(engine.unsynced_events()) == 2

        await reconciler.set_online(True)

        assert remote.sessions[session.id].status == CoolingStatus.DISCARDED
        assert {e.event_type for e in remote.events.values()} == {
            CoolingEventType.STARTED,
            CoolingEventType.DISCARDED,
        }
        assert engine.unsynced_events() == []

    @pytest.mark.asyncio
    async def test_failed_event_stays_queued_for_next_sync(self, engine):
        remote = FakeRemote([make_session("r1")])
        remote.fail_event_put = 1
        reconciler = SyncReconciler(engine, remote, retry_delay=0)
        session = await engine.start_cooling("Soup")

        assert await reconciler.push(session.id) is True
        assert remote.events == {}
        assert len(engine.unsynced_events()) == 1

        await reconciler.sync()
        assert len(remote.events) == 1
        assert engine.unsynced_events() == []

    @pytest.mark.asyncio
    async def test_events_of_unpushed_sessions_are_held_back(self, engine):
        remote = FakeRemote()
        reconciler = SyncReconciler(engine, remote, retry_delay=0)
        await engine.start_cooling("Soup")

        assert await reconciler.push_events() == 0
        assert len(engine.unsynced_events()) == 1
