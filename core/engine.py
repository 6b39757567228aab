"""
Cooling Engine
Owns the cooling session lifecycle, the periodic status sweep, and status change notifications
"""
import asyncio
import inspect
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from core.clock import Clock, SystemClock
from core.errors import AlreadyTerminalError, NotFoundError, StorageError
from core.policy import (
    due_times,
    elapsed_minutes,
    evaluate_status,
    is_temperature_compliant,
    is_terminal,
    severity,
    supersedes,
)
from models.cooling import CloseAction, CoolingSession, CoolingStatus, FoodCategory, to_utc
from models.events import CoolingEvent, CoolingEventType, StatusChanged

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 10.0

# Sweep walks a session through every intermediate status, so subscribers see
# active -> warning -> overdue even if the device slept past the soft deadline.
_NEXT_STATUS = {
    CoolingStatus.ACTIVE: CoolingStatus.WARNING,
    CoolingStatus.WARNING: CoolingStatus.OVERDUE,
}

_TRIGGER_EVENTS = {
    CoolingStatus.WARNING: CoolingEventType.WARNING_TRIGGERED,
    CoolingStatus.OVERDUE: CoolingEventType.OVERDUE_TRIGGERED,
}

StatusCallback = Callable[[StatusChanged], Any]


def _status_steps(old: CoolingStatus, new: CoolingStatus) -> List[Tuple[CoolingStatus, CoolingStatus]]:
    """
    (from, to) pairs leading from old to new

    Open targets are reached one severity step at a time; a terminal target is
    a single step from wherever the session was.
    """
    steps = []
    status = old
    if not is_terminal(new):
        while status in _NEXT_STATUS and severity(status) < severity(new):
            steps.append((status, _NEXT_STATUS[status]))
            status = _NEXT_STATUS[status]
    if status != new:
        steps.append((status, new))
    return steps


class CoolingEngine:
    """
    Single owner of the in-memory session map for one site

    Every mutation (start, close, discard, exception, sweep, merge) runs under one
    asyncio.Lock. Subscribers are called while that lock is held, in transition order;
    coroutine callbacks are scheduled as tasks instead of awaited.

    Args:
        store: local session store; writes to it must succeed for start/close/discard
        site_id: venue this engine tracks
        clock: time source (SystemClock by default)
        sweep_interval: seconds between sweeps when the sweeper task runs
        on_write: called with each session after a successful local write from a
            user-initiated operation (the reconciler's push hook); must not block
        sync_events: keep recorded audit events in an outbox until mark_event_synced
            (enable when a remote store is configured)
    """

    def __init__(
        self,
        store,
        site_id: str,
        clock: Optional[Clock] = None,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        on_write: Optional[Callable[[CoolingSession], None]] = None,
        sync_events: bool = False,
    ):
        if sweep_interval <= 0:
            raise ValueError("sweep_interval must be positive")
        self.store = store
        self.site_id = site_id
        self.clock = clock or SystemClock()
        self.sweep_interval = sweep_interval
        self.on_write = on_write
        self.sync_events = sync_events
        self._sessions: Dict[str, CoolingSession] = {}
        self._unpersisted: Set[str] = set()
        self._events: List[CoolingEvent] = []
        self._outbox: Dict[str, CoolingEvent] = {}
        self._subscribers: List[StatusCallback] = []
        self._callback_tasks: Set[asyncio.Task] = set()
        self._lock = asyncio.Lock()
        self._sweeper_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    async def start_cooling(
        self,
        item_name: str,
        category=FoodCategory.OTHER,
        staff_name: Optional[str] = None,
        start_temperature: Optional[float] = None,
    ) -> CoolingSession:
        """
        Begin tracking a new batch

        Raises:
            ValueError: empty item name or unknown category
            StorageError: the local write failed; nothing is kept
        """
        item_name = (item_name or "").strip()
        if not item_name:
            raise ValueError("item_name is required")
        category = FoodCategory(category)

        now = to_utc(self.clock.now())
        soft_due_at, hard_due_at = due_times(now)
        session = CoolingSession(
            id=str(uuid.uuid4()),
            site_id=self.site_id,
            item_name=item_name,
            category=category,
            started_at=now,
            soft_due_at=soft_due_at,
            hard_due_at=hard_due_at,
            status=CoolingStatus.ACTIVE,
            staff_name=staff_name,
            start_temperature=start_temperature,
        )

        async with self._lock:
            await self._persist(session)
            self._sessions[session.id] = session
            await self._record(session, CoolingEventType.STARTED, now, {
                "item_name": item_name,
                "item_category": category.value,
                "staff_name": staff_name,
                "start_temperature": start_temperature,
            })

        logger.info("Cooling started: %s (%s) id=%s", item_name, category.value, session.id)
        self._notify_write(session)
        return session

    async def close_cooling(
        self,
        session_id: str,
        closing_temperature: Optional[float] = None,
        closed_by: Optional[str] = None,
    ) -> CoolingSession:
        """
        Item moved to the fridge

        Raises:
            NotFoundError, AlreadyTerminalError, StorageError
        """
        def changes(current: CoolingSession, now: datetime):
            was_overdue = evaluate_status(now, current) == CoolingStatus.OVERDUE
            update = {
                "status": CoolingStatus.CLOSED,
                "close_action": CloseAction.IN_FRIDGE,
                "closing_temperature": closing_temperature,
                "closed_by": closed_by,
            }
            payload = {
                "close_action": CloseAction.IN_FRIDGE.value,
                "was_overdue": was_overdue,
                "elapsed_minutes": elapsed_minutes(current.started_at, now),
                "closing_temperature": closing_temperature,
                "closed_by": closed_by,
                "temperature_compliant": is_temperature_compliant(closing_temperature),
            }
            return update, CoolingEventType.CLOSED, payload

        return await self._finish(session_id, changes)

    async def discard_cooling(self, session_id: str, reason: Optional[str] = None) -> CoolingSession:
        """
        Food thrown away. Mutually exclusive with close: whichever runs first wins.

        Raises:
            NotFoundError, AlreadyTerminalError, StorageError
        """
        def changes(current: CoolingSession, now: datetime):
            update = {
                "status": CoolingStatus.DISCARDED,
                "close_action": CloseAction.DISCARDED,
                "discard_reason": reason,
            }
            payload = {
                "reason": reason,
                "elapsed_minutes": elapsed_minutes(current.started_at, now),
            }
            return update, CoolingEventType.DISCARDED, payload

        return await self._finish(session_id, changes)

    async def add_exception(self, session_id: str, reason: str, approved_by: str) -> CoolingSession:
        """
        Manager sign-off closing a session outside the normal rule

        Raises:
            ValueError: missing reason or approver
            NotFoundError, AlreadyTerminalError, StorageError
        """
        if not (reason or "").strip() or not (approved_by or "").strip():
            raise ValueError("reason and approved_by are required for an exception")

        def changes(current: CoolingSession, now: datetime):
            update = {
                "status": CoolingStatus.CLOSED,
                "close_action": CloseAction.EXCEPTION,
                "exception_reason": reason,
                "exception_approved_by": approved_by,
            }
            payload = {
                "reason": reason,
                "approved_by": approved_by,
                "elapsed_minutes": elapsed_minutes(current.started_at, now),
            }
            return update, CoolingEventType.EXCEPTION_ADDED, payload

        return await self._finish(session_id, changes)

    async def _finish(self, session_id: str, changes) -> CoolingSession:
        async with self._lock:
            current = self._sessions.get(session_id)
            if current is None:
                raise NotFoundError(session_id)
            if current.is_terminal:
                raise AlreadyTerminalError(session_id, current.status)

            now = to_utc(self.clock.now())
            update, event_type, payload = changes(current, now)
            update["closed_at"] = now
            updated = current.model_copy(update=update)

            await self._persist(updated)
            self._sessions[session_id] = updated
            self._unpersisted.discard(session_id)
            self._publish(StatusChanged(
                session=updated,
                old_status=current.status,
                new_status=updated.status,
                at=now,
            ))
            await self._record(updated, event_type, now, payload)

        logger.info("Cooling %s: %s id=%s", updated.status.value, updated.item_name, session_id)
        self._notify_write(updated)
        return updated

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def sweep(self, now: Optional[datetime] = None) -> List[StatusChanged]:
        """
        Re-evaluate every open session against the deadline policy

        Each session is updated in its own critical section; a failure on one
        session is logged and the sweep moves on. Sessions whose last local write
        failed are re-written here too, whatever their status.

        Returns:
            status changes emitted by this pass
        """
        now = to_utc(now) if now is not None else to_utc(self.clock.now())
        changes: List[StatusChanged] = []
        session_ids = [s.id for s in self._sessions.values() if not s.is_terminal or s.id in self._unpersisted]
        for session_id in session_ids:
            try:
                async with self._lock:
                    changes.extend(await self._sweep_session(session_id, now))
            except Exception:
                logger.exception("Sweep failed for session %s", session_id)
        return changes

    async def _sweep_session(self, session_id: str, now: datetime) -> List[StatusChanged]:
        current = self._sessions.get(session_id)
        if current is None:
            return []
        # May have gone terminal since the id snapshot was taken
        if current.is_terminal:
            if session_id in self._unpersisted:
                await self._retry_persist(current)
            return []

        target = evaluate_status(now, current)
        if severity(target) <= severity(current.status):
            if session_id in self._unpersisted:
                await self._retry_persist(current)
            return []

        changes = []
        for old_status, next_status in _status_steps(current.status, target):
            updated = current.model_copy(update={"status": next_status})
            # Memory first: an overdue item must show even if the disk write fails
            self._sessions[session_id] = updated
            change = StatusChanged(session=updated, old_status=old_status, new_status=next_status, at=now)
            self._publish(change)
            changes.append(change)
            await self._record(updated, _TRIGGER_EVENTS[next_status], now, {
                "elapsed_minutes": elapsed_minutes(updated.started_at, now),
            })
            if next_status == CoolingStatus.OVERDUE:
                logger.warning("Cooling OVERDUE: %s id=%s", updated.item_name, session_id)
            else:
                logger.info("Cooling %s: %s id=%s", next_status.value, updated.item_name, session_id)
            current = updated

        await self._retry_persist(current)
        return changes

    async def _retry_persist(self, session: CoolingSession):
        try:
            await self._persist(session)
        except StorageError:
            self._unpersisted.add(session.id)
            logger.exception("Local write failed for session %s; will retry next sweep", session.id)
        else:
            self._unpersisted.discard(session.id)

    async def run_sweeper(self):
        """Sweep forever at sweep_interval; cancel the task to stop"""
        logger.info("Cooling sweeper running every %ss for site %s", self.sweep_interval, self.site_id)
        while True:
            try:
                await self.sweep()
            except Exception:
                logger.exception("Cooling sweep pass failed")
            await asyncio.sleep(self.sweep_interval)

    def start(self):
        if self._sweeper_task is None or self._sweeper_task.done():
            self._sweeper_task = asyncio.create_task(self.run_sweeper())

    async def stop(self):
        task, self._sweeper_task = self._sweeper_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for pending in list(self._callback_tasks):
            pending.cancel()

    # ------------------------------------------------------------------
    # Loading and merging
    # ------------------------------------------------------------------

    async def load(self) -> List[CoolingSession]:
        """
        Rehydrate memory from the local store, then sweep so statuses catch up
        with time that passed while the app was down

        Raises:
            StorageError: local store unreadable
        """
        try:
            stored = await self.store.list(self.site_id)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to load sessions: {e}") from e

        async with self._lock:
            for session in stored:
                current = self._sessions.get(session.id)
                if current is None or supersedes(session, current):
                    self._sessions[session.id] = session
        logger.info("Loaded %d cooling sessions for site %s", len(stored), self.site_id)
        if self.sync_events:
            await self._load_outbox()
        await self.sweep()
        return self.list_sessions()

    async def _load_outbox(self):
        list_events = getattr(self.store, "list_events", None)
        if list_events is None:
            return
        try:
            events = await list_events()
        except Exception:
            logger.exception("Failed to read audit events; unsynced events from earlier runs will not be pushed")
            return
        for event in events:
            if event.site_id == self.site_id and event.synced_at is None:
                self._outbox.setdefault(event.id, event)
        if self._outbox:
            logger.info("%d audit events waiting for sync", len(self._outbox))

    async def merge_sessions(self, sessions: Iterable[CoolingSession]) -> List[CoolingSession]:
        """
        Accept reconciled copies of sessions

        The only path by which outside data enters the session map. A copy is
        taken only if it supersedes what is held (never out of a terminal state,
        never backwards in severity). Subscribers see every intermediate status
        the copy skipped over, as a sweep would have reported them.

        Returns:
            sessions that were added or replaced
        """
        accepted = []
        async with self._lock:
            for incoming in sessions:
                if incoming.site_id != self.site_id:
                    continue
                current = self._sessions.get(incoming.id)
                if current is not None:
                    if not supersedes(incoming, current):
                        continue
                    if incoming.synced_at is None and current.synced_at is not None:
                        incoming = incoming.model_copy(update={"synced_at": current.synced_at})
                self._sessions[incoming.id] = incoming
                await self._retry_persist(incoming)
                accepted.append(incoming)
                if current is not None:
                    now = to_utc(self.clock.now())
                    for old_status, new_status in _status_steps(current.status, incoming.status):
                        self._publish(StatusChanged(
                            session=incoming.model_copy(update={"status": new_status}),
                            old_status=old_status,
                            new_status=new_status,
                            at=now,
                        ))
        return accepted

    async def mark_synced(self, session_id: str, synced_at: datetime):
        async with self._lock:
            current = self._sessions.get(session_id)
            if current is None:
                return
            updated = current.model_copy(update={"synced_at": to_utc(synced_at)})
            self._sessions[session_id] = updated
            await self._retry_persist(updated)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> CoolingSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(session_id)
        return session

    def list_sessions(self) -> List[CoolingSession]:
        """All sessions, newest first"""
        return sorted(self._sessions.values(), key=lambda s: s.started_at, reverse=True)

    def open_sessions(self) -> List[CoolingSession]:
        return [s for s in self.list_sessions() if not s.is_terminal]

    def warning_sessions(self) -> List[CoolingSession]:
        return [s for s in self.list_sessions() if s.status == CoolingStatus.WARNING]

    def overdue_sessions(self) -> List[CoolingSession]:
        return [s for s in self.list_sessions() if s.status == CoolingStatus.OVERDUE]

    async def list_events(self, session_id: Optional[str] = None) -> List[CoolingEvent]:
        list_events = getattr(self.store, "list_events", None)
        if list_events is not None:
            return await list_events(session_id)
        return [e for e in self._events if session_id is None or e.session_id == session_id]

    def unsynced_events(self, session_id: Optional[str] = None) -> List[CoolingEvent]:
        """Audit events not yet in the remote store, oldest first"""
        events = sorted(self._outbox.values(), key=lambda e: e.timestamp)
        if session_id is not None:
            events = [e for e in events if e.session_id == session_id]
        return events

    async def mark_event_synced(self, event_id: str, synced_at: datetime):
        """
        Drop an event from the outbox once the remote store holds it

        The local flag is best effort: if it can't be written the event is sent
        again after a restart, which the remote upsert absorbs.
        """
        event = self._outbox.pop(event_id, None)
        if event is None:
            return
        put_event = getattr(self.store, "put_event", None)
        if put_event is None:
            return
        try:
            await put_event(event.model_copy(update={"synced_at": to_utc(synced_at)}))
        except Exception:
            logger.exception("Failed to mark audit event %s as synced", event_id)

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        """
        Register a StatusChanged listener

        Returns:
            function that removes the listener
        """
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self, change: StatusChanged):
        for callback in list(self._subscribers):
            try:
                result = callback(change)
            except Exception:
                logger.exception("Status subscriber %r failed", callback)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._callback_tasks.add(task)
                task.add_done_callback(self._callback_done)

    def _callback_done(self, task: asyncio.Task):
        self._callback_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Status subscriber task failed", exc_info=task.exception())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _persist(self, session: CoolingSession):
        try:
            await self.store.put(session)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to write session {session.id}: {e}") from e

    async def _record(self, session: CoolingSession, event_type: CoolingEventType, at: datetime, payload: dict):
        event = CoolingEvent(
            id=str(uuid.uuid4()),
            session_id=session.id,
            site_id=session.site_id,
            event_type=event_type,
            timestamp=at,
            payload=payload,
        )
        if self.sync_events:
            self._outbox[event.id] = event
        put_event = getattr(self.store, "put_event", None)
        if put_event is None:
            self._events.append(event)
            return
        try:
            await put_event(event)
        except Exception:
            # The session record itself is already written; keep the event in memory
            self._events.append(event)
            logger.exception("Failed to write %s audit event for session %s", event_type.value, session.id)

    def _notify_write(self, session: CoolingSession):
        if self.on_write is None:
            return
        try:
            self.on_write(session)
        except Exception:
            logger.exception("Write hook failed for session %s", session.id)
