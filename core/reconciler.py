"""
Sync Reconciler
Keeps the kiosk's local-first session set eventually consistent with the remote store
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Set

from core.errors import NotFoundError, SyncError
from core.policy import supersedes
from models.cooling import CoolingSession

logger = logging.getLogger(__name__)

RemoteFetch = Callable[[], Awaitable[List[CoolingSession]]]


@dataclass
class ReconcileResult:
    sessions: List[CoolingSession]
    to_push: List[CoolingSession] = field(default_factory=list)
    remote_ok: bool = True
    retry: bool = False


async def reconcile(
    local_sessions: List[CoolingSession],
    remote_fetch: RemoteFetch,
    fetched_at: Optional[datetime] = None,
) -> ReconcileResult:
    """
    Merge local sessions with the remote list

    - remote fetch fails: local returned unchanged
    - remote empty while local is not: treated as a bad read (it is seen when the
      fetch races app start-up auth); local kept and a retry requested
    - otherwise: remote copy wins for sessions it holds unless the local copy is
      further along (terminal, or more severe); local-only sessions are kept and
      returned in to_push

    Args:
        local_sessions: sessions currently held locally
        remote_fetch: coroutine function returning the remote sessions for the site
        fetched_at: stamped as synced_at on sessions taken from the remote copy

    Returns:
        ReconcileResult
    """
    try:
        remote_sessions = await remote_fetch()
    except Exception as e:
        logger.warning("Remote fetch failed, keeping %d local sessions: %s", len(local_sessions), e)
        return ReconcileResult(sessions=list(local_sessions), remote_ok=False, retry=True)

    if not remote_sessions:
        if local_sessions:
            logger.warning(
                "Remote returned no sessions while %d exist locally; keeping local and retrying",
                len(local_sessions),
            )
            return ReconcileResult(sessions=list(local_sessions), retry=True)
        return ReconcileResult(sessions=[])

    fetched_at = fetched_at or datetime.now(timezone.utc)
    local_by_id: Dict[str, CoolingSession] = {s.id: s for s in local_sessions}
    merged: Dict[str, CoolingSession] = {}
    to_push: List[CoolingSession] = []

    for remote in remote_sessions:
        remote = remote.model_copy(update={"synced_at": fetched_at})
        local = local_by_id.get(remote.id)
        if local is None or supersedes(remote, local):
            merged[remote.id] = remote
        else:
            merged[remote.id] = local
            if _differs(local, remote):
                # Local is further along than the remote copy
                to_push.append(local)

    for local in local_sessions:
        if local.id not in merged:
            merged[local.id] = local
            to_push.append(local)

    sessions = sorted(merged.values(), key=lambda s: s.started_at, reverse=True)
    return ReconcileResult(sessions=sessions, to_push=to_push)


def _differs(a: CoolingSession, b: CoolingSession) -> bool:
    return a.model_dump(exclude={"synced_at"}) != b.model_dump(exclude={"synced_at"})


class SyncReconciler:
    """
    Drives reconcile() against a CoolingEngine and a remote store

    Runs on start-up, on the offline -> online edge, and after every successful
    local write (as the engine's on_write hook). Never raises SyncError to callers.

    Args:
        engine: CoolingEngine for the site
        remote: remote store (get/list/put, optionally put_event); None disables syncing
        max_retries: attempts per push before giving up until the next trigger
        retry_delay: seconds between attempts
    """

    def __init__(self, engine, remote=None, max_retries: int = 3, retry_delay: float = 5.0):
        self.engine = engine
        self.remote = remote
        self.max_retries = max(1, max_retries)
        self.retry_delay = max(0.0, retry_delay)
        self.online = remote is not None
        self._tasks: Set[asyncio.Task] = set()
        self._sync_lock = asyncio.Lock()
        self._retry_task: Optional[asyncio.Task] = None
        self._retries_left = self.max_retries

    @property
    def enabled(self) -> bool:
        return self.remote is not None

    async def _fetch_remote(self) -> List[CoolingSession]:
        return await self.remote.list(self.engine.site_id)

    async def sync(self) -> Optional[ReconcileResult]:
        """
        One reconcile pass: pull, merge into the engine, push what remote lacks

        Returns:
            ReconcileResult, or None when syncing is disabled or offline
        """
        if not self.enabled or not self.online:
            return None

        async with self._sync_lock:
            result = await reconcile(self.engine.list_sessions(), self._fetch_remote, self.engine.clock.now())
            if result.remote_ok and result.sessions:
                await self.engine.merge_sessions(result.sessions)

            for session in result.to_push:
                await self.push(session.id)
            if result.remote_ok:
                await self.push_events()

        if result.retry:
            self._schedule_retry()
        else:
            self._retries_left = self.max_retries
        logger.info(
            "Sync pass: %d sessions, %d pushed, retry=%s",
            len(result.sessions), len(result.to_push), result.retry,
        )
        return result

    def _schedule_retry(self):
        if self._retry_task is not None and not self._retry_task.done():
            return
        if self._retries_left <= 0:
            logger.warning("Sync retries exhausted; waiting for the next trigger")
            self._retries_left = self.max_retries
            return
        self._retries_left -= 1
        self._retry_task = self._spawn(self._retry_later())

    async def _retry_later(self):
        await asyncio.sleep(self.retry_delay)
        self._retry_task = None
        await self.sync()

    async def push(self, session_id: str) -> bool:
        """
        Upsert the engine's current copy of a session to the remote store

        Retries up to max_retries. Returns True when the write landed.
        """
        if not self.enabled or not self.online:
            return False

        for attempt in range(1, self.max_retries + 1):
            try:
                session = self.engine.get_session(session_id)
            except NotFoundError:
                logger.warning("Push skipped: session %s no longer known", session_id)
                return False
            try:
                await self.remote.put(session)
            except SyncError as e:
                logger.warning(
                    "Push of session %s failed (attempt %d/%d): %s",
                    session_id, attempt, self.max_retries, e,
                )
                if attempt < self.max_retries:
                    await asyncio.sleep(self.retry_delay)
                continue
            await self.engine.mark_synced(session_id, self.engine.clock.now())
            await self.push_events(session_id)
            return True
        return False

    async def push_events(self, session_id: Optional[str] = None) -> int:
        """
        Send outstanding audit events, oldest first

        Only events of sessions the remote already holds are sent. Stops at the
        first failure; whatever is left goes out on the next push or sync.

        Returns:
            number of events delivered
        """
        put_event = getattr(self.remote, "put_event", None)
        if not self.enabled or not self.online or put_event is None:
            return 0

        sent = 0
        for event in self.engine.unsynced_events(session_id):
            try:
                session = self.engine.get_session(event.session_id)
            except NotFoundError:
                continue
            if session.synced_at is None:
                continue
            try:
                await put_event(event)
            except SyncError as e:
                logger.warning("Push of %s event %s failed: %s", event.event_type.value, event.id, e)
                break
            await self.engine.mark_event_synced(event.id, self.engine.clock.now())
            sent += 1
        return sent

    def schedule_push(self, session: CoolingSession):
        """Fire-and-forget push; suitable as CoolingEngine.on_write"""
        if not self.enabled or not self.online:
            return
        self._spawn(self.push(session.id))

    async def set_online(self, online: bool) -> Optional[ReconcileResult]:
        """Record connectivity; going from offline to online triggers a sync"""
        was_online, self.online = self.online, online
        if online and not was_online:
            logger.info("Connectivity restored; syncing")
            return await self.sync()
        if not online and was_online:
            logger.info("Connectivity lost; working offline")
        return None

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background sync task failed", exc_info=task.exception())

    async def drain(self):
        """Wait for outstanding background pushes (used on shutdown and in tests)"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self):
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
