"""
Session Store
Persistence collaborators for cooling sessions: an in-memory store and the
on-device SQLite store the kiosk keeps as its durable local copy
"""
import asyncio
import json
from typing import Dict, List, Optional, Protocol

import aiosqlite

from core.errors import StorageError
from models.cooling import CoolingSession
from models.events import CoolingEvent


class SessionStore(Protocol):
    """Get / List / Put contract shared by the local and remote stores"""

    async def get(self, session_id: str) -> Optional[CoolingSession]:
        ...

    async def list(self, site_id: str) -> List[CoolingSession]:
        ...

    async def put(self, session: CoolingSession) -> None:
        ...


def _newest_first(sessions: List[CoolingSession]) -> List[CoolingSession]:
    return sorted(sessions, key=lambda s: s.started_at, reverse=True)


class InMemorySessionStore:
    """
    Process-local store

    Usable before any durable store is reachable; also the test double for one.
    """

    def __init__(self):
        self._sessions: Dict[str, CoolingSession] = {}
        self._events: Dict[str, CoolingEvent] = {}
        self._lock = asyncio.Lock()

    async def get(self, session_id: str) -> Optional[CoolingSession]:
        async with self._lock:
            return self._sessions.get(session_id)

    async def list(self, site_id: str) -> List[CoolingSession]:
        async with self._lock:
            sessions = [s for s in self._sessions.values() if s.site_id == site_id]
        return _newest_first(sessions)

    async def put(self, session: CoolingSession):
        async with self._lock:
            self._sessions[session.id] = session

    async def put_event(self, event: CoolingEvent):
        async with self._lock:
            self._events[event.id] = event

    async def list_events(self, session_id: Optional[str] = None) -> List[CoolingEvent]:
        async with self._lock:
            events = list(self._events.values())
        if session_id is not None:
            events = [e for e in events if e.session_id == session_id]
        return events


_SESSION_COLUMNS = (
    "id",
    "site_id",
    "item_name",
    "category",
    "started_at",
    "soft_due_at",
    "hard_due_at",
    "status",
    "staff_name",
    "start_temperature",
    "closed_at",
    "closing_temperature",
    "close_action",
    "closed_by",
    "discard_reason",
    "exception_reason",
    "exception_approved_by",
    "synced_at",
)


class SQLiteSessionStore:
    """
    Durable local store backed by SQLite

    Args:
        db_path: SQLite database file path
    """

    def __init__(self, db_path: str = "cooling.db"):
        self.db_path = db_path
        self.connection: Optional[aiosqlite.Connection] = None

    async def init_db(self):
        """Open the connection and create tables"""
        try:
            self.connection = await aiosqlite.connect(self.db_path)
            await self.connection.execute("""
                CREATE TABLE IF NOT EXISTS cooling_sessions (
                    id TEXT PRIMARY KEY,
                    site_id TEXT NOT NULL,
                    item_name TEXT NOT NULL,
                    category TEXT NOT NULL DEFAULT 'other',
                    started_at TEXT NOT NULL,
                    soft_due_at TEXT NOT NULL,
                    hard_due_at TEXT NOT NULL,
                    status TEXT NOT NULL,
                    staff_name TEXT,
                    start_temperature REAL,
                    closed_at TEXT,
                    closing_temperature REAL,
                    close_action TEXT,
                    closed_by TEXT,
                    discard_reason TEXT,
                    exception_reason TEXT,
                    exception_approved_by TEXT,
                    synced_at TEXT
                )
            """)
            await self.connection.execute("""
                CREATE TABLE IF NOT EXISTS cooling_events (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    site_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    payload TEXT NOT NULL DEFAULT '{}',
                    synced_at TEXT
                )
            """)
            await self._add_missing_column("cooling_events", "synced_at", "TEXT")
            await self.connection.execute(
                "CREATE INDEX IF NOT EXISTS idx_cooling_sessions_site_id ON cooling_sessions(site_id)"
            )
            await self.connection.commit()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to initialize local store at {self.db_path}: {e}") from e

    async def _add_missing_column(self, table: str, column: str, column_type: str):
        """Databases created before a column existed get it added in place"""
        cursor = await self.connection.execute(f"PRAGMA table_info({table})")
        columns = {row[1] for row in await cursor.fetchall()}
        if column not in columns:
            await self.connection.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_type}")

    async def _conn(self) -> aiosqlite.Connection:
        if self.connection is None:
            await self.init_db()
        return self.connection

    async def get(self, session_id: str) -> Optional[CoolingSession]:
        conn = await self._conn()
        try:
            cursor = await conn.execute(
                f"SELECT {', '.join(_SESSION_COLUMNS)} FROM cooling_sessions WHERE id = ?",
                (session_id,)
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to read session {session_id}: {e}") from e
        return self._row_to_session(row) if row else None

    async def list(self, site_id: str) -> List[CoolingSession]:
        conn = await self._conn()
        try:
            cursor = await conn.execute(
                f"SELECT {', '.join(_SESSION_COLUMNS)} FROM cooling_sessions "
                "WHERE site_id = ?",
                (site_id,)
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to list sessions for site {site_id}: {e}") from e
        return _newest_first([self._row_to_session(row) for row in rows])

    async def put(self, session: CoolingSession):
        """Insert or replace; writing the same record twice is a no-op"""
        conn = await self._conn()
        record = session.model_dump(mode="json")
        placeholders = ", ".join("?" for _ in _SESSION_COLUMNS)
        try:
            await conn.execute(
                f"INSERT OR REPLACE INTO cooling_sessions ({', '.join(_SESSION_COLUMNS)}) "
                f"VALUES ({placeholders})",
                tuple(record[column] for column in _SESSION_COLUMNS)
            )
            await conn.commit()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to write session {session.id}: {e}") from e

    async def put_event(self, event: CoolingEvent):
        """Insert by id; re-writing an existing event only updates its synced_at"""
        conn = await self._conn()
        record = event.model_dump(mode="json")
        try:
            await conn.execute(
                "INSERT INTO cooling_events "
                "(id, session_id, site_id, event_type, timestamp, payload, synced_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET synced_at = excluded.synced_at",
                (
                    record["id"],
                    record["session_id"],
                    record["site_id"],
                    record["event_type"],
                    record["timestamp"],
                    json.dumps(record["payload"]),
                    record["synced_at"],
                )
            )
            await conn.commit()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to write event {event.id}: {e}") from e

    async def list_events(self, session_id: Optional[str] = None) -> List[CoolingEvent]:
        conn = await self._conn()
        query = "SELECT id, session_id, site_id, event_type, timestamp, payload, synced_at FROM cooling_events"
        params: tuple = ()
        if session_id is not None:
            query += " WHERE session_id = ?"
            params = (session_id,)
        query += " ORDER BY rowid"
        try:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to read events: {e}") from e
        return [
            CoolingEvent(
                id=row[0],
                session_id=row[1],
                site_id=row[2],
                event_type=row[3],
                timestamp=row[4],
                payload=json.loads(row[5] or "{}"),
                synced_at=row[6],
            )
            for row in rows
        ]

    @staticmethod
    def _row_to_session(row) -> CoolingSession:
        return CoolingSession.model_validate(dict(zip(_SESSION_COLUMNS, row)))

    async def close(self):
        """Close the database connection"""
        if self.connection:
            await self.connection.close()
            self.connection = None
