"""
Remote Session Store
Durable backend copy of cooling sessions and their audit events, reached over a
PostgREST-style HTTP API
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from core.errors import SyncError
from models.cooling import CoolingSession
from models.events import CoolingEvent

logger = logging.getLogger(__name__)

SESSIONS_TABLE = "cooling_sessions"
EVENTS_TABLE = "cooling_events"

# Model field -> hosted column, where the names differ
_SESSION_COLUMNS = {
    "category": "item_category",
    "closing_temperature": "end_temperature",
}
# Kept on the device only; the discard reason travels in the discarded event's payload
_LOCAL_ONLY_FIELDS = {"synced_at", "discard_reason"}

_EVENT_COLUMNS = ("id", "session_id", "site_id", "event_type", "timestamp", "payload")

_UPSERT = {"Prefer": "resolution=merge-duplicates,return=minimal"}


def session_to_row(session: CoolingSession) -> Dict[str, Any]:
    record = session.model_dump(mode="json", exclude=_LOCAL_ONLY_FIELDS)
    return {_SESSION_COLUMNS.get(name, name): value for name, value in record.items()}


def row_to_session(row: Dict[str, Any]) -> CoolingSession:
    """Build a session from a hosted row; columns the model doesn't know are ignored"""
    data = {}
    for name in CoolingSession.model_fields:
        if name in _LOCAL_ONLY_FIELDS:
            continue
        column = _SESSION_COLUMNS.get(name, name)
        if column in row and row[column] is not None:
            data[name] = row[column]
    return CoolingSession.model_validate(data)


def event_to_row(event: CoolingEvent) -> Dict[str, Any]:
    record = event.model_dump(mode="json")
    return {column: record[column] for column in _EVENT_COLUMNS}


class HttpSessionStore:
    """
    Session store backed by the hosted database's REST endpoint

    Every failure (transport error, non-2xx, malformed body) is raised as SyncError.

    Args:
        base_url: REST root, e.g. https://<project>.example.co/rest/v1
        api_key: API key sent as `apikey` and bearer token
        timeout: per-request timeout in seconds
        client: optional pre-built AsyncClient (tests pass one with a MockTransport)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _request(
        self,
        method: str,
        table: str,
        params: Dict[str, str] = None,
        json_body: Any = None,
        extra_headers: Dict[str, str] = None,
    ) -> httpx.Response:
        url = f"{self.base_url}/{table}"
        headers = self._headers()
        if extra_headers:
            headers.update(extra_headers)
        try:
            response = await self._client.request(method, url, params=params, json=json_body, headers=headers)
        except httpx.HTTPError as e:
            raise SyncError(f"Remote store unreachable: {e}") from e
        if not response.is_success:
            raise SyncError(f"Remote store error on {table}: {response.status_code} {response.text[:200]}")
        return response

    def _parse_rows(self, response: httpx.Response) -> List[CoolingSession]:
        try:
            rows = response.json() if response.content else []
            return [row_to_session(row) for row in rows]
        except (ValueError, TypeError, AttributeError) as e:
            raise SyncError(f"Remote store returned malformed sessions: {e}") from e

    async def get(self, session_id: str) -> Optional[CoolingSession]:
        response = await self._request(
            "GET", SESSIONS_TABLE, params={"select": "*", "id": f"eq.{session_id}"}
        )
        sessions = self._parse_rows(response)
        return sessions[0] if sessions else None

    async def list(self, site_id: str) -> List[CoolingSession]:
        response = await self._request(
            "GET",
            SESSIONS_TABLE,
            params={"select": "*", "site_id": f"eq.{site_id}", "order": "started_at.desc"},
        )
        return self._parse_rows(response)

    async def put(self, session: CoolingSession):
        """Upsert by id"""
        await self._request("POST", SESSIONS_TABLE, json_body=session_to_row(session), extra_headers=_UPSERT)
        logger.debug("Pushed session %s (%s) to remote store", session.id, session.status.value)

    async def put_event(self, event: CoolingEvent):
        """Upsert an audit event by id, so a re-sent event is not duplicated"""
        await self._request("POST", EVENTS_TABLE, json_body=event_to_row(event), extra_headers=_UPSERT)
        logger.debug("Pushed %s event %s to remote store", event.event_type.value, event.id)

    async def close(self):
        if self._owns_client:
            await self._client.aclose()
