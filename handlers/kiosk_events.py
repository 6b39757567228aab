"""
Kiosk Event Handler
WebSocket session for a kiosk screen: pushes status changes and alerts out,
accepts cooling commands (button presses, recognised voice commands) in
"""
import asyncio
import logging
from typing import Any, Dict, Optional
from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from core.alerts import AlertBoard
from core.engine import CoolingEngine
from core.errors import CoolingError
from core.policy import elapsed_minutes
from models.cooling import CoolingStatus
from models.events import KioskWebEvent, StatusChanged
from utils.text_utils import format_elapsed

logger = logging.getLogger(__name__)


class KioskEventStream:
    """
    One connected kiosk client

    Args:
        websocket: accepted FastAPI WebSocket
        engine: CoolingEngine for the site
        alert_board: optional AlertBoard; unacknowledged alerts go out with the snapshot
        max_queue: pending outbound events before the oldest are dropped
    """

    def __init__(
        self,
        websocket: WebSocket,
        engine: CoolingEngine,
        alert_board: Optional[AlertBoard] = None,
        max_queue: int = 500,
    ):
        self.websocket = websocket
        self.engine = engine
        self.alert_board = alert_board
        self.max_queue = max_queue
        self.queue: asyncio.Queue = asyncio.Queue()
        self._unsubscribe = None

    def _on_status_changed(self, change: StatusChanged):
        if self.max_queue and self.queue.qsize() >= self.max_queue:
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            else:
                logger.warning("Kiosk event queue overflow, dropping oldest event")
        event = KioskWebEvent(
            type="cooling",
            event="status_changed",
            data={
                "session": change.session.model_dump(mode="json"),
                "old_status": change.old_status.value,
                "new_status": change.new_status.value,
                "at": change.at.isoformat(),
                "elapsed": format_elapsed(elapsed_minutes(change.session.started_at, change.at)),
            },
        )
        self.queue.put_nowait(event)

    async def start(self):
        """Run until the client disconnects"""
        self._unsubscribe = self.engine.subscribe(self._on_status_changed)
        await self._send_snapshot()

        sender = asyncio.create_task(self._send_loop())
        try:
            await self._receive_loop()
        finally:
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass

    async def _send_snapshot(self):
        now = self.engine.clock.now()
        await self._write(KioskWebEvent(
            type="system",
            event="snapshot",
            data={
                "sessions": [s.model_dump(mode="json") for s in self.engine.list_sessions()],
                # Timer labels for the open batches, e.g. "1h 05m"
                "elapsed": {
                    s.id: format_elapsed(elapsed_minutes(s.started_at, now)) for s in self.engine.open_sessions()
                },
                "alerts": [
                    a.model_dump(mode="json") for a in self.alert_board.unacknowledged()
                ] if self.alert_board else [],
            },
        ))

    async def _send_loop(self):
        while True:
            event = await self.queue.get()
            await self._write(event)

    async def _receive_loop(self):
        while True:
            try:
                msg = await self.websocket.receive_json()
            except WebSocketDisconnect:
                logger.info("Kiosk disconnected")
                return
            except ValueError as e:
                await self._write_error(f"Malformed message: {e}")
                continue

            try:
                await self._handle_command(msg)
            except CoolingError as e:
                await self._write_error(str(e))
            except (ValueError, KeyError, TypeError) as e:
                await self._write_error(f"Invalid command: {e}")

    async def _handle_command(self, msg: Dict[str, Any]):
        if not isinstance(msg, dict):
            raise ValueError("expected a JSON object")
        msg_type = msg.get("type")
        data = msg.get("data") or {}

        if msg_type == "start_cooling":
            session = await self.engine.start_cooling(
                data["item_name"],
                data.get("category", "other"),
                data.get("staff_name"),
                data.get("start_temperature"),
            )
            await self._write(KioskWebEvent(type="cooling", event="started", data=session.model_dump(mode="json")))

        elif msg_type == "stop_cooling":
            session_id = data.get("session_id") or self._oldest_open_id()
            session = await self.engine.close_cooling(
                session_id,
                data.get("temperature"),
                data.get("staff_name"),
            )
            await self._write(KioskWebEvent(type="cooling", event="closed", data=session.model_dump(mode="json")))

        elif msg_type == "discard":
            session_id = data.get("session_id") or self._oldest_open_id()
            session = await self.engine.discard_cooling(session_id, data.get("reason"))
            await self._write(KioskWebEvent(type="cooling", event="discarded", data=session.model_dump(mode="json")))

        elif msg_type == "acknowledge_alert" and self.alert_board is not None:
            alert = self.alert_board.acknowledge(data["alert_id"], data.get("staff_name"))
            await self._write(KioskWebEvent(type="alert", event="acknowledged", data=alert.model_dump(mode="json")))

        else:
            await self._write_error(f"Unknown message type: {msg_type}")

    def _oldest_open_id(self) -> str:
        """Voice commands without a target act on the batch that has been cooling longest"""
        open_sessions = self.engine.open_sessions()
        if not open_sessions:
            raise ValueError("no open cooling sessions")
        overdue = [s for s in open_sessions if s.status == CoolingStatus.OVERDUE]
        return (overdue or open_sessions)[-1].id

    async def _write_error(self, message: str):
        await self._write(KioskWebEvent(type="system", event="error", data=message))

    async def _write(self, event: KioskWebEvent):
        if not self.websocket or self.websocket.client_state != WebSocketState.CONNECTED:
            return
        try:
            await self.websocket.send_json(event.model_dump(mode="json"))
        except Exception as e:
            logger.warning("Failed to send kiosk event: %s", e)

    async def cleanup(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
