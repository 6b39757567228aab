"""
Cooling Compliance Server
Kiosk-facing API over the cooling engine: REST commands, WebSocket status stream
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional
from fastapi import FastAPI, HTTPException, Request, WebSocket
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from core.alerts import AlertBoard
from core.engine import CoolingEngine
from core.errors import AlreadyTerminalError, NotFoundError, StorageError
from core.reconciler import SyncReconciler
from core.remote_store import HttpSessionStore
from core.report import summarize
from core.session_store import SQLiteSessionStore
from handlers.kiosk_events import KioskEventStream
from models.cooling import FoodCategory
from utils.config import Settings, load_settings

logger = logging.getLogger(__name__)

SHUTDOWN_DRAIN_SECONDS = 5.0


class StartCoolingRequest(BaseModel):
    item_name: str
    category: FoodCategory = FoodCategory.OTHER
    staff_name: Optional[str] = None
    start_temperature: Optional[float] = None


class CloseCoolingRequest(BaseModel):
    temperature: Optional[float] = None
    staff_name: Optional[str] = None


class DiscardCoolingRequest(BaseModel):
    reason: Optional[str] = None


class ExceptionRequest(BaseModel):
    reason: str
    approved_by: str


class AcknowledgeRequest(BaseModel):
    staff_name: Optional[str] = None


class ConnectivityRequest(BaseModel):
    online: bool


def create_app(settings: Optional[Settings] = None, store=None, remote=None, clock=None) -> FastAPI:
    """
    Build the app; tests pass their own store, remote and clock
    """
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        local_store = store if store is not None else SQLiteSessionStore(settings.db_path)
        remote_store = remote
        if remote_store is None and settings.sync_enabled:
            remote_store = HttpSessionStore(settings.remote_url, settings.remote_api_key)

        engine = CoolingEngine(
            local_store,
            settings.site_id,
            clock=clock,
            sweep_interval=settings.sweep_interval_seconds,
            sync_events=remote_store is not None,
        )
        reconciler = SyncReconciler(
            engine,
            remote_store,
            max_retries=settings.sync_max_retries,
            retry_delay=settings.sync_retry_delay_seconds,
        )
        engine.on_write = reconciler.schedule_push
        alert_board = AlertBoard(clock=engine.clock)
        engine.subscribe(alert_board.on_status_changed)

        await engine.load()
        await reconciler.sync()
        engine.start()

        app.state.engine = engine
        app.state.reconciler = reconciler
        app.state.alert_board = alert_board
        logger.info("Cooling engine ready for site %s (sync %s)", settings.site_id,
                    "on" if reconciler.enabled else "off")
        yield

        await engine.stop()
        try:
            await asyncio.wait_for(reconciler.drain(), timeout=SHUTDOWN_DRAIN_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("Pending remote pushes abandoned at shutdown")
        await reconciler.close()
        if remote_store is not None and hasattr(remote_store, "close"):
            await remote_store.close()
        if hasattr(local_store, "close"):
            await local_store.close()

    app = FastAPI(title="Cooling Compliance", lifespan=lifespan)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(AlreadyTerminalError)
    async def already_terminal_handler(request: Request, exc: AlreadyTerminalError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        logger.error("Local storage failure: %s", exc)
        return JSONResponse(status_code=503, content={"detail": "Local storage unavailable"})

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/sessions")
    async def list_sessions(request: Request, open_only: bool = False):
        engine: CoolingEngine = request.app.state.engine
        sessions = engine.open_sessions() if open_only else engine.list_sessions()
        return [s.model_dump(mode="json") for s in sessions]

    @app.get("/sessions/{session_id}")
    async def get_session(request: Request, session_id: str):
        return request.app.state.engine.get_session(session_id).model_dump(mode="json")

    @app.get("/sessions/{session_id}/events")
    async def session_events(request: Request, session_id: str):
        engine: CoolingEngine = request.app.state.engine
        engine.get_session(session_id)
        events = await engine.list_events(session_id)
        return [e.model_dump(mode="json") for e in events]

    @app.post("/sessions", status_code=201)
    async def start_cooling(request: Request, body: StartCoolingRequest):
        try:
            session = await request.app.state.engine.start_cooling(
                body.item_name, body.category, body.staff_name, body.start_temperature
            )
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return session.model_dump(mode="json")

    @app.post("/sessions/{session_id}/close")
    async def close_cooling(request: Request, session_id: str, body: CloseCoolingRequest):
        session = await request.app.state.engine.close_cooling(session_id, body.temperature, body.staff_name)
        return session.model_dump(mode="json")

    @app.post("/sessions/{session_id}/discard")
    async def discard_cooling(request: Request, session_id: str, body: DiscardCoolingRequest):
        session = await request.app.state.engine.discard_cooling(session_id, body.reason)
        return session.model_dump(mode="json")

    @app.post("/sessions/{session_id}/exception")
    async def add_exception(request: Request, session_id: str, body: ExceptionRequest):
        try:
            session = await request.app.state.engine.add_exception(session_id, body.reason, body.approved_by)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return session.model_dump(mode="json")

    @app.get("/alerts")
    async def list_alerts(request: Request, unacknowledged: bool = True):
        board: AlertBoard = request.app.state.alert_board
        alerts = board.unacknowledged() if unacknowledged else board.alerts()
        return [a.model_dump(mode="json") for a in alerts]

    @app.post("/alerts/{alert_id}/acknowledge")
    async def acknowledge_alert(request: Request, alert_id: str, body: AcknowledgeRequest):
        alert = request.app.state.alert_board.acknowledge(alert_id, body.staff_name)
        return alert.model_dump(mode="json")

    @app.post("/connectivity")
    async def connectivity(request: Request, body: ConnectivityRequest):
        reconciler: SyncReconciler = request.app.state.reconciler
        await reconciler.set_online(body.online)
        return {"online": reconciler.online, "sync_enabled": reconciler.enabled}

    @app.get("/report")
    async def report(request: Request, days: int = 7):
        engine: CoolingEngine = request.app.state.engine
        end = engine.clock.now()
        summary = summarize(engine.list_sessions(), end - timedelta(days=days), end)
        return summary.model_dump(mode="json")

    @app.websocket("/events")
    async def events(websocket: WebSocket):
        await websocket.accept()
        stream = KioskEventStream(websocket, websocket.app.state.engine, websocket.app.state.alert_board)
        try:
            await stream.start()
        finally:
            await stream.cleanup()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, load_settings().log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Server started at :5050")
    uvicorn.run(app, host="0.0.0.0", port=5050)
