"""
Dashboard service

Serves the reconciled dashboard state to the browser:
- REST endpoints for entities, derived views and staff actions
- WebSocket /ws pushing a message after every cache change (and new-notification alerts)
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import SQLModel

from .dashboard import VIEWS, Dashboard
from .errors import ErrorKind
from .models import (
    DashboardStateUpdate,
    EntityType,
    MutationResult,
    Notification,
    NotificationType,
    OrderFilter,
    SeatGuests,
    SelectionUpdate,
    ServiceRequest,
    TableCreate,
    TableFilter,
    TableStatusUpdate,
)
from .settings import settings
from .watchdog import Trigger

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

STATUS_FOR_ERROR = {
    ErrorKind.not_found.value: 404,
    ErrorKind.conflict.value: 409,
    ErrorKind.auth_expired.value: 401,
    ErrorKind.network.value: 502,
    ErrorKind.unknown.value: 500,
}


class Credentials(SQLModel):
    access_token: str
    refresh_token: str | None = None


class Broadcaster:
    """Fans cache changes and alerts out to every connected WebSocket."""

    def __init__(self):
        self.connections: set[WebSocket] = set()
        self._tasks: set[asyncio.Task] = set()

    def _schedule(self, message: dict) -> None:
        if not self.connections:
            return
        task = asyncio.create_task(self.broadcast(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def cache_changed(self, entity_type: EntityType, version: int) -> None:
        self._schedule({"type": "cache", "entity": entity_type.value, "version": version})

    def alert(self, notification: Notification) -> None:
        self._schedule({"type": "alert", "notification": notification.model_dump(mode="json")})

    async def broadcast(self, message: dict) -> None:
        dead_connections = set()
        for ws in list(self.connections):
            try:
                await ws.send_json(message)
            except Exception:
                dead_connections.add(ws)
        self.connections -= dead_connections

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)


def get_dashboard(request: Request) -> Dashboard:
    return request.app.state.dashboard


DashboardDep = Annotated[Dashboard, Depends(get_dashboard)]


def mutation_response(result: MutationResult) -> JSONResponse:
    status_code = 200 if result.ok else STATUS_FOR_ERROR.get(result.error_kind, 500)
    return JSONResponse(status_code=status_code, content=result.model_dump())


def create_app(dashboard: Dashboard | None = None, start_background: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        board = dashboard or Dashboard()
        broadcaster = Broadcaster()
        app.state.dashboard = board
        app.state.broadcaster = broadcaster
        unsubscribe_cache = board.cache.subscribe(broadcaster.cache_changed)
        unsubscribe_alerts = board.on_alert(broadcaster.alert)
        if start_background:
            await board.start()
        logger.info("Dashboard service started")
        yield
        unsubscribe_cache()
        unsubscribe_alerts()
        await broadcaster.aclose()
        if start_background:
            await board.stop()
        if dashboard is None:
            await board.aclose()
        logger.info("Dashboard service stopped")

    app = FastAPI(title="Tableside Dashboard", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=(dashboard.config if dashboard is not None else settings).cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ============ HEALTH ============

    @app.get("/health")
    def health(board: DashboardDep) -> dict:
        return {
            "status": "ok",
            "feed_connected": board.reconciler.connected,
            "session": board.watchdog.state.value,
            "cache_version": board.cache.version,
        }

    # ============ READS ============

    @app.get("/entities/{entity_type}")
    def list_entities(entity_type: EntityType, board: DashboardDep) -> dict:
        return {
            "entity": entity_type.value,
            "stale": board.cache.is_stale(entity_type),
            "version": board.cache.version,
            "items": [entity.model_dump(mode="json") for entity in board.entities(entity_type)],
        }

    @app.get("/views/{name}")
    def get_view(
        name: str,
        board: DashboardDep,
        filter: TableFilter | None = None,
        order_filter: OrderFilter | None = None,
        table_id: str | None = None,
        type: NotificationType | None = None,
        sort_by: str = Query("timestamp", pattern="^(timestamp|priority|table)$"),
        descending: bool = True,
        visible: int | None = Query(None, gt=0),
    ):
        if name not in VIEWS:
            raise HTTPException(status_code=404, detail=f"Unknown view: {name}")
        result = board.view(
            name,
            filter=filter,
            order_filter=order_filter,
            table_id=table_id,
            type=type,
            sort_by=sort_by,
            descending=descending,
            visible=visible,
        )
        if name == "table_detail" and result is None:
            raise HTTPException(status_code=404, detail="Table not found")
        return result

    # ============ TABLE ACTIONS ============

    @app.post("/tables")
    async def create_table(data: TableCreate, board: DashboardDep):
        return mutation_response(await board.coordinator.create_table(data))

    @app.post("/tables/{table_id}/status")
    async def change_table_status(table_id: str, data: TableStatusUpdate, board: DashboardDep):
        return mutation_response(await board.coordinator.change_table_status(table_id, data.status))

    @app.post("/tables/{table_id}/free")
    async def free_table(table_id: str, board: DashboardDep):
        return mutation_response(await board.coordinator.free_table(table_id))

    @app.post("/tables/{table_id}/seat")
    async def seat_guests(table_id: str, data: SeatGuests, board: DashboardDep):
        return mutation_response(await board.coordinator.seat_guests(table_id, data.guests))

    @app.post("/tables/{table_id}/notifications")
    async def request_service(table_id: str, data: ServiceRequest, board: DashboardDep):
        return mutation_response(await board.coordinator.request_service(table_id, data.type))

    # ============ NOTIFICATION ACTIONS ============

    @app.post("/notifications/{notification_id}/dismiss")
    async def dismiss_notification(notification_id: str, board: DashboardDep):
        return mutation_response(board.coordinator.dismiss_notification(notification_id))

    @app.post("/notifications/{notification_id}/resolve")
    async def resolve_notification(notification_id: str, board: DashboardDep):
        return mutation_response(await board.coordinator.resolve_notification(notification_id))

    # ============ SESSION ============

    @app.get("/session")
    def get_session_state(board: DashboardDep) -> dict:
        return {
            "state": board.watchdog.state.value,
            "requires_login": board.watchdog.requires_login,
            "visible": board.watchdog.visible,
        }

    @app.post("/session/triggers/{trigger}")
    async def session_trigger(trigger: Trigger, board: DashboardDep) -> dict:
        state = await board.watchdog.trigger(trigger)
        return {"state": state.value, "requires_login": board.watchdog.requires_login}

    @app.post("/session/credentials")
    async def sign_in(data: Credentials, board: DashboardDep) -> dict:
        state = await board.watchdog.sign_in(data.access_token, data.refresh_token)
        return {"state": state.value, "requires_login": board.watchdog.requires_login}

    # ============ UI STATE ============

    @app.get("/state")
    def get_state(board: DashboardDep) -> dict:
        return board.state.model_dump(mode="json")

    @app.put("/state")
    async def update_state(data: DashboardStateUpdate, board: DashboardDep) -> dict:
        board.state.apply(data)
        return board.state.model_dump(mode="json")

    @app.put("/state/filter")
    async def set_filter(board: DashboardDep, value: TableFilter = Query(..., alias="filter")) -> dict:
        board.state.table_filter = value
        return board.state.model_dump(mode="json")

    @app.put("/state/selection")
    async def set_selection(data: SelectionUpdate, board: DashboardDep) -> dict:
        if data.table_id is not None and board.cache.get(EntityType.tables, data.table_id) is None:
            raise HTTPException(status_code=404, detail="Table not found")
        await board.select_table(data.table_id)
        return board.state.model_dump(mode="json")

    @app.delete("/state/error")
    async def dismiss_error(board: DashboardDep) -> dict:
        board.state.clear_error()
        return board.state.model_dump(mode="json")

    # ============ PUSH ============

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """
        Push channel for the browser. The browser may also send presence
        events ("visible", "hidden", "focus", "online") as plain text.
        """
        board: Dashboard = websocket.app.state.dashboard
        broadcaster: Broadcaster = websocket.app.state.broadcaster
        await websocket.accept()
        broadcaster.connections.add(websocket)
        logger.info(f"WebSocket connected. Total connections: {len(broadcaster.connections)}")
        try:
            await websocket.send_json({"type": "hello", "version": board.cache.version})
            while True:
                text = await websocket.receive_text()
                try:
                    trigger = Trigger(text.strip())
                except ValueError:
                    continue
                await board.watchdog.trigger(trigger)
        except WebSocketDisconnect:
            pass
        finally:
            broadcaster.connections.discard(websocket)
            logger.info(f"WebSocket disconnected. Total connections: {len(broadcaster.connections)}")

    return app


app = create_app()
