import asyncio
import itertools
from datetime import datetime

import pytest

from tableside.cache import EntityCache
from tableside.coordinator import MutationCoordinator
from tableside.errors import ErrorKind, RemoteError
from tableside.gateway import notification_message
from tableside.models import (
    Identity,
    Notification,
    NotificationType,
    Order,
    SessionStatus,
    Table,
    TableCreate,
    TableSession,
    TableStatus,
    utcnow,
)
from tableside.reconciler import ChangeFeedReconciler
from tableside.settings import settings
from tableside.store import DashboardState


class FakeGateway:
    """In-memory backend with the same coroutines as RemoteGateway."""

    def __init__(self):
        self.tables: dict[str, Table] = {}
        self.sessions: dict[str, TableSession] = {}
        self.orders: list[Order] = []
        self.notifications: dict[str, Notification] = {}
        self.calls: list[tuple] = []
        self.failures: dict[str, list[RemoteError]] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.lost: dict[str, int] = {}
        self._ids = itertools.count(1)

    def next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def fail(self, method: str, kind: ErrorKind, times: int = 1, message: str = "injected failure") -> None:
        self.failures.setdefault(method, []).extend(RemoteError(kind, message) for _ in range(times))

    def lose_response(self, method: str, times: int = 1) -> None:
        """Let `method` take effect but fail as if its response never arrived."""
        self.lost[method] = self.lost.get(method, 0) + times

    def _respond(self, method: str) -> None:
        if self.lost.get(method):
            self.lost[method] -= 1
            raise RemoteError(ErrorKind.network, "Response lost")

    def hold(self, method: str) -> asyncio.Event:
        """Block calls to `method` until the returned event is set."""
        event = asyncio.Event()
        self.gates[method] = event
        return event

    def called(self, method: str) -> list[tuple]:
        return [call[1:] for call in self.calls if call[0] == method]

    async def _call(self, method: str, *args) -> None:
        self.calls.append((method, *args))
        gate = self.gates.get(method)
        if gate is not None:
            await gate.wait()
        failures = self.failures.get(method)
        if failures:
            raise failures.pop(0)

    def _require(self, table_id: str) -> Table:
        if table_id not in self.tables:
            raise RemoteError.not_found(f"Table {table_id} not found")
        return self.tables[table_id]

    # seeding

    def add_table(self, number: int, status: TableStatus = TableStatus.free, guests: int = 0) -> Table:
        table = Table(id=self.next_id("table"), number=number, status=status, guests=guests, created_at=utcnow())
        self.tables[table.id] = table
        return table

    def add_session(self, table_id: str, start_time: datetime | None = None) -> TableSession:
        session = TableSession(id=self.next_id("session"), table_id=table_id, start_time=start_time or utcnow())
        self.sessions[session.id] = session
        return session

    def add_notification(self, table_id: str, notification_type: NotificationType) -> Notification:
        table = self.tables[table_id]
        notification = Notification(
            id=self.next_id("notification"),
            table_id=table_id,
            type=notification_type,
            message=notification_message(notification_type, table.number),
        )
        self.notifications[notification.id] = notification
        return notification

    # tables

    async def list_tables(self) -> list[Table]:
        await self._call("list_tables")
        return sorted(self.tables.values(), key=lambda t: t.number)

    async def get_table(self, table_id: str) -> Table:
        await self._call("get_table", table_id)
        return self._require(table_id)

    async def create_table(self, data: TableCreate) -> Table:
        await self._call("create_table", data.number)
        if any(t.number == data.number for t in self.tables.values()):
            raise RemoteError.conflict(f"Table number {data.number} already exists")
        table = Table(
            id=self.next_id("table"),
            number=data.number,
            capacity=data.capacity,
            guests=0 if data.status == TableStatus.free else data.capacity,
            status=data.status,
            assigned_waiter_id=data.assigned_waiter_id,
            created_at=utcnow(),
        )
        self.tables[table.id] = table
        return table

    async def update_table_status(self, table_id: str, status: TableStatus) -> Table:
        await self._call("update_table_status", table_id, status)
        update = {"status": status}
        if status == TableStatus.free:
            update["guests"] = 0
        self.tables[table_id] = self._require(table_id).model_copy(update=update)
        return self.tables[table_id]

    async def update_table_guests(self, table_id: str, guests: int, status: TableStatus) -> Table:
        await self._call("update_table_guests", table_id, guests, status)
        self.tables[table_id] = self._require(table_id).model_copy(update={"guests": guests, "status": status})
        return self.tables[table_id]

    # sessions

    async def open_session(self, table_id: str, start_time: datetime | None = None) -> TableSession:
        await self._call("open_session", table_id)
        session = self.add_session(table_id, start_time)
        self._respond("open_session")
        return session

    async def close_session(self, table_id: str, end_time: datetime | None = None) -> TableSession | None:
        await self._call("close_session", table_id)
        for session in self.sessions.values():
            if session.table_id == table_id and session.status == SessionStatus.active:
                closed = session.model_copy(update={"status": SessionStatus.closed, "end_time": end_time or utcnow()})
                self.sessions[session.id] = closed
                return closed
        return None

    async def get_session(self, session_id: str) -> TableSession:
        await self._call("get_session", session_id)
        if session_id not in self.sessions:
            raise RemoteError.not_found(f"Session {session_id} not found")
        return self.sessions[session_id]

    async def get_active_session(self, table_id: str) -> TableSession | None:
        await self._call("get_active_session", table_id)
        active = [s for s in self.sessions.values() if s.table_id == table_id and s.status == SessionStatus.active]
        return max(active, key=lambda s: s.start_time, default=None)

    async def list_active_sessions(self) -> list[TableSession]:
        await self._call("list_active_sessions")
        return [s for s in self.sessions.values() if s.status == SessionStatus.active]

    # notifications

    async def create_notification(self, table_id: str, notification_type: NotificationType) -> Notification:
        await self._call("create_notification", table_id, notification_type)
        self._require(table_id)
        return self.add_notification(table_id, notification_type)

    async def resolve_notification(self, notification_id: str) -> None:
        await self._call("resolve_notification", notification_id)
        if self.notifications.pop(notification_id, None) is None:
            raise RemoteError.not_found(f"Notification {notification_id} not found")

    async def list_notifications(self) -> list[Notification]:
        await self._call("list_notifications")
        return sorted(self.notifications.values(), key=lambda n: n.created_at, reverse=True)

    # orders

    async def list_orders_for_table(self, table_id: str) -> list[Order]:
        await self._call("list_orders_for_table", table_id)
        return [o for o in self.orders if o.table_id == table_id]

    async def list_table_orders(self) -> list[Order]:
        await self._call("list_table_orders")
        return list(self.orders)

    async def aclose(self) -> None:
        pass


class FakeAuth:
    def __init__(self):
        self.valid = True
        self.refresh_ok = True
        self.identity_error: RemoteError | None = None
        self.gate: asyncio.Event | None = None
        self.checks = 0
        self.refreshes = 0
        self.access_token: str | None = "access"
        self.refresh_token: str | None = "refresh"

    async def get_current_identity(self) -> Identity:
        self.checks += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.identity_error is not None:
            raise self.identity_error
        if not self.valid:
            raise RemoteError(ErrorKind.auth_expired, "JWT expired")
        return Identity(id="staff-1", email="staff@example.com")

    async def refresh_credential(self) -> bool:
        self.refreshes += 1
        if self.refresh_ok:
            self.valid = True
        return self.refresh_ok

    def sign_out(self) -> None:
        self.access_token = None
        self.refresh_token = None

    def headers(self) -> dict[str, str]:
        return {}

    async def aclose(self) -> None:
        pass


async def settle(rounds: int = 10) -> None:
    """Let every ready task run until it blocks."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def config():
    return settings.model_copy(update={
        "network_retries": 2,
        "resubscribe_delay_seconds": 0.01,
        "refetch_interval_seconds": 3600,
        "session_check_interval_seconds": 3600,
        "delayed_after_minutes": 15,
    })


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def auth() -> FakeAuth:
    return FakeAuth()


@pytest.fixture
def cache() -> EntityCache:
    return EntityCache()


@pytest.fixture
def state() -> DashboardState:
    return DashboardState()


@pytest.fixture
def auth_errors() -> list[str]:
    return []


@pytest.fixture
def coordinator(cache, gateway, state, config, auth_errors) -> MutationCoordinator:
    return MutationCoordinator(
        cache,
        gateway,
        state,
        config=config,
        on_auth_error=lambda: auth_errors.append("auth"),
        retry_delay=0,
    )


@pytest.fixture
def announced() -> list[Notification]:
    return []


@pytest.fixture
def reconciler(cache, gateway, state, config, coordinator, auth_errors, announced) -> ChangeFeedReconciler:
    return ChangeFeedReconciler(
        cache,
        gateway,
        state,
        config=config,
        lock_for=coordinator.lock_for,
        busy=coordinator.busy,
        on_auth_error=lambda: auth_errors.append("auth"),
        on_notification=announced.append,
    )
