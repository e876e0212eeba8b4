"""
Optimistic Mutation Coordinator

Every staff action goes through `transact`:
1. snapshot the affected collections
2. apply the change to the cache immediately
3. await the remote write (network failures are retried a few times)
4. on failure put the touched entities back and raise the error banner

Mutations on the same table are serialized with a per-table lock; different
tables proceed concurrently.
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar
from uuid import uuid4

from .cache import EntityCache
from .errors import ErrorKind, RemoteError
from .gateway import RemoteGateway, notification_message
from .models import (
    SEATED_STATUSES,
    EntityType,
    MutationResult,
    Notification,
    NotificationType,
    SessionStatus,
    Table,
    TableCreate,
    TableSession,
    TableStatus,
    utcnow,
)
from .selectors import active_session, has_active_notification
from .settings import Settings, settings as default_settings
from .store import DashboardState

logger = logging.getLogger(__name__)

T = TypeVar("T")

PENDING_PREFIX = "pending-"


def pending_id() -> str:
    """Placeholder id for an entity the backend has not assigned an id to yet."""
    return f"{PENDING_PREFIX}{uuid4()}"


def is_pending(entity_id: str) -> bool:
    return entity_id.startswith(PENDING_PREFIX)


USER_MESSAGES = {
    ErrorKind.auth_expired: "The action did not complete. Your session expired; sign in again to continue.",
    ErrorKind.network: "The action did not complete because the server could not be reached.",
    ErrorKind.unknown: "Something went wrong. Please try again.",
}


class MutationCoordinator:
    def __init__(
        self,
        cache: EntityCache,
        gateway: RemoteGateway,
        state: DashboardState,
        config: Settings | None = None,
        on_auth_error: Callable[[], Any] | None = None,
        retry_delay: float = 0.5,
    ):
        self.cache = cache
        self.gateway = gateway
        self.state = state
        self.config = config or default_settings
        self.on_auth_error = on_auth_error
        self.retry_delay = retry_delay
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def lock_for(self, key: str) -> asyncio.Lock:
        return self._locks[key]

    def busy(self, key: str) -> bool:
        return key in self._locks and self._locks[key].locked()

    # ============ TRANSACTIONAL APPLY ============

    async def transact(
        self,
        operation: str,
        entity_types: tuple[EntityType, ...],
        apply: Callable[[], None],
        write: Callable[[], Awaitable[T]],
        confirm: Callable[[T], None] | None = None,
    ) -> MutationResult:
        """
        Apply a change locally, then confirm or roll it back.

        `apply` and `confirm` run synchronously and must not await; `write`
        is the only suspension point. Callers that need serialization hold
        the relevant lock around this call.
        """
        snapshots = {entity_type: self.cache.snapshot(entity_type) for entity_type in entity_types}
        try:
            apply()
        except Exception:
            self._rollback(snapshots, None)
            raise
        touched = {
            entity_type: self.cache.changed_ids(entity_type, snapshot)
            for entity_type, snapshot in snapshots.items()
        }

        try:
            result = await self._write_with_retry(operation, write)
        except RemoteError as e:
            self._rollback(snapshots, touched)
            return self._failed(operation, e)
        except Exception as e:
            logger.error(f"Unexpected failure during {operation}: {e}", exc_info=True)
            self._rollback(snapshots, touched)
            return self._failed(operation, RemoteError(ErrorKind.unknown, str(e)))

        if confirm is not None:
            confirm(result)
        self.state.clear_error()
        return MutationResult(ok=True, operation=operation)

    async def _write_with_retry(self, operation: str, write: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            try:
                return await write()
            except RemoteError as e:
                if not e.retryable or attempt >= self.config.network_retries:
                    raise
                attempt += 1
                logger.warning(f"{operation} failed ({e}), retry {attempt}/{self.config.network_retries}")
                await asyncio.sleep(self.retry_delay * attempt)

    def _rollback(self, snapshots, touched) -> None:
        for entity_type, snapshot in snapshots.items():
            only = touched[entity_type] if touched is not None else None
            self.cache.restore(entity_type, snapshot, only=only)

    def _failed(self, operation: str, error: RemoteError) -> MutationResult:
        if error.kind == ErrorKind.auth_expired:
            logger.warning(f"{operation} rejected, credential expired")
            if self.on_auth_error is not None:
                self.on_auth_error()
        elif error.kind == ErrorKind.unknown:
            logger.error(f"{operation} failed: {error}")
        else:
            logger.info(f"{operation} failed: {error}")

        message = USER_MESSAGES.get(error.kind, error.message)
        self.state.set_error(operation, error.kind.value, message)
        return MutationResult(ok=False, operation=operation, error_kind=error.kind.value, message=message)

    def _missing(self, operation: str, what: str) -> MutationResult:
        return self._failed(operation, RemoteError.not_found(f"{what} not found"))

    # ============ TABLES ============

    async def create_table(self, data: TableCreate) -> MutationResult:
        operation = "create table"
        placeholder = Table(
            id=pending_id(),
            number=data.number,
            capacity=data.capacity,
            guests=0 if data.status == TableStatus.free else data.capacity,
            status=data.status,
            assigned_waiter_id=data.assigned_waiter_id,
        )

        def apply() -> None:
            self.cache.upsert(EntityType.tables, placeholder)

        def confirm(created: Table) -> None:
            self.cache.remove(EntityType.tables, placeholder.id)
            self.cache.upsert(EntityType.tables, created)

        async with self.lock_for(f"number:{data.number}"):
            return await self.transact(
                operation,
                (EntityType.tables,),
                apply,
                lambda: self.gateway.create_table(data),
                confirm,
            )

    async def change_table_status(self, table_id: str, status: TableStatus) -> MutationResult:
        """
        Move a table to a new status.

        Seating a table that has no active session opens one; freeing a
        table closes its session and empties it. All local sub-steps happen
        before the first remote call.
        """
        async with self.lock_for(table_id):
            return await self._change_status(table_id, status, guests=None)

    async def free_table(self, table_id: str) -> MutationResult:
        return await self.change_table_status(table_id, TableStatus.free)

    async def seat_guests(self, table_id: str, guests: int) -> MutationResult:
        """Seat a party at a table, e.g. after the guests scanned the table's QR code."""
        async with self.lock_for(table_id):
            return await self._change_status(table_id, TableStatus.occupied, guests=guests)

    async def _change_status(self, table_id: str, status: TableStatus, guests: int | None) -> MutationResult:
        operation = "update table status" if guests is None else "seat guests"
        table = self.cache.get(EntityType.tables, table_id)
        if table is None:
            return self._missing(operation, f"Table {table_id}")

        session = active_session(self.cache.all(EntityType.sessions), table_id)
        now = utcnow()
        opens = status in SEATED_STATUSES and session is None
        frees = status == TableStatus.free
        placeholder = TableSession(id=pending_id(), table_id=table_id, start_time=now) if opens else None

        def apply() -> None:
            fields: dict[str, Any] = {"status": status}
            if guests is not None:
                fields["guests"] = guests
            if frees:
                fields.update(guests=0, session_start=None)
            elif opens:
                fields["session_start"] = now
            self.cache.patch(EntityType.tables, table_id, **fields)
            if placeholder is not None:
                self.cache.upsert(EntityType.sessions, placeholder)
            if frees and session is not None:
                self.cache.patch(EntityType.sessions, session.id, status=SessionStatus.closed, end_time=now)

        attempts = 0

        async def write():
            nonlocal attempts
            attempts += 1
            if guests is None:
                updated = await self.gateway.update_table_status(table_id, status)
            else:
                updated = await self.gateway.update_table_guests(table_id, guests, status)
            opened = closed = None
            if opens:
                # A lost response may hide a session the previous attempt already opened
                if attempts > 1:
                    opened = await self.gateway.get_active_session(table_id)
                if opened is None:
                    opened = await self.gateway.open_session(table_id, now)
            elif frees:
                closed = await self.gateway.close_session(table_id, now)
            return updated, opened, closed

        def confirm(result) -> None:
            updated, opened, closed = result
            current = self.cache.get(EntityType.tables, table_id)
            session_start = current.session_start if current is not None else None
            if opened is not None:
                self.cache.remove(EntityType.sessions, placeholder.id)
                self.cache.upsert(EntityType.sessions, opened)
                session_start = opened.start_time
            if closed is not None:
                self.cache.upsert(EntityType.sessions, closed)
            self.cache.upsert(EntityType.tables, updated.model_copy(update={"session_start": session_start}))

        return await self.transact(operation, (EntityType.tables, EntityType.sessions), apply, write, confirm)

    # ============ NOTIFICATIONS ============

    async def request_service(self, table_id: str, notification_type: NotificationType) -> MutationResult:
        """Raise a notification for a table on behalf of the guests (waiter call, bill request, ...)."""
        operation = "create table notification"
        table = self.cache.get(EntityType.tables, table_id)
        if table is None:
            return self._missing(operation, f"Table {table_id}")

        placeholder = Notification(
            id=pending_id(),
            table_id=table_id,
            type=notification_type,
            message=notification_message(notification_type, table.number),
        )

        def apply() -> None:
            self.cache.upsert(EntityType.notifications, placeholder)

        def confirm(created: Notification) -> None:
            self.cache.remove(EntityType.notifications, placeholder.id)
            self.cache.upsert(EntityType.notifications, created)
            self.state.set_alert(table_id)

        async with self.lock_for(table_id):
            return await self.transact(
                operation,
                (EntityType.notifications,),
                apply,
                lambda: self.gateway.create_notification(table_id, notification_type),
                confirm,
            )

    async def resolve_notification(self, notification_id: str) -> MutationResult:
        operation = "resolve notification"
        notification = self.cache.get(EntityType.notifications, notification_id)
        if notification is None:
            return self._missing(operation, f"Notification {notification_id}")

        def apply() -> None:
            self.cache.remove(EntityType.notifications, notification_id)

        def confirm(_) -> None:
            self._clear_alert_if_done(notification.table_id)

        async with self.lock_for(notification.table_id):
            return await self.transact(
                operation,
                (EntityType.notifications,),
                apply,
                lambda: self.gateway.resolve_notification(notification_id),
                confirm,
            )

    def dismiss_notification(self, notification_id: str) -> MutationResult:
        """Hide a notification from the active view. Dismissal is local and never written back."""
        operation = "dismiss notification"
        notification = self.cache.get(EntityType.notifications, notification_id)
        if notification is None:
            return self._missing(operation, f"Notification {notification_id}")
        self.cache.patch(EntityType.notifications, notification_id, dismissed=True)
        self._clear_alert_if_done(notification.table_id)
        return MutationResult(ok=True, operation=operation)

    def _clear_alert_if_done(self, table_id: str) -> None:
        if not has_active_notification(self.cache.all(EntityType.notifications), table_id):
            self.state.dismiss_alert(table_id)
