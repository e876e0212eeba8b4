"""
Change-Feed Reconciler

Subscribes to the backend's change feed (one Redis pub/sub channel per
watched remote table) and merges each pushed change into the entity cache.
- realtime:tables - refetch the table
- realtime:table_sessions - refetch the session, keep the table's session start in sync
- realtime:table_orders - refetch the orders of the affected table
- realtime:table_notifications - build the notification straight from the payload

Each entity type has its own queue and worker, so events of one type are
reconciled in arrival order while types proceed independently. A periodic
full refetch covers whatever the feed missed while disconnected.
"""

import asyncio
import json
import logging
from collections.abc import Callable
from contextlib import AsyncExitStack, nullcontext
from dataclasses import dataclass
from typing import Any

import redis.asyncio as redis

from .cache import EntityCache
from .coordinator import is_pending
from .errors import ErrorKind, RemoteError
from .gateway import RemoteGateway, notification_from_wire
from .models import (
    ChangeType,
    EntityType,
    Notification,
    NotificationStatus,
    Table,
    TableSession,
)
from .selectors import active_session, has_active_notification
from .settings import Settings, settings as default_settings
from .store import DashboardState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeEvent:
    table: EntityType
    event_type: ChangeType
    new: dict | None = None
    old: dict | None = None

    @classmethod
    def from_payload(cls, table: EntityType | str, payload: dict | str | bytes) -> "ChangeEvent":
        if isinstance(payload, bytes):
            payload = payload.decode()
        if isinstance(payload, str):
            payload = json.loads(payload)
        event_type = payload.get("eventType") or payload.get("type")
        return cls(
            table=EntityType(table),
            event_type=ChangeType(event_type),
            new=payload.get("new") or None,
            old=payload.get("old") or None,
        )

    @property
    def record(self) -> dict:
        return self.new or self.old or {}

    @property
    def entity_id(self) -> str | None:
        entity_id = self.record.get("id")
        return str(entity_id) if entity_id is not None else None


class ChangeFeedReconciler:
    def __init__(
        self,
        cache: EntityCache,
        gateway: RemoteGateway,
        state: DashboardState,
        config: Settings | None = None,
        lock_for: Callable[[str], asyncio.Lock] | None = None,
        busy: Callable[[str], bool] | None = None,
        on_auth_error: Callable[[], Any] | None = None,
        on_notification: Callable[[Notification], Any] | None = None,
        redis_factory: Callable[[], redis.Redis] | None = None,
    ):
        self.cache = cache
        self.gateway = gateway
        self.state = state
        self.config = config or default_settings
        self.lock_for = lock_for
        self.busy = busy or (lambda key: False)
        self.on_auth_error = on_auth_error
        self.on_notification = on_notification
        self.redis_factory = redis_factory or (lambda: redis.from_url(self.config.redis_url))

        self.connected = False
        # Set while signed out: pushed changes and refetches are dropped
        self.paused = False
        self._queues: dict[EntityType, asyncio.Queue[ChangeEvent]] = {}
        self._tasks: list[asyncio.Task] = []
        self._background: set[asyncio.Task] = set()

    # ============ LIFECYCLE ============

    def start(self, listen: bool = True, poll: bool = True) -> None:
        """Start one worker per entity type, plus the feed listener and the periodic refetch."""
        for entity_type in EntityType:
            self._queues[entity_type] = asyncio.Queue()
            self._tasks.append(asyncio.create_task(self._worker(entity_type)))
        if listen:
            self._tasks.append(asyncio.create_task(self.listen()))
        if poll:
            self._tasks.append(asyncio.create_task(self.refetch_loop()))

    async def stop(self) -> None:
        tasks = self._tasks + list(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks = []
        self._queues = {}
        self.connected = False

    def pause(self) -> None:
        if not self.paused:
            logger.info("Reconciliation paused until the next sign-in")
        self.paused = True

    def resume(self) -> None:
        self.paused = False

    def publish(self, event: ChangeEvent) -> None:
        """Queue an event for its entity type's worker."""
        self._queues[event.table].put_nowait(event)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait until every queued event has been reconciled."""
        await asyncio.gather(*(queue.join() for queue in self._queues.values()))

    async def _worker(self, entity_type: EntityType) -> None:
        queue = self._queues[entity_type]
        while True:
            event = await queue.get()
            try:
                await self.handle(event)
            except RemoteError as e:
                logger.warning(f"Could not reconcile {event.table.value} {event.event_type.value}: {e}")
                if e.kind == ErrorKind.auth_expired and self.on_auth_error is not None:
                    self.on_auth_error()
            except Exception as e:
                logger.error(f"Error handling {entity_type.value} change: {e}", exc_info=True)
            finally:
                queue.task_done()

    # ============ FEED ============

    def channel(self, entity_type: EntityType) -> str:
        return f"{self.config.channel_prefix}:{entity_type.value}"

    async def listen(self) -> None:
        """Subscribe to the change feed and resubscribe after any disconnect."""
        channels = {self.channel(entity_type): entity_type for entity_type in EntityType}

        while True:
            try:
                async with AsyncExitStack() as stack:
                    r = self.redis_factory()
                    stack.push_async_callback(r.aclose)
                    pubsub = r.pubsub()
                    stack.push_async_callback(pubsub.aclose)

                    await pubsub.subscribe(*channels)
                    self.connected = True
                    logger.info(f"Subscribed to change feed: {', '.join(channels)}")

                    async for message in pubsub.listen():
                        if message["type"] != "message":
                            continue
                        channel = message["channel"]
                        if isinstance(channel, bytes):
                            channel = channel.decode()
                        entity_type = channels.get(channel)
                        if entity_type is None:
                            continue
                        try:
                            self.publish(ChangeEvent.from_payload(entity_type, message["data"]))
                        except (ValueError, KeyError) as e:
                            logger.warning(f"Ignoring malformed change on {channel}: {e}")
                    raise ConnectionError("Change feed closed")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.connected = False
                logger.error(f"Change feed connection error: {e}", exc_info=True)
                # The feed may have dropped events while it was down
                self._spawn(self._safe_refetch())
                await asyncio.sleep(self.config.resubscribe_delay_seconds)

    # ============ RECONCILIATION ============

    async def handle(self, event: ChangeEvent) -> None:
        """Merge one change into the cache. Applying the same event twice leaves the same state."""
        if self.paused:
            logger.debug(f"Dropping {event.table.value} {event.event_type.value} while signed out")
            return
        if event.table == EntityType.tables:
            await self._reconcile_table(event)
        elif event.table == EntityType.sessions:
            await self._reconcile_session(event)
        elif event.table == EntityType.orders:
            await self._reconcile_table_order(event)
        elif event.table == EntityType.notifications:
            await self._reconcile_notification(event)

    def _serialized(self, table_id: str | None):
        if self.lock_for is None or table_id is None:
            return nullcontext()
        return self.lock_for(table_id)

    async def _reconcile_table(self, event: ChangeEvent) -> None:
        table_id = event.entity_id
        if table_id is None:
            return
        async with self._serialized(table_id):
            if event.event_type == ChangeType.delete:
                self.cache.remove(EntityType.tables, table_id)
                return
            try:
                table = await self.gateway.get_table(table_id)
            except RemoteError as e:
                if e.kind != ErrorKind.not_found:
                    raise
                self.cache.remove(EntityType.tables, table_id)
                return
            if self.paused:
                return
            self.cache.upsert(EntityType.tables, self._with_session_start(table))

    async def _reconcile_session(self, event: ChangeEvent) -> None:
        session_id = event.entity_id
        table_id = event.record.get("table_id")
        if session_id is None:
            return
        async with self._serialized(str(table_id) if table_id else None):
            if event.event_type == ChangeType.delete:
                self.cache.remove(EntityType.sessions, session_id)
            else:
                try:
                    session = await self.gateway.get_session(session_id)
                except RemoteError as e:
                    if e.kind != ErrorKind.not_found:
                        raise
                    self.cache.remove(EntityType.sessions, session_id)
                else:
                    if self.paused:
                        return
                    self.cache.upsert(EntityType.sessions, session)
                    table_id = session.table_id
            if table_id:
                self._sync_session_start(str(table_id))

    async def _reconcile_table_order(self, event: ChangeEvent) -> None:
        table_id = event.record.get("table_id")
        if table_id:
            await self.refresh_orders(str(table_id))

    async def _reconcile_notification(self, event: ChangeEvent) -> None:
        notification_id = event.entity_id
        if notification_id is None:
            return
        record = event.record
        table_id = str(record.get("table_id")) if record.get("table_id") else None

        if event.event_type == ChangeType.delete or record.get("status") == NotificationStatus.resolved.value:
            self.cache.remove(EntityType.notifications, notification_id)
            if table_id:
                self._clear_alert_if_done(table_id)
            return

        if table_id is None:
            logger.warning(f"Ignoring notification {notification_id} without a table")
            return

        try:
            table_number = await self._table_number(table_id)
        except RemoteError as e:
            if e.kind != ErrorKind.not_found:
                raise
            logger.info(f"Ignoring notification {notification_id} for removed table {table_id}")
            return
        if self.paused:
            return

        notification = notification_from_wire(record, table_number)
        existing = self.cache.get(EntityType.notifications, notification_id)
        if existing is not None:
            notification = notification.model_copy(update={"dismissed": existing.dismissed})
        self.cache.upsert(EntityType.notifications, notification)

        if event.event_type == ChangeType.insert and not notification.dismissed:
            self.state.set_alert(notification.table_id)
            if existing is None and self.on_notification is not None:
                self.on_notification(notification)

    async def _table_number(self, table_id: str) -> int:
        table = self.cache.get(EntityType.tables, table_id)
        if table is None:
            table = await self.gateway.get_table(table_id)
        return table.number

    # ============ REFETCH ============

    async def refresh_orders(self, table_id: str) -> None:
        if self.paused:
            return
        orders = await self.gateway.list_orders_for_table(table_id)
        if self.paused:
            return
        self.cache.replace_where(EntityType.orders, lambda order: order.table_id == table_id, orders)

    async def refetch_all(self) -> None:
        """Reload every collection from the backend and replace the cached ones. Does nothing while paused."""
        if self.paused:
            logger.debug("Skipping refetch while signed out")
            return
        tables, sessions, orders, notifications = await asyncio.gather(
            self.gateway.list_tables(),
            self.gateway.list_active_sessions(),
            self.gateway.list_table_orders(),
            self.gateway.list_notifications(),
        )
        if self.paused:
            return

        # Tables with a mutation in flight keep their optimistic state
        busy = {table.id for table in self.cache.all(EntityType.tables) if self.busy(table.id)}
        cached_sessions = [s for s in self.cache.all(EntityType.sessions) if s.table_id in busy]
        sessions = [s for s in sessions if s.table_id not in busy] + cached_sessions
        self.cache.replace_all(EntityType.sessions, sessions)

        merged = {table.id: self._with_session_start(table, sessions) for table in tables}
        for table_id in busy:
            merged[table_id] = self.cache.get(EntityType.tables, table_id)
        for table in self.cache.all(EntityType.tables):
            if is_pending(table.id):
                merged[table.id] = table
        self.cache.replace_all(EntityType.tables, merged.values())

        self.cache.replace_all(EntityType.orders, orders)

        dismissed = {n.id for n in self.cache.all(EntityType.notifications) if n.dismissed}
        pending = [n for n in self.cache.all(EntityType.notifications) if is_pending(n.id)]
        self.cache.replace_all(
            EntityType.notifications,
            [n.model_copy(update={"dismissed": n.id in dismissed}) for n in notifications] + pending,
        )
        for notification in notifications:
            if notification.id not in dismissed:
                self.state.set_alert(notification.table_id)
        logger.info(
            f"Refetched {len(tables)} tables, {len(sessions)} active sessions, "
            f"{len(orders)} orders, {len(notifications)} notifications"
        )

    async def refetch_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.refetch_interval_seconds)
            await self._safe_refetch()

    async def _safe_refetch(self) -> None:
        try:
            await self.refetch_all()
        except RemoteError as e:
            logger.warning(f"Background refetch failed: {e}")
            if e.kind == ErrorKind.auth_expired and self.on_auth_error is not None:
                self.on_auth_error()

    # ============ HELPERS ============

    def _with_session_start(self, table: Table, sessions: list[TableSession] | None = None) -> Table:
        if sessions is None:
            sessions = self.cache.all(EntityType.sessions)
        session = active_session(sessions, table.id)
        return table.model_copy(update={"session_start": session.start_time if session else None})

    def _sync_session_start(self, table_id: str) -> None:
        table = self.cache.get(EntityType.tables, table_id)
        if table is None:
            return
        updated = self._with_session_start(table)
        if updated.session_start != table.session_start:
            self.cache.upsert(EntityType.tables, updated)

    def _clear_alert_if_done(self, table_id: str) -> None:
        if not has_active_notification(self.cache.all(EntityType.notifications), table_id):
            self.state.dismiss_alert(table_id)
