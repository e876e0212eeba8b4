"""Composition root: builds the cache, gateway, coordinator, reconciler and watchdog and wires them together."""

import logging
from collections.abc import Callable
from typing import Any

from .auth import AuthProvider
from .cache import EntityCache
from .coordinator import MutationCoordinator
from .errors import ErrorKind, RemoteError
from .gateway import RemoteGateway
from .models import EntityType, Notification, utcnow
from .reconciler import ChangeFeedReconciler
from .selectors import (
    filter_notifications,
    filter_orders,
    filter_tables,
    notification_stats,
    order_card,
    order_stats,
    paginate,
    status_bucket_counts,
    table_card,
    table_detail,
    waiter_load,
)
from .settings import Settings, settings as default_settings
from .store import DashboardState
from .watchdog import SessionWatchdog

logger = logging.getLogger(__name__)

VIEWS = (
    "buckets",
    "tables",
    "table_detail",
    "notifications",
    "notification_stats",
    "orders",
    "waiter_load",
)


class Dashboard:
    def __init__(
        self,
        config: Settings | None = None,
        auth: AuthProvider | None = None,
        gateway: RemoteGateway | None = None,
        cache: EntityCache | None = None,
        state: DashboardState | None = None,
        redis_factory: Callable[[], Any] | None = None,
        retry_delay: float = 0.5,
    ):
        self.config = config or default_settings
        self.auth = auth or AuthProvider(self.config)
        self.gateway = gateway or RemoteGateway(self.auth, self.config)
        self.cache = cache or EntityCache()
        self.state = state or DashboardState()
        self._alert_listeners: list[Callable[[Notification], Any]] = []

        self.watchdog = SessionWatchdog(
            self.auth,
            on_invalidate=self.invalidate,
            on_clear=self.clear,
            config=self.config,
        )
        self.coordinator = MutationCoordinator(
            self.cache,
            self.gateway,
            self.state,
            config=self.config,
            on_auth_error=self.watchdog.signal_auth_error,
            retry_delay=retry_delay,
        )
        self.reconciler = ChangeFeedReconciler(
            self.cache,
            self.gateway,
            self.state,
            config=self.config,
            lock_for=self.coordinator.lock_for,
            busy=self.coordinator.busy,
            on_auth_error=self.watchdog.signal_auth_error,
            on_notification=self._announce,
            redis_factory=redis_factory,
        )

    # ============ LIFECYCLE ============

    async def start(self, listen: bool = True, poll: bool = True, watch: bool = True) -> None:
        self.reconciler.start(listen=listen, poll=poll)
        if watch:
            self.watchdog.start()
        try:
            await self.reconciler.refetch_all()
        except RemoteError as e:
            logger.warning(f"Initial load failed: {e}")
            if e.kind == ErrorKind.auth_expired:
                self.watchdog.signal_auth_error()

    async def stop(self) -> None:
        await self.reconciler.stop()
        await self.watchdog.stop()

    async def aclose(self) -> None:
        await self.gateway.aclose()
        await self.auth.aclose()

    async def invalidate(self) -> None:
        """Drop trust in everything cached and load it again. Also resumes reconciliation after a sign-in."""
        self.reconciler.resume()
        self.cache.invalidate()
        await self.reconciler.refetch_all()

    def clear(self) -> None:
        """Forget all local state. Nothing reaches the cache again until the next successful check."""
        self.reconciler.pause()
        self.cache.clear()
        self.state.reset()

    # ============ ALERTS ============

    def on_alert(self, listener: Callable[[Notification], Any]) -> Callable[[], None]:
        self._alert_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._alert_listeners:
                self._alert_listeners.remove(listener)

        return unsubscribe

    def _announce(self, notification: Notification) -> None:
        logger.info(f"New notification for table {notification.table_id}: {notification.message}")
        if not self.state.sound_enabled:
            return
        for listener in list(self._alert_listeners):
            listener(notification)

    # ============ READS ============

    def entities(self, entity_type: EntityType) -> list:
        return self.cache.all(entity_type)

    async def select_table(self, table_id: str | None) -> None:
        self.state.select_table(table_id)
        if table_id is not None:
            self.state.dismiss_alert(table_id)
            try:
                await self.reconciler.refresh_orders(table_id)
            except RemoteError as e:
                # The detail view still renders from whatever orders are cached
                logger.warning(f"Could not load orders for table {table_id}: {e}")
                if e.kind == ErrorKind.auth_expired:
                    self.watchdog.signal_auth_error()

    def view(self, name: str, **args) -> Any:
        """Compute one derived view from the current cache."""
        now = args.get("now") or utcnow()
        tables = self.cache.all(EntityType.tables)
        notifications = self.cache.all(EntityType.notifications)

        if name == "buckets":
            return status_bucket_counts(tables)
        if name == "tables":
            table_filter = args.get("filter") or self.state.table_filter
            return [
                table_card(table, now, self.state.has_alert(table.id))
                for table in filter_tables(tables, table_filter, now, self.config.delayed_after_minutes)
            ]
        if name == "table_detail":
            table_id = args.get("table_id") or self.state.selected_table_id
            table = self.cache.get(EntityType.tables, table_id) if table_id else None
            if table is None:
                return None
            return table_detail(
                table,
                self.cache.all(EntityType.orders),
                self.cache.all(EntityType.sessions),
                now,
            )
        if name == "notifications":
            selected = filter_notifications(
                notifications,
                args.get("type"),
                args.get("sort_by") or "timestamp",
                args.get("descending", True),
            )
            page = paginate(selected, args.get("visible") or len(selected))
            page["items"] = [n.model_dump(mode="json") for n in page["items"]]
            return page
        if name == "notification_stats":
            return notification_stats(notifications)
        if name == "orders":
            orders = self.cache.all(EntityType.orders)
            numbers = {table.id: table.number for table in tables}
            selected = filter_orders(orders, args.get("order_filter") or self.state.order_filter, now)
            return {
                "items": [order_card(order, now, numbers.get(order.table_id)) for order in selected],
                "stats": order_stats(orders),
            }
        if name == "waiter_load":
            return waiter_load(tables)
        raise KeyError(name)
