"""
Derived View Selectors

Pure functions over cached entities. Nothing here touches the network or
the cache itself; callers pass in the collections and the current time.
"""

from collections import Counter
from datetime import datetime
from enum import Enum
from typing import Iterable

from .models import (
    COMPLETED_ORDER_STATUSES,
    OPEN_ORDER_STATUSES,
    Notification,
    NotificationType,
    Order,
    OrderFilter,
    OrderStatus,
    SessionStatus,
    Table,
    TableFilter,
    TableSession,
    TableStatus,
    utcnow,
)


class Bucket(str, Enum):
    free = "free"
    busy = "busy"
    delivered = "delivered"
    paid = "paid"


# Dashboard mapping configuration: every status lands in exactly one bucket
STATUS_BUCKETS: dict[TableStatus, Bucket] = {
    TableStatus.free: Bucket.free,
    TableStatus.occupied: Bucket.busy,
    TableStatus.waiting_order: Bucket.busy,
    TableStatus.producing: Bucket.busy,
    TableStatus.bill_requested: Bucket.busy,
    TableStatus.delivered: Bucket.delivered,
    TableStatus.paid: Bucket.paid,
}

_unmapped = set(TableStatus) - set(STATUS_BUCKETS)
if _unmapped:
    raise RuntimeError(f"Table statuses without a dashboard bucket: {sorted(s.value for s in _unmapped)}")

DELAYED_AFTER_MINUTES = 15

# Wait time colour bands shown on the table grid
FAST_BELOW_MINUTES = 10
MEDIUM_BELOW_MINUTES = 20

# Bar orders waiting longer than this are urgent
URGENT_AFTER_MINUTES = 10

NOTIFICATION_PRIORITY = {
    NotificationType.special_request: 4,
    NotificationType.waiter_call: 3,
    NotificationType.bill_request: 2,
    NotificationType.new_order: 1,
}


def status_bucket_counts(tables: Iterable[Table]) -> dict[str, int]:
    counts = Counter(STATUS_BUCKETS[table.status] for table in tables)
    return {bucket.value: counts.get(bucket, 0) for bucket in Bucket}


def wait_time_minutes(table: Table, now: datetime | None = None) -> int:
    """Whole minutes since the table's session started; 0 without an active session."""
    if table.session_start is None or table.status == TableStatus.free:
        return 0
    now = now or utcnow()
    elapsed = (now - table.session_start).total_seconds()
    return max(0, int(elapsed // 60))


def time_band(wait_minutes: int) -> str | None:
    if wait_minutes <= 0:
        return None
    if wait_minutes < FAST_BELOW_MINUTES:
        return "fast"
    if wait_minutes < MEDIUM_BELOW_MINUTES:
        return "medium"
    return "slow"


def filter_tables(
    tables: Iterable[Table],
    table_filter: TableFilter | str = TableFilter.all,
    now: datetime | None = None,
    delayed_after: int = DELAYED_AFTER_MINUTES,
) -> list[Table]:
    table_filter = TableFilter(table_filter)
    tables = list(tables)
    if table_filter == TableFilter.occupied:
        return [t for t in tables if t.status != TableStatus.free]
    if table_filter == TableFilter.delayed:
        now = now or utcnow()
        return [t for t in tables if wait_time_minutes(t, now) > delayed_after]
    if table_filter == TableFilter.bill_requested:
        return [t for t in tables if t.status == TableStatus.bill_requested]
    return tables


def table_card(table: Table, now: datetime | None = None, has_alert: bool = False) -> dict:
    """Everything the table grid shows for one table."""
    wait = wait_time_minutes(table, now)
    return {
        **table.model_dump(mode="json"),
        "bucket": STATUS_BUCKETS[table.status].value,
        "wait_time": wait,
        "time_band": time_band(wait),
        "has_alert": has_alert,
    }


def active_session(sessions: Iterable[TableSession], table_id: str) -> TableSession | None:
    active = [s for s in sessions if s.table_id == table_id and s.status == SessionStatus.active]
    if not active:
        return None
    return max(active, key=lambda s: s.start_time)


def session_total(orders: Iterable[Order], session: TableSession | None) -> float:
    """Sum of completed orders placed during the session."""
    if session is None:
        return 0.0
    total = 0.0
    for order in orders:
        if order.status not in COMPLETED_ORDER_STATUSES:
            continue
        if order.created_at < session.start_time:
            continue
        if session.end_time is not None and order.created_at > session.end_time:
            continue
        total += order.total
    return round(total, 2)


def table_detail(
    table: Table,
    orders: Iterable[Order],
    sessions: Iterable[TableSession],
    now: datetime | None = None,
) -> dict:
    table_orders = sorted(
        (o for o in orders if o.table_id == table.id),
        key=lambda o: o.created_at,
        reverse=True,
    )
    session = active_session(sessions, table.id)
    return {
        "table": table_card(table, now),
        "session": session.model_dump(mode="json") if session else None,
        "orders": [o.model_dump(mode="json") for o in table_orders],
        "order_stats": order_stats(table_orders),
        "running_total": session_total(table_orders, session),
    }


def order_stats(orders: Iterable[Order]) -> dict[str, int]:
    orders = list(orders)
    counts = Counter(order.status for order in orders)
    return {"total": len(orders), **{status.value: counts.get(status, 0) for status in OrderStatus}}


# ============ BAR AND SUPERVISOR ============

def order_wait_minutes(order: Order, now: datetime | None = None) -> int:
    now = now or utcnow()
    return max(0, int((now - order.created_at).total_seconds() // 60))


def filter_orders(
    orders: Iterable[Order],
    order_filter: OrderFilter | str = OrderFilter.all,
    now: datetime | None = None,
    urgent_after: int = URGENT_AFTER_MINUTES,
) -> list[Order]:
    """Bar board orders, oldest first. `pending` keeps open orders; `urgent` keeps open orders waiting too long."""
    order_filter = OrderFilter(order_filter)
    now = now or utcnow()
    result = sorted(orders, key=lambda o: o.created_at)
    if order_filter == OrderFilter.pending:
        return [o for o in result if o.status in OPEN_ORDER_STATUSES]
    if order_filter == OrderFilter.urgent:
        return [
            o for o in result
            if o.status in OPEN_ORDER_STATUSES and order_wait_minutes(o, now) > urgent_after
        ]
    return result


def order_card(order: Order, now: datetime | None = None, table_number: int | None = None) -> dict:
    wait = order_wait_minutes(order, now)
    return {
        **order.model_dump(mode="json"),
        "table_number": table_number,
        "wait_time": wait,
        "urgent": order.status in OPEN_ORDER_STATUSES and wait > URGENT_AFTER_MINUTES,
    }


def waiter_load(tables: Iterable[Table]) -> dict:
    """Seated tables and guests per assigned waiter, for the supervisor view."""
    load: dict[str, dict] = {}
    unassigned = 0
    for table in tables:
        waiter_id = table.assigned_waiter_id
        if waiter_id is not None:
            load.setdefault(waiter_id, {"waiter_id": waiter_id, "tables": 0, "guests": 0, "table_numbers": []})
        if table.status == TableStatus.free:
            continue
        if waiter_id is None:
            unassigned += 1
            continue
        entry = load[waiter_id]
        entry["tables"] += 1
        entry["guests"] += table.guests
        entry["table_numbers"].append(table.number)
    return {
        "waiters": [load[waiter_id] for waiter_id in sorted(load)],
        "unassigned": unassigned,
    }


def active_notifications(notifications: Iterable[Notification]) -> list[Notification]:
    return [n for n in notifications if not n.dismissed]


def has_active_notification(notifications: Iterable[Notification], table_id: str) -> bool:
    return any(n.table_id == table_id for n in active_notifications(notifications))


def notification_stats(notifications: Iterable[Notification]) -> dict[str, int]:
    active = active_notifications(notifications)
    counts = Counter(n.type for n in active)
    return {"total": len(active), **{t.value: counts.get(t, 0) for t in NotificationType}}


def filter_notifications(
    notifications: Iterable[Notification],
    notification_type: NotificationType | str | None = None,
    sort_by: str = "timestamp",
    descending: bool = True,
) -> list[Notification]:
    """Active notifications, optionally of one type, sorted by timestamp, priority or table."""
    result = active_notifications(notifications)
    if notification_type and notification_type != "all":
        notification_type = NotificationType(notification_type)
        result = [n for n in result if n.type == notification_type]

    if sort_by == "priority":
        key = lambda n: (NOTIFICATION_PRIORITY[n.type], n.created_at)  # noqa: E731
    elif sort_by == "table":
        key = lambda n: n.table_id  # noqa: E731
    elif sort_by == "timestamp":
        key = lambda n: n.created_at  # noqa: E731
    else:
        raise ValueError(f"Unknown sort key: {sort_by}")
    return sorted(result, key=key, reverse=descending)


def paginate(items: list, visible: int) -> dict:
    """Show-more pagination: the first `visible` items and how many are hidden."""
    visible = max(0, visible)
    return {
        "items": items[:visible],
        "has_more": len(items) > visible,
        "remaining": max(0, len(items) - visible),
        "total": len(items),
    }
