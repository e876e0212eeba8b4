"""
Remote Data Gateway

Thin coroutines over the backend's REST interface for:
- tables
- table sessions
- table orders (orders linked to a table)
- table notifications

Each write issues exactly one remote mutation and never retries; retry
policy belongs to the mutation coordinator. Rows are translated between the
wire shape and the cached entity models here and nowhere else.
"""

import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from .auth import AuthProvider
from .errors import RemoteError, error_from_response, error_from_transport
from .models import (
    Notification,
    NotificationStatus,
    NotificationType,
    Order,
    OrderItem,
    OrderStatus,
    SessionStatus,
    Table,
    TableCreate,
    TableSession,
    TableStatus,
    utcnow,
)
from .settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

SINGLE_OBJECT = "application/vnd.pgrst.object+json"
RETURN_REPRESENTATION = "return=representation"

NOTIFICATION_SELECT = "*,table:tables!table_id(table_number)"
TABLE_ORDER_SELECT = "*,order:orders(*)"


# ============ WIRE MAPPING ============

def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        # timestamp without time zone columns are stored in UTC
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def table_from_wire(row: dict) -> Table:
    return Table(
        id=str(row["id"]),
        number=int(row["table_number"]),
        capacity=row.get("capacity") or 0,
        guests=row.get("current_guests") or 0,
        status=TableStatus(row.get("status") or TableStatus.free),
        assigned_waiter_id=row.get("assigned_waiter_id"),
        created_at=_parse_time(row.get("created_at")),
        updated_at=_parse_time(row.get("updated_at")),
    )


def session_from_wire(row: dict) -> TableSession:
    return TableSession(
        id=str(row["id"]),
        table_id=str(row["table_id"]),
        start_time=_parse_time(row["start_time"]),
        end_time=_parse_time(row.get("end_time")),
        total_spent=float(row.get("total_spent") or 0),
        status=SessionStatus(row.get("status") or SessionStatus.active),
    )


def order_from_wire(link: dict) -> Order:
    """Build an Order from a `table_orders` row with its embedded `order`."""
    order = link.get("order") or {}
    items = [
        OrderItem(
            name=item.get("name", ""),
            quantity=item.get("quantity", 1),
            unit_price=float(item.get("unit_price") or item.get("price") or 0),
            notes=item.get("notes"),
        )
        for item in order.get("items") or []
    ]
    total = order.get("total_amount")
    if total is None:
        total = sum(item.unit_price * item.quantity for item in items)
    return Order(
        id=str(link.get("order_id") or order["id"]),
        table_id=str(link["table_id"]),
        status=OrderStatus(order.get("status") or OrderStatus.pending),
        items=items,
        total=float(total),
        created_at=_parse_time(link.get("created_at")) or utcnow(),
    )


def notification_message(notification_type: NotificationType | str, table_number: int | str) -> str:
    notification_type = NotificationType(notification_type)
    if notification_type == NotificationType.waiter_call:
        return f"Table {table_number} is calling for a waiter"
    if notification_type == NotificationType.bill_request:
        return f"Table {table_number} requested the bill"
    if notification_type == NotificationType.special_request:
        return f"Table {table_number} has a special request"
    return f"Table {table_number} placed a new order"


def notification_from_wire(row: dict, table_number: int | str | None = None) -> Notification:
    if table_number is None:
        table_number = (row.get("table") or {}).get("table_number", "?")
    return Notification(
        id=str(row["id"]),
        table_id=str(row["table_id"]),
        type=NotificationType(row["type"]),
        message=notification_message(row["type"], table_number),
        created_at=_parse_time(row.get("created_at")) or utcnow(),
    )


class RemoteGateway:
    def __init__(
        self,
        auth: AuthProvider,
        config: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.auth = auth
        self.config = config or default_settings
        self._client = client or httpx.AsyncClient(timeout=self.config.http_timeout_seconds)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        json: Any = None,
        single: bool = False,
        prefer: str | None = None,
    ) -> Any:
        headers = self.auth.headers()
        if single:
            headers["Accept"] = SINGLE_OBJECT
        if prefer:
            headers["Prefer"] = prefer

        try:
            response = await self._client.request(
                method,
                f"{self.config.rest_url}/{path}",
                params=params,
                json=json,
                headers=headers,
            )
        except httpx.TransportError as e:
            raise error_from_transport(e) from e

        if response.status_code >= 400:
            error = error_from_response(response)
            logger.warning(f"{method} {path} failed: {error}")
            raise error
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # ============ TABLES ============

    async def list_tables(self) -> list[Table]:
        rows = await self._request("GET", "tables", params={"select": "*", "order": "table_number.asc"})
        return [table_from_wire(row) for row in rows or []]

    async def get_table(self, table_id: str) -> Table:
        row = await self._request("GET", "tables", params={"select": "*", "id": f"eq.{table_id}"}, single=True)
        return table_from_wire(row)

    async def create_table(self, data: TableCreate) -> Table:
        existing = await self._request(
            "GET", "tables", params={"select": "id", "table_number": f"eq.{data.number}"}
        )
        if existing:
            raise RemoteError.conflict(f"Table number {data.number} already exists")

        rows = await self._request(
            "POST",
            "tables",
            json={
                "table_number": data.number,
                "capacity": data.capacity,
                "current_guests": 0 if data.status == TableStatus.free else data.capacity,
                "status": data.status.value,
                "assigned_waiter_id": data.assigned_waiter_id,
            },
            prefer=RETURN_REPRESENTATION,
        )
        if not rows:
            raise RemoteError.not_found("No data returned from table creation")
        return table_from_wire(rows[0])

    async def update_table_status(self, table_id: str, status: TableStatus) -> Table:
        payload: dict[str, Any] = {"status": status.value}
        if status == TableStatus.free:
            payload["current_guests"] = 0
        return await self._patch_table(table_id, payload)

    async def update_table_guests(self, table_id: str, guests: int, status: TableStatus) -> Table:
        return await self._patch_table(table_id, {"current_guests": guests, "status": status.value})

    async def _patch_table(self, table_id: str, payload: dict) -> Table:
        rows = await self._request(
            "PATCH", "tables", params={"id": f"eq.{table_id}"}, json=payload, prefer=RETURN_REPRESENTATION
        )
        if not rows:
            raise RemoteError.not_found(f"Table {table_id} not found")
        return table_from_wire(rows[0])

    # ============ SESSIONS ============

    async def open_session(self, table_id: str, start_time: datetime | None = None) -> TableSession:
        rows = await self._request(
            "POST",
            "table_sessions",
            json={
                "table_id": table_id,
                "start_time": (start_time or utcnow()).isoformat(),
                "end_time": None,
                "total_spent": 0,
                "status": SessionStatus.active.value,
            },
            prefer=RETURN_REPRESENTATION,
        )
        if not rows:
            raise RemoteError.not_found("No data returned from table session creation")
        return session_from_wire(rows[0])

    async def close_session(self, table_id: str, end_time: datetime | None = None) -> TableSession | None:
        """Close the active session of a table. Returns None when the table had no active session."""
        rows = await self._request(
            "PATCH",
            "table_sessions",
            params={"table_id": f"eq.{table_id}", "status": f"eq.{SessionStatus.active.value}"},
            json={"end_time": (end_time or utcnow()).isoformat(), "status": SessionStatus.closed.value},
            prefer=RETURN_REPRESENTATION,
        )
        if not rows:
            logger.info(f"No active session found for table {table_id}")
            return None
        return session_from_wire(rows[0])

    async def get_session(self, session_id: str) -> TableSession:
        row = await self._request(
            "GET", "table_sessions", params={"select": "*", "id": f"eq.{session_id}"}, single=True
        )
        return session_from_wire(row)

    async def get_active_session(self, table_id: str) -> TableSession | None:
        rows = await self._request(
            "GET",
            "table_sessions",
            params={
                "select": "*",
                "table_id": f"eq.{table_id}",
                "status": f"eq.{SessionStatus.active.value}",
                "order": "start_time.desc",
                "limit": 1,
            },
        )
        return session_from_wire(rows[0]) if rows else None

    async def list_active_sessions(self) -> list[TableSession]:
        rows = await self._request(
            "GET", "table_sessions", params={"select": "*", "status": f"eq.{SessionStatus.active.value}"}
        )
        return [session_from_wire(row) for row in rows or []]

    # ============ NOTIFICATIONS ============

    async def create_notification(self, table_id: str, notification_type: NotificationType) -> Notification:
        rows = await self._request(
            "POST",
            "table_notifications",
            params={"select": NOTIFICATION_SELECT},
            json={
                "table_id": table_id,
                "type": notification_type.value,
                "status": NotificationStatus.pending.value,
            },
            prefer=RETURN_REPRESENTATION,
        )
        if not rows:
            raise RemoteError.not_found("No data returned from table notification creation")
        return notification_from_wire(rows[0])

    async def resolve_notification(self, notification_id: str) -> None:
        rows = await self._request(
            "PATCH",
            "table_notifications",
            params={"id": f"eq.{notification_id}"},
            json={"status": NotificationStatus.resolved.value, "resolved_at": utcnow().isoformat()},
            prefer=RETURN_REPRESENTATION,
        )
        if not rows:
            raise RemoteError.not_found(f"Notification {notification_id} not found")

    async def list_notifications(self) -> list[Notification]:
        rows = await self._request(
            "GET",
            "table_notifications",
            params={
                "select": NOTIFICATION_SELECT,
                "status": f"eq.{NotificationStatus.pending.value}",
                "order": "created_at.desc",
            },
        )
        return [notification_from_wire(row) for row in rows or []]

    # ============ ORDERS ============

    async def list_orders_for_table(self, table_id: str) -> list[Order]:
        rows = await self._request(
            "GET",
            "table_orders",
            params={"select": TABLE_ORDER_SELECT, "table_id": f"eq.{table_id}", "order": "created_at.desc"},
        )
        return [order_from_wire(row) for row in rows or []]

    async def list_table_orders(self) -> list[Order]:
        rows = await self._request(
            "GET", "table_orders", params={"select": TABLE_ORDER_SELECT, "order": "created_at.desc"}
        )
        return [order_from_wire(row) for row in rows or []]

    async def create_table_order(self, table_id: str, order_id: str) -> Order:
        rows = await self._request(
            "POST",
            "table_orders",
            params={"select": TABLE_ORDER_SELECT},
            json={"table_id": table_id, "order_id": order_id},
            prefer=RETURN_REPRESENTATION,
        )
        if not rows:
            raise RemoteError.not_found("No data returned from table order creation")
        return order_from_wire(rows[0])

    async def aclose(self) -> None:
        await self._client.aclose()
