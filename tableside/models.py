from datetime import datetime, timezone
from enum import Enum

from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TableStatus(str, Enum):
    free = "free"
    occupied = "occupied"
    waiting_order = "waiting_order"
    producing = "producing"
    delivered = "delivered"
    bill_requested = "bill_requested"
    paid = "paid"


# Statuses in which guests are seated and the table has an open session
SEATED_STATUSES = frozenset({
    TableStatus.occupied,
    TableStatus.waiting_order,
    TableStatus.producing,
    TableStatus.delivered,
})


class SessionStatus(str, Enum):
    active = "active"
    closed = "closed"


class OrderStatus(str, Enum):
    pending = "pending"
    preparing = "preparing"
    ready = "ready"
    delivered = "delivered"
    cancelled = "cancelled"
    paying = "paying"
    expired = "expired"
    suspended = "suspended"
    paid = "paid"


# Orders that count towards what a table has spent
COMPLETED_ORDER_STATUSES = frozenset({OrderStatus.delivered, OrderStatus.paid})

# Orders still being worked on at the bar
OPEN_ORDER_STATUSES = frozenset({OrderStatus.pending, OrderStatus.preparing})


class NotificationType(str, Enum):
    new_order = "new_order"
    bill_request = "bill_request"
    waiter_call = "waiter_call"
    special_request = "special_request"


class NotificationStatus(str, Enum):
    pending = "pending"
    resolved = "resolved"


class EntityType(str, Enum):
    """Cached collections, named after the remote tables that feed them."""
    tables = "tables"
    sessions = "table_sessions"
    orders = "table_orders"
    notifications = "table_notifications"


class ChangeType(str, Enum):
    insert = "INSERT"
    update = "UPDATE"
    delete = "DELETE"


class TableFilter(str, Enum):
    all = "all"
    occupied = "occupied"
    delayed = "delayed"
    bill_requested = "bill_requested"


class OrderFilter(str, Enum):
    all = "all"
    pending = "pending"
    urgent = "urgent"


class DashboardView(str, Enum):
    tables = "tables"
    bar = "bar"
    supervisor = "supervisor"


# ============ CACHED ENTITIES ============

class Table(SQLModel):
    id: str
    number: int  # Display number, unique per venue
    capacity: int = 4
    guests: int = 0
    status: TableStatus = TableStatus.free
    assigned_waiter_id: str | None = None
    session_start: datetime | None = None  # Start of the active session, if any
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TableSession(SQLModel):
    id: str
    table_id: str
    start_time: datetime
    end_time: datetime | None = None  # None while active
    total_spent: float = 0
    status: SessionStatus = SessionStatus.active


class OrderItem(SQLModel):
    name: str
    quantity: int = 1
    unit_price: float = 0
    notes: str | None = None


class Order(SQLModel):
    """An externally created order, as linked to a table through `table_orders`."""
    id: str
    table_id: str
    status: OrderStatus = OrderStatus.pending
    items: list[OrderItem] = Field(default_factory=list)
    total: float = 0
    created_at: datetime = Field(default_factory=utcnow)  # When the order was linked to the table


class Notification(SQLModel):
    id: str
    table_id: str
    type: NotificationType
    message: str
    created_at: datetime = Field(default_factory=utcnow)
    dismissed: bool = False  # Client-local, never written back


class Identity(SQLModel):
    id: str
    email: str | None = None
    role: str | None = None


# Request/Response Models
class TableCreate(SQLModel):
    number: int = Field(gt=0)
    capacity: int = Field(default=4, gt=0)
    status: TableStatus = TableStatus.free
    assigned_waiter_id: str | None = None


class TableStatusUpdate(SQLModel):
    status: TableStatus


class SeatGuests(SQLModel):
    guests: int = Field(gt=0)


class ServiceRequest(SQLModel):
    type: NotificationType = NotificationType.waiter_call


class DashboardStateUpdate(SQLModel):
    view: DashboardView | None = None
    table_filter: TableFilter | None = None
    order_filter: OrderFilter | None = None
    sound_enabled: bool | None = None


class SelectionUpdate(SQLModel):
    table_id: str | None = None


class MutationResult(SQLModel):
    ok: bool
    operation: str
    error_kind: str | None = None
    message: str | None = None
