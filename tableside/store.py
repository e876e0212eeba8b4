"""Dashboard UI state that is not backed by a remote collection: selection, filters, per-table alerts and the error banner."""

from datetime import datetime

from sqlmodel import Field, SQLModel

from .models import DashboardStateUpdate, DashboardView, OrderFilter, TableFilter, utcnow


class ErrorBanner(SQLModel):
    operation: str  # e.g. "update table status"
    kind: str
    message: str
    created_at: datetime = Field(default_factory=utcnow)


class DashboardState(SQLModel):
    view: DashboardView = DashboardView.tables
    table_filter: TableFilter = TableFilter.all
    order_filter: OrderFilter = OrderFilter.all
    selected_table_id: str | None = None
    sound_enabled: bool = True
    alerts: dict[str, bool] = Field(default_factory=dict)  # table_id -> has pending alert
    error: ErrorBanner | None = None

    def apply(self, update: DashboardStateUpdate) -> None:
        for key, value in update.model_dump(exclude_none=True).items():
            setattr(self, key, value)

    def select_table(self, table_id: str | None) -> None:
        self.selected_table_id = table_id

    def set_alert(self, table_id: str, enabled: bool = True) -> None:
        self.alerts = {**self.alerts, table_id: enabled}

    def dismiss_alert(self, table_id: str) -> None:
        self.set_alert(table_id, False)

    def has_alert(self, table_id: str) -> bool:
        return self.alerts.get(table_id, False)

    def set_error(self, operation: str, kind: str, message: str) -> None:
        self.error = ErrorBanner(operation=operation, kind=kind, message=message)

    def clear_error(self) -> None:
        self.error = None

    def reset(self) -> None:
        defaults = DashboardState()
        for name in type(self).model_fields:
            setattr(self, name, getattr(defaults, name))
