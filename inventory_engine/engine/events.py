"""
Inventory Engine — Domain events, event bus and transactional outbox

Components record events on the session while they mutate state. The events
are dispatched to registered handlers only after the owning transaction
commits, and are discarded when it rolls back:

    record_event(db, InventoryChanged(...))
    db.commit()          # -> handlers run here
"""
import logging
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, ClassVar, Iterable

from pydantic import BaseModel, Field
from sqlalchemy import event
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

OUTBOX_KEY = "outbox"
BUS_KEY = "event_bus"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DomainEvent(BaseModel):
    name: ClassVar[str] = "domain.event"

    occurred_at: datetime = Field(default_factory=_utcnow)


class BatchConsumed(DomainEvent):
    """One per batch touched by a successful consume call."""
    name: ClassVar[str] = "batch.consumed"

    material_id: str
    material_name: str
    batch_id: str
    batch_number: str
    quantity: Decimal
    remaining_quantity: Decimal
    material_quantity: Decimal
    stock_unit: str = ""
    unit_cost: Decimal
    reference: str | None = None


class InventoryChanged(DomainEvent):
    name: ClassVar[str] = "inventory.updated"

    material_id: str
    material_name: str
    change_type: str
    previous_quantity: Decimal | None = None
    new_quantity: Decimal
    stock_unit: str
    reorder_point: Decimal = Decimal("0")
    change_data: dict[str, Any] = Field(default_factory=dict)


class AlertTriggered(DomainEvent):
    """Emitted when an alert is opened or resolved."""
    name: ClassVar[str] = "stock-alert.triggered"

    alert_id: str
    material_id: str
    material_name: str
    batch_id: str | None = None
    alert_type: str
    severity: str
    threshold_value: Decimal | None = None
    current_value: Decimal | None = None
    message: str
    is_resolved: bool = False


class RecipeCostChanged(DomainEvent):
    name: ClassVar[str] = "recipe-cost.updated"

    recipe_id: str
    recipe_name: str
    total_cost: Decimal
    cost_per_serving: Decimal
    previous_cost: Decimal | None = None
    breakdown: list[dict[str, Any]] = Field(default_factory=list)


class OrderInventoryProcessed(DomainEvent):
    name: ClassVar[str] = "order.inventory-processed"

    order_id: str
    order_code: str
    order_status: str
    inventory_status: str
    materials: list[dict[str, Any]] = Field(default_factory=list)
    shortfalls: list[dict[str, Any]] = Field(default_factory=list)
    total_cost: Decimal = Decimal("0")


class BatchExpiryWarning(DomainEvent):
    name: ClassVar[str] = "inventory.expiry-warning"

    material_id: str
    material_name: str
    batches: list[dict[str, Any]] = Field(default_factory=list)
    total_expiring_quantity: Decimal = Decimal("0")


class DashboardChanged(DomainEvent):
    name: ClassVar[str] = "dashboard.updated"

    update_type: str = "general"
    dashboard_data: dict[str, Any] = Field(default_factory=dict)


Handler = Callable[[DomainEvent], None]


class EventBus:
    """Registered-callback dispatcher. Handler failures are logged, never raised."""

    def __init__(self):
        self._handlers: dict[type[DomainEvent], list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type[DomainEvent], handler: Handler) -> None:
        handlers = self._handlers[event_type]
        if handler not in handlers:
            handlers.append(handler)

    def publish(self, domain_event: DomainEvent) -> None:
        self.dispatch([domain_event])

    def dispatch(self, events: Iterable[DomainEvent]) -> None:
        for domain_event in events:
            for handler in self._handlers.get(type(domain_event), ()):
                try:
                    handler(domain_event)
                except Exception:
                    logger.exception(
                        "Handler %s failed for %s", getattr(handler, "__qualname__", handler), domain_event.name
                    )


_default_bus = EventBus()


def get_event_bus() -> EventBus:
    return _default_bus


def bus_for(db: Session) -> EventBus:
    return db.info.get(BUS_KEY) or _default_bus


# ── Outbox ────────────────────────────────────────────────────────────────────
def record_event(db: Session, domain_event: DomainEvent) -> None:
    """Queue an event for dispatch after the session's transaction commits."""
    db.info.setdefault(OUTBOX_KEY, []).append(domain_event)


def pending_events(db: Session) -> list[DomainEvent]:
    return list(db.info.get(OUTBOX_KEY, ()))


@event.listens_for(Session, "after_commit")
def _dispatch_outbox(session: Session) -> None:
    # SAVEPOINT releases also fire after_commit; only the outermost commit publishes.
    if session.in_nested_transaction():
        return
    events = session.info.pop(OUTBOX_KEY, None)
    if events:
        bus_for(session).dispatch(events)


@event.listens_for(Session, "after_transaction_end")
def _discard_outbox(session: Session, transaction) -> None:
    if transaction.parent is None:
        dropped = session.info.pop(OUTBOX_KEY, None)
        if dropped:
            logger.debug("Discarded %d events from rolled back transaction", len(dropped))
