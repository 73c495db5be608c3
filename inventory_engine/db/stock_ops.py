"""
Inventory Engine — Transactional stock and order operations

Each function is one unit of work: it commits on success and rolls back
everything on failure. Writes to materials and orders carry a version_id, so a
concurrent writer surfaces as StaleDataError and the whole unit is retried with
exponential backoff (with_optimistic_retry).

Domain events recorded during the unit are dispatched after the commit.
"""
import logging
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from inventory_engine.core.errors import InsufficientStock, NotFound, ValidationError
from inventory_engine.core.optimistic_lock import with_optimistic_retry
from inventory_engine.db.database import unit_of_work
from inventory_engine.engine.alert_engine import AlertEngine, AlertTransition
from inventory_engine.engine.batch_ledger import Allocation, BatchLedger
from inventory_engine.engine.costing import RecipeCost, calculate_recipe_cost, recipes_using
from inventory_engine.engine.fulfillment import FulfillmentResult, fulfil_order, mark_inventory_failed
from inventory_engine.engine.pricing import OrderTotals, recompute_order_totals
from inventory_engine.models import Order, OrderStatus, StockAlert, StockBatch

logger = logging.getLogger(__name__)


@with_optimistic_retry()
def consume_stock(
    db: Session,
    material_id: str,
    quantity: Decimal,
    reference: str | None = None,
    user_id: str | None = None,
) -> list[Allocation]:
    """FEFO consumption plus alert re-evaluation, atomically."""
    with unit_of_work(db):
        ledger = BatchLedger(db)
        allocations = ledger.consume(material_id, quantity, reference=reference,
                                     reference_type="manual", user_id=user_id)
        AlertEngine(db).evaluate(ledger.get_material(material_id))
    return allocations


@with_optimistic_retry()
def receive_stock(
    db: Session,
    material_id: str,
    quantity: Decimal,
    unit_cost: Decimal,
    received_date: date | None = None,
    expiry_date: date | None = None,
    supplier_reference: str | None = None,
    user_id: str | None = None,
    notes: str | None = None,
) -> StockBatch:
    """
    Book a receipt. A unit cost different from the material's purchase price
    becomes the new purchase price and reprices every recipe using it.
    """
    with unit_of_work(db):
        ledger = BatchLedger(db)
        batch = ledger.receive(
            material_id, quantity, unit_cost,
            received_date=received_date,
            expiry_date=expiry_date,
            supplier_reference=supplier_reference,
            user_id=user_id,
            notes=notes,
        )
        material = ledger.get_material(material_id)
        if material.purchase_price != batch.unit_cost:
            logger.info(
                "Purchase price of %s changed %s -> %s",
                material.name, material.purchase_price, batch.unit_cost,
            )
            material.purchase_price = batch.unit_cost
            db.flush()
            for recipe_id in recipes_using(db, material_id):
                calculate_recipe_cost(db, recipe_id)
        AlertEngine(db).evaluate(material)
    return batch


@with_optimistic_retry()
def adjust_stock(db: Session, material_id: str, delta: Decimal, reason: str, user_id: str | None = None):
    with unit_of_work(db):
        material = BatchLedger(db).adjust(material_id, delta, reason, user_id=user_id)
        AlertEngine(db).evaluate(material)
    return material


def evaluate_material_alerts(db: Session, material_id: str, today: date | None = None) -> list[AlertTransition]:
    with unit_of_work(db):
        material = BatchLedger(db).get_material(material_id)
        changes = AlertEngine(db).evaluate(material, today)
    return changes


def resolve_alert(db: Session, alert_id: str, resolved_by: str | None) -> StockAlert:
    with unit_of_work(db):
        alert = AlertEngine(db).resolve(alert_id, resolved_by)
    return alert


@with_optimistic_retry()
def recompute_totals(db: Session, order_id: str) -> OrderTotals:
    with unit_of_work(db):
        totals = recompute_order_totals(db, order_id)
    return totals


@with_optimistic_retry()
def complete_order(db: Session, order_id: str) -> Order:
    """Mark the order paid and completed with freshly computed totals."""
    with unit_of_work(db):
        order = db.execute(select(Order).where(Order.id == order_id).with_for_update()).scalar_one_or_none()
        if order is None:
            raise NotFound("Order", order_id)
        if order.status == OrderStatus.CANCELED.value:
            raise ValidationError(f"Order {order.code} is canceled.")
        recompute_order_totals(db, order_id)
        if order.status != OrderStatus.COMPLETED.value:
            order.status = OrderStatus.COMPLETED.value
            order.paid_at = datetime.now(timezone.utc)
        db.flush()
    return order


@with_optimistic_retry()
def fulfil_order_inventory(
    db: Session,
    order_id: str,
    policy: str | None = None,
    today: date | None = None,
) -> FulfillmentResult:
    """
    Consume stock for an order. Under the abort policy an InsufficientStock
    rolls the whole order back, then the order is flagged as failed in its own
    unit of work before the error is re-raised.
    """
    try:
        with unit_of_work(db):
            result = fulfil_order(db, order_id, policy=policy, today=today)
    except InsufficientStock:
        with unit_of_work(db):
            mark_inventory_failed(db, order_id)
        raise
    return result


@with_optimistic_retry()
def recalculate_recipe_cost(db: Session, recipe_id: str) -> RecipeCost:
    with unit_of_work(db):
        cost = calculate_recipe_cost(db, recipe_id)
    return cost
