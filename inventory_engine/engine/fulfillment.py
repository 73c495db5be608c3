"""
Inventory Engine — Order fulfillment (recipe-driven stock consumption)

Completing an order consumes, for every item with a recipe:

    recipe_material.quantity * item.quantity * material.conversion_rate

stock units of each material, aggregated per material and consumed in
material-id order so two orders never lock the same materials in opposite
order.

Fulfillment is idempotent: orders.inventory_processed_at is checked under the
order's row lock, so a redelivered task finds the order already processed.

Shortfall policy
  abort    InsufficientStock propagates; the caller rolls back the whole order.
  partial  the short material is skipped and reported, everything else is
           consumed; the order ends up with inventory_status = "partial".
"""
import logging
from collections import defaultdict
from datetime import date, datetime, timezone
from decimal import Decimal

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from inventory_engine.core.config import get_settings
from inventory_engine.core.errors import InsufficientStock, NotFound, ValidationError
from inventory_engine.engine.alert_engine import AlertEngine
from inventory_engine.engine.batch_ledger import BatchLedger, to_stock_quantity
from inventory_engine.engine.events import OrderInventoryProcessed, record_event
from inventory_engine.models import (
    InventoryStatus, Order, OrderItem, OrderStatus, Product, Recipe, RecipeMaterial,
)

settings = get_settings()
logger = logging.getLogger(__name__)

SHORTFALL_POLICIES = ("abort", "partial")


class FulfillmentResult(BaseModel):
    order_id: str
    inventory_status: str
    already_processed: bool = False
    materials: list[dict] = Field(default_factory=list)
    shortfalls: list[dict] = Field(default_factory=list)
    total_cost: Decimal = Decimal("0")


def material_requirements(order: Order) -> dict[str, Decimal]:
    """Stock-unit quantity needed per material id for the whole order, at stock scale."""
    needed: dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
    for item in order.items:
        recipe = item.product.recipe if item.product else None
        if recipe is None:
            logger.debug("Product %s has no recipe, nothing to consume", item.product_id)
            continue
        for line in recipe.materials:
            needed[line.material_id] += line.quantity * item.quantity * line.material.conversion_rate
    rounded = {mid: to_stock_quantity(qty) for mid, qty in needed.items()}
    return {mid: qty for mid, qty in rounded.items() if qty > 0}


def _load_order(db: Session, order_id: str) -> Order:
    order = db.execute(
        select(Order)
        .where(Order.id == order_id)
        .options(
            selectinload(Order.items)
            .selectinload(OrderItem.product)
            .selectinload(Product.recipe)
            .selectinload(Recipe.materials)
            .selectinload(RecipeMaterial.material)
        )
        .with_for_update(of=Order)
    ).scalar_one_or_none()
    if order is None:
        raise NotFound("Order", order_id)
    return order


def fulfil_order(
    db: Session,
    order_id: str,
    policy: str | None = None,
    today: date | None = None,
) -> FulfillmentResult:
    """Consume stock for a completed order and re-evaluate alerts (no commit)."""
    policy = policy or settings.SHORTFALL_POLICY
    if policy not in SHORTFALL_POLICIES:
        raise ValidationError(f"Unknown shortfall policy '{policy}'.")

    order = _load_order(db, order_id)
    if order.inventory_processed_at is not None:
        logger.info("Order %s inventory already processed, skipping", order.code)
        return FulfillmentResult(
            order_id=order.id, inventory_status=order.inventory_status, already_processed=True
        )
    if order.status == OrderStatus.CANCELED.value:
        raise ValidationError(f"Order {order.code} is canceled; no stock is consumed.")

    ledger = BatchLedger(db)
    alerts = AlertEngine(db)
    consumed: list[dict] = []
    shortfalls: list[dict] = []
    total_cost = Decimal("0")

    for material_id, quantity in sorted(material_requirements(order).items()):
        try:
            allocations = ledger.consume(
                material_id, quantity, reference=order.id, reference_type="order"
            )
        except InsufficientStock as exc:
            if policy == "abort":
                logger.warning("Order %s aborted: %s", order.code, exc)
                raise
            logger.warning("Order %s short on material %s by %s", order.code, material_id, exc.shortfall)
            shortfalls.append({
                "material_id": material_id,
                "requested": str(exc.requested),
                "available": str(exc.available),
                "shortfall": str(exc.shortfall),
            })
            continue

        cost = ledger.cost_of(allocations)
        total_cost += cost
        consumed.append({
            "material_id": material_id,
            "quantity": str(quantity),
            "cost": str(cost),
            "batches": [{"batch_id": a.batch_id, "quantity": str(a.quantity)} for a in allocations],
        })

    for material_id in sorted(material_requirements(order)):
        alerts.evaluate(ledger.get_material(material_id), today)

    status = InventoryStatus.PARTIAL if shortfalls else InventoryStatus.PROCESSED
    order.inventory_status = status.value
    order.inventory_processed_at = datetime.now(timezone.utc)
    db.flush()

    record_event(db, OrderInventoryProcessed(
        order_id=order.id,
        order_code=order.code,
        order_status=order.status,
        inventory_status=status.value,
        materials=consumed,
        shortfalls=shortfalls,
        total_cost=total_cost,
    ))
    logger.info(
        "Order %s inventory %s: %d materials consumed, %d short",
        order.code, status.value, len(consumed), len(shortfalls),
    )
    return FulfillmentResult(
        order_id=order.id,
        inventory_status=status.value,
        materials=consumed,
        shortfalls=shortfalls,
        total_cost=total_cost,
    )


def mark_inventory_failed(db: Session, order_id: str) -> None:
    order = db.execute(select(Order).where(Order.id == order_id).with_for_update()).scalar_one_or_none()
    if order is None:
        raise NotFound("Order", order_id)
    if order.inventory_processed_at is None:
        order.inventory_status = InventoryStatus.FAILED.value
        db.flush()
