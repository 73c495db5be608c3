"""
Inventory Engine — Celery tasks

Task-queue entry points. Each task opens its own session, runs one of the
transactional operations or a monitoring sweep, and returns a JSON-safe result.
Delivery is at-least-once (acks_late), which the operations tolerate:
fulfillment is guarded by inventory_processed_at and history rollover by the
(material, period) unique key.
"""
import logging
from datetime import date

from inventory_engine.core.celery_app import celery_app
from inventory_engine.core.errors import ConcurrencyConflict, InsufficientStock
from inventory_engine.db import stock_ops
from inventory_engine.db.database import SessionLocal
from inventory_engine.engine.monitoring import MonitoringCoordinator

logger = logging.getLogger(__name__)


def _coordinator() -> MonitoringCoordinator:
    return MonitoringCoordinator(session_factory=SessionLocal)


@celery_app.task(
    name="inventory.decrement_materials_for_order",
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    acks_late=True,
)
def decrement_materials_for_order(self, order_id: str, policy: str | None = None) -> dict:
    """Consume recipe materials for a completed order."""
    with SessionLocal() as db:
        try:
            result = stock_ops.fulfil_order_inventory(db, order_id, policy=policy)
        except InsufficientStock as exc:
            logger.warning("Order %s not fulfilled: %s", order_id, exc)
            return {
                "order_id": order_id,
                "inventory_status": "failed",
                "error": str(exc),
            }
        except ConcurrencyConflict as exc:
            logger.warning("Order %s fulfillment contended, retrying", order_id)
            raise self.retry(exc=exc)
    return result.model_dump(mode="json")


@celery_app.task(name="inventory.check_stock_levels", acks_late=True)
def check_stock_levels() -> dict:
    return _coordinator().check_stock_levels().model_dump()


@celery_app.task(name="inventory.check_expiring_batches", acks_late=True)
def check_expiring_batches(window_days: int | None = None) -> dict:
    return _coordinator().check_expiring_batches(window_days).model_dump()


@celery_app.task(name="inventory.broadcast_dashboard", acks_late=True)
def broadcast_dashboard(update_type: str = "general") -> dict:
    return _coordinator().broadcast_dashboard(update_type).model_dump()


@celery_app.task(name="inventory.generate_stock_history", acks_late=True)
def generate_stock_history(period: str | None = None) -> dict:
    """period is an ISO date inside the month to close; defaults to last month."""
    return _coordinator().generate_stock_history(date.fromisoformat(period) if period else None).model_dump()


@celery_app.task(name="inventory.monitor", acks_late=True)
def monitor() -> dict:
    return _coordinator().run_monitoring().model_dump()


@celery_app.task(
    name="inventory.recalculate_recipe_cost",
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    acks_late=True,
)
def recalculate_recipe_cost(self, recipe_id: str) -> dict:
    with SessionLocal() as db:
        try:
            cost = stock_ops.recalculate_recipe_cost(db, recipe_id)
        except ConcurrencyConflict as exc:
            raise self.retry(exc=exc)
    return cost.model_dump(mode="json")
