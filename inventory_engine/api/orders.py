"""
Inventory Engine — Order pricing and completion routes

Completion commits the status change first, then queues the inventory
decrement; the worker consumes stock in its own transaction.
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from inventory_engine.db import stock_ops
from inventory_engine.db.database import get_db
from inventory_engine.schemas.order import CompleteOrderResponse, ItemTotalsOut, OrderTotalsResponse
from inventory_engine.tasks.queue import TaskQueue, get_task_queue

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("/{order_id}/totals", response_model=OrderTotalsResponse)
def recompute_totals(order_id: str, db: Session = Depends(get_db)):
    totals = stock_ops.recompute_totals(db, order_id)
    return OrderTotalsResponse(
        order_id=order_id,
        sub_total=totals.sub_total,
        discount_value=totals.discount_value,
        service=totals.service,
        tax=totals.tax,
        total_amount=totals.total_amount,
        discount_type=totals.discount_type.value,
        discount=totals.discount,
        items=[ItemTotalsOut(**line.model_dump()) for line in totals.items],
    )


@router.post("/{order_id}/complete", response_model=CompleteOrderResponse)
def complete(order_id: str, db: Session = Depends(get_db), queue: TaskQueue = Depends(get_task_queue)):
    order = stock_ops.complete_order(db, order_id)
    queued = True
    try:
        queue.enqueue_order_fulfillment(order.id)
    except Exception as exc:
        # The order is already committed and keeps inventory_status "pending".
        logger.warning("Could not queue inventory decrement for order %s: %s", order.id, exc)
        queued = False
    return CompleteOrderResponse(
        order_id=order.id,
        status=order.status,
        total_amount=order.total_amount,
        inventory_queued=queued,
    )
