"""
Inventory Engine — Task queue interface

The API hands work to the queue only after its own transaction has committed.
"""
import logging
from typing import Protocol

from inventory_engine.tasks.inventory_tasks import decrement_materials_for_order

logger = logging.getLogger(__name__)


class TaskQueue(Protocol):
    def enqueue_order_fulfillment(self, order_id: str) -> None: ...


class CeleryTaskQueue:
    def enqueue_order_fulfillment(self, order_id: str) -> None:
        decrement_materials_for_order.delay(order_id)
        logger.info("Queued inventory decrement for order %s", order_id)


def get_task_queue() -> TaskQueue:
    return CeleryTaskQueue()
