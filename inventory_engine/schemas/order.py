"""
Inventory Engine — Order schemas
"""
from decimal import Decimal

from pydantic import BaseModel


class ItemTotalsOut(BaseModel):
    sub_total: Decimal
    discount_value: Decimal
    service: Decimal
    tax: Decimal
    total_amount: Decimal


class OrderTotalsResponse(BaseModel):
    order_id: str
    sub_total: Decimal
    discount_value: Decimal
    service: Decimal
    tax: Decimal
    total_amount: Decimal
    discount_type: str
    discount: Decimal
    items: list[ItemTotalsOut]


class CompleteOrderResponse(BaseModel):
    order_id: str
    status: str
    total_amount: Decimal
    inventory_queued: bool
