"""
Inventory Engine — Stock and alert schemas
"""
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class ReceiptRequest(BaseModel):
    quantity: Decimal = Field(..., gt=0)
    unit_cost: Decimal = Field(..., ge=0)
    received_date: date | None = None
    expiry_date: date | None = None
    supplier_reference: str | None = Field(None, max_length=64)
    user_id: str | None = None
    notes: str | None = Field(None, max_length=500)


class ConsumeRequest(BaseModel):
    quantity: Decimal = Field(..., gt=0)
    reference: str | None = None
    user_id: str | None = None


class AdjustRequest(BaseModel):
    quantity: Decimal = Field(..., description="Positive adds stock, negative removes it.")
    reason: str = Field(..., min_length=1, max_length=500)
    user_id: str | None = None


class ResolveAlertRequest(BaseModel):
    resolved_by: str = Field(..., min_length=1)


class AllocationOut(BaseModel):
    batch_id: str
    quantity: Decimal


class ConsumeResponse(BaseModel):
    material_id: str
    allocations: list[AllocationOut]


class MaterialOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    quantity: Decimal
    stock_unit: str
    purchase_price: Decimal


class BatchOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    material_id: str
    batch_number: str
    quantity: Decimal
    remaining_quantity: Decimal
    unit_cost: Decimal
    received_date: date
    expiry_date: date | None


class AlertOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    material_id: str
    batch_id: str | None
    alert_type: str
    severity: str
    threshold_value: Decimal | None
    current_value: Decimal | None
    message: str
    is_resolved: bool
    resolved_at: datetime | None
    resolved_by: str | None


class AlertTransitionOut(BaseModel):
    action: str
    alert: AlertOut
