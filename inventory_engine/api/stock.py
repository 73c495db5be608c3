"""
Inventory Engine — Stock, alert and dashboard routes

Domain errors are translated to HTTP status codes by the handlers registered
in main.py.
"""
import logging
from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from inventory_engine.core.config import get_settings
from inventory_engine.db import stock_ops
from inventory_engine.db.database import get_db
from inventory_engine.engine.batch_ledger import BatchLedger
from inventory_engine.engine.monitoring import MonitoringCoordinator
from inventory_engine.models import StockAlert
from inventory_engine.schemas.inventory import (
    AdjustRequest, AlertOut, AlertTransitionOut, AllocationOut, BatchOut, ConsumeRequest,
    ConsumeResponse, MaterialOut, ReceiptRequest, ResolveAlertRequest,
)

settings = get_settings()
logger = logging.getLogger(__name__)
router = APIRouter(prefix="/stock", tags=["stock"])


@router.post("/materials/{material_id}/receipts", response_model=BatchOut, status_code=status.HTTP_201_CREATED)
def receive(material_id: str, payload: ReceiptRequest, db: Session = Depends(get_db)):
    return stock_ops.receive_stock(
        db,
        material_id,
        payload.quantity,
        payload.unit_cost,
        received_date=payload.received_date,
        expiry_date=payload.expiry_date,
        supplier_reference=payload.supplier_reference,
        user_id=payload.user_id,
        notes=payload.notes,
    )


@router.post("/materials/{material_id}/consume", response_model=ConsumeResponse)
def consume(material_id: str, payload: ConsumeRequest, db: Session = Depends(get_db)):
    """FEFO consumption. 409 with the shortfall when the batches cannot cover it."""
    allocations = stock_ops.consume_stock(
        db, material_id, payload.quantity, reference=payload.reference, user_id=payload.user_id
    )
    return ConsumeResponse(
        material_id=material_id,
        allocations=[AllocationOut(batch_id=a.batch_id, quantity=a.quantity) for a in allocations],
    )


@router.post("/materials/{material_id}/adjust", response_model=MaterialOut)
def adjust(material_id: str, payload: AdjustRequest, db: Session = Depends(get_db)):
    return stock_ops.adjust_stock(db, material_id, payload.quantity, payload.reason, user_id=payload.user_id)


@router.post("/materials/{material_id}/evaluate", response_model=list[AlertTransitionOut])
def evaluate(material_id: str, db: Session = Depends(get_db)):
    changes = stock_ops.evaluate_material_alerts(db, material_id)
    return [AlertTransitionOut(action=c.action, alert=AlertOut.model_validate(c.alert)) for c in changes]


@router.get("/batches/expiring", response_model=list[BatchOut])
def expiring_batches(
    window_days: int = Query(settings.EXPIRY_WARNING_DAYS, ge=0, le=365),
    material_id: str | None = None,
    db: Session = Depends(get_db),
):
    return BatchLedger(db).classify_expiring(window_days, date.today(), material_id=material_id)


@router.get("/batches/expired", response_model=list[BatchOut])
def expired_batches(material_id: str | None = None, db: Session = Depends(get_db)):
    return BatchLedger(db).classify_expired(date.today(), material_id=material_id)


@router.get("/alerts", response_model=list[AlertOut])
def list_alerts(
    material_id: str | None = None,
    include_resolved: bool = False,
    db: Session = Depends(get_db),
):
    stmt = select(StockAlert).order_by(StockAlert.created_at.desc())
    if material_id:
        stmt = stmt.where(StockAlert.material_id == material_id)
    if not include_resolved:
        stmt = stmt.where(StockAlert.is_resolved.is_(False))
    return db.execute(stmt).scalars().all()


@router.post("/alerts/{alert_id}/resolve", response_model=AlertOut)
def resolve_alert(alert_id: str, payload: ResolveAlertRequest, db: Session = Depends(get_db)):
    return stock_ops.resolve_alert(db, alert_id, payload.resolved_by)


@router.get("/dashboard")
def dashboard(db: Session = Depends(get_db)):
    return MonitoringCoordinator().dashboard_snapshot(db)
