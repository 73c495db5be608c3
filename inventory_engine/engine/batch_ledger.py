"""
Inventory Engine — Batch ledger (FEFO consumption over received batches)

Batches are consumed earliest-to-expire first; batches without an expiry date
sort last and ties are broken by received date (first in, first out).

consume() runs a read-allocate-write sequence over several batch rows, so it
holds a row lock on the material (SELECT ... FOR UPDATE) and the material's
version_id turns any interleaved write into a StaleDataError on flush.
"""
import logging
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import NamedTuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from inventory_engine.core.errors import InsufficientStock, NotFound, ValidationError
from inventory_engine.engine.events import BatchConsumed, InventoryChanged, record_event
from inventory_engine.models import InventoryTransaction, Material, StockBatch, TransactionType
from inventory_engine.models.inventory import QUANTITY_STEP

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class Allocation(NamedTuple):
    batch_id: str
    quantity: Decimal


def to_quantity(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def to_stock_quantity(value) -> Decimal:
    """Round to the scale of the quantity columns so stored stock matches what was booked."""
    return to_quantity(value).quantize(QUANTITY_STEP, rounding=ROUND_HALF_UP)


def fefo_order():
    """ORDER BY expiry ascending (no expiry last), then received date, then insertion."""
    return (
        StockBatch.expiry_date.is_(None),
        StockBatch.expiry_date.asc(),
        StockBatch.received_date.asc(),
        StockBatch.created_at.asc(),
        StockBatch.id.asc(),
    )


class BatchLedger:
    def __init__(self, db: Session):
        self.db = db

    # ── Lookups ──────────────────────────────────────────────────────────────
    def get_material(self, material_id: str, lock: bool = False) -> Material:
        stmt = select(Material).where(Material.id == material_id)
        if lock:
            stmt = stmt.with_for_update()
        material = self.db.execute(stmt).scalar_one_or_none()
        if material is None:
            raise NotFound("Material", material_id)
        return material

    def available_batches(self, material_id: str, lock: bool = False) -> list[StockBatch]:
        stmt = (
            select(StockBatch)
            .where(StockBatch.material_id == material_id, StockBatch.remaining_quantity > 0)
            .order_by(*fefo_order())
        )
        if lock:
            stmt = stmt.with_for_update()
        return list(self.db.execute(stmt).scalars())

    # ── Allocation ───────────────────────────────────────────────────────────
    def plan(self, material_id: str, quantity_needed) -> list[Allocation]:
        """FEFO allocation for quantity_needed without touching any batch."""
        needed = to_quantity(quantity_needed)
        if needed <= 0:
            raise ValidationError(f"Quantity to consume must be positive, got {needed}.")
        self.get_material(material_id)
        return self._allocate(material_id, self.available_batches(material_id), needed)

    def _allocate(self, material_id: str, batches: list[StockBatch], needed: Decimal) -> list[Allocation]:
        available = sum((b.remaining_quantity for b in batches), ZERO)
        if available < needed:
            raise InsufficientStock(material_id, needed, available)

        allocations: list[Allocation] = []
        still_needed = needed
        for batch in batches:
            if still_needed <= 0:
                break
            take = min(batch.remaining_quantity, still_needed)
            allocations.append(Allocation(batch.id, take))
            still_needed -= take
        return allocations

    def consume(
        self,
        material_id: str,
        quantity_needed,
        reference: str | None = None,
        reference_type: str | None = None,
        user_id: str | None = None,
    ) -> list[Allocation]:
        """
        Take quantity_needed (rounded half up to the 3-place stock scale) from the
        material's batches in FEFO order.

        Raises InsufficientStock (nothing is mutated) when the batches hold less
        than requested. Emits one BatchConsumed per touched batch.
        """
        needed = to_stock_quantity(quantity_needed)
        if needed <= 0:
            raise ValidationError(f"Quantity to consume must be positive, got {needed}.")

        material = self.get_material(material_id, lock=True)
        batches = self.available_batches(material_id, lock=True)
        allocations = self._allocate(material_id, batches, needed)

        by_id = {b.id: b for b in batches}
        old_quantity = material.quantity
        material.quantity = old_quantity - needed

        for allocation in allocations:
            batch = by_id[allocation.batch_id]
            batch.remaining_quantity = batch.remaining_quantity - allocation.quantity
            self.db.add(InventoryTransaction(
                material_id=material.id,
                batch_id=batch.id,
                type=TransactionType.CONSUMPTION.value,
                quantity=-allocation.quantity,
                unit_cost=batch.unit_cost,
                old_quantity=old_quantity,
                new_quantity=material.quantity,
                reference_type=reference_type,
                reference_id=reference,
                user_id=user_id,
                notes=f"FEFO consumption from batch {batch.batch_number}",
            ))
            record_event(self.db, BatchConsumed(
                material_id=material.id,
                material_name=material.name,
                batch_id=batch.id,
                batch_number=batch.batch_number,
                quantity=allocation.quantity,
                remaining_quantity=batch.remaining_quantity,
                material_quantity=material.quantity,
                stock_unit=material.stock_unit,
                unit_cost=batch.unit_cost,
                reference=reference,
            ))

        self.db.flush()
        logger.info(
            "Consumed %s %s of %s across %d batches",
            needed, material.stock_unit, material.name, len(allocations),
        )
        return allocations

    def cost_of(self, allocations: list[Allocation]) -> Decimal:
        if not allocations:
            return ZERO
        ids = [a.batch_id for a in allocations]
        costs = dict(self.db.execute(
            select(StockBatch.id, StockBatch.unit_cost).where(StockBatch.id.in_(ids))
        ).all())
        return sum((a.quantity * costs[a.batch_id] for a in allocations), ZERO)

    # ── Expiry classification ─────────────────────────────────────────────────
    def classify_expiring(
        self, window_days: int, today: date | None = None, material_id: str | None = None
    ) -> list[StockBatch]:
        """Available batches expiring within [today, today + window_days], soonest first."""
        if window_days < 0:
            raise ValidationError(f"window_days must not be negative, got {window_days}.")
        today = today or date.today()
        stmt = (
            select(StockBatch)
            .where(
                StockBatch.remaining_quantity > 0,
                StockBatch.expiry_date.is_not(None),
                StockBatch.expiry_date >= today,
                StockBatch.expiry_date <= today + timedelta(days=window_days),
            )
            .order_by(*fefo_order())
        )
        if material_id is not None:
            stmt = stmt.where(StockBatch.material_id == material_id)
        return list(self.db.execute(stmt).scalars())

    def classify_expired(self, today: date | None = None, material_id: str | None = None) -> list[StockBatch]:
        """Batches past their expiry date that still hold stock."""
        today = today or date.today()
        stmt = (
            select(StockBatch)
            .where(
                StockBatch.remaining_quantity > 0,
                StockBatch.expiry_date.is_not(None),
                StockBatch.expiry_date < today,
            )
            .order_by(*fefo_order())
        )
        if material_id is not None:
            stmt = stmt.where(StockBatch.material_id == material_id)
        return list(self.db.execute(stmt).scalars())

    # ── Receipts and adjustments ─────────────────────────────────────────────
    def receive(
        self,
        material_id: str,
        quantity,
        unit_cost,
        received_date: date | None = None,
        expiry_date: date | None = None,
        supplier_reference: str | None = None,
        user_id: str | None = None,
        notes: str | None = None,
    ) -> StockBatch:
        qty = to_stock_quantity(quantity)
        cost = to_quantity(unit_cost)
        if qty <= 0:
            raise ValidationError(f"Received quantity must be positive, got {qty}.")
        if cost < 0:
            raise ValidationError(f"Unit cost must not be negative, got {cost}.")

        material = self.get_material(material_id, lock=True)
        received_date = received_date or date.today()
        if expiry_date is None and material.shelf_life_days:
            expiry_date = received_date + timedelta(days=material.shelf_life_days)
        if expiry_date is not None and expiry_date < received_date:
            raise ValidationError("Expiry date precedes the received date.")

        batch = StockBatch(
            material_id=material.id,
            batch_number=self._next_batch_number(material, received_date),
            quantity=qty,
            remaining_quantity=qty,
            unit_cost=cost,
            received_date=received_date,
            expiry_date=expiry_date,
            supplier_reference=supplier_reference,
        )
        self.db.add(batch)
        self.db.flush()

        old_quantity = material.quantity
        material.quantity = old_quantity + qty
        self.db.add(InventoryTransaction(
            material_id=material.id,
            batch_id=batch.id,
            type=TransactionType.RECEIPT.value,
            quantity=qty,
            unit_cost=cost,
            old_quantity=old_quantity,
            new_quantity=material.quantity,
            reference_type="stock_batch",
            user_id=user_id,
            notes=notes or f"Receipt of batch {batch.batch_number}",
        ))
        self.db.flush()

        record_event(self.db, InventoryChanged(
            material_id=material.id,
            material_name=material.name,
            change_type="receipt",
            previous_quantity=old_quantity,
            new_quantity=material.quantity,
            stock_unit=material.stock_unit,
            reorder_point=material.reorder_point,
            change_data={
                "batch_id": batch.id,
                "batch_number": batch.batch_number,
                "received_quantity": str(qty),
                "unit_cost": str(cost),
                "supplier_reference": supplier_reference,
                "expiry_date": expiry_date.isoformat() if expiry_date else None,
            },
        ))
        return batch

    def adjust(self, material_id: str, delta, reason: str, user_id: str | None = None) -> Material:
        """Positive delta books an ADJ- batch without expiry; negative delta consumes FEFO."""
        change = to_stock_quantity(delta)
        if change == 0:
            raise ValidationError("Adjustment quantity must not be zero.")

        material = self.get_material(material_id, lock=True)
        old_quantity = material.quantity
        batch = None

        if change > 0:
            today = date.today()
            batch = StockBatch(
                material_id=material.id,
                batch_number=self._next_batch_number(material, today, prefix="ADJ-"),
                quantity=change,
                remaining_quantity=change,
                unit_cost=material.purchase_price,
                received_date=today,
                expiry_date=None,
            )
            self.db.add(batch)
            self.db.flush()
            material.quantity = old_quantity + change
        else:
            self.consume(material_id, -change, reference_type="adjustment", user_id=user_id)

        self.db.add(InventoryTransaction(
            material_id=material.id,
            batch_id=batch.id if batch is not None else None,
            type=TransactionType.ADJUSTMENT.value,
            quantity=change,
            unit_cost=material.purchase_price,
            old_quantity=old_quantity,
            new_quantity=material.quantity,
            user_id=user_id,
            notes=reason,
        ))
        self.db.flush()

        record_event(self.db, InventoryChanged(
            material_id=material.id,
            material_name=material.name,
            change_type="adjustment",
            previous_quantity=old_quantity,
            new_quantity=material.quantity,
            stock_unit=material.stock_unit,
            reorder_point=material.reorder_point,
            change_data={"adjustment_quantity": str(change), "reason": reason, "adjusted_by": user_id},
        ))
        return material

    # ── Valuation ─────────────────────────────────────────────────────────────
    def stock_value(self, material_id: str | None = None) -> Decimal:
        stmt = select(func.coalesce(func.sum(StockBatch.remaining_quantity * StockBatch.unit_cost), 0))
        stmt = stmt.where(StockBatch.remaining_quantity > 0)
        if material_id is not None:
            stmt = stmt.where(StockBatch.material_id == material_id)
        return to_quantity(self.db.execute(stmt).scalar_one())

    def _next_batch_number(self, material: Material, received_date: date, prefix: str = "") -> str:
        # Format: TOM-20250819-001 (adjustments: ADJ-TOM-20250819-001)
        stem = f"{prefix}{(material.name[:3] or 'MAT').upper()}-{received_date:%Y%m%d}-"
        last = self.db.execute(
            select(StockBatch.batch_number)
            .where(StockBatch.material_id == material.id, StockBatch.batch_number.like(f"{stem}%"))
            .order_by(StockBatch.batch_number.desc())
            .limit(1)
        ).scalar_one_or_none()
        sequence = int(last[-3:]) + 1 if last else 1
        return f"{stem}{sequence:03d}"
