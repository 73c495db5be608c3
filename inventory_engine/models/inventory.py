"""
Inventory Engine — Stock models

[CONFIG DATA]        materials — thresholds, units, perishability
[TRANSACTIONAL DATA] stock_batches, stock_alerts, inventory_transactions,
                     material_stock_history
"""
import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import (
    Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text,
    UniqueConstraint, func, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from inventory_engine.db.database import Base

QUANTITY = Numeric(12, 3)
QUANTITY_STEP = Decimal("0.001")
MONEY = Numeric(12, 2)


class AlertType(str, PyEnum):
    OUT_OF_STOCK = "out_of_stock"
    LOW_STOCK = "low_stock"
    OVERSTOCK = "overstock"
    EXPIRY_WARNING = "expiry_warning"
    EXPIRY_CRITICAL = "expiry_critical"
    EXPIRED_BATCH = "expired_batch"


class AlertSeverity(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TransactionType(str, PyEnum):
    RECEIPT = "receipt"
    CONSUMPTION = "consumption"
    ADJUSTMENT = "adjustment"


class Material(Base):
    """
    [CONFIG DATA] with a running quantity.
    quantity converges on sum(batch.remaining_quantity) after every receipt/consumption.
    version_id is the optimistic locking column.
    """
    __tablename__ = "materials"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    sku: Mapped[str | None] = mapped_column(String(100), nullable=True)
    quantity: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False, default=Decimal("0"))
    stock_unit: Mapped[str] = mapped_column(String(32), nullable=False, default="kg")
    recipe_unit: Mapped[str] = mapped_column(String(32), nullable=False, default="kg")
    conversion_rate: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False, default=Decimal("1"))
    purchase_price: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    minimum_stock_level: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False, default=Decimal("0"))
    maximum_stock_level: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False, default=Decimal("0"))
    reorder_point: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False, default=Decimal("0"))
    reorder_quantity: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False, default=Decimal("0"))
    is_perishable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    shelf_life_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    storage_location: Mapped[str | None] = mapped_column(String(100), nullable=True)
    start_month_stock: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False, default=Decimal("0"))
    version_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    batches: Mapped[list["StockBatch"]] = relationship(back_populates="material")

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def has_thresholds(self) -> bool:
        return any(
            level > 0 for level in
            (self.minimum_stock_level, self.maximum_stock_level, self.reorder_point)
        )

    def __repr__(self) -> str:
        return f"<Material {self.name} qty={self.quantity}{self.stock_unit}>"


class StockBatch(Base):
    """
    [TRANSACTIONAL DATA] — one received lot of a material.
    0 <= remaining_quantity <= quantity. Mutated only through BatchLedger.
    """
    __tablename__ = "stock_batches"
    __table_args__ = (
        Index("idx_material_received", "material_id", "received_date"),
        Index("idx_expiry_date", "expiry_date"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    material_id: Mapped[str] = mapped_column(ForeignKey("materials.id", ondelete="CASCADE"), nullable=False)
    batch_number: Mapped[str] = mapped_column(String(100), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False)
    remaining_quantity: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False)
    unit_cost: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    received_date: Mapped[date] = mapped_column(Date, nullable=False)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    supplier_reference: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    material: Mapped[Material] = relationship(back_populates="batches")

    def days_until_expiry(self, today: date) -> int | None:
        if self.expiry_date is None:
            return None
        return (self.expiry_date - today).days

    @property
    def total_value(self) -> Decimal:
        return self.remaining_quantity * self.unit_cost


class StockAlert(Base):
    """
    [TRANSACTIONAL DATA] — at most one unresolved alert per (material_id, alert_type).
    The partial unique index is the transactional dedup guard.
    resolved_by is NULL when the system resolved the alert.
    """
    __tablename__ = "stock_alerts"
    __table_args__ = (
        Index(
            "uq_stock_alerts_open", "material_id", "alert_type",
            unique=True,
            postgresql_where=text("is_resolved = false"),
            sqlite_where=text("is_resolved = 0"),
        ),
        Index("idx_unresolved", "is_resolved", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    material_id: Mapped[str] = mapped_column(ForeignKey("materials.id", ondelete="CASCADE"), nullable=False)
    batch_id: Mapped[str | None] = mapped_column(
        ForeignKey("stock_batches.id", ondelete="SET NULL"), nullable=True
    )
    alert_type: Mapped[str] = mapped_column(String(32), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    threshold_value: Mapped[Decimal | None] = mapped_column(QUANTITY, nullable=True)
    current_value: Mapped[Decimal | None] = mapped_column(QUANTITY, nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    is_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    material: Mapped[Material] = relationship()


class InventoryTransaction(Base):
    """
    [TRANSACTIONAL DATA] — audit trail for every stock movement.
    """
    __tablename__ = "inventory_transactions"
    __table_args__ = (Index("idx_reference", "reference_type", "reference_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    material_id: Mapped[str] = mapped_column(ForeignKey("materials.id", ondelete="CASCADE"), nullable=False)
    batch_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False)
    unit_cost: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    old_quantity: Mapped[Decimal | None] = mapped_column(QUANTITY, nullable=True)
    new_quantity: Mapped[Decimal | None] = mapped_column(QUANTITY, nullable=True)
    reference_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class MaterialStockHistory(Base):
    """
    [TRANSACTIONAL DATA] — monthly opening/closing balance per material.
    """
    __tablename__ = "material_stock_history"
    __table_args__ = (UniqueConstraint("material_id", "period_date", name="uq_stock_history_period"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    material_id: Mapped[str] = mapped_column(ForeignKey("materials.id", ondelete="CASCADE"), nullable=False)
    period_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_stock: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False)
    end_stock: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
