"""
Inventory Engine — Menu and order models

[CONFIG DATA]        products, recipes, recipe_materials, discounts
[TRANSACTIONAL DATA] orders, order_items — financial fields are fully recomputed
                     by the pricing engine, never patched incrementally.
"""
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from inventory_engine.db.database import Base
from inventory_engine.models.inventory import MONEY, QUANTITY, Material


class OrderType(str, PyEnum):
    DINE_IN = "dine-in"
    TAKEAWAY = "takeaway"
    DELIVERY = "delivery"


class OrderStatus(str, PyEnum):
    LIVE = "live"
    COMPLETED = "completed"
    CANCELED = "canceled"


class DiscountType(str, PyEnum):
    NONE = "none"
    CASH = "cash"
    PERCENTAGE = "percentage"
    SAVED = "saved"


class InventoryStatus(str, PyEnum):
    PENDING = "pending"
    PROCESSED = "processed"
    PARTIAL = "partial"
    FAILED = "failed"


class Discount(Base):
    """
    [CONFIG DATA] — a saved discount; amount is a percentage.
    """
    __tablename__ = "discounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Product(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    is_taxable: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_serviceable: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    discount_type: Mapped[str] = mapped_column(String(16), default=DiscountType.NONE.value, nullable=False)
    discount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    recipe: Mapped["Recipe"] = relationship(back_populates="product", uselist=False)


class Recipe(Base):
    __tablename__ = "recipes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    product_id: Mapped[str] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"), unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    servings: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    last_cost: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)

    product: Mapped[Product] = relationship(back_populates="recipe")
    materials: Mapped[list["RecipeMaterial"]] = relationship(
        back_populates="recipe", cascade="all, delete-orphan"
    )


class RecipeMaterial(Base):
    """Quantity of a material per unit of product, expressed in the material's recipe unit."""
    __tablename__ = "recipe_materials"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    recipe_id: Mapped[str] = mapped_column(ForeignKey("recipes.id", ondelete="CASCADE"), nullable=False)
    material_id: Mapped[str] = mapped_column(ForeignKey("materials.id", ondelete="CASCADE"), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False)

    recipe: Mapped[Recipe] = relationship(back_populates="materials")
    material: Mapped[Material] = relationship()


class Order(Base):
    """
    [TRANSACTIONAL DATA]
    discount/discount_type/discount_id are the order-level discount inputs;
    discount_value is the computed combined (item + order) discount.
    """
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    code: Mapped[str] = mapped_column(String(32), nullable=False, default=lambda: uuid.uuid4().hex[:8].upper())
    type: Mapped[str] = mapped_column(String(16), nullable=False, default=OrderType.DINE_IN.value)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=OrderStatus.LIVE.value)
    discount_type: Mapped[str] = mapped_column(String(16), nullable=False, default=DiscountType.NONE.value)
    discount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    discount_id: Mapped[str | None] = mapped_column(ForeignKey("discounts.id"), nullable=True)
    discount_value: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    sub_total: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    tax: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    service: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    inventory_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=InventoryStatus.PENDING.value
    )
    inventory_processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    items: Mapped[list["OrderItem"]] = relationship(back_populates="order", cascade="all, delete-orphan")
    saved_discount: Mapped[Discount | None] = relationship()

    __mapper_args__ = {"version_id_col": version_id}


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    product_id: Mapped[str] = mapped_column(ForeignKey("products.id"), nullable=False)
    price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_type: Mapped[str] = mapped_column(String(16), nullable=False, default=DiscountType.NONE.value)
    discount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    discount_id: Mapped[str | None] = mapped_column(ForeignKey("discounts.id"), nullable=True)
    discount_value: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    sub_total: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    tax: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    service: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    notes: Mapped[str | None] = mapped_column(String(255), nullable=True)

    order: Mapped[Order] = relationship(back_populates="items")
    product: Mapped[Product] = relationship()
    saved_discount: Mapped[Discount | None] = relationship()
