"""
Inventory Engine — Order pricing

price_item() and price_order() are pure functions over frozen value objects:
the same input always produces the same totals, so recomputation can run any
number of times. Money is quantised once, at the output of each line.

recompute_order_totals() is the persistence adapter: it locks the order row,
builds the value objects from the ORM graph and writes every computed field.
"""
import logging
from decimal import ROUND_HALF_UP, Decimal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as SchemaError
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from inventory_engine.core.config import get_settings
from inventory_engine.core.errors import NotFound, ValidationError
from inventory_engine.models import DiscountType, Order, OrderItem, OrderType

settings = get_settings()
logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


class PricingRates(BaseModel):
    model_config = ConfigDict(frozen=True)

    tax_percent: Decimal = Decimal("14")
    service_percent: Decimal = Decimal("12")
    places: int = 2

    @classmethod
    def from_settings(cls) -> "PricingRates":
        return cls(
            tax_percent=settings.TAX_RATE_PERCENT,
            service_percent=settings.SERVICE_RATE_PERCENT,
            places=settings.MONEY_PLACES,
        )

    def money(self, value: Decimal) -> Decimal:
        return value.quantize(Decimal(1).scaleb(-self.places), rounding=ROUND_HALF_UP)


class DiscountInput(BaseModel):
    """cash: flat amount. percentage: amount is a percent. saved: saved_percent of the referenced Discount."""
    model_config = ConfigDict(frozen=True)

    type: DiscountType = DiscountType.NONE
    amount: Decimal = Field(default=ZERO, ge=0)
    saved_percent: Decimal | None = Field(default=None, ge=0)


class ItemInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    price: Decimal = Field(ge=0)
    quantity: int = Field(ge=0)
    taxable: bool = True
    serviceable: bool = True
    product_discount: DiscountInput = DiscountInput()
    discount: DiscountInput = DiscountInput()


class OrderInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_type: OrderType = OrderType.DINE_IN
    items: tuple[ItemInput, ...] = ()
    discount: DiscountInput = DiscountInput()

    @property
    def dine_in(self) -> bool:
        return self.order_type == OrderType.DINE_IN


class ItemTotals(BaseModel):
    model_config = ConfigDict(frozen=True)

    sub_total: Decimal
    discount_value: Decimal
    service: Decimal
    tax: Decimal
    total_amount: Decimal


class OrderTotals(BaseModel):
    model_config = ConfigDict(frozen=True)

    items: tuple[ItemTotals, ...]
    sub_total: Decimal
    discount_value: Decimal
    service: Decimal
    tax: Decimal
    total_amount: Decimal
    # Order-level discount as kept; reset to none/0 when it would over-discount.
    discount_type: DiscountType
    discount: Decimal
    order_discount_applied: bool


def discount_amount(discount: DiscountInput, base: Decimal) -> Decimal:
    if discount.type == DiscountType.CASH:
        return discount.amount
    if discount.type == DiscountType.PERCENTAGE:
        return base * discount.amount / HUNDRED
    if discount.type == DiscountType.SAVED and discount.saved_percent is not None:
        return base * discount.saved_percent / HUNDRED
    return ZERO


def price_item(item: ItemInput, dine_in: bool, rates: PricingRates | None = None) -> ItemTotals:
    rates = rates or PricingRates.from_settings()
    sub_total = item.price * item.quantity

    discount = discount_amount(item.product_discount, sub_total) + discount_amount(item.discount, sub_total)
    if discount > sub_total:
        discount = ZERO

    service = ZERO
    if dine_in and item.serviceable:
        service = (sub_total - discount) * rates.service_percent / HUNDRED

    tax = ZERO
    if item.taxable:
        tax = (sub_total - discount + service) * rates.tax_percent / HUNDRED

    sub_total, discount = rates.money(sub_total), rates.money(discount)
    service, tax = rates.money(service), rates.money(tax)
    return ItemTotals(
        sub_total=sub_total,
        discount_value=discount,
        service=service,
        tax=tax,
        total_amount=sub_total - discount + service + tax,
    )


def price_order(order: OrderInput, rates: PricingRates | None = None) -> OrderTotals:
    rates = rates or PricingRates.from_settings()
    items = tuple(price_item(item, order.dine_in, rates) for item in order.items)

    sub_total = sum((i.sub_total for i in items), ZERO)
    item_discount = sum((i.discount_value for i in items), ZERO)

    discount_type, discount_input = order.discount.type, order.discount.amount
    discount = item_discount + discount_amount(order.discount, sub_total)
    applied = discount_type != DiscountType.NONE
    if discount > sub_total:
        discount = item_discount
        discount_type, discount_input, applied = DiscountType.NONE, ZERO, False

    service = ZERO
    if order.dine_in:
        service = (sub_total - discount) * rates.service_percent / HUNDRED
    tax = (sub_total - discount + service) * rates.tax_percent / HUNDRED

    discount, service, tax = rates.money(discount), rates.money(service), rates.money(tax)
    return OrderTotals(
        items=items,
        sub_total=sub_total,
        discount_value=discount,
        service=service,
        tax=tax,
        total_amount=sub_total - discount + service + tax,
        discount_type=discount_type,
        discount=discount_input,
        order_discount_applied=applied,
    )


# ── ORM adapter ───────────────────────────────────────────────────────────────
def _validated(model: type[BaseModel], **fields) -> BaseModel:
    """Build a value object from stored values; bad rows surface as ValidationError."""
    try:
        return model(**fields)
    except SchemaError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        raise ValidationError(f"Invalid {model.__name__}: {problems}") from exc


def _discount_of(discount_type: str, amount: Decimal, saved) -> DiscountInput:
    try:
        kind = DiscountType(discount_type or DiscountType.NONE.value)
    except ValueError:
        raise ValidationError(f"Unknown discount type '{discount_type}'.")
    return _validated(
        DiscountInput,
        type=kind,
        amount=amount or ZERO,
        saved_percent=saved.amount if saved is not None else None,
    )


def item_input(item: OrderItem) -> ItemInput:
    product = item.product
    return _validated(
        ItemInput,
        price=item.price,
        quantity=item.quantity,
        taxable=product.is_taxable,
        serviceable=product.is_serviceable,
        product_discount=_discount_of(product.discount_type, product.discount, None),
        discount=_discount_of(item.discount_type, item.discount, item.saved_discount),
    )


def order_input(order: Order) -> OrderInput:
    try:
        order_type = OrderType(order.type)
    except ValueError:
        raise ValidationError(f"Unknown order type '{order.type}'.")
    return _validated(
        OrderInput,
        order_type=order_type,
        items=tuple(item_input(item) for item in order.items),
        discount=_discount_of(order.discount_type, order.discount, order.saved_discount),
    )


def apply_totals(order: Order, totals: OrderTotals) -> None:
    for item, line in zip(order.items, totals.items):
        item.sub_total = line.sub_total
        item.discount_value = line.discount_value
        item.service = line.service
        item.tax = line.tax
        item.total_amount = line.total_amount

    order.sub_total = totals.sub_total
    order.discount_value = totals.discount_value
    order.service = totals.service
    order.tax = totals.tax
    order.total_amount = totals.total_amount
    if not totals.order_discount_applied:
        order.discount_type = totals.discount_type.value
        order.discount = totals.discount
        order.discount_id = None


def recompute_order_totals(db: Session, order_id: str, rates: PricingRates | None = None) -> OrderTotals:
    """Lock the order row, reprice from scratch and write the results (no commit)."""
    order = db.execute(
        select(Order)
        .where(Order.id == order_id)
        .options(
            selectinload(Order.items).selectinload(OrderItem.product),
            selectinload(Order.items).selectinload(OrderItem.saved_discount),
            selectinload(Order.saved_discount),
        )
        .with_for_update(of=Order)
    ).scalar_one_or_none()
    if order is None:
        raise NotFound("Order", order_id)

    totals = price_order(order_input(order), rates)
    apply_totals(order, totals)
    db.flush()
    logger.debug("Order %s repriced: total=%s", order.code, totals.total_amount)
    return totals
