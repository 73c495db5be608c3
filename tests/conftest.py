"""
Shared fixtures

Every test gets a fresh file-backed SQLite database (one connection per
session, so sweeps and API requests see committed data like they would on
PostgreSQL) and a private EventBus with a recording publisher behind the
broadcast dispatcher.
"""
import itertools
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("BROADCAST_TRANSPORT", "none")

from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from inventory_engine.db.database import Base, build_engine
from inventory_engine.engine.broadcast import BroadcastDispatcher
from inventory_engine.engine.events import BUS_KEY, EventBus
from inventory_engine.models import (
    Discount, Material, Order, OrderItem, Product, Recipe, RecipeMaterial, StockBatch,
)

TODAY = date(2025, 8, 19)
_batch_sequence = itertools.count(1)


class RecordingPublisher:
    def __init__(self):
        self.messages: list[tuple[str, dict]] = []

    def publish(self, channel_name: str, payload: dict) -> None:
        self.messages.append((channel_name, payload))

    def on(self, channel_name: str) -> list[dict]:
        return [payload for name, payload in self.messages if name == channel_name]

    def kinds(self) -> list[str]:
        return [payload["kind"] for _, payload in self.messages]


class RecordingStockCache:
    def __init__(self):
        self.values: dict[str, str] = {}

    def set_quantity(self, material_id: str, quantity) -> None:
        self.values[material_id] = str(quantity)


@pytest.fixture
def today():
    return TODAY


# ─── Database ──────────────────────────────────────────────────────────────────
@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'inventory.db'}")
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def stock_cache():
    return RecordingStockCache()


@pytest.fixture
def publisher(bus, stock_cache):
    pub = RecordingPublisher()
    BroadcastDispatcher(pub, stock_cache).register(bus)
    return pub


@pytest.fixture
def session_factory(engine, bus, publisher):
    return sessionmaker(bind=engine, expire_on_commit=False, info={BUS_KEY: bus})


@pytest.fixture
def db(session_factory):
    with session_factory() as session:
        yield session


# ─── Factories ─────────────────────────────────────────────────────────────────
@pytest.fixture
def make_material(db):
    def _make(name="Tomato", quantity="0", **fields) -> Material:
        material = Material(name=name, quantity=Decimal(quantity), **fields)
        db.add(material)
        db.commit()
        return material
    return _make


@pytest.fixture
def make_batch(db):
    def _make(
        material: Material,
        remaining,
        expires_in: int | None = None,
        received_ago: int = 0,
        unit_cost="1.00",
        quantity=None,
    ) -> StockBatch:
        remaining = Decimal(str(remaining))
        received = TODAY - timedelta(days=received_ago)
        batch = StockBatch(
            material_id=material.id,
            batch_number=f"{material.name[:3].upper()}-{received:%Y%m%d}-{next(_batch_sequence):03d}",
            quantity=Decimal(str(quantity)) if quantity is not None else remaining,
            remaining_quantity=remaining,
            unit_cost=Decimal(unit_cost),
            received_date=received,
            expiry_date=TODAY + timedelta(days=expires_in) if expires_in is not None else None,
        )
        db.add(batch)
        material.quantity = material.quantity + remaining
        db.commit()
        return batch
    return _make


@pytest.fixture
def make_product(db):
    def _make(name="Burger", price="10.00", recipe: dict | None = None, servings=1, **fields) -> Product:
        """recipe maps Material -> quantity per unit (recipe units)."""
        product = Product(name=name, price=Decimal(price), **fields)
        db.add(product)
        if recipe is not None:
            db.add(Recipe(
                product=product,
                name=f"{name} recipe",
                servings=servings,
                materials=[
                    RecipeMaterial(material_id=m.id, quantity=Decimal(str(q))) for m, q in recipe.items()
                ],
            ))
        db.commit()
        return product
    return _make


@pytest.fixture
def make_order(db):
    def _make(lines, order_type="dine-in", discount_type="none", discount="0",
              saved_discount: Discount | None = None) -> Order:
        """lines: (product, quantity) or (product, quantity, discount_type, discount[, Discount])."""
        order = Order(
            type=order_type,
            discount_type=discount_type,
            discount=Decimal(discount),
            discount_id=saved_discount.id if saved_discount else None,
        )
        for line in lines:
            product, quantity, *rest = line
            item = OrderItem(product=product, price=product.price, quantity=quantity)
            if rest:
                item.discount_type = rest[0]
                item.discount = Decimal(rest[1])
                if len(rest) > 2:
                    item.discount_id = rest[2].id
            order.items.append(item)
        db.add(order)
        db.commit()
        return order
    return _make
