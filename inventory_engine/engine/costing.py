"""
Inventory Engine — Recipe costing

A recipe's cost is what its materials would cost if consumed right now: the
FEFO allocation priced at each batch's unit cost. When the batches cannot
cover a material, that material is priced at its purchase price instead.
"""
import logging
from decimal import ROUND_HALF_UP, Decimal

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from inventory_engine.core.errors import InsufficientStock, NotFound
from inventory_engine.engine.batch_ledger import BatchLedger
from inventory_engine.engine.events import RecipeCostChanged, record_event
from inventory_engine.models import Recipe, RecipeMaterial

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class MaterialCost(BaseModel):
    material_id: str
    material_name: str
    quantity: Decimal              # stock units
    cost: Decimal
    source: str                    # "batches" | "purchase_price"


class RecipeCost(BaseModel):
    recipe_id: str
    total_cost: Decimal
    cost_per_serving: Decimal
    previous_cost: Decimal | None
    changed: bool
    breakdown: list[MaterialCost]


def calculate_recipe_cost(db: Session, recipe_id: str) -> RecipeCost:
    recipe = db.execute(
        select(Recipe)
        .where(Recipe.id == recipe_id)
        .options(selectinload(Recipe.materials).selectinload(RecipeMaterial.material))
    ).scalar_one_or_none()
    if recipe is None:
        raise NotFound("Recipe", recipe_id)

    ledger = BatchLedger(db)
    breakdown: list[MaterialCost] = []
    for line in recipe.materials:
        material = line.material
        stock_quantity = line.quantity * material.conversion_rate
        if stock_quantity <= 0:
            continue
        try:
            cost = ledger.cost_of(ledger.plan(material.id, stock_quantity))
            source = "batches"
        except InsufficientStock:
            cost = stock_quantity * material.purchase_price
            source = "purchase_price"
        breakdown.append(MaterialCost(
            material_id=material.id,
            material_name=material.name,
            quantity=stock_quantity,
            cost=cost.quantize(CENT, rounding=ROUND_HALF_UP),
            source=source,
        ))

    total = sum((item.cost for item in breakdown), Decimal("0"))
    per_serving = (total / max(recipe.servings, 1)).quantize(CENT, rounding=ROUND_HALF_UP)
    previous = recipe.last_cost
    changed = previous is None or previous != total

    if changed:
        recipe.last_cost = total
        db.flush()
        record_event(db, RecipeCostChanged(
            recipe_id=recipe.id,
            recipe_name=recipe.name,
            total_cost=total,
            cost_per_serving=per_serving,
            previous_cost=previous,
            breakdown=[item.model_dump(mode="json") for item in breakdown],
        ))
        logger.info("Recipe %s cost %s -> %s", recipe.name, previous, total)

    return RecipeCost(
        recipe_id=recipe.id,
        total_cost=total,
        cost_per_serving=per_serving,
        previous_cost=previous,
        changed=changed,
        breakdown=breakdown,
    )


def recipes_using(db: Session, material_id: str) -> list[str]:
    return list(db.execute(
        select(RecipeMaterial.recipe_id)
        .where(RecipeMaterial.material_id == material_id)
        .distinct()
        .order_by(RecipeMaterial.recipe_id)
    ).scalars())
