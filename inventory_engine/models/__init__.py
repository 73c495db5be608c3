from inventory_engine.models.inventory import (
    AlertSeverity, AlertType, InventoryTransaction, Material, MaterialStockHistory,
    StockAlert, StockBatch, TransactionType,
)
from inventory_engine.models.order import (
    Discount, DiscountType, InventoryStatus, Order, OrderItem, OrderStatus, OrderType,
    Product, Recipe, RecipeMaterial,
)

__all__ = [
    "AlertSeverity", "AlertType", "InventoryTransaction", "Material", "MaterialStockHistory",
    "StockAlert", "StockBatch", "TransactionType",
    "Discount", "DiscountType", "InventoryStatus", "Order", "OrderItem", "OrderStatus",
    "OrderType", "Product", "Recipe", "RecipeMaterial",
]
