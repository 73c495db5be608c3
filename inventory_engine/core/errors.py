"""
Inventory Engine — Error taxonomy
"""
from decimal import Decimal


class InventoryError(Exception):
    """Base class for every error raised by the inventory core."""


class ValidationError(InventoryError):
    """Malformed or out-of-range input."""


class NotFound(InventoryError):
    def __init__(self, kind: str, identifier):
        super().__init__(f"{kind} '{identifier}' not found.")
        self.kind = kind
        self.identifier = identifier


class InsufficientStock(InventoryError):
    """A consumption request exceeds the total remaining quantity of a material."""

    def __init__(self, material_id: str, requested: Decimal, available: Decimal):
        self.material_id = material_id
        self.requested = requested
        self.available = available
        self.shortfall = requested - available
        super().__init__(
            f"Insufficient stock for material '{material_id}': "
            f"requested={requested}, available={available}, shortfall={self.shortfall}"
        )


class ConcurrencyConflict(InventoryError):
    """Lock contention or a stale write that could not be resolved by retrying."""


class BroadcastFailure(InventoryError):
    """Pub/sub transport unreachable. Always non-fatal for the originating operation."""
