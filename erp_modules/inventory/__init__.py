"""
Inventory: the append-only stock ledger.

Every stock-affecting event is one signed ``StockMovement``; current stock
is derived by summation.
"""

from erp_modules.inventory.models import (
    MANUAL_MOVEMENT_TYPES,
    MOVEMENT_DIRECTIONS,
    MovementDirection,
    MovementRequest,
    MovementType,
    StockLevel,
    StockMovement,
)
from erp_modules.inventory.service import StockLedgerService

__all__ = [
    "MANUAL_MOVEMENT_TYPES",
    "MOVEMENT_DIRECTIONS",
    "MovementDirection",
    "MovementRequest",
    "MovementType",
    "StockLevel",
    "StockMovement",
    "StockLedgerService",
]
