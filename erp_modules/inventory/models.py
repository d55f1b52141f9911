"""
Inventory Domain Models (``erp_modules.inventory.models``).

Responsibility
--------------
Frozen value objects for the stock ledger: movement types and their fixed
direction, the movement request accepted by the ledger, the persisted
movement snapshot, and the derived stock level.

Architecture
------------
Layer: **Modules** -- pure domain data structures.  No database identity
beyond the id carried for reference, no I/O.

Invariants
----------
- Every ``MovementType`` has exactly one ``MovementDirection`` in
  ``MOVEMENT_DIRECTIONS``; the type is authoritative for the sign.
- A persisted ``StockMovement`` has a non-zero quantity whose sign matches
  its type, and exactly one of warehouse / shop.
- Quantities and costs are ``Decimal`` -- never ``float``.

Failure Modes
-------------
- Constructing a ``StockMovement`` that breaks an invariant raises
  ``ValueError`` immediately.  Services validate requests first and raise
  the typed kernel errors; the DTO check is a last line.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from erp_kernel.logging_config import get_logger
from erp_modules.reference.models import LocationType

logger = get_logger("modules.inventory.models")

REFERENCE_DOCUMENT_TYPE_MAX_LENGTH = 50
REFERENCE_DOCUMENT_ID_MAX_LENGTH = 100
NOTES_MAX_LENGTH = 1000


class MovementDirection(Enum):
    IN = "in"
    OUT = "out"

    @property
    def sign(self) -> int:
        return 1 if self is MovementDirection.IN else -1


class MovementType(Enum):
    """Category of stock event.  Each category has a fixed direction."""
    PURCHASE_RECEPTION = "purchase_reception"
    SALE_DELIVERY = "sale_delivery"
    CUSTOMER_RETURN = "customer_return"
    SUPPLIER_RETURN = "supplier_return"
    INVENTORY_ADJUSTMENT_IN = "inventory_adjustment_in"
    INVENTORY_ADJUSTMENT_OUT = "inventory_adjustment_out"
    STOCK_TRANSFER_IN = "stock_transfer_in"
    STOCK_TRANSFER_OUT = "stock_transfer_out"
    MANUAL_ENTRY_IN = "manual_entry_in"
    MANUAL_ENTRY_OUT = "manual_entry_out"
    PRODUCTION_IN = "production_in"
    PRODUCTION_OUT = "production_out"

    @property
    def direction(self) -> MovementDirection:
        return MOVEMENT_DIRECTIONS[self]


MOVEMENT_DIRECTIONS: dict[MovementType, MovementDirection] = {
    MovementType.PURCHASE_RECEPTION: MovementDirection.IN,
    MovementType.CUSTOMER_RETURN: MovementDirection.IN,
    MovementType.INVENTORY_ADJUSTMENT_IN: MovementDirection.IN,
    MovementType.STOCK_TRANSFER_IN: MovementDirection.IN,
    MovementType.MANUAL_ENTRY_IN: MovementDirection.IN,
    MovementType.PRODUCTION_IN: MovementDirection.IN,
    MovementType.SALE_DELIVERY: MovementDirection.OUT,
    MovementType.SUPPLIER_RETURN: MovementDirection.OUT,
    MovementType.INVENTORY_ADJUSTMENT_OUT: MovementDirection.OUT,
    MovementType.STOCK_TRANSFER_OUT: MovementDirection.OUT,
    MovementType.MANUAL_ENTRY_OUT: MovementDirection.OUT,
    MovementType.PRODUCTION_OUT: MovementDirection.OUT,
}

MANUAL_MOVEMENT_TYPES: tuple[MovementType, ...] = (
    MovementType.MANUAL_ENTRY_IN,
    MovementType.MANUAL_ENTRY_OUT,
)


@dataclass(frozen=True)
class MovementRequest:
    """
    A request to append one ledger entry.

    ``quantity`` may be supplied with either sign; the movement type decides
    the stored sign.  ``user_id`` is the acting user recorded on the entry.
    """
    product_id: UUID
    movement_type: MovementType
    quantity: Decimal
    user_id: UUID
    variant_id: UUID | None = None
    warehouse_id: UUID | None = None
    shop_id: UUID | None = None
    unit_cost: Decimal | None = None
    movement_date: datetime | None = None
    reference_document_type: str | None = None
    reference_document_id: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class StockMovement:
    """Snapshot of a persisted, immutable ledger entry."""
    id: UUID
    product_id: UUID
    movement_type: MovementType
    quantity: Decimal
    movement_date: datetime
    user_id: UUID
    variant_id: UUID | None = None
    warehouse_id: UUID | None = None
    shop_id: UUID | None = None
    unit_cost_at_movement: Decimal | None = None
    reference_document_type: str | None = None
    reference_document_id: str | None = None
    notes: str | None = None

    def __post_init__(self):
        if self.quantity == 0:
            logger.warning("stock_movement_zero_quantity", extra={"movement_id": str(self.id)})
            raise ValueError("Stock movement quantity must be non-zero")
        expected = self.movement_type.direction.sign
        if (self.quantity > 0 and expected < 0) or (self.quantity < 0 and expected > 0):
            logger.warning(
                "stock_movement_sign_mismatch",
                extra={
                    "movement_id": str(self.id),
                    "movement_type": self.movement_type.value,
                    "quantity": str(self.quantity),
                },
            )
            raise ValueError(
                f"Quantity {self.quantity} does not match direction of {self.movement_type.value}"
            )
        if (self.warehouse_id is None) == (self.shop_id is None):
            raise ValueError("Stock movement must reference exactly one of warehouse or shop")

    @property
    def location_type(self) -> LocationType:
        return LocationType.WAREHOUSE if self.warehouse_id is not None else LocationType.SHOP

    @property
    def location_id(self) -> UUID:
        return self.warehouse_id if self.warehouse_id is not None else self.shop_id


@dataclass(frozen=True)
class StockLevel:
    """Derived on-hand quantity for one (product, variant, location) key."""
    product_id: UUID
    variant_id: UUID | None
    location_id: UUID
    location_type: LocationType
    quantity: Decimal
