"""
Pure stock-ledger helpers.

Sign normalization and location resolution shared by the ledger service and
by any caller that wants to pre-validate a request without a session.
"""

from decimal import Decimal
from uuid import UUID

from erp_kernel.db.types import round_quantity, to_decimal
from erp_kernel.exceptions import InvalidQuantityError, LocationExclusivityError
from erp_modules.inventory.models import MovementType
from erp_modules.reference.models import LocationType


def expected_sign(movement_type: MovementType) -> int:
    """+1 for inbound movement types, -1 for outbound ones."""
    return movement_type.direction.sign


def normalize_quantity(
    movement_type: MovementType,
    quantity: Decimal | int | str,
    decimal_places: int = 3,
) -> Decimal:
    """
    Return ``quantity`` rounded and signed by the movement type's direction.

    The caller's sign is advisory: an inbound type with a negative input
    becomes positive and vice versa.

    Raises:
        InvalidQuantityError: if the rounded quantity is zero.
    """
    magnitude = abs(round_quantity(to_decimal(quantity), decimal_places))
    if magnitude == 0:
        raise InvalidQuantityError("quantity", to_decimal(quantity), "must be non-zero")
    return magnitude * expected_sign(movement_type)


def resolve_location(
    warehouse_id: UUID | None,
    shop_id: UUID | None,
) -> tuple[LocationType, UUID]:
    """
    Return the single location given.

    Raises:
        LocationExclusivityError: if both or neither are set.
    """
    if (warehouse_id is None) == (shop_id is None):
        raise LocationExclusivityError(
            str(warehouse_id) if warehouse_id else None,
            str(shop_id) if shop_id else None,
        )
    if warehouse_id is not None:
        return LocationType.WAREHOUSE, warehouse_id
    return LocationType.SHOP, shop_id
