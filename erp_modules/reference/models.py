"""
Reference DTOs (``erp_modules.reference.models``).

Frozen snapshots of the collaborator entities as seen by the ledger and the
document services.  Only the fields those services read are carried.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from uuid import UUID


class LocationType(Enum):
    """A stock location is either a warehouse or a shop, never both."""
    WAREHOUSE = "warehouse"
    SHOP = "shop"


@dataclass(frozen=True)
class ProductRef:
    id: UUID
    sku: str
    name: str
    default_vat_rate_percentage: Decimal | None = None
    default_purchase_price: Decimal | None = None


@dataclass(frozen=True)
class VariantRef:
    id: UUID
    product_id: UUID
    name: str
    purchase_price: Decimal | None = None


@dataclass(frozen=True)
class LocationRef:
    id: UUID
    location_type: LocationType
    name: str


@dataclass(frozen=True)
class UserRef:
    id: UUID
    username: str


@dataclass(frozen=True)
class CustomerRef:
    id: UUID
    name: str
