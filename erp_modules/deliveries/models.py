"""
Delivery Domain Models (``erp_modules.deliveries.models``).

Responsibility
--------------
Frozen value objects for deliveries: status enum, delivery and delivery-line
snapshots, and the create / line-edit inputs.

Invariants enforced
-------------------
* All models are ``frozen=True``; quantities are ``Decimal``.
* A delivery line always points at one sales order line of the delivery's
  own sales order.  Product and variant are copied from that line.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID


class DeliveryStatus(Enum):
    """Delivery lifecycle states."""
    PENDING = "pending"
    IN_PREPARATION = "in_preparation"
    READY_TO_SHIP = "ready_to_ship"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED_DELIVERY = "failed_delivery"


# Deliveries whose lines count as actually shipped for the order's status.
SHIPPED_STATUSES = frozenset({DeliveryStatus.SHIPPED, DeliveryStatus.DELIVERED})

SHIPPABLE_STATUSES = frozenset({
    DeliveryStatus.PENDING,
    DeliveryStatus.IN_PREPARATION,
    DeliveryStatus.READY_TO_SHIP,
})


@dataclass(frozen=True)
class DeliveryItem:
    id: UUID
    delivery_id: UUID
    sales_order_item_id: UUID
    product_id: UUID
    quantity_shipped: Decimal
    variant_id: UUID | None = None
    notes: str | None = None


@dataclass(frozen=True)
class Delivery:
    """A delivery snapshot with its active lines."""
    id: UUID
    delivery_number: str
    sales_order_id: UUID
    status: DeliveryStatus
    created_by_id: UUID
    items: tuple[DeliveryItem, ...] = ()
    warehouse_id: UUID | None = None
    shop_id: UUID | None = None
    planned_delivery_date: datetime | None = None
    ship_date: datetime | None = None
    actual_delivery_date: datetime | None = None
    carrier_name: str | None = None
    tracking_number: str | None = None
    notes: str | None = None
    updated_by_id: UUID | None = None
    deleted_at: datetime | None = None


@dataclass(frozen=True)
class DeliveryItemInput:
    sales_order_item_id: UUID
    quantity_shipped: Decimal
    notes: str | None = None


@dataclass(frozen=True)
class DeliveryItemChange:
    """
    One entry of a line edit.

    ``id=None`` adds a line; ``delete=True`` soft-deletes the line with that
    id; otherwise ``quantity_shipped`` / ``notes`` replace the current values.
    """
    id: UUID | None = None
    sales_order_item_id: UUID | None = None
    quantity_shipped: Decimal | None = None
    notes: str | None = None
    delete: bool = False


@dataclass(frozen=True)
class DeliveryInput:
    sales_order_id: UUID
    items: tuple[DeliveryItemInput, ...] = ()
    warehouse_id: UUID | None = None
    shop_id: UUID | None = None
    planned_delivery_date: datetime | None = None
    carrier_name: str | None = None
    tracking_number: str | None = None
    notes: str | None = None
