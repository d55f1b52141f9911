"""
Sales Order Domain Models (``erp_modules.sales.models``).

Responsibility
--------------
Frozen value objects for sales orders: the order status enum, the order and
order-line snapshots returned by ``SalesOrderService``, and the input records
accepted by its create and update operations.

Architecture position
---------------------
**Modules layer** -- pure data definitions with ZERO I/O.

Invariants enforced
-------------------
* All models are ``frozen=True``.
* Quantities and amounts are ``Decimal`` -- NEVER ``float``.
* ``quantity_shipped`` and ``quantity_invoiced`` on a line are accumulators
  owned by the reconciliation tracker; inputs never carry them.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from erp_kernel.logging_config import get_logger

logger = get_logger("modules.sales.models")

DESCRIPTION_MAX_LENGTH = 255


class SalesOrderStatus(Enum):
    """Sales order lifecycle states."""
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_RECEIVED = "payment_received"
    IN_PREPARATION = "in_preparation"
    PARTIALLY_SHIPPED = "partially_shipped"
    FULLY_SHIPPED = "fully_shipped"
    INVOICED = "invoiced"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# States in which stock has been reserved for the order's lines.
RESERVED_STATUSES = frozenset({
    SalesOrderStatus.APPROVED,
    SalesOrderStatus.PAYMENT_PENDING,
    SalesOrderStatus.PAYMENT_RECEIVED,
    SalesOrderStatus.IN_PREPARATION,
})

# Deliveries may be created against orders in these states.
DELIVERABLE_STATUSES = frozenset({
    SalesOrderStatus.APPROVED,
    SalesOrderStatus.PAYMENT_RECEIVED,
    SalesOrderStatus.IN_PREPARATION,
    SalesOrderStatus.PARTIALLY_SHIPPED,
})

# Item edits are only accepted before approval.
ITEM_EDITABLE_STATUSES = frozenset({
    SalesOrderStatus.DRAFT,
    SalesOrderStatus.PENDING_APPROVAL,
})


@dataclass(frozen=True)
class SalesOrderItem:
    """One persisted order line."""
    id: UUID
    sales_order_id: UUID
    product_id: UUID
    description: str | None
    quantity: Decimal
    unit_price_ht: Decimal
    discount_percentage: Decimal
    vat_rate_percentage: Decimal | None
    total_line_amount_ht: Decimal
    quantity_shipped: Decimal
    quantity_invoiced: Decimal
    variant_id: UUID | None = None

    @property
    def remaining_to_ship(self) -> Decimal:
        return self.quantity - self.quantity_shipped


@dataclass(frozen=True)
class SalesOrder:
    """A sales order snapshot with its active lines."""
    id: UUID
    order_number: str
    customer_id: UUID
    status: SalesOrderStatus
    order_date: datetime
    shipping_fees_ht: Decimal
    total_amount_ht: Decimal
    total_vat_amount: Decimal
    total_amount_ttc: Decimal
    created_by_id: UUID
    items: tuple[SalesOrderItem, ...] = ()
    warehouse_id: UUID | None = None
    shop_id: UUID | None = None
    notes: str | None = None
    updated_by_id: UUID | None = None
    deleted_at: datetime | None = None

    @property
    def dispatch_location_id(self) -> UUID | None:
        return self.warehouse_id or self.shop_id


@dataclass(frozen=True)
class SalesOrderItemInput:
    """A new order line."""
    product_id: UUID
    quantity: Decimal
    unit_price_ht: Decimal
    variant_id: UUID | None = None
    description: str | None = None
    discount_percentage: Decimal = Decimal("0")
    vat_rate_percentage: Decimal | None = None


@dataclass(frozen=True)
class SalesOrderItemChange:
    """
    One entry of an item edit.

    ``id=None`` adds a line (product_id, quantity and unit_price_ht are then
    required).  ``delete=True`` soft-deletes the line with that id.  Otherwise
    every non-None field replaces the line's current value.
    """
    id: UUID | None = None
    product_id: UUID | None = None
    variant_id: UUID | None = None
    description: str | None = None
    quantity: Decimal | None = None
    unit_price_ht: Decimal | None = None
    discount_percentage: Decimal | None = None
    vat_rate_percentage: Decimal | None = None
    delete: bool = False


@dataclass(frozen=True)
class SalesOrderInput:
    customer_id: UUID
    items: tuple[SalesOrderItemInput, ...] = ()
    status: SalesOrderStatus = SalesOrderStatus.DRAFT
    warehouse_id: UUID | None = None
    shop_id: UUID | None = None
    order_date: datetime | None = None
    shipping_fees_ht: Decimal = Decimal("0")
    notes: str | None = None
