"""
Customer Invoice Domain Models (``erp_modules.invoicing.models``).

Responsibility
--------------
Frozen value objects for customer invoices: status enum, invoice and line
snapshots, create / line-edit inputs, and the result of applying a payment.

Architecture position
---------------------
**Modules layer** -- pure data definitions with ZERO I/O.

Invariants enforced
-------------------
* All models are ``frozen=True``; money is ``Decimal``.
* ``amount_paid`` is a projection maintained by payment application; inputs
  never carry it.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID


class InvoiceStatus(Enum):
    """Customer invoice lifecycle states."""
    DRAFT = "draft"
    SENT = "sent"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    VOIDED = "voided"
    CANCELLED = "cancelled"


# Invoices in these states no longer consume invoiceable quantity.
RELEASED_STATUSES = frozenset({InvoiceStatus.CANCELLED, InvoiceStatus.VOIDED})


@dataclass(frozen=True)
class CustomerInvoiceItem:
    id: UUID
    customer_invoice_id: UUID
    description: str | None
    quantity: Decimal
    unit_price_ht: Decimal
    discount_percentage: Decimal
    vat_rate_percentage: Decimal | None
    total_line_amount_ht: Decimal
    product_id: UUID | None = None
    variant_id: UUID | None = None
    sales_order_item_id: UUID | None = None
    delivery_item_id: UUID | None = None


@dataclass(frozen=True)
class CustomerInvoice:
    """An invoice snapshot with its active lines and linked sales orders."""
    id: UUID
    invoice_number: str
    customer_id: UUID
    status: InvoiceStatus
    invoice_date: datetime
    shipping_fees_ht: Decimal
    total_amount_ht: Decimal
    total_vat_amount: Decimal
    total_amount_ttc: Decimal
    amount_paid: Decimal
    created_by_id: UUID
    items: tuple[CustomerInvoiceItem, ...] = ()
    sales_order_ids: tuple[UUID, ...] = ()
    due_date: datetime | None = None
    notes: str | None = None
    terms_and_conditions: str | None = None
    file_attachment_url: str | None = None
    updated_by_id: UUID | None = None
    deleted_at: datetime | None = None

    @property
    def balance_due(self) -> Decimal:
        return self.total_amount_ttc - self.amount_paid


@dataclass(frozen=True)
class CustomerInvoiceItemInput:
    """
    A new invoice line.

    ``delivery_item_id`` fixes the sales order line (and product) from the
    delivery line.  Without either reference, ``product_id`` is optional and
    ``description`` is expected.
    """
    quantity: Decimal
    unit_price_ht: Decimal
    product_id: UUID | None = None
    variant_id: UUID | None = None
    sales_order_item_id: UUID | None = None
    delivery_item_id: UUID | None = None
    description: str | None = None
    discount_percentage: Decimal = Decimal("0")
    vat_rate_percentage: Decimal | None = None


@dataclass(frozen=True)
class CustomerInvoiceItemChange:
    """``id=None`` adds ``line``; ``delete=True`` removes ``id``; else ``line`` replaces ``id``."""
    id: UUID | None = None
    line: CustomerInvoiceItemInput | None = None
    delete: bool = False


@dataclass(frozen=True)
class CustomerInvoiceInput:
    customer_id: UUID
    items: tuple[CustomerInvoiceItemInput, ...] = ()
    sales_order_ids: tuple[UUID, ...] = ()
    invoice_date: datetime | None = None
    due_date: datetime | None = None
    shipping_fees_ht: Decimal = Decimal("0")
    notes: str | None = None
    terms_and_conditions: str | None = None
    file_attachment_url: str | None = None


@dataclass(frozen=True)
class PaymentApplication:
    """Outcome of applying a signed amount to an invoice."""
    invoice_id: UUID
    applied: bool
    signed_amount: Decimal
    amount_paid: Decimal | None = None
    status: InvoiceStatus | None = None
