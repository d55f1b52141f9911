"""
Payment Domain Models (``erp_modules.payments.models``).

Frozen value objects for recorded payments and the input that records one.
A payment is a fact on its own: it may reference an invoice, but its
existence does not depend on the invoice's lifecycle.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID


class PaymentDirection(Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class PaymentMethod(Enum):
    BANK_TRANSFER = "bank_transfer"
    CARD = "card"
    CASH = "cash"
    CHECK = "check"
    OTHER = "other"


@dataclass(frozen=True)
class Payment:
    id: UUID
    amount: Decimal
    direction: PaymentDirection
    payment_method: PaymentMethod
    payment_date: datetime
    created_by_id: UUID
    customer_invoice_id: UUID | None = None
    customer_id: UUID | None = None
    reference_number: str | None = None
    notes: str | None = None
    deleted_at: datetime | None = None

    @property
    def is_reversed(self) -> bool:
        return self.deleted_at is not None


@dataclass(frozen=True)
class PaymentInput:
    amount: Decimal
    direction: PaymentDirection = PaymentDirection.INBOUND
    payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER
    payment_date: datetime | None = None
    customer_invoice_id: UUID | None = None
    customer_id: UUID | None = None
    reference_number: str | None = None
    notes: str | None = None
