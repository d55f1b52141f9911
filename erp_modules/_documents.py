"""
Shared document helpers (``erp_modules._documents``).

Responsibility
--------------
Pure functions used by the sales order, delivery, and customer invoice
services: line and header total calculation, document number generation,
line value validation, and the locked-document allow-list check.

Architecture
------------
Layer: **Modules** -- pure helpers.  ZERO I/O.  Totals are always recomputed
from current line state; client-supplied totals are never trusted.

Invariants
----------
- line_total = quantity * unit_price * (1 - discount / 100), 4 dp.
- total_amount_ht = sum of line totals; total_vat_amount = sum of
  line_total * vat_rate / 100; total_amount_ttc = ht + shipping + vat.
  All rounded to 4 dp with ROUND_HALF_UP.
- Recomputing twice from the same lines yields identical totals.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol
from uuid import uuid4

from erp_kernel.db.types import ZERO, round_amount, to_decimal
from erp_kernel.domain.clock import Clock
from erp_kernel.exceptions import DocumentLockedError, InvalidQuantityError

HUNDRED = Decimal("100")


class PricedLine(Protocol):
    """Anything with the fields a line total is computed from."""

    quantity: Decimal
    unit_price_ht: Decimal
    discount_percentage: Decimal
    vat_rate_percentage: Decimal | None


@dataclass(frozen=True)
class DocumentTotals:
    total_amount_ht: Decimal
    total_vat_amount: Decimal
    total_amount_ttc: Decimal


def calculate_line_total(
    quantity: Decimal,
    unit_price: Decimal,
    discount_percentage: Decimal | None = None,
) -> Decimal:
    """quantity * unit_price * (1 - discount / 100), rounded to 4 dp."""
    discount = to_decimal(discount_percentage) if discount_percentage is not None else ZERO
    gross = to_decimal(quantity) * to_decimal(unit_price)
    return round_amount(gross * (1 - discount / HUNDRED))


def calculate_header_totals(
    lines: Iterable[PricedLine],
    shipping_fees_ht: Decimal | None = None,
) -> DocumentTotals:
    """Recompute header totals from line state."""
    total_ht = ZERO
    total_vat = ZERO
    for line in lines:
        line_total = calculate_line_total(
            line.quantity, line.unit_price_ht, line.discount_percentage,
        )
        total_ht += line_total
        vat_rate = line.vat_rate_percentage or ZERO
        total_vat += line_total * to_decimal(vat_rate) / HUNDRED
    shipping = to_decimal(shipping_fees_ht) if shipping_fees_ht is not None else ZERO

    total_ht = round_amount(total_ht)
    total_vat = round_amount(total_vat)
    return DocumentTotals(
        total_amount_ht=total_ht,
        total_vat_amount=total_vat,
        total_amount_ttc=round_amount(total_ht + shipping + total_vat),
    )


def generate_document_number(prefix: str, clock: Clock) -> str:
    """e.g. ``SO-20240101-1a2b3c4d``."""
    return f"{prefix}-{clock.today():%Y%m%d}-{uuid4().hex[:8]}"


def validate_line_values(
    quantity: Decimal,
    unit_price: Decimal | None = None,
    discount_percentage: Decimal | None = None,
    vat_rate_percentage: Decimal | None = None,
) -> None:
    """
    Reject out-of-range line values.

    Raises:
        InvalidQuantityError: quantity <= 0, unit price < 0, or a percentage
            outside [0, 100].
    """
    if quantity is None or quantity <= 0:
        raise InvalidQuantityError("quantity", quantity, "must be positive")
    if unit_price is not None and unit_price < 0:
        raise InvalidQuantityError("unit_price_ht", unit_price, "must be >= 0")
    for field_name, value in (
        ("discount_percentage", discount_percentage),
        ("vat_rate_percentage", vat_rate_percentage),
    ):
        if value is not None and not ZERO <= value <= HUNDRED:
            raise InvalidQuantityError(field_name, value, "must be between 0 and 100")


def check_locked_update(
    document_type: str,
    document_id: object,
    status: str,
    changes: Mapping[str, object],
    allowed_fields: Iterable[str],
) -> None:
    """
    Refuse the whole update if it touches any field outside the allow-list.

    Raises:
        DocumentLockedError: with every rejected field listed.
    """
    allowed = tuple(allowed_fields)
    rejected = tuple(sorted(key for key in changes if key not in allowed))
    if rejected:
        raise DocumentLockedError(
            document_type=document_type,
            document_id=str(document_id),
            status=status,
            rejected_fields=rejected,
            allowed_fields=allowed,
        )
