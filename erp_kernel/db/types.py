"""
Module: erp_kernel.db.types
Responsibility: Annotated type aliases and rounding helpers for quantity and
    amount columns.  Centralizes precision so that every model, calculator,
    and service rounds the same way.
Architecture position: Kernel > DB.  May be imported by domain/, services/,
    selectors/, and erp_modules.  MUST NOT import from any of those layers.

Invariants enforced:
    - Quantities carry 3 decimal places, amounts carry 4.
    - round_quantity() and round_amount() are the ONLY sanctioned rounding
      functions; both use ROUND_HALF_UP.
    - No floats.  to_decimal() rejects float input so binary fractions never
      enter a stored value.

Failure modes:
    - TypeError from to_decimal() on float input.
    - decimal.InvalidOperation on a non-numeric string.
"""

from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import Numeric


# Column types.  Quantities: 15 digits, 3 decimal places
QUANTITY = Numeric(15, 3)

# Unit prices, line totals and header totals
AMOUNT = Numeric(15, 4)

# Discount and VAT percentages
PERCENTAGE = Numeric(5, 2)

QUANTITY_DECIMAL_PLACES = 3
AMOUNT_DECIMAL_PLACES = 4

ZERO = Decimal("0")


def to_decimal(value: Decimal | int | str) -> Decimal:
    """
    Coerce an int, str, or Decimal to Decimal.

    Raises:
        TypeError: If value is a float.
    """
    if isinstance(value, float):
        raise TypeError(f"Float values are not accepted for quantities or amounts: {value!r}")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_quantity(value: Decimal | int | str, decimal_places: int = QUANTITY_DECIMAL_PLACES) -> Decimal:
    """Round a quantity to the canonical number of decimal places."""
    quantizer = Decimal(10) ** -decimal_places
    return to_decimal(value).quantize(quantizer, rounding=ROUND_HALF_UP)


def round_amount(value: Decimal | int | str, decimal_places: int = AMOUNT_DECIMAL_PLACES) -> Decimal:
    """Round a monetary amount to the canonical number of decimal places."""
    quantizer = Decimal(10) ** -decimal_places
    return to_decimal(value).quantize(quantizer, rounding=ROUND_HALF_UP)


def coerce_sum(value: object) -> Decimal:
    """
    Normalize the result of a SQL SUM() to Decimal.

    SUM over no rows yields NULL, which is treated as zero.  Some drivers
    (SQLite) hand back float for aggregated NUMERIC columns; those are
    converted through their shortest repr so no binary noise is kept.
    """
    if value is None:
        return ZERO
    if isinstance(value, float):
        return Decimal(repr(value))
    return to_decimal(value)
