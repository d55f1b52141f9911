"""
Unit tests for the shared document helpers and numeric rounding.

Pure functions only: no database, no session.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st

from erp_kernel.db.types import coerce_sum, round_amount, round_quantity, to_decimal
from erp_kernel.domain.clock import DeterministicClock
from erp_kernel.exceptions import DocumentLockedError, InvalidQuantityError
from erp_modules._documents import (
    calculate_header_totals,
    calculate_line_total,
    check_locked_update,
    generate_document_number,
    validate_line_values,
)


@dataclass(frozen=True)
class Line:
    quantity: Decimal
    unit_price_ht: Decimal
    discount_percentage: Decimal = Decimal("0")
    vat_rate_percentage: Decimal | None = None


class TestRounding:

    def test_half_up(self):
        assert round_amount(Decimal("0.00005")) == Decimal("0.0001")
        assert round_quantity(Decimal("2.0005")) == Decimal("2.001")
        assert round_quantity(Decimal("-2.0005")) == Decimal("-2.001")

    def test_float_rejected(self):
        with pytest.raises(TypeError, match="Float"):
            to_decimal(0.1)

    def test_strings_and_ints(self):
        assert to_decimal("12.50") == Decimal("12.50")
        assert to_decimal(3) == Decimal("3")

    def test_coerce_sum(self):
        assert coerce_sum(None) == Decimal("0")
        assert coerce_sum(0.30000000000000004) == Decimal("0.30000000000000004")
        assert coerce_sum(1.5) == Decimal("1.5")
        assert coerce_sum(Decimal("4.000")) == Decimal("4.000")


class TestLineTotal:

    def test_plain(self):
        assert calculate_line_total(Decimal("3"), Decimal("10")) == Decimal("30.0000")

    def test_discount(self):
        assert calculate_line_total(
            Decimal("2"), Decimal("19.99"), Decimal("15"),
        ) == Decimal("33.9830")

    def test_rounded_to_four_places(self):
        assert calculate_line_total(Decimal("1"), Decimal("100.00005")) == Decimal("100.0001")

    def test_full_discount(self):
        assert calculate_line_total(Decimal("5"), Decimal("8"), Decimal("100")) == Decimal("0")


class TestHeaderTotals:

    def test_mixed_vat_rates_and_shipping(self):
        totals = calculate_header_totals(
            [
                Line(Decimal("3"), Decimal("10"), vat_rate_percentage=Decimal("20")),
                Line(Decimal("2"), Decimal("10"), vat_rate_percentage=Decimal("5.5")),
            ],
            Decimal("5"),
        )
        assert totals.total_amount_ht == Decimal("50")
        assert totals.total_vat_amount == Decimal("7.1")
        assert totals.total_amount_ttc == Decimal("62.1")

    def test_missing_vat_rate_is_zero(self):
        totals = calculate_header_totals([Line(Decimal("1"), Decimal("100.005"))])
        assert totals.total_vat_amount == Decimal("0")
        assert totals.total_amount_ttc == Decimal("100.0050")

    def test_no_lines(self):
        totals = calculate_header_totals([], Decimal("7.5"))
        assert totals.total_amount_ht == Decimal("0")
        assert totals.total_amount_ttc == Decimal("7.5")

    def test_shipping_not_taxed(self):
        totals = calculate_header_totals(
            [Line(Decimal("1"), Decimal("10"), vat_rate_percentage=Decimal("20"))],
            Decimal("10"),
        )
        assert totals.total_vat_amount == Decimal("2")
        assert totals.total_amount_ttc == Decimal("22")

    @given(
        lines=st.lists(
            st.builds(
                Line,
                quantity=st.decimals(min_value=Decimal("0.001"), max_value=Decimal("1000"), places=3),
                unit_price_ht=st.decimals(min_value=Decimal("0"), max_value=Decimal("10000"), places=4),
                discount_percentage=st.decimals(min_value=Decimal("0"), max_value=Decimal("100"), places=2),
                vat_rate_percentage=st.decimals(min_value=Decimal("0"), max_value=Decimal("100"), places=2),
            ),
            max_size=8,
        ),
    )
    def test_recompute_is_stable(self, lines):
        first = calculate_header_totals(lines, Decimal("3"))
        second = calculate_header_totals(lines, Decimal("3"))
        assert first == second
        assert first.total_amount_ttc == round_amount(
            first.total_amount_ht + Decimal("3") + first.total_vat_amount,
        )


class TestValidateLineValues:

    def test_valid(self):
        validate_line_values(Decimal("1"), Decimal("0"), Decimal("0"), Decimal("100"))

    @pytest.mark.parametrize("args,field", [
        ((Decimal("0"),), "quantity"),
        ((Decimal("-1"),), "quantity"),
        ((Decimal("1"), Decimal("-0.01")), "unit_price_ht"),
        ((Decimal("1"), Decimal("1"), Decimal("100.01")), "discount_percentage"),
        ((Decimal("1"), Decimal("1"), Decimal("0"), Decimal("-1")), "vat_rate_percentage"),
    ])
    def test_rejected(self, args, field):
        with pytest.raises(InvalidQuantityError, match=field):
            validate_line_values(*args)


class TestCheckLockedUpdate:

    def test_allowed_fields_pass(self):
        check_locked_update("SalesOrder", "so-1", "cancelled", {"notes": "x"}, ("notes",))

    def test_whole_update_refused(self):
        with pytest.raises(DocumentLockedError) as exc_info:
            check_locked_update(
                "CustomerInvoice", "inv-1", "paid",
                {"notes": "x", "shipping_fees_ht": 1, "due_date": None},
                ("notes", "terms_and_conditions"),
            )
        error = exc_info.value
        assert error.rejected_fields == ("due_date", "shipping_fees_ht")
        assert error.allowed_fields == ("notes", "terms_and_conditions")
        assert error.status == "paid"


class TestDocumentNumber:

    def test_prefix_and_date(self):
        clock = DeterministicClock(datetime(2024, 3, 9, 23, 30, tzinfo=timezone.utc))
        number = generate_document_number("DL", clock)
        prefix, day, suffix = number.split("-")
        assert (prefix, day) == ("DL", "20240309")
        assert len(suffix) == 8

    def test_unique(self):
        clock = DeterministicClock()
        numbers = {generate_document_number("SO", clock) for _ in range(50)}
        assert len(numbers) == 50
