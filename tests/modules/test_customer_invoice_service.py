"""
Tests for the customer invoice service.

Covers totals on free-text lines, the invoice side of quantity
reconciliation (ordered and shipped basis, delivery-derived lines), status
changes, locked-document edits, payment application, and deletion.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from erp_config.schema import ErpSettings, InvoicingSettings, PaymentSettings
from erp_kernel.exceptions import (
    DeletionNotAllowedError,
    DocumentLockedError,
    EntityNotFoundError,
    IllegalTransitionError,
    InvalidDocumentError,
    InvalidQuantityError,
    InvalidReferenceError,
    QuantityExceedsRemainingError,
    TransitionPreconditionError,
)
from erp_modules.invoicing.models import (
    CustomerInvoiceInput,
    CustomerInvoiceItemChange,
    CustomerInvoiceItemInput,
    InvoiceStatus,
)
from erp_modules.invoicing.service import CustomerInvoiceService
from erp_modules.payments.models import PaymentInput
from erp_modules.reconciliation.service import DELIVERY_ITEM


def _line(quantity, unit_price="10", **kwargs) -> CustomerInvoiceItemInput:
    return CustomerInvoiceItemInput(
        quantity=Decimal(quantity), unit_price_ht=Decimal(unit_price), **kwargs,
    )


@pytest.fixture
def make_invoice(invoice_service, refs):
    def _make(*lines, customer_id=None, **kwargs):
        return invoice_service.create_invoice(
            CustomerInvoiceInput(
                customer_id=customer_id or refs.customer_id, items=tuple(lines), **kwargs,
            ),
            refs.user_id,
        )

    return _make


def _sent(invoice_service, refs, invoice):
    return invoice_service.change_status(invoice.id, InvoiceStatus.SENT, refs.user_id)


class TestCreateInvoice:

    def test_free_text_line_paid_within_tolerance(
        self, make_invoice, invoice_service, payment_service, refs,
    ):
        invoice = make_invoice(_line(
            "1", "100.005", description="Assembly service", vat_rate_percentage=Decimal("0"),
        ))
        assert invoice.status is InvoiceStatus.DRAFT
        assert invoice.invoice_number.startswith("INV-20240101-")
        assert invoice.total_amount_ttc == Decimal("100.005")
        assert invoice.items[0].product_id is None

        _sent(invoice_service, refs, invoice)
        payment_service.record_payment(
            PaymentInput(amount=Decimal("100.00"), customer_invoice_id=invoice.id), refs.user_id,
        )

        paid = invoice_service.get_invoice(invoice.id)
        assert paid.status is InvoiceStatus.PAID
        assert paid.amount_paid == Decimal("100.005")
        assert paid.balance_due == Decimal("0")

    def test_free_text_line_needs_description(self, make_invoice):
        with pytest.raises(InvalidDocumentError, match="description"):
            make_invoice(_line("1", "50"))

    def test_product_line_defaults(self, make_invoice, refs):
        invoice = make_invoice(_line("2", "10", product_id=refs.product_id))
        line = invoice.items[0]
        assert line.description == "Oak chair"
        assert line.vat_rate_percentage == Decimal("20")
        assert invoice.total_amount_ht == Decimal("20")
        assert invoice.total_amount_ttc == Decimal("24")

    def test_invalid_line_values(self, make_invoice):
        with pytest.raises(InvalidQuantityError):
            make_invoice(_line("0", "10", description="Nothing"))

    def test_unknown_customer(self, make_invoice):
        with pytest.raises(InvalidReferenceError, match="Customer"):
            make_invoice(_line("1", description="x"), customer_id=uuid4())

    def test_order_line_sets_accumulator(self, make_order, make_invoice, sales_service):
        order = make_order("10")
        make_invoice(_line("7", sales_order_item_id=order.items[0].id))
        line = sales_service.get_order(order.id).items[0]
        assert line.quantity_invoiced == Decimal("7")

    def test_order_line_inherits_product(self, make_order, make_invoice, refs):
        order = make_order("10")
        invoice = make_invoice(_line("1", sales_order_item_id=order.items[0].id))
        line = invoice.items[0]
        assert line.product_id == refs.product_id
        assert line.vat_rate_percentage == Decimal("20")

    def test_over_invoicing_rejected(self, make_order, make_invoice):
        order = make_order("10")
        item_id = order.items[0].id
        make_invoice(_line("7", sales_order_item_id=item_id))

        with pytest.raises(QuantityExceedsRemainingError, match="remaining invoiceable") as exc_info:
            make_invoice(_line("4", sales_order_item_id=item_id))
        assert exc_info.value.remaining == Decimal("3")

    def test_lines_of_same_order_line_are_summed(self, make_order, make_invoice):
        order = make_order("10")
        item_id = order.items[0].id
        with pytest.raises(QuantityExceedsRemainingError):
            make_invoice(
                _line("6", sales_order_item_id=item_id),
                _line("5", sales_order_item_id=item_id),
            )

    def test_order_line_of_another_customer(self, make_order, make_invoice, refs):
        order = make_order("10")
        with pytest.raises(InvalidReferenceError, match="another customer"):
            make_invoice(
                _line("1", sales_order_item_id=order.items[0].id),
                customer_id=refs.other_customer_id,
            )

    def test_linked_order_of_another_customer(self, make_order, make_invoice, refs):
        order = make_order("10")
        with pytest.raises(InvalidReferenceError, match="does not belong"):
            make_invoice(
                _line("1", description="x"),
                customer_id=refs.other_customer_id,
                sales_order_ids=(order.id,),
            )

    def test_linked_orders_recorded_once(self, make_order, make_invoice):
        order = make_order("10")
        invoice = make_invoice(_line("1", description="x"), sales_order_ids=(order.id, order.id))
        assert invoice.sales_order_ids == (order.id,)


class TestDeliveryLines:

    def test_delivery_line_derives_order_line(
        self, make_order, make_delivery, make_invoice, sales_service, refs,
    ):
        order = make_order("10")
        so_item_id = order.items[0].id
        delivery = make_delivery(order, {so_item_id: "4"})

        invoice = make_invoice(_line("4", delivery_item_id=delivery.items[0].id))

        line = invoice.items[0]
        assert line.sales_order_item_id == so_item_id
        assert line.product_id == refs.product_id
        assert sales_service.get_order(order.id).items[0].quantity_invoiced == Decimal("4")

    def test_conflicting_order_line(self, make_order, make_delivery, make_invoice):
        order = make_order("10", "5")
        first, second = order.items
        delivery = make_delivery(order, {first.id: "4"})

        with pytest.raises(InvalidReferenceError, match="does not ship"):
            make_invoice(_line(
                "1", delivery_item_id=delivery.items[0].id, sales_order_item_id=second.id,
            ))

    def test_over_invoicing_delivery_line(self, make_order, make_delivery, make_invoice):
        order = make_order("10")
        delivery = make_delivery(order, {order.items[0].id: "4"})

        with pytest.raises(QuantityExceedsRemainingError) as exc_info:
            make_invoice(_line("5", delivery_item_id=delivery.items[0].id))
        assert exc_info.value.upstream_type == DELIVERY_ITEM

    def test_unknown_delivery_line(self, make_invoice):
        with pytest.raises(InvalidReferenceError, match="DeliveryItem"):
            make_invoice(_line("1", delivery_item_id=uuid4()))

    def test_cancelled_delivery_line_rejected(
        self, make_order, make_delivery, make_invoice, delivery_service, sales_service, refs,
    ):
        order = make_order("10")
        delivery = make_delivery(order, {order.items[0].id: "4"})
        delivery_service.cancel_delivery(delivery.id, refs.user_id)

        with pytest.raises(InvalidReferenceError, match="cancelled or deleted"):
            make_invoice(_line("4", delivery_item_id=delivery.items[0].id))

        line = sales_service.get_order(order.id).items[0]
        assert line.quantity_shipped == Decimal("0")
        assert line.quantity_invoiced == Decimal("0")

    def test_deleted_delivery_line_rejected(
        self, make_order, make_delivery, make_invoice, delivery_service, refs,
    ):
        order = make_order("10")
        delivery = make_delivery(order, {order.items[0].id: "4"})
        delivery_service.delete_delivery(delivery.id, refs.user_id)

        with pytest.raises(InvalidReferenceError, match="DeliveryItem"):
            make_invoice(_line("1", delivery_item_id=delivery.items[0].id))


class TestShippedBasis:

    @pytest.fixture
    def shipped_basis_service(self, session, directory, deterministic_clock):
        return CustomerInvoiceService(
            session, directory, auto_commit=True, clock=deterministic_clock,
            settings=ErpSettings(invoicing=InvoicingSettings(quantity_basis="shipped")),
        )

    def test_ceiling_is_committed_shipment(
        self, make_order, make_delivery, shipped_basis_service, refs,
    ):
        order = make_order("10")
        item_id = order.items[0].id
        data = CustomerInvoiceInput(
            customer_id=refs.customer_id, items=(_line("4", sales_order_item_id=item_id),),
        )

        with pytest.raises(QuantityExceedsRemainingError):
            shipped_basis_service.create_invoice(data, refs.user_id)

        make_delivery(order, {item_id: "4"})
        invoice = shipped_basis_service.create_invoice(data, refs.user_id)
        assert invoice.items[0].quantity == Decimal("4")


class TestUpdateInvoice:

    def test_replace_line_excludes_own_quantity(self, make_order, make_invoice,
                                                invoice_service, refs):
        order = make_order("10")
        item_id = order.items[0].id
        invoice = make_invoice(_line("10", sales_order_item_id=item_id))

        updated = invoice_service.update_invoice(
            invoice.id,
            {"items": [CustomerInvoiceItemChange(
                id=invoice.items[0].id, line=_line("10", "12", sales_order_item_id=item_id),
            )]},
            refs.user_id,
        )

        assert len(updated.items) == 1
        assert updated.total_amount_ht == Decimal("120")

    def test_delete_line_releases_quantity(self, make_order, make_invoice, invoice_service,
                                           sales_service, refs):
        order = make_order("10")
        invoice = make_invoice(
            _line("3", sales_order_item_id=order.items[0].id),
            _line("1", description="Packaging"),
        )
        updated = invoice_service.update_invoice(
            invoice.id,
            {"items": [CustomerInvoiceItemChange(id=invoice.items[0].id, delete=True)]},
            refs.user_id,
        )

        assert [line.description for line in updated.items] == ["Packaging"]
        assert sales_service.get_order(order.id).items[0].quantity_invoiced == Decimal("0")

    def test_lines_frozen_once_sent(self, make_invoice, invoice_service, refs):
        invoice = make_invoice(_line("1", description="x"))
        _sent(invoice_service, refs, invoice)

        with pytest.raises(DocumentLockedError) as exc_info:
            invoice_service.update_invoice(
                invoice.id,
                {"items": [CustomerInvoiceItemChange(id=invoice.items[0].id, delete=True)]},
                refs.user_id,
            )
        assert exc_info.value.rejected_fields == ("items",)

    def test_paid_invoice_refuses_whole_update(self, make_invoice, invoice_service, refs):
        invoice = make_invoice(_line("1", "20", description="x", vat_rate_percentage=Decimal("0")))
        _sent(invoice_service, refs, invoice)
        invoice_service.apply_payment(invoice.id, Decimal("20"), refs.user_id)

        with pytest.raises(DocumentLockedError) as exc_info:
            invoice_service.update_invoice(
                invoice.id, {"notes": "late fee waived", "items": []}, refs.user_id,
            )
        assert exc_info.value.rejected_fields == ("items",)
        assert invoice_service.get_invoice(invoice.id).notes is None

        updated = invoice_service.update_invoice(
            invoice.id, {"notes": "late fee waived"}, refs.user_id,
        )
        assert updated.notes == "late fee waived"

    def test_unknown_field(self, make_invoice, invoice_service, refs):
        invoice = make_invoice(_line("1", description="x"))
        with pytest.raises(InvalidDocumentError, match="unknown fields"):
            invoice_service.update_invoice(invoice.id, {"amount_paid": 5}, refs.user_id)


class TestStatus:

    def test_send_without_lines(self, make_invoice, invoice_service, refs):
        invoice = make_invoice()
        with pytest.raises(TransitionPreconditionError, match="no lines"):
            _sent(invoice_service, refs, invoice)

    def test_send_requires_draft(self, make_invoice, invoice_service, refs):
        invoice = make_invoice(_line("1", "20", description="x"))
        _sent(invoice_service, refs, invoice)
        invoice_service.apply_payment(invoice.id, Decimal("5"), refs.user_id)

        with pytest.raises(TransitionPreconditionError, match="draft"):
            _sent(invoice_service, refs, invoice)

    def test_transition_not_in_table(self, make_invoice, invoice_service, refs):
        invoice = make_invoice(_line("1", description="x"))
        with pytest.raises(IllegalTransitionError):
            invoice_service.change_status(invoice.id, InvoiceStatus.PAID, refs.user_id)

    def test_terminal_state(self, make_invoice, invoice_service, refs):
        invoice = make_invoice(_line("1", description="x"))
        invoice_service.change_status(invoice.id, InvoiceStatus.CANCELLED, refs.user_id)
        with pytest.raises(IllegalTransitionError):
            invoice_service.change_status(invoice.id, InvoiceStatus.DRAFT, refs.user_id)

    def test_mark_paid_with_mismatch_is_logged(self, make_invoice, invoice_service, refs,
                                               captured_logs):
        invoice = make_invoice(_line("3", "10", description="x", vat_rate_percentage=Decimal("20")))
        _sent(invoice_service, refs, invoice)

        paid = invoice_service.change_status(invoice.id, InvoiceStatus.PAID, refs.user_id)

        assert paid.status is InvoiceStatus.PAID
        warnings = [r for r in captured_logs() if r["message"] == "invoice_paid_amount_mismatch"]
        assert len(warnings) == 1
        assert Decimal(warnings[0]["difference"]) == Decimal("36")

    def test_void_releases_quantity(self, make_order, make_invoice, invoice_service,
                                    sales_service, refs):
        order = make_order("10")
        item_id = order.items[0].id
        invoice = make_invoice(_line("7", sales_order_item_id=item_id))
        _sent(invoice_service, refs, invoice)

        voided = invoice_service.change_status(invoice.id, InvoiceStatus.VOIDED, refs.user_id)

        assert voided.status is InvoiceStatus.VOIDED
        assert sales_service.get_order(order.id).items[0].quantity_invoiced == Decimal("0")
        make_invoice(_line("10", sales_order_item_id=item_id))


class TestApplyPayment:

    @pytest.fixture
    def sent_invoice(self, make_invoice, invoice_service, refs):
        invoice = make_invoice(_line("1", "100", description="x", vat_rate_percentage=Decimal("0")))
        return _sent(invoice_service, refs, invoice)

    def test_partial_then_full(self, sent_invoice, invoice_service, refs):
        partial = invoice_service.apply_payment(sent_invoice.id, Decimal("40"), refs.user_id)
        assert partial.applied
        assert partial.status is InvoiceStatus.PARTIALLY_PAID
        assert partial.amount_paid == Decimal("40")

        full = invoice_service.apply_payment(sent_invoice.id, Decimal("60"), refs.user_id)
        assert full.status is InvoiceStatus.PAID

    def test_overpayment_pinned_to_total(self, sent_invoice, invoice_service, refs):
        result = invoice_service.apply_payment(sent_invoice.id, Decimal("150"), refs.user_id)
        assert result.status is InvoiceStatus.PAID
        assert result.amount_paid == Decimal("100")

    def test_reversal_back_to_sent(self, sent_invoice, invoice_service, refs):
        invoice_service.apply_payment(sent_invoice.id, Decimal("40"), refs.user_id)
        result = invoice_service.apply_payment(sent_invoice.id, Decimal("-40"), refs.user_id)
        assert result.status is InvoiceStatus.SENT
        assert result.amount_paid == Decimal("0")

    def test_voided_invoice_keeps_status(self, sent_invoice, invoice_service, refs):
        invoice_service.change_status(sent_invoice.id, InvoiceStatus.VOIDED, refs.user_id)
        result = invoice_service.apply_payment(sent_invoice.id, Decimal("30"), refs.user_id)
        assert result.status is InvoiceStatus.VOIDED
        assert result.amount_paid == Decimal("30")

    def test_missing_invoice_skipped(self, invoice_service, refs, captured_logs):
        result = invoice_service.apply_payment(uuid4(), Decimal("10"), refs.user_id)
        assert not result.applied
        assert any(r["message"] == "payment_invoice_missing" for r in captured_logs())

    def test_missing_invoice_strict(self, session, directory, deterministic_clock, refs):
        strict = CustomerInvoiceService(
            session, directory, auto_commit=True, clock=deterministic_clock,
            settings=ErpSettings(payments=PaymentSettings(strict_invoice_lookup=True)),
        )
        with pytest.raises(EntityNotFoundError):
            strict.apply_payment(uuid4(), Decimal("10"), refs.user_id)


class TestDeleteInvoice:

    def test_delete_draft_releases(self, make_order, make_invoice, invoice_service,
                                   sales_service, refs):
        order = make_order("10")
        invoice = make_invoice(_line("5", sales_order_item_id=order.items[0].id))
        invoice_service.delete_invoice(invoice.id, refs.user_id)

        with pytest.raises(EntityNotFoundError):
            invoice_service.get_invoice(invoice.id)
        assert sales_service.get_order(order.id).items[0].quantity_invoiced == Decimal("0")

    def test_delete_sent_refused(self, make_invoice, invoice_service, refs):
        invoice = make_invoice(_line("1", description="x"))
        _sent(invoice_service, refs, invoice)
        with pytest.raises(DeletionNotAllowedError, match="void it instead"):
            invoice_service.delete_invoice(invoice.id, refs.user_id)

    def test_delete_cancelled(self, make_invoice, invoice_service, refs):
        invoice = make_invoice(_line("1", description="x"))
        invoice_service.change_status(invoice.id, InvoiceStatus.CANCELLED, refs.user_id)
        invoice_service.delete_invoice(invoice.id, refs.user_id)
        with pytest.raises(EntityNotFoundError):
            invoice_service.get_invoice(invoice.id)
