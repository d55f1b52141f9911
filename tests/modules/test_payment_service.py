"""
Tests for the payment service: recording, reversal, and the invoice
projection they drive.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from erp_config.schema import ErpSettings, PaymentSettings
from erp_kernel.exceptions import (
    EntityNotFoundError,
    InvalidDocumentError,
    InvalidQuantityError,
    InvalidReferenceError,
    PaymentAlreadyReversedError,
)
from erp_modules.invoicing.models import (
    CustomerInvoiceInput,
    CustomerInvoiceItemInput,
    InvoiceStatus,
)
from erp_modules.payments.models import PaymentInput, PaymentMethod
from erp_modules.payments.orm import PaymentModel
from erp_modules.payments.service import PaymentService


@pytest.fixture
def sent_invoice(invoice_service, refs):
    invoice = invoice_service.create_invoice(
        CustomerInvoiceInput(
            customer_id=refs.customer_id,
            items=(CustomerInvoiceItemInput(
                quantity=Decimal("2"), unit_price_ht=Decimal("50"),
                description="Delivery and assembly", vat_rate_percentage=Decimal("0"),
            ),),
        ),
        refs.user_id,
    )
    return invoice_service.change_status(invoice.id, InvoiceStatus.SENT, refs.user_id)


class TestRecordPayment:

    def test_partial_payment(self, payment_service, invoice_service, sent_invoice, refs):
        payment = payment_service.record_payment(
            PaymentInput(
                amount=Decimal("30"), customer_invoice_id=sent_invoice.id,
                payment_method=PaymentMethod.CARD, reference_number="CB-0042",
            ),
            refs.user_id,
        )

        assert payment.amount == Decimal("30")
        assert payment.payment_method is PaymentMethod.CARD
        assert not payment.is_reversed
        invoice = invoice_service.get_invoice(sent_invoice.id)
        assert invoice.status is InvoiceStatus.PARTIALLY_PAID
        assert invoice.amount_paid == Decimal("30")

    def test_amount_rounded(self, payment_service, refs):
        payment = payment_service.record_payment(
            PaymentInput(amount=Decimal("10.00005")), refs.user_id,
        )
        assert payment.amount == Decimal("10.0001")

    @pytest.mark.parametrize("amount", ["0", "-5"])
    def test_non_positive_amount(self, payment_service, refs, amount):
        with pytest.raises(InvalidQuantityError):
            payment_service.record_payment(PaymentInput(amount=Decimal(amount)), refs.user_id)

    def test_unknown_customer(self, payment_service, refs):
        with pytest.raises(InvalidReferenceError, match="Customer"):
            payment_service.record_payment(
                PaymentInput(amount=Decimal("5"), customer_id=uuid4()), refs.user_id,
            )

    def test_paid_invoice_refused(self, payment_service, sent_invoice, refs, session):
        payment_service.record_payment(
            PaymentInput(amount=Decimal("100"), customer_invoice_id=sent_invoice.id),
            refs.user_id,
        )
        with pytest.raises(InvalidDocumentError, match="cannot receive further payments"):
            payment_service.record_payment(
                PaymentInput(amount=Decimal("1"), customer_invoice_id=sent_invoice.id),
                refs.user_id,
            )
        assert session.query(PaymentModel).count() == 1

    def test_missing_invoice_records_payment(self, payment_service, refs, captured_logs):
        invoice_id = uuid4()
        payment = payment_service.record_payment(
            PaymentInput(amount=Decimal("10"), customer_invoice_id=invoice_id), refs.user_id,
        )
        assert payment.customer_invoice_id == invoice_id
        warnings = [r for r in captured_logs() if r["message"] == "payment_invoice_missing"]
        assert warnings[0]["invoice_id"] == str(invoice_id)

    def test_missing_invoice_strict(self, session, directory, deterministic_clock, refs):
        strict = PaymentService(
            session, directory, auto_commit=True, clock=deterministic_clock,
            settings=ErpSettings(payments=PaymentSettings(strict_invoice_lookup=True)),
        )
        with pytest.raises(EntityNotFoundError):
            strict.record_payment(
                PaymentInput(amount=Decimal("10"), customer_invoice_id=uuid4()), refs.user_id,
            )
        assert session.query(PaymentModel).count() == 0


class TestReversePayment:

    def test_reversal_restores_invoice(self, payment_service, invoice_service, sent_invoice, refs):
        payment = payment_service.record_payment(
            PaymentInput(
                amount=Decimal("100"), customer_invoice_id=sent_invoice.id, notes="wire",
            ),
            refs.user_id,
        )
        assert invoice_service.get_invoice(sent_invoice.id).status is InvoiceStatus.PAID

        reversed_payment = payment_service.reverse_payment(payment.id, refs.user_id)

        assert reversed_payment.is_reversed
        assert reversed_payment.notes.startswith("wire [REVERSED ")
        invoice = invoice_service.get_invoice(sent_invoice.id)
        assert invoice.status is InvoiceStatus.SENT
        assert invoice.amount_paid == Decimal("0")

    def test_partial_reversal(self, payment_service, invoice_service, sent_invoice, refs):
        first = payment_service.record_payment(
            PaymentInput(amount=Decimal("40"), customer_invoice_id=sent_invoice.id), refs.user_id,
        )
        payment_service.record_payment(
            PaymentInput(amount=Decimal("30"), customer_invoice_id=sent_invoice.id), refs.user_id,
        )
        payment_service.reverse_payment(first.id, refs.user_id)

        invoice = invoice_service.get_invoice(sent_invoice.id)
        assert invoice.status is InvoiceStatus.PARTIALLY_PAID
        assert invoice.amount_paid == Decimal("30")

    def test_double_reversal(self, payment_service, sent_invoice, refs):
        payment = payment_service.record_payment(
            PaymentInput(amount=Decimal("10"), customer_invoice_id=sent_invoice.id), refs.user_id,
        )
        payment_service.reverse_payment(payment.id, refs.user_id)

        with pytest.raises(PaymentAlreadyReversedError) as exc_info:
            payment_service.reverse_payment(payment.id, refs.user_id)
        assert exc_info.value.code == "PAYMENT_ALREADY_REVERSED"

    def test_reversal_without_invoice(self, payment_service, refs):
        payment = payment_service.record_payment(PaymentInput(amount=Decimal("5")), refs.user_id)
        reversed_payment = payment_service.reverse_payment(payment.id, refs.user_id)
        assert reversed_payment.notes.startswith("[REVERSED ")

    def test_unknown_payment(self, payment_service, refs):
        with pytest.raises(EntityNotFoundError):
            payment_service.reverse_payment(uuid4(), refs.user_id)

    def test_reversed_payment_still_readable(self, payment_service, refs):
        payment = payment_service.record_payment(PaymentInput(amount=Decimal("5")), refs.user_id)
        payment_service.reverse_payment(payment.id, refs.user_id)
        assert payment_service.get_payment(payment.id).is_reversed
