"""
Payment Service (``erp_modules.payments.service``).

Responsibility
--------------
Records payments and reverses them.  Each write runs payment application
on the referenced customer invoice in the same unit of work.

Architecture
------------
Layer: **Modules** -- ``TransactionalService``.  Owns a
``CustomerInvoiceService`` built with ``auto_commit=False`` over the same
session; its ``apply_payment`` flushes only, and this service commits.

Invariants
----------
- ``amount`` is strictly positive; a reversal applies ``-amount``.
- A reversal soft-deletes the payment and appends a
  ``[REVERSED <timestamp>]`` marker to its notes; the row is kept.
- A payment is reversed at most once.

Failure Modes
-------------
- ``InvalidQuantityError``: non-positive amount.
- ``InvalidDocumentError``: the invoice no longer accepts payments.
- ``PaymentAlreadyReversedError``: second reversal of the same payment.
- ``EntityNotFoundError``: unknown payment, or, with
  ``payments.strict_invoice_lookup`` on, unknown invoice.
"""

from __future__ import annotations

from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from erp_config.schema import ErpSettings
from erp_kernel.db.types import round_amount, to_decimal
from erp_kernel.domain.clock import Clock, SystemClock
from erp_kernel.exceptions import (
    DocumentReloadError,
    EntityNotFoundError,
    InvalidDocumentError,
    InvalidQuantityError,
    InvalidReferenceError,
    PaymentAlreadyReversedError,
)
from erp_kernel.logging_config import LogContext, get_logger
from erp_kernel.services.base import TransactionalService
from erp_modules.invoicing.models import InvoiceStatus
from erp_modules.invoicing.orm import CustomerInvoiceModel
from erp_modules.invoicing.service import CustomerInvoiceService
from erp_modules.payments.models import Payment, PaymentInput
from erp_modules.payments.orm import PaymentModel
from erp_modules.reference.directory import ReferenceDirectory

logger = get_logger("modules.payments.service")

DOCUMENT_TYPE = "Payment"

# Invoices in these states accept no new payment.
CLOSED_INVOICE_STATUSES = frozenset({
    InvoiceStatus.PAID,
    InvoiceStatus.VOIDED,
    InvoiceStatus.CANCELLED,
})


class PaymentService(TransactionalService):
    """Payment recording and reversal."""

    def __init__(
        self,
        session: Session,
        directory: ReferenceDirectory,
        *,
        auto_commit: bool,
        clock: Clock | None = None,
        settings: ErpSettings | None = None,
    ):
        super().__init__(session, auto_commit=auto_commit)
        self._directory = directory
        self._clock = clock or SystemClock()
        self._invoices = CustomerInvoiceService(
            session, directory, auto_commit=False, clock=self._clock, settings=settings,
        )

    def record_payment(self, data: PaymentInput, acting_user_id: UUID) -> Payment:
        """
        Persist a payment and apply it to its invoice, if any.

        A referenced invoice that does not exist is left to payment
        application: logged and skipped, or refused in strict mode.
        """
        with self._unit_of_work("record_payment", DOCUMENT_TYPE):
            if self._directory.find_user(acting_user_id) is None:
                raise InvalidReferenceError("User", str(acting_user_id), "does not exist")
            amount = round_amount(to_decimal(data.amount))
            if amount <= 0:
                raise InvalidQuantityError("amount", amount, "must be positive")
            if data.customer_id is not None and self._directory.find_customer(data.customer_id) is None:
                raise InvalidReferenceError("Customer", str(data.customer_id), "does not exist")
            if data.customer_invoice_id is not None:
                self._require_open_invoice(data.customer_invoice_id)

            payment = PaymentModel(
                id=uuid4(),
                amount=amount,
                direction=data.direction.value,
                payment_method=data.payment_method.value,
                payment_date=data.payment_date or self._clock.now(),
                customer_invoice_id=data.customer_invoice_id,
                customer_id=data.customer_id,
                reference_number=data.reference_number,
                notes=data.notes,
                created_by_id=acting_user_id,
            )
            self.session.add(payment)
            self.session.flush()

            with LogContext.bind(document_id=payment.id, actor_id=acting_user_id):
                logger.info(
                    "payment_recorded",
                    extra={
                        "amount": str(amount),
                        "direction": payment.direction,
                        "customer_invoice_id": (
                            str(payment.customer_invoice_id)
                            if payment.customer_invoice_id else None
                        ),
                    },
                )
                if payment.customer_invoice_id is not None:
                    self._invoices.apply_payment(
                        payment.customer_invoice_id, amount, acting_user_id,
                    )
        return self._reload(payment.id)

    def reverse_payment(self, payment_id: UUID, acting_user_id: UUID) -> Payment:
        """Undo a payment's effect on its invoice and soft-delete it."""
        with self._unit_of_work("reverse_payment", DOCUMENT_TYPE, payment_id):
            if self._directory.find_user(acting_user_id) is None:
                raise InvalidReferenceError("User", str(acting_user_id), "does not exist")
            stmt = select(PaymentModel).where(PaymentModel.id == payment_id).with_for_update()
            payment = self.session.scalars(stmt).first()
            if payment is None:
                raise EntityNotFoundError(DOCUMENT_TYPE, str(payment_id))
            if payment.deleted_at is not None:
                raise PaymentAlreadyReversedError(str(payment.id))

            logger.warning(
                "payment_reversal_requested",
                extra={
                    "payment_id": str(payment.id),
                    "amount": str(payment.amount),
                    "actor_id": str(acting_user_id),
                },
            )
            if payment.customer_invoice_id is not None:
                self._invoices.apply_payment(
                    payment.customer_invoice_id, -payment.amount, acting_user_id,
                )

            now = self._clock.now()
            marker = f"[REVERSED {now.isoformat()}]"
            payment.notes = f"{payment.notes} {marker}" if payment.notes else marker
            payment.deleted_at = now
            payment.updated_by_id = acting_user_id
            logger.info(
                "payment_reversed",
                extra={"payment_id": str(payment.id), "actor_id": str(acting_user_id)},
            )
        return self._reload(payment.id)

    def get_payment(self, payment_id: UUID) -> Payment:
        """Reversed payments are returned too; see ``Payment.is_reversed``."""
        payment = self.session.get(PaymentModel, payment_id)
        if payment is None:
            raise EntityNotFoundError(DOCUMENT_TYPE, str(payment_id))
        return payment.to_dto()

    def _require_open_invoice(self, invoice_id: UUID) -> None:
        invoice = self.session.get(CustomerInvoiceModel, invoice_id)
        if invoice is None or invoice.deleted_at is not None:
            return
        if invoice.status_enum in CLOSED_INVOICE_STATUSES:
            raise InvalidDocumentError(
                DOCUMENT_TYPE, None,
                f"invoice {invoice.invoice_number} is already {invoice.status} "
                f"and cannot receive further payments",
            )

    def _reload(self, payment_id: UUID) -> Payment:
        payment = self.session.get(PaymentModel, payment_id)
        if payment is None:
            raise DocumentReloadError(DOCUMENT_TYPE, str(payment_id))
        return payment.to_dto()
