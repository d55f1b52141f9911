"""
Customer Invoice Service (``erp_modules.invoicing.service``).

Responsibility
--------------
Creates and edits customer invoices, drives their status, and applies
payments (and payment reversals) to their paid amount.

Architecture
------------
Layer: **Modules** -- ``TransactionalService``.  Uses the
``QuantityReconciliationTracker`` for the invoice side of quantity
reconciliation.  ``PaymentService`` calls ``apply_payment`` on an instance
built with ``auto_commit=False`` over its own session, so a payment and its
invoice projection commit together.

Invariants
----------
- An invoice line that references a delivery line also references that
  delivery line's sales order line.
- Invoiced quantities fit in the remaining invoiceable quantity of every
  upstream line they reference, computed against *other* invoices only.
- ``quantity_invoiced`` is re-summed whenever lines change or the invoice
  is voided, cancelled, or deleted.
- ``amount_paid`` never exceeds ``total_amount_ttc``; a balance within the
  tolerance pins it to the total.

Failure Modes
-------------
- ``QuantityExceedsRemainingError``: over-invoicing an upstream line.
- ``DocumentLockedError``: any non-allow-listed field on a paid, voided or
  cancelled invoice, or lines / links on a non-draft invoice.
- ``IllegalTransitionError`` / ``TransitionPreconditionError``: refused
  status changes.
- ``EntityNotFoundError``: ``apply_payment`` against a missing invoice with
  ``payments.strict_invoice_lookup`` on.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from erp_config.schema import ErpSettings
from erp_kernel.db.types import ZERO, round_amount, round_quantity
from erp_kernel.domain.clock import Clock, SystemClock
from erp_kernel.exceptions import (
    DeletionNotAllowedError,
    DocumentLockedError,
    DocumentReloadError,
    EntityNotFoundError,
    IllegalTransitionError,
    InvalidDocumentError,
    InvalidReferenceError,
    TransitionPreconditionError,
)
from erp_kernel.logging_config import LogContext, get_logger
from erp_kernel.services.base import TransactionalService
from erp_modules._documents import (
    calculate_header_totals,
    calculate_line_total,
    check_locked_update,
    generate_document_number,
    validate_line_values,
)
from erp_modules.deliveries.models import DeliveryStatus
from erp_modules.deliveries.orm import DeliveryItemModel
from erp_modules.invoicing.models import (
    RELEASED_STATUSES,
    CustomerInvoice,
    CustomerInvoiceInput,
    CustomerInvoiceItemChange,
    CustomerInvoiceItemInput,
    InvoiceStatus,
    PaymentApplication,
)
from erp_modules.invoicing.orm import (
    CustomerInvoiceItemModel,
    CustomerInvoiceModel,
    CustomerInvoiceSalesOrderModel,
)
from erp_modules.invoicing.workflows import CUSTOMER_INVOICE_WORKFLOW
from erp_modules.reconciliation.models import ReconciliationEffect
from erp_modules.reconciliation.service import (
    DELIVERY_ITEM,
    SALES_ORDER_ITEM,
    QuantityReconciliationTracker,
)
from erp_modules.reference.directory import ReferenceDirectory, resolve_product
from erp_modules.sales.orm import SalesOrderItemModel, SalesOrderModel

logger = get_logger("modules.invoicing.service")

DOCUMENT_TYPE = "CustomerInvoice"
INVOICE_NUMBER_PREFIX = "INV"

UPDATABLE_FIELDS = frozenset({
    "invoice_date",
    "due_date",
    "shipping_fees_ht",
    "notes",
    "terms_and_conditions",
    "file_attachment_url",
    "items",
    "sales_order_ids",
})

DRAFT_ONLY_FIELDS = frozenset({"items", "sales_order_ids"})

DELETABLE_STATUSES = frozenset({InvoiceStatus.DRAFT, InvoiceStatus.CANCELLED})


@dataclass(frozen=True)
class _LineRef:
    """The reconciliation-relevant part of one invoice line."""
    quantity: Decimal
    sales_order_item_id: UUID | None
    delivery_item_id: UUID | None


class CustomerInvoiceService(TransactionalService):
    """
    Customer invoice lifecycle, the invoice side of quantity reconciliation,
    and payment application.
    """

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
        self._settings = settings or ErpSettings()
        self._tracker = QuantityReconciliationTracker(session, self._settings)

    @property
    def tolerance(self) -> Decimal:
        return self._settings.amounts.tolerance

    # =========================================================================
    # Create / update
    # =========================================================================

    def create_invoice(self, data: CustomerInvoiceInput, acting_user_id: UUID) -> CustomerInvoice:
        """
        Create a draft invoice.

        Lines referencing upstream lines consume their remaining invoiceable
        quantity immediately.
        """
        with self._unit_of_work("create_invoice", DOCUMENT_TYPE):
            self._require_user(acting_user_id)
            if self._directory.find_customer(data.customer_id) is None:
                raise InvalidReferenceError("Customer", str(data.customer_id), "does not exist")
            self._require_customer_orders(data.sales_order_ids, data.customer_id)

            so_items, delivery_items = self._lock_upstream(data.items, data.customer_id)
            refs = [self._line_ref(line, delivery_items) for line in data.items]
            self._check_within_remaining(refs, so_items, delivery_items, excluding_invoice_id=None)

            invoice = CustomerInvoiceModel(
                id=uuid4(),
                invoice_number=generate_document_number(INVOICE_NUMBER_PREFIX, self._clock),
                customer_id=data.customer_id,
                status=InvoiceStatus.DRAFT.value,
                invoice_date=data.invoice_date or self._clock.now(),
                due_date=data.due_date,
                shipping_fees_ht=round_amount(data.shipping_fees_ht or ZERO),
                amount_paid=ZERO,
                notes=data.notes,
                terms_and_conditions=data.terms_and_conditions,
                file_attachment_url=data.file_attachment_url,
                created_by_id=acting_user_id,
            )
            for line_number, (line, ref) in enumerate(zip(data.items, refs), start=1):
                invoice.items.append(self._build_line(
                    line, ref, so_items, line_number, acting_user_id,
                ))
            for sales_order_id in dict.fromkeys(data.sales_order_ids):
                invoice.sales_order_links.append(CustomerInvoiceSalesOrderModel(
                    id=uuid4(),
                    sales_order_id=sales_order_id,
                    created_by_id=acting_user_id,
                ))
            self._apply_totals(invoice)
            self.session.add(invoice)
            self.session.flush()

            self._tracker.recompute_for_items(so_items, ReconciliationEffect.INVOICE)

            with LogContext.bind(document_id=invoice.id, actor_id=acting_user_id):
                logger.info(
                    "invoice_created",
                    extra={
                        "invoice_number": invoice.invoice_number,
                        "customer_id": str(invoice.customer_id),
                        "line_count": len(invoice.items),
                        "total_amount_ttc": str(invoice.total_amount_ttc),
                    },
                )
        return self._reload(invoice.id)

    def update_invoice(
        self,
        invoice_id: UUID,
        changes: Mapping[str, object],
        acting_user_id: UUID,
    ) -> CustomerInvoice:
        """
        Apply a partial update.

        On a paid, voided, or cancelled invoice the whole update is refused
        if any key falls outside ``invoicing.locked_editable_fields``.
        ``items`` (an iterable of ``CustomerInvoiceItemChange``) and
        ``sales_order_ids`` are accepted in draft only.
        """
        with self._unit_of_work("update_invoice", DOCUMENT_TYPE, invoice_id):
            self._require_user(acting_user_id)
            unknown = sorted(set(changes) - UPDATABLE_FIELDS)
            if unknown:
                raise InvalidDocumentError(
                    DOCUMENT_TYPE, str(invoice_id), f"unknown fields: {', '.join(unknown)}",
                )

            invoice = self._load(invoice_id, for_update=True)
            if CUSTOMER_INVOICE_WORKFLOW.is_locked(invoice.status):
                check_locked_update(
                    DOCUMENT_TYPE, invoice.id, invoice.status, changes,
                    self._settings.invoicing.locked_editable_fields,
                )
            touched = sorted(DRAFT_ONLY_FIELDS & set(changes))
            if touched and invoice.status_enum is not InvoiceStatus.DRAFT:
                raise DocumentLockedError(
                    document_type=DOCUMENT_TYPE,
                    document_id=str(invoice.id),
                    status=invoice.status,
                    rejected_fields=tuple(touched),
                    allowed_fields=tuple(sorted(UPDATABLE_FIELDS - DRAFT_ONLY_FIELDS)),
                )

            if "sales_order_ids" in changes:
                self._replace_links(invoice, changes["sales_order_ids"], acting_user_id)
            for field_name in ("invoice_date", "due_date", "notes",
                               "terms_and_conditions", "file_attachment_url"):
                if field_name in changes:
                    setattr(invoice, field_name, changes[field_name])
            if "shipping_fees_ht" in changes:
                invoice.shipping_fees_ht = round_amount(changes["shipping_fees_ht"] or ZERO)
            if "items" in changes:
                self._apply_line_changes(invoice, changes["items"], acting_user_id)

            self._apply_totals(invoice)
            invoice.updated_by_id = acting_user_id
            logger.info(
                "invoice_updated",
                extra={
                    "invoice_id": str(invoice.id),
                    "fields": sorted(changes),
                    "actor_id": str(acting_user_id),
                },
            )
        return self._reload(invoice.id)

    def _replace_links(
        self,
        invoice: CustomerInvoiceModel,
        sales_order_ids: Iterable[UUID],
        acting_user_id: UUID,
    ) -> None:
        wanted = list(dict.fromkeys(sales_order_ids))
        self._require_customer_orders(wanted, invoice.customer_id)
        existing = {link.sales_order_id: link for link in invoice.sales_order_links}
        for sales_order_id, link in existing.items():
            if sales_order_id not in wanted:
                invoice.sales_order_links.remove(link)
        for sales_order_id in wanted:
            if sales_order_id not in existing:
                invoice.sales_order_links.append(CustomerInvoiceSalesOrderModel(
                    id=uuid4(),
                    sales_order_id=sales_order_id,
                    created_by_id=acting_user_id,
                ))

    def _apply_line_changes(
        self,
        invoice: CustomerInvoiceModel,
        line_changes: Iterable[CustomerInvoiceItemChange],
        acting_user_id: UUID,
    ) -> None:
        line_changes = list(line_changes)
        current = {line.id: line for line in invoice.active_items}

        # Final line set first; rows are touched only once it passes.
        kept: dict[UUID, _LineRef] = {
            line.id: _LineRef(line.quantity, line.sales_order_item_id, line.delivery_item_id)
            for line in current.values()
        }
        incoming: list[CustomerInvoiceItemInput] = []
        for change in line_changes:
            if change.id is not None and change.id not in current:
                raise InvalidReferenceError(
                    "CustomerInvoiceItem", str(change.id),
                    f"is not a line of invoice {invoice.invoice_number}",
                )
            if change.id is not None:
                kept.pop(change.id)
            if change.delete:
                if change.id is None:
                    raise InvalidDocumentError(
                        DOCUMENT_TYPE, str(invoice.id), "a deleted line needs its id",
                    )
                continue
            if change.line is None:
                raise InvalidDocumentError(
                    DOCUMENT_TYPE, str(invoice.id), "a new or replaced line needs its values",
                )
            incoming.append(change.line)

        so_items, delivery_items = self._lock_upstream(
            incoming,
            invoice.customer_id,
            extra_so_item_ids=[line.sales_order_item_id for line in current.values()],
        )
        incoming_refs = [self._line_ref(line, delivery_items) for line in incoming]
        self._check_within_remaining(
            list(kept.values()) + incoming_refs,
            so_items,
            delivery_items,
            excluding_invoice_id=invoice.id,
        )

        now = self._clock.now()
        for line_id, line in current.items():
            if line_id not in kept:
                line.deleted_at = now
                line.updated_by_id = acting_user_id
        next_line = max((line.line_number for line in invoice.items), default=0) + 1
        for line, ref in zip(incoming, incoming_refs):
            invoice.items.append(self._build_line(
                line, ref, so_items, next_line, acting_user_id,
            ))
            next_line += 1
        self.session.flush()

        self._tracker.recompute_for_items(so_items, ReconciliationEffect.INVOICE)

    # =========================================================================
    # Status
    # =========================================================================

    def change_status(
        self,
        invoice_id: UUID,
        target: InvoiceStatus,
        acting_user_id: UUID,
    ) -> CustomerInvoice:
        """
        Explicit status change.

        Marking paid with a paid amount off by more than the tolerance is
        logged, not refused.  Voiding or cancelling releases the invoiced
        quantity.
        """
        with self._unit_of_work("change_status", DOCUMENT_TYPE, invoice_id):
            self._require_user(acting_user_id)
            invoice = self._load(invoice_id, for_update=True)
            current = invoice.status_enum
            if target is current:
                return invoice.to_dto()
            self._validate_transition(invoice, current, target)

            if target is InvoiceStatus.PAID:
                difference = abs(invoice.total_amount_ttc - invoice.amount_paid)
                if difference > self.tolerance:
                    logger.warning(
                        "invoice_paid_amount_mismatch",
                        extra={
                            "invoice_id": str(invoice.id),
                            "invoice_number": invoice.invoice_number,
                            "total_amount_ttc": str(invoice.total_amount_ttc),
                            "amount_paid": str(invoice.amount_paid),
                            "difference": str(difference),
                        },
                    )

            invoice.status = target.value
            invoice.updated_by_id = acting_user_id
            if target in RELEASED_STATUSES:
                self._release_lines(invoice)

            logger.info(
                "invoice_status_changed",
                extra={
                    "invoice_id": str(invoice.id),
                    "invoice_number": invoice.invoice_number,
                    "from_status": current.value,
                    "to_status": target.value,
                    "actor_id": str(acting_user_id),
                },
            )
        return self._reload(invoice.id)

    def _validate_transition(
        self,
        invoice: CustomerInvoiceModel,
        current: InvoiceStatus,
        target: InvoiceStatus,
    ) -> None:
        if CUSTOMER_INVOICE_WORKFLOW.is_terminal(current.value):
            raise IllegalTransitionError(DOCUMENT_TYPE, str(invoice.id), current.value, target.value)
        if target is InvoiceStatus.SENT and current is not InvoiceStatus.DRAFT:
            raise TransitionPreconditionError(
                DOCUMENT_TYPE, str(invoice.id), current.value, target.value,
                "invoice must be in draft to be sent",
            )
        transition = CUSTOMER_INVOICE_WORKFLOW.find_transition(current.value, target.value)
        if transition is None:
            raise IllegalTransitionError(DOCUMENT_TYPE, str(invoice.id), current.value, target.value)
        if transition.guard is not None and not invoice.active_items:
            raise TransitionPreconditionError(
                DOCUMENT_TYPE, str(invoice.id), current.value, target.value,
                "invoice has no lines",
            )

    def _release_lines(self, invoice: CustomerInvoiceModel) -> None:
        so_items = self._tracker.lock_sales_order_items(
            line.sales_order_item_id
            for line in invoice.active_items
            if line.sales_order_item_id is not None
        )
        self.session.flush()
        self._tracker.recompute_for_items(so_items, ReconciliationEffect.INVOICE)

    # =========================================================================
    # Payment application
    # =========================================================================

    def apply_payment(
        self,
        invoice_id: UUID,
        signed_amount: Decimal,
        acting_user_id: UUID,
    ) -> PaymentApplication:
        """
        Add ``signed_amount`` (negative for a reversal) to ``amount_paid``
        and derive the payment status.

        A missing invoice is logged and skipped unless
        ``payments.strict_invoice_lookup`` is on.  Voided and cancelled
        invoices record the amount but keep their status.
        """
        with self._unit_of_work("apply_payment", DOCUMENT_TYPE, invoice_id):
            stmt = (
                select(CustomerInvoiceModel)
                .where(
                    CustomerInvoiceModel.id == invoice_id,
                    CustomerInvoiceModel.deleted_at.is_(None),
                )
                .execution_options(populate_existing=True)
                .with_for_update()
            )
            invoice = self.session.scalars(stmt).first()
            if invoice is None:
                if self._settings.payments.strict_invoice_lookup:
                    raise EntityNotFoundError(DOCUMENT_TYPE, str(invoice_id))
                logger.warning(
                    "payment_invoice_missing",
                    extra={
                        "invoice_id": str(invoice_id),
                        "signed_amount": str(signed_amount),
                        "actor_id": str(acting_user_id),
                    },
                )
                return PaymentApplication(
                    invoice_id=invoice_id, applied=False, signed_amount=signed_amount,
                )

            previous_status = invoice.status
            previous_paid = invoice.amount_paid
            paid = round_amount(invoice.amount_paid + signed_amount)
            total = invoice.total_amount_ttc

            if invoice.status_enum in RELEASED_STATUSES:
                invoice.amount_paid = max(paid, ZERO)
            elif total - paid <= self.tolerance:
                invoice.status = InvoiceStatus.PAID.value
                invoice.amount_paid = total
            elif paid > 0:
                invoice.status = InvoiceStatus.PARTIALLY_PAID.value
                invoice.amount_paid = paid
            else:
                invoice.status = InvoiceStatus.SENT.value
                invoice.amount_paid = ZERO
            invoice.updated_by_id = acting_user_id

            logger.info(
                "payment_applied",
                extra={
                    "invoice_id": str(invoice.id),
                    "invoice_number": invoice.invoice_number,
                    "signed_amount": str(signed_amount),
                    "previous_amount_paid": str(previous_paid),
                    "amount_paid": str(invoice.amount_paid),
                    "from_status": previous_status,
                    "to_status": invoice.status,
                    "actor_id": str(acting_user_id),
                },
            )
        return PaymentApplication(
            invoice_id=invoice.id,
            applied=True,
            signed_amount=signed_amount,
            amount_paid=invoice.amount_paid,
            status=invoice.status_enum,
        )

    # =========================================================================
    # Delete / read
    # =========================================================================

    def delete_invoice(self, invoice_id: UUID, acting_user_id: UUID) -> None:
        with self._unit_of_work("delete_invoice", DOCUMENT_TYPE, invoice_id):
            self._require_user(acting_user_id)
            invoice = self._load(invoice_id, for_update=True)
            if invoice.status_enum not in DELETABLE_STATUSES:
                raise DeletionNotAllowedError(
                    DOCUMENT_TYPE, str(invoice.id), invoice.status,
                    "only draft or cancelled invoices can be deleted; void it instead",
                )
            if invoice.amount_paid > 0:
                raise DeletionNotAllowedError(
                    DOCUMENT_TYPE, str(invoice.id), invoice.status,
                    "payments have been recorded against this invoice",
                )
            so_items = self._tracker.lock_sales_order_items(
                line.sales_order_item_id
                for line in invoice.active_items
                if line.sales_order_item_id is not None
            )
            now = self._clock.now()
            for line in invoice.active_items:
                line.deleted_at = now
            invoice.deleted_at = now
            invoice.updated_by_id = acting_user_id
            self.session.flush()
            self._tracker.recompute_for_items(so_items, ReconciliationEffect.INVOICE)
            logger.info(
                "invoice_deleted",
                extra={"invoice_id": str(invoice.id), "actor_id": str(acting_user_id)},
            )

    def get_invoice(self, invoice_id: UUID) -> CustomerInvoice:
        return self._load(invoice_id).to_dto()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _load(self, invoice_id: UUID, for_update: bool = False) -> CustomerInvoiceModel:
        stmt = select(CustomerInvoiceModel).where(
            CustomerInvoiceModel.id == invoice_id,
            CustomerInvoiceModel.deleted_at.is_(None),
        )
        if for_update:
            stmt = stmt.with_for_update()
        invoice = self.session.scalars(stmt).first()
        if invoice is None:
            raise EntityNotFoundError(DOCUMENT_TYPE, str(invoice_id))
        return invoice

    def _reload(self, invoice_id: UUID) -> CustomerInvoice:
        invoice = self.session.get(CustomerInvoiceModel, invoice_id)
        if invoice is None:
            raise DocumentReloadError(DOCUMENT_TYPE, str(invoice_id))
        return invoice.to_dto()

    def _require_user(self, user_id: UUID) -> None:
        if self._directory.find_user(user_id) is None:
            raise InvalidReferenceError("User", str(user_id), "does not exist")

    def _require_customer_orders(self, sales_order_ids: Iterable[UUID], customer_id: UUID) -> None:
        for sales_order_id in sales_order_ids:
            order = self.session.get(SalesOrderModel, sales_order_id)
            if order is None or order.deleted_at is not None:
                raise InvalidReferenceError("SalesOrder", str(sales_order_id), "does not exist")
            if order.customer_id != customer_id:
                raise InvalidReferenceError(
                    "SalesOrder", str(sales_order_id),
                    f"does not belong to customer {customer_id}",
                )

    def _lock_upstream(
        self,
        lines: Iterable[CustomerInvoiceItemInput],
        customer_id: UUID,
        extra_so_item_ids: Iterable[UUID | None] = (),
    ) -> tuple[dict[UUID, SalesOrderItemModel], dict[UUID, DeliveryItemModel]]:
        """
        Lock every delivery line, then every sales order line, the given
        lines reference.  Sales order lines reached through a delivery line
        are included.
        """
        lines = list(lines)
        delivery_ids = {line.delivery_item_id for line in lines if line.delivery_item_id}
        delivery_items = self._tracker.lock_delivery_items(delivery_ids)
        for delivery_item_id in delivery_ids:
            delivery_item = delivery_items.get(delivery_item_id)
            if delivery_item is None or delivery_item.deleted_at is not None:
                raise InvalidReferenceError("DeliveryItem", str(delivery_item_id), "does not exist")
            delivery = delivery_item.delivery
            if delivery.deleted_at is not None or delivery.status == DeliveryStatus.CANCELLED.value:
                raise InvalidReferenceError(
                    "DeliveryItem", str(delivery_item_id),
                    f"belongs to delivery {delivery.delivery_number}, which is cancelled or deleted",
                )

        referenced = {line.sales_order_item_id for line in lines if line.sales_order_item_id}
        referenced |= {item.sales_order_item_id for item in delivery_items.values()}
        so_items = self._tracker.lock_sales_order_items(
            referenced | {item_id for item_id in extra_so_item_ids if item_id is not None}
        )
        for so_item_id in referenced:
            so_item = so_items.get(so_item_id)
            if so_item is None or so_item.deleted_at is not None:
                raise InvalidReferenceError("SalesOrderItem", str(so_item_id), "does not exist")
            if so_item.sales_order.customer_id != customer_id:
                raise InvalidReferenceError(
                    "SalesOrderItem", str(so_item_id),
                    f"belongs to an order of another customer than {customer_id}",
                )
        return so_items, delivery_items

    @staticmethod
    def _line_ref(
        line: CustomerInvoiceItemInput,
        delivery_items: Mapping[UUID, DeliveryItemModel],
    ) -> _LineRef:
        validate_line_values(
            line.quantity, line.unit_price_ht,
            line.discount_percentage, line.vat_rate_percentage,
        )
        so_item_id = line.sales_order_item_id
        if line.delivery_item_id is not None:
            derived = delivery_items[line.delivery_item_id].sales_order_item_id
            if so_item_id is not None and so_item_id != derived:
                raise InvalidReferenceError(
                    "DeliveryItem", str(line.delivery_item_id),
                    f"does not ship sales order item {so_item_id}",
                )
            so_item_id = derived
        return _LineRef(line.quantity, so_item_id, line.delivery_item_id)

    def _check_within_remaining(
        self,
        refs: Iterable[_LineRef],
        so_items: Mapping[UUID, SalesOrderItemModel],
        delivery_items: Mapping[UUID, DeliveryItemModel],
        excluding_invoice_id: UUID | None,
    ) -> None:
        """Lines of the same upstream line are summed before the check."""
        by_so_item: dict[UUID, Decimal] = defaultdict(Decimal)
        by_delivery_item: dict[UUID, Decimal] = defaultdict(Decimal)
        for ref in refs:
            quantity = round_quantity(ref.quantity)
            if ref.delivery_item_id is not None:
                by_delivery_item[ref.delivery_item_id] += quantity
            if ref.sales_order_item_id is not None:
                by_so_item[ref.sales_order_item_id] += quantity

        for delivery_item_id, quantity in by_delivery_item.items():
            delivery_item = delivery_items.get(delivery_item_id)
            if delivery_item is None:
                # Kept lines are already committed; only new references are locked.
                continue
            self._tracker.check_within_remaining(
                ReconciliationEffect.INVOICE,
                DELIVERY_ITEM,
                quantity,
                self._tracker.remaining_invoiceable_for_delivery_item(
                    delivery_item, excluding_invoice_id,
                ),
            )
        for so_item_id, quantity in by_so_item.items():
            self._tracker.check_within_remaining(
                ReconciliationEffect.INVOICE,
                SALES_ORDER_ITEM,
                quantity,
                self._tracker.remaining_invoiceable_for_order_item(
                    so_items[so_item_id], excluding_invoice_id,
                ),
            )

    def _build_line(
        self,
        data: CustomerInvoiceItemInput,
        ref: _LineRef,
        so_items: Mapping[UUID, SalesOrderItemModel],
        line_number: int,
        acting_user_id: UUID,
    ) -> CustomerInvoiceItemModel:
        so_item = so_items.get(ref.sales_order_item_id) if ref.sales_order_item_id else None

        product_id, variant_id = data.product_id, data.variant_id
        if product_id is None and so_item is not None:
            product_id, variant_id = so_item.product_id, so_item.variant_id

        description = data.description
        vat_rate = data.vat_rate_percentage
        if product_id is not None:
            product, variant_name = resolve_product(self._directory, product_id, variant_id)
            description = description or variant_name or product.name
            if vat_rate is None:
                vat_rate = (
                    so_item.vat_rate_percentage if so_item is not None
                    else product.default_vat_rate_percentage
                )
        elif not description:
            raise InvalidDocumentError(
                DOCUMENT_TYPE, None, "a line without a product needs a description",
            )

        return CustomerInvoiceItemModel(
            id=uuid4(),
            line_number=line_number,
            product_id=product_id,
            variant_id=variant_id,
            sales_order_item_id=ref.sales_order_item_id,
            delivery_item_id=ref.delivery_item_id,
            description=description,
            quantity=round_quantity(data.quantity),
            unit_price_ht=round_amount(data.unit_price_ht),
            discount_percentage=data.discount_percentage,
            vat_rate_percentage=vat_rate,
            created_by_id=acting_user_id,
        )

    @staticmethod
    def _apply_totals(invoice: CustomerInvoiceModel) -> None:
        lines = invoice.active_items
        for line in lines:
            line.total_line_amount_ht = calculate_line_total(
                line.quantity, line.unit_price_ht, line.discount_percentage,
            )
        totals = calculate_header_totals(lines, invoice.shipping_fees_ht)
        invoice.total_amount_ht = totals.total_amount_ht
        invoice.total_vat_amount = totals.total_vat_amount
        invoice.total_amount_ttc = totals.total_amount_ttc
