"""
Quantity Reconciliation Tracker (``erp_modules.reconciliation.service``).

Responsibility
--------------
Owns the two per-line accumulators of a sales order line --
``quantity_shipped`` and ``quantity_invoiced`` -- and the bound they enforce
on downstream documents:

    remaining = ceiling - SUM(downstream quantity)
                over active downstream lines referencing the upstream line,
                excluding the lines of the document being edited

Architecture
------------
Layer: **Modules** -- flush-only service (``BaseService``).  Called by the
delivery and invoice services inside their unit of work.

Concurrency
-----------
1. ``lock_*`` takes ``SELECT ... FOR UPDATE`` on the upstream rows, in
   ascending id order, before any ``remaining`` is computed.  Two
   transactions against the same line serialize here on PostgreSQL.
2. ``SalesOrderItemModel`` is versioned.  A writer that loaded the line
   before a concurrent commit fails its flush with ``OptimisticLockError``.
3. ``recompute_*`` re-validates the bound after re-summing, so a violation
   that slipped past both aborts the transaction with every accumulator
   unchanged.

Invariants
----------
- Accumulators are always re-summed from current downstream lines; never
  incremented or decremented in place.
- After any successful operation: quantity_shipped <= quantity.
- Soft-deleted lines, soft-deleted documents, cancelled deliveries, and
  cancelled or voided invoices commit nothing.

Failure Modes
-------------
- ``QuantityExceedsRemainingError`` from ``check_within_remaining`` and from
  a recompute that would raise an accumulator past its ceiling.
- ``OptimisticLockError`` from a recompute flush against a stale line.
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from erp_config.schema import ErpSettings
from erp_kernel.db.types import ZERO, coerce_sum, round_quantity
from erp_kernel.exceptions import QuantityExceedsRemainingError
from erp_kernel.logging_config import get_logger
from erp_kernel.services.base import BaseService
from erp_modules.deliveries.models import SHIPPED_STATUSES, DeliveryStatus
from erp_modules.deliveries.orm import DeliveryItemModel, DeliveryModel
from erp_modules.invoicing.models import RELEASED_STATUSES
from erp_modules.invoicing.orm import CustomerInvoiceItemModel, CustomerInvoiceModel
from erp_modules.reconciliation.models import (
    QuantityBasis,
    ReconciliationEffect,
    RemainingQuantity,
)
from erp_modules.sales.models import SalesOrderStatus
from erp_modules.sales.orm import SalesOrderItemModel, SalesOrderModel

logger = get_logger("modules.reconciliation.service")

SALES_ORDER_ITEM = "sales order item"
DELIVERY_ITEM = "delivery item"


class QuantityReconciliationTracker(BaseService[SalesOrderItemModel]):
    """
    Remaining-quantity checks and accumulator recomputation.

    Contract
    --------
    Callers lock first, check second, write their downstream lines third,
    and recompute last -- all inside one transaction.

    Non-goals
    ---------
    - No commit / rollback; the caller owns the transaction.
    - Does not decide document status; ``order_shipping_status`` only
      answers what the aggregate status should be.
    """

    def __init__(self, session: Session, settings: ErpSettings | None = None):
        super().__init__(session)
        self._settings = settings or ErpSettings()

    # =========================================================================
    # Locking
    # =========================================================================

    def lock_sales_order_items(self, item_ids: Iterable[UUID]) -> dict[UUID, SalesOrderItemModel]:
        """Lock and reload the given sales order lines.  Missing ids are simply absent."""
        return self._lock(SalesOrderItemModel, item_ids)

    def lock_delivery_items(self, item_ids: Iterable[UUID]) -> dict[UUID, DeliveryItemModel]:
        return self._lock(DeliveryItemModel, item_ids)

    def _lock(self, model, item_ids: Iterable[UUID]) -> dict:
        ids = sorted(set(item_ids), key=str)
        if not ids:
            return {}
        stmt = (
            select(model)
            .where(model.id.in_(ids))
            .order_by(model.id)
            .execution_options(populate_existing=True)
        )
        if self._settings.concurrency.lock_upstream_rows:
            stmt = stmt.with_for_update()
        rows = {row.id: row for row in self.session.scalars(stmt)}
        logger.debug(
            "upstream_rows_locked",
            extra={
                "table": model.__tablename__,
                "requested": len(ids),
                "locked": len(rows),
                "for_update": self._settings.concurrency.lock_upstream_rows,
            },
        )
        return rows

    # =========================================================================
    # Committed quantities
    # =========================================================================

    def committed_shipped(
        self,
        so_item_id: UUID,
        excluding_delivery_id: UUID | None = None,
    ) -> Decimal:
        """Sum of active delivery lines of active, non-cancelled deliveries."""
        stmt = (
            select(func.sum(DeliveryItemModel.quantity_shipped))
            .join(DeliveryModel, DeliveryItemModel.delivery_id == DeliveryModel.id)
            .where(
                DeliveryItemModel.sales_order_item_id == so_item_id,
                DeliveryItemModel.deleted_at.is_(None),
                DeliveryModel.deleted_at.is_(None),
                DeliveryModel.status != DeliveryStatus.CANCELLED.value,
            )
        )
        if excluding_delivery_id is not None:
            stmt = stmt.where(DeliveryModel.id != excluding_delivery_id)
        return round_quantity(coerce_sum(self.session.scalar(stmt)))

    def committed_invoiced(
        self,
        *,
        so_item_id: UUID | None = None,
        delivery_item_id: UUID | None = None,
        excluding_invoice_id: UUID | None = None,
    ) -> Decimal:
        """Sum of active invoice lines of live invoices referencing one upstream line."""
        stmt = (
            select(func.sum(CustomerInvoiceItemModel.quantity))
            .join(
                CustomerInvoiceModel,
                CustomerInvoiceItemModel.customer_invoice_id == CustomerInvoiceModel.id,
            )
            .where(
                CustomerInvoiceItemModel.deleted_at.is_(None),
                CustomerInvoiceModel.deleted_at.is_(None),
                CustomerInvoiceModel.status.not_in([s.value for s in RELEASED_STATUSES]),
            )
        )
        if so_item_id is not None:
            stmt = stmt.where(CustomerInvoiceItemModel.sales_order_item_id == so_item_id)
        if delivery_item_id is not None:
            stmt = stmt.where(CustomerInvoiceItemModel.delivery_item_id == delivery_item_id)
        if excluding_invoice_id is not None:
            stmt = stmt.where(CustomerInvoiceModel.id != excluding_invoice_id)
        return round_quantity(coerce_sum(self.session.scalar(stmt)))

    # =========================================================================
    # Remaining quantities
    # =========================================================================

    def remaining_shippable(
        self,
        so_item: SalesOrderItemModel,
        excluding_delivery_id: UUID | None = None,
    ) -> RemainingQuantity:
        committed = self.committed_shipped(so_item.id, excluding_delivery_id)
        return RemainingQuantity(
            upstream_id=so_item.id,
            ordered=so_item.quantity,
            committed=committed,
            remaining=so_item.quantity - committed,
        )

    def remaining_invoiceable_for_order_item(
        self,
        so_item: SalesOrderItemModel,
        excluding_invoice_id: UUID | None = None,
        basis: QuantityBasis | None = None,
    ) -> RemainingQuantity:
        """
        Ceiling is the ordered quantity, or the committed shipped quantity
        when ``basis`` (default: ``invoicing.quantity_basis``) is ``shipped``.
        """
        basis = basis or QuantityBasis(self._settings.invoicing.quantity_basis)
        ceiling = so_item.quantity if basis is QuantityBasis.ORDERED else so_item.quantity_shipped
        committed = self.committed_invoiced(
            so_item_id=so_item.id, excluding_invoice_id=excluding_invoice_id,
        )
        return RemainingQuantity(
            upstream_id=so_item.id,
            ordered=ceiling,
            committed=committed,
            remaining=ceiling - committed,
        )

    def remaining_invoiceable_for_delivery_item(
        self,
        delivery_item: DeliveryItemModel,
        excluding_invoice_id: UUID | None = None,
    ) -> RemainingQuantity:
        delivery = delivery_item.delivery
        ceiling = delivery_item.quantity_shipped
        if (
            delivery_item.deleted_at is not None
            or delivery.deleted_at is not None
            or delivery.status == DeliveryStatus.CANCELLED.value
        ):
            ceiling = ZERO
        committed = self.committed_invoiced(
            delivery_item_id=delivery_item.id, excluding_invoice_id=excluding_invoice_id,
        )
        return RemainingQuantity(
            upstream_id=delivery_item.id,
            ordered=ceiling,
            committed=committed,
            remaining=ceiling - committed,
        )

    def check_within_remaining(
        self,
        effect: ReconciliationEffect,
        upstream_type: str,
        requested: Decimal,
        remaining: RemainingQuantity,
    ) -> None:
        """
        Raises:
            QuantityExceedsRemainingError: requested > remaining.
        """
        if remaining.allows(requested):
            return
        logger.warning(
            "quantity_exceeds_remaining",
            extra={
                "effect": effect.value,
                "upstream_type": upstream_type,
                "upstream_id": str(remaining.upstream_id),
                "ordered": str(remaining.ordered),
                "committed": str(remaining.committed),
                "requested": str(requested),
                "remaining": str(remaining.remaining),
            },
        )
        raise QuantityExceedsRemainingError(
            effect=effect.value,
            upstream_type=upstream_type,
            upstream_id=str(remaining.upstream_id),
            ordered=remaining.ordered,
            committed=remaining.committed,
            requested=requested,
            remaining=remaining.remaining,
        )

    # =========================================================================
    # Accumulator recomputation
    # =========================================================================

    def recompute_quantity_shipped(self, so_item: SalesOrderItemModel) -> Decimal:
        """
        Re-sum ``quantity_shipped`` from active deliveries and flush.

        Raises:
            QuantityExceedsRemainingError: the new total exceeds the ordered
                quantity and is higher than before.
            OptimisticLockError: the line changed under this transaction.
        """
        previous = so_item.quantity_shipped or ZERO
        committed = self.committed_shipped(so_item.id)
        self._check_bound(
            ReconciliationEffect.SHIP, so_item, so_item.quantity, previous, committed,
        )
        return self._write(so_item, "quantity_shipped", previous, committed)

    def recompute_quantity_invoiced(self, so_item: SalesOrderItemModel) -> Decimal:
        """Re-sum ``quantity_invoiced`` from live invoices and flush."""
        previous = so_item.quantity_invoiced or ZERO
        committed = self.committed_invoiced(so_item_id=so_item.id)
        self._check_bound(
            ReconciliationEffect.INVOICE, so_item, so_item.quantity, previous, committed,
        )
        return self._write(so_item, "quantity_invoiced", previous, committed)

    def recompute_for_items(
        self,
        so_item_ids: Iterable[UUID],
        effect: ReconciliationEffect,
    ) -> None:
        """Recompute one accumulator on each given line, in id order."""
        for item_id in sorted(set(so_item_ids), key=str):
            so_item = self.session.get(SalesOrderItemModel, item_id)
            if so_item is None:
                continue
            if effect is ReconciliationEffect.SHIP:
                self.recompute_quantity_shipped(so_item)
            else:
                self.recompute_quantity_invoiced(so_item)

    def _check_bound(
        self,
        effect: ReconciliationEffect,
        so_item: SalesOrderItemModel,
        ceiling: Decimal,
        previous: Decimal,
        committed: Decimal,
    ) -> None:
        # Decreases are always accepted: releasing quantity must never fail.
        if committed <= ceiling or committed <= previous:
            return
        logger.error(
            "accumulator_bound_violated",
            extra={
                "effect": effect.value,
                "sales_order_item_id": str(so_item.id),
                "ceiling": str(ceiling),
                "previous": str(previous),
                "committed": str(committed),
            },
        )
        raise QuantityExceedsRemainingError(
            effect=effect.value,
            upstream_type=SALES_ORDER_ITEM,
            upstream_id=str(so_item.id),
            ordered=ceiling,
            committed=previous,
            requested=committed - previous,
            remaining=ceiling - previous,
        )

    def _write(
        self,
        so_item: SalesOrderItemModel,
        field_name: str,
        previous: Decimal,
        committed: Decimal,
    ) -> Decimal:
        if committed != previous:
            setattr(so_item, field_name, committed)
            self._flush("SalesOrderItem", so_item.id)
            logger.info(
                "accumulator_recomputed",
                extra={
                    "sales_order_item_id": str(so_item.id),
                    "field": field_name,
                    "previous": str(previous),
                    "current": str(committed),
                },
            )
        return committed

    # =========================================================================
    # Order aggregate status
    # =========================================================================

    def shipped_by_item(self, sales_order_id: UUID) -> dict[UUID, Decimal]:
        """Per order line, the quantity on shipped or delivered deliveries."""
        stmt = (
            select(
                DeliveryItemModel.sales_order_item_id,
                func.sum(DeliveryItemModel.quantity_shipped),
            )
            .join(DeliveryModel, DeliveryItemModel.delivery_id == DeliveryModel.id)
            .where(
                DeliveryModel.sales_order_id == sales_order_id,
                DeliveryModel.deleted_at.is_(None),
                DeliveryItemModel.deleted_at.is_(None),
                DeliveryModel.status.in_([s.value for s in SHIPPED_STATUSES]),
            )
            .group_by(DeliveryItemModel.sales_order_item_id)
        )
        return {
            item_id: round_quantity(coerce_sum(total))
            for item_id, total in self.session.execute(stmt)
        }

    def order_shipping_status(self, order: SalesOrderModel) -> SalesOrderStatus | None:
        """
        FULLY_SHIPPED when every active line's shipped quantity reaches its
        ordered quantity, PARTIALLY_SHIPPED when anything is shipped, None
        when nothing is.
        """
        shipped = self.shipped_by_item(order.id)
        items = order.active_items
        if not items or not any(shipped.get(item.id, ZERO) > 0 for item in items):
            return None
        if all(shipped.get(item.id, ZERO) >= item.quantity for item in items):
            return SalesOrderStatus.FULLY_SHIPPED
        return SalesOrderStatus.PARTIALLY_SHIPPED
