"""
Delivery Service (``erp_modules.deliveries.service``).

Responsibility
--------------
Creates and edits deliveries against sales order lines, ships them (stock
movements, accumulator recomputation, order aggregate status), marks them
delivered, cancels, and soft-deletes them.

Architecture
------------
Layer: **Modules** -- ``TransactionalService``.  Composes the flush-only
``StockLedgerService`` and ``QuantityReconciliationTracker`` inside its own
unit of work, so a failed ship leaves no movement, no accumulator change,
and no status change behind.

Invariants
----------
- Every line's quantity fits in the remaining shippable quantity of its
  sales order line, computed against *other* deliveries only.
- ``quantity_shipped`` on the order lines is re-summed after every change
  that adds, edits, cancels, or deletes delivery lines.
- Shipping writes exactly one ``SALE_DELIVERY`` movement per active line.
- The order's aggregate status follows shipped / delivered deliveries only,
  and is never changed once the order is fully_shipped, completed, or
  cancelled.

Failure Modes
-------------
- ``QuantityExceedsRemainingError``: over-shipment, with ordered and
  already-shipped quantities in the message.
- ``TransitionPreconditionError``: ship outside pending / in_preparation /
  ready_to_ship, ship without lines, mark delivered before shipping.
- ``IllegalTransitionError``: any other refused status change.
- ``DocumentLockedError`` / ``DeletionNotAllowedError``: as the sales order
  service.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping
from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from erp_config.schema import ErpSettings
from erp_kernel.db.types import round_quantity
from erp_kernel.domain.clock import Clock, SystemClock
from erp_kernel.exceptions import (
    DeletionNotAllowedError,
    DocumentLockedError,
    DocumentReloadError,
    EntityNotFoundError,
    IllegalTransitionError,
    InvalidDocumentError,
    InvalidQuantityError,
    InvalidReferenceError,
    TransitionPreconditionError,
)
from erp_kernel.logging_config import LogContext, get_logger
from erp_kernel.services.base import TransactionalService
from erp_modules._documents import check_locked_update, generate_document_number
from erp_modules.deliveries.models import (
    SHIPPABLE_STATUSES,
    Delivery,
    DeliveryInput,
    DeliveryItemChange,
    DeliveryStatus,
)
from erp_modules.deliveries.orm import DeliveryItemModel, DeliveryModel
from erp_modules.deliveries.workflows import DELIVERY_WORKFLOW
from erp_modules.inventory.helpers import resolve_location
from erp_modules.inventory.models import MovementRequest, MovementType
from erp_modules.inventory.service import StockLedgerService
from erp_modules.reconciliation.models import ReconciliationEffect
from erp_modules.reconciliation.service import SALES_ORDER_ITEM, QuantityReconciliationTracker
from erp_modules.reference.directory import ReferenceDirectory
from erp_modules.sales.models import DELIVERABLE_STATUSES, SalesOrderStatus
from erp_modules.sales.orm import SalesOrderItemModel, SalesOrderModel

logger = get_logger("modules.deliveries.service")

DOCUMENT_TYPE = "Delivery"
DELIVERY_NUMBER_PREFIX = "DL"
MOVEMENT_REFERENCE_TYPE = "delivery"

UPDATABLE_FIELDS = frozenset({
    "warehouse_id",
    "shop_id",
    "planned_delivery_date",
    "carrier_name",
    "tracking_number",
    "notes",
    "items",
})

# Only meaningful before the goods leave.
PRE_SHIPMENT_FIELDS = frozenset({"items", "warehouse_id", "shop_id"})

UNDELETABLE_STATUSES = frozenset({DeliveryStatus.SHIPPED, DeliveryStatus.DELIVERED})

# The order's aggregate status is frozen once it reaches one of these.
ORDER_STATUS_FROZEN = frozenset({
    SalesOrderStatus.FULLY_SHIPPED,
    SalesOrderStatus.COMPLETED,
    SalesOrderStatus.CANCELLED,
})


class DeliveryService(TransactionalService):
    """
    Delivery lifecycle and the ship side of quantity reconciliation.

    Contract
    --------
    Every public write locks the referenced sales order lines before it
    computes a remaining quantity, and recomputes their accumulators before
    its unit of work ends.
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
        self._ledger = StockLedgerService(session, directory, self._clock, self._settings)
        self._tracker = QuantityReconciliationTracker(session, self._settings)

    # =========================================================================
    # Create / update
    # =========================================================================

    def create_delivery(self, data: DeliveryInput, acting_user_id: UUID) -> Delivery:
        """
        Create a pending delivery against lines of one sales order.

        The dispatch location defaults to the order's.  The new lines count
        against the remaining shippable quantity immediately.
        """
        with self._unit_of_work("create_delivery", DOCUMENT_TYPE):
            self._require_user(acting_user_id)
            order = self.session.get(SalesOrderModel, data.sales_order_id)
            if order is None or order.deleted_at is not None:
                raise InvalidReferenceError(
                    "SalesOrder", str(data.sales_order_id), "does not exist",
                )
            if order.status_enum not in DELIVERABLE_STATUSES:
                raise InvalidDocumentError(
                    DOCUMENT_TYPE, None,
                    f"cannot deliver sales order {order.order_number} in status "
                    f"'{order.status}'",
                )

            if data.warehouse_id is not None or data.shop_id is not None:
                warehouse_id, shop_id = data.warehouse_id, data.shop_id
            else:
                warehouse_id, shop_id = order.warehouse_id, order.shop_id
            self._require_location(warehouse_id, shop_id)

            lines = [(line.sales_order_item_id, line.quantity_shipped) for line in data.items]
            so_items = self._lock_order_lines(order, [so_item_id for so_item_id, _ in lines])
            self._check_within_remaining(lines, so_items, excluding_delivery_id=None)

            delivery = DeliveryModel(
                id=uuid4(),
                delivery_number=generate_document_number(DELIVERY_NUMBER_PREFIX, self._clock),
                sales_order_id=order.id,
                status=DeliveryStatus.PENDING.value,
                warehouse_id=warehouse_id,
                shop_id=shop_id,
                planned_delivery_date=data.planned_delivery_date,
                carrier_name=data.carrier_name,
                tracking_number=data.tracking_number,
                notes=data.notes,
                created_by_id=acting_user_id,
            )
            for line_number, line in enumerate(data.items, start=1):
                delivery.items.append(self._build_line(
                    so_items[line.sales_order_item_id],
                    line.quantity_shipped,
                    line.notes,
                    line_number,
                    acting_user_id,
                ))
            self.session.add(delivery)
            self.session.flush()

            self._tracker.recompute_for_items(so_items, ReconciliationEffect.SHIP)

            with LogContext.bind(document_id=delivery.id, actor_id=acting_user_id):
                logger.info(
                    "delivery_created",
                    extra={
                        "delivery_number": delivery.delivery_number,
                        "sales_order_id": str(order.id),
                        "line_count": len(delivery.items),
                    },
                )
        return self._reload(delivery.id)

    def update_delivery(
        self,
        delivery_id: UUID,
        changes: Mapping[str, object],
        acting_user_id: UUID,
    ) -> Delivery:
        """
        Apply a partial update.

        ``items`` is an iterable of ``DeliveryItemChange``.  Line edits are
        checked against other deliveries' commitments only.
        """
        with self._unit_of_work("update_delivery", DOCUMENT_TYPE, delivery_id):
            self._require_user(acting_user_id)
            unknown = sorted(set(changes) - UPDATABLE_FIELDS)
            if unknown:
                raise InvalidDocumentError(
                    DOCUMENT_TYPE, str(delivery_id), f"unknown fields: {', '.join(unknown)}",
                )

            delivery = self._load(delivery_id, for_update=True)
            if DELIVERY_WORKFLOW.is_locked(delivery.status):
                check_locked_update(
                    DOCUMENT_TYPE, delivery.id, delivery.status, changes,
                    self._settings.deliveries.locked_editable_fields,
                )
            touched = sorted(PRE_SHIPMENT_FIELDS & set(changes))
            if touched and delivery.status_enum not in SHIPPABLE_STATUSES:
                raise DocumentLockedError(
                    document_type=DOCUMENT_TYPE,
                    document_id=str(delivery.id),
                    status=delivery.status,
                    rejected_fields=tuple(touched),
                    allowed_fields=tuple(sorted(UPDATABLE_FIELDS - PRE_SHIPMENT_FIELDS)),
                )

            if "warehouse_id" in changes or "shop_id" in changes:
                warehouse_id = changes.get("warehouse_id", delivery.warehouse_id)
                shop_id = changes.get("shop_id", delivery.shop_id)
                self._require_location(warehouse_id, shop_id)
                delivery.warehouse_id = warehouse_id
                delivery.shop_id = shop_id
            for field_name in ("planned_delivery_date", "carrier_name", "tracking_number", "notes"):
                if field_name in changes:
                    setattr(delivery, field_name, changes[field_name])
            if "items" in changes:
                self._apply_line_changes(delivery, changes["items"], acting_user_id)

            delivery.updated_by_id = acting_user_id
            logger.info(
                "delivery_updated",
                extra={
                    "delivery_id": str(delivery.id),
                    "fields": sorted(changes),
                    "actor_id": str(acting_user_id),
                },
            )
        return self._reload(delivery.id)

    def _apply_line_changes(
        self,
        delivery: DeliveryModel,
        line_changes: Iterable[DeliveryItemChange],
        acting_user_id: UUID,
    ) -> None:
        line_changes = list(line_changes)
        current = {line.id: line for line in delivery.active_items}

        # Resolve the delivery's final line set before touching any row.
        final: dict[UUID | None, tuple[UUID, Decimal]] = {
            line.id: (line.sales_order_item_id, line.quantity_shipped)
            for line in current.values()
        }
        added: list[DeliveryItemChange] = []
        for change in line_changes:
            if change.id is None:
                if change.sales_order_item_id is None or change.quantity_shipped is None:
                    raise InvalidDocumentError(
                        DOCUMENT_TYPE, str(delivery.id),
                        "a new line needs sales_order_item_id and quantity_shipped",
                    )
                added.append(change)
                continue
            if change.id not in current:
                raise InvalidReferenceError(
                    "DeliveryItem", str(change.id), f"is not a line of delivery {delivery.id}",
                )
            if change.delete:
                final.pop(change.id, None)
            elif change.quantity_shipped is not None:
                final[change.id] = (current[change.id].sales_order_item_id, change.quantity_shipped)

        lines = list(final.values()) + [
            (change.sales_order_item_id, change.quantity_shipped) for change in added
        ]
        order = self.session.get(SalesOrderModel, delivery.sales_order_id)
        affected = {so_item_id for so_item_id, _ in lines} | {
            line.sales_order_item_id for line in current.values()
        }
        so_items = self._lock_order_lines(order, affected)
        self._check_within_remaining(lines, so_items, excluding_delivery_id=delivery.id)

        now = self._clock.now()
        next_line = max((line.line_number for line in delivery.items), default=0) + 1
        for change in line_changes:
            if change.id is None:
                continue
            line = current[change.id]
            if change.delete:
                line.deleted_at = now
            else:
                if change.quantity_shipped is not None:
                    line.quantity_shipped = round_quantity(change.quantity_shipped)
                if change.notes is not None:
                    line.notes = change.notes
            line.updated_by_id = acting_user_id
        for change in added:
            delivery.items.append(self._build_line(
                so_items[change.sales_order_item_id],
                change.quantity_shipped,
                change.notes,
                next_line,
                acting_user_id,
            ))
            next_line += 1
        self.session.flush()

        self._tracker.recompute_for_items(so_items, ReconciliationEffect.SHIP)

    # =========================================================================
    # Status
    # =========================================================================

    def ship_delivery(
        self,
        delivery_id: UUID,
        acting_user_id: UUID,
        ship_date: datetime | None = None,
    ) -> Delivery:
        """
        Ship: one outbound movement per line, accumulators recomputed, order
        aggregate status recomputed.

        Raises:
            TransitionPreconditionError: not shippable from the current
                status, or no lines.
        """
        with self._unit_of_work("ship_delivery", DOCUMENT_TYPE, delivery_id):
            self._require_user(acting_user_id)
            delivery = self._load(delivery_id, for_update=True)
            self._ship(delivery, acting_user_id, ship_date)
        return self._reload(delivery.id)

    def mark_delivered(
        self,
        delivery_id: UUID,
        acting_user_id: UUID,
        delivered_at: datetime | None = None,
    ) -> Delivery:
        with self._unit_of_work("mark_delivered", DOCUMENT_TYPE, delivery_id):
            self._require_user(acting_user_id)
            delivery = self._load(delivery_id, for_update=True)
            self._mark_delivered(delivery, acting_user_id, delivered_at)
        return self._reload(delivery.id)

    def cancel_delivery(self, delivery_id: UUID, acting_user_id: UUID) -> Delivery:
        """Cancel before shipping; releases the committed quantity."""
        with self._unit_of_work("cancel_delivery", DOCUMENT_TYPE, delivery_id):
            self._require_user(acting_user_id)
            delivery = self._load(delivery_id, for_update=True)
            self._cancel(delivery, acting_user_id)
        return self._reload(delivery.id)

    def change_status(
        self,
        delivery_id: UUID,
        target: DeliveryStatus,
        acting_user_id: UUID,
    ) -> Delivery:
        """
        Generic transition entry point.

        shipped, delivered, and cancelled dispatch to the dedicated
        operations so their side effects always run.
        """
        with self._unit_of_work("change_status", DOCUMENT_TYPE, delivery_id):
            self._require_user(acting_user_id)
            delivery = self._load(delivery_id, for_update=True)
            current = delivery.status_enum
            if target is current:
                return delivery.to_dto()

            if target is DeliveryStatus.SHIPPED:
                self._ship(delivery, acting_user_id, None)
            elif target is DeliveryStatus.DELIVERED:
                self._mark_delivered(delivery, acting_user_id, None)
            elif target is DeliveryStatus.CANCELLED:
                self._cancel(delivery, acting_user_id)
            else:
                if (
                    DELIVERY_WORKFLOW.is_terminal(current.value)
                    or DELIVERY_WORKFLOW.find_transition(current.value, target.value) is None
                ):
                    raise IllegalTransitionError(
                        DOCUMENT_TYPE, str(delivery.id), current.value, target.value,
                    )
                self._set_status(delivery, target, acting_user_id)
        return self._reload(delivery.id)

    def _ship(
        self,
        delivery: DeliveryModel,
        acting_user_id: UUID,
        ship_date: datetime | None,
    ) -> None:
        current = delivery.status_enum
        if current not in SHIPPABLE_STATUSES:
            raise TransitionPreconditionError(
                DOCUMENT_TYPE, str(delivery.id), current.value, DeliveryStatus.SHIPPED.value,
                "only pending, in_preparation or ready_to_ship deliveries can be shipped",
            )
        lines = delivery.active_items
        if not lines:
            raise TransitionPreconditionError(
                DOCUMENT_TYPE, str(delivery.id), current.value, DeliveryStatus.SHIPPED.value,
                "delivery has no items to ship",
            )

        order = self.session.get(SalesOrderModel, delivery.sales_order_id)
        so_items = self._tracker.lock_sales_order_items(
            line.sales_order_item_id for line in lines
        )
        shipped_at = ship_date or self._clock.now()

        for line in lines:
            product = self._directory.find_product(line.product_id)
            self._ledger.append(
                MovementRequest(
                    product_id=line.product_id,
                    variant_id=line.variant_id,
                    movement_type=MovementType.SALE_DELIVERY,
                    quantity=line.quantity_shipped,
                    user_id=acting_user_id,
                    warehouse_id=delivery.warehouse_id,
                    shop_id=delivery.shop_id,
                    unit_cost=product.default_purchase_price if product is not None else None,
                    movement_date=shipped_at,
                    reference_document_type=MOVEMENT_REFERENCE_TYPE,
                    reference_document_id=str(delivery.id),
                    notes=(
                        f"Shipped via delivery {delivery.delivery_number} "
                        f"for sales order {order.order_number}"
                    ),
                )
            )

        self._tracker.recompute_for_items(so_items, ReconciliationEffect.SHIP)
        delivery.ship_date = shipped_at
        self._set_status(delivery, DeliveryStatus.SHIPPED, acting_user_id)
        self.session.flush()
        self._propagate_order_status(order, acting_user_id)

        with LogContext.bind(document_id=delivery.id, actor_id=acting_user_id):
            logger.info(
                "delivery_shipped",
                extra={
                    "delivery_number": delivery.delivery_number,
                    "sales_order_id": str(order.id),
                    "line_count": len(lines),
                    "order_status": order.status,
                },
            )

    def _mark_delivered(
        self,
        delivery: DeliveryModel,
        acting_user_id: UUID,
        delivered_at: datetime | None,
    ) -> None:
        current = delivery.status_enum
        if current is not DeliveryStatus.SHIPPED:
            raise TransitionPreconditionError(
                DOCUMENT_TYPE, str(delivery.id), current.value, DeliveryStatus.DELIVERED.value,
                "delivery must be shipped first",
            )
        delivery.actual_delivery_date = delivered_at or self._clock.now()
        self._set_status(delivery, DeliveryStatus.DELIVERED, acting_user_id)

    def _cancel(self, delivery: DeliveryModel, acting_user_id: UUID) -> None:
        current = delivery.status_enum
        if DELIVERY_WORKFLOW.find_transition(current.value, DeliveryStatus.CANCELLED.value) is None:
            raise IllegalTransitionError(
                DOCUMENT_TYPE, str(delivery.id), current.value, DeliveryStatus.CANCELLED.value,
            )
        so_item_ids = [line.sales_order_item_id for line in delivery.active_items]
        so_items = self._tracker.lock_sales_order_items(so_item_ids)
        self._set_status(delivery, DeliveryStatus.CANCELLED, acting_user_id)
        self.session.flush()
        self._tracker.recompute_for_items(so_items, ReconciliationEffect.SHIP)

    def _set_status(
        self,
        delivery: DeliveryModel,
        target: DeliveryStatus,
        acting_user_id: UUID,
    ) -> None:
        previous = delivery.status
        delivery.status = target.value
        delivery.updated_by_id = acting_user_id
        logger.info(
            "delivery_status_changed",
            extra={
                "delivery_id": str(delivery.id),
                "from_status": previous,
                "to_status": target.value,
                "actor_id": str(acting_user_id),
            },
        )

    def _propagate_order_status(self, order: SalesOrderModel, acting_user_id: UUID) -> None:
        """Recompute partially_shipped / fully_shipped on the parent order."""
        if order.status_enum in ORDER_STATUS_FROZEN:
            logger.debug(
                "sales_order_status_frozen",
                extra={"order_id": str(order.id), "status": order.status},
            )
            return
        target = self._tracker.order_shipping_status(order)
        if target is None or target.value == order.status:
            return
        previous = order.status
        order.status = target.value
        order.updated_by_id = acting_user_id
        logger.info(
            "sales_order_status_changed",
            extra={
                "order_id": str(order.id),
                "order_number": order.order_number,
                "from_status": previous,
                "to_status": target.value,
                "actor_id": str(acting_user_id),
            },
        )

    # =========================================================================
    # Delete / read
    # =========================================================================

    def delete_delivery(self, delivery_id: UUID, acting_user_id: UUID) -> None:
        """Soft-delete an unshipped delivery and release its quantities."""
        with self._unit_of_work("delete_delivery", DOCUMENT_TYPE, delivery_id):
            self._require_user(acting_user_id)
            delivery = self._load(delivery_id, for_update=True)
            if delivery.status_enum in UNDELETABLE_STATUSES:
                raise DeletionNotAllowedError(
                    DOCUMENT_TYPE, str(delivery.id), delivery.status,
                    "shipped goods are handled by a customer return",
                )
            so_items = self._tracker.lock_sales_order_items(
                line.sales_order_item_id for line in delivery.active_items
            )
            now = self._clock.now()
            for line in delivery.active_items:
                line.deleted_at = now
            delivery.deleted_at = now
            delivery.updated_by_id = acting_user_id
            self.session.flush()
            self._tracker.recompute_for_items(so_items, ReconciliationEffect.SHIP)
            logger.info(
                "delivery_deleted",
                extra={"delivery_id": str(delivery.id), "actor_id": str(acting_user_id)},
            )

    def get_delivery(self, delivery_id: UUID) -> Delivery:
        return self._load(delivery_id).to_dto()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _load(self, delivery_id: UUID, for_update: bool = False) -> DeliveryModel:
        stmt = select(DeliveryModel).where(
            DeliveryModel.id == delivery_id,
            DeliveryModel.deleted_at.is_(None),
        )
        if for_update:
            stmt = stmt.with_for_update()
        delivery = self.session.scalars(stmt).first()
        if delivery is None:
            raise EntityNotFoundError(DOCUMENT_TYPE, str(delivery_id))
        return delivery

    def _reload(self, delivery_id: UUID) -> Delivery:
        delivery = self.session.get(DeliveryModel, delivery_id)
        if delivery is None:
            raise DocumentReloadError(DOCUMENT_TYPE, str(delivery_id))
        return delivery.to_dto()

    def _require_user(self, user_id: UUID) -> None:
        if self._directory.find_user(user_id) is None:
            raise InvalidReferenceError("User", str(user_id), "does not exist")

    def _require_location(self, warehouse_id: UUID | None, shop_id: UUID | None) -> None:
        location_type, location_id = resolve_location(warehouse_id, shop_id)
        if self._directory.find_location(location_type, location_id) is None:
            raise InvalidReferenceError(
                location_type.value.capitalize(), str(location_id), "does not exist",
            )

    def _lock_order_lines(
        self,
        order: SalesOrderModel,
        so_item_ids: Iterable[UUID],
    ) -> dict[UUID, SalesOrderItemModel]:
        """Lock the lines and check each is an active line of ``order``."""
        so_item_ids = set(so_item_ids)
        so_items = self._tracker.lock_sales_order_items(so_item_ids)
        for so_item_id in so_item_ids:
            so_item = so_items.get(so_item_id)
            if so_item is None or so_item.deleted_at is not None or so_item.sales_order_id != order.id:
                raise InvalidReferenceError(
                    "SalesOrderItem", str(so_item_id),
                    f"not found or does not belong to sales order {order.order_number}",
                )
        return so_items

    def _check_within_remaining(
        self,
        lines: Iterable[tuple[UUID, Decimal]],
        so_items: Mapping[UUID, SalesOrderItemModel],
        excluding_delivery_id: UUID | None,
    ) -> None:
        """Lines of the same order line are summed before the check."""
        requested: dict[UUID, Decimal] = defaultdict(Decimal)
        for so_item_id, quantity in lines:
            if quantity is None or quantity <= 0:
                raise InvalidQuantityError(
                    "quantity_shipped", quantity,
                    f"must be positive for sales order item {so_item_id}",
                )
            requested[so_item_id] += round_quantity(quantity)
        for so_item_id, quantity in requested.items():
            remaining = self._tracker.remaining_shippable(
                so_items[so_item_id], excluding_delivery_id,
            )
            self._tracker.check_within_remaining(
                ReconciliationEffect.SHIP, SALES_ORDER_ITEM, quantity, remaining,
            )

    @staticmethod
    def _build_line(
        so_item: SalesOrderItemModel,
        quantity: Decimal,
        notes: str | None,
        line_number: int,
        acting_user_id: UUID,
    ) -> DeliveryItemModel:
        return DeliveryItemModel(
            id=uuid4(),
            line_number=line_number,
            sales_order_item_id=so_item.id,
            product_id=so_item.product_id,
            variant_id=so_item.variant_id,
            quantity_shipped=round_quantity(quantity),
            notes=notes,
            created_by_id=acting_user_id,
        )
