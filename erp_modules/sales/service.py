"""
Sales Order Service (``erp_modules.sales.service``).

Responsibility
--------------
Creates, edits, transitions, and soft-deletes sales orders.  Status changes
that enter or leave the reserved state set append reservation or reversal
movements to the stock ledger in the same unit of work as the status write.

Architecture
------------
Layer: **Modules** -- ``TransactionalService``.  The stock ledger runs
flush-only inside this service's unit of work.

Invariants
----------
- Header totals are recomputed server-side from active lines on every write.
- Reservations are written once, on entry into the reserved set from outside
  it; cancelling from a reserved state writes one offsetting entry per line.
- fully_shipped, completed, and cancelled orders accept only the configured
  allow-list of fields, and never change status.

Failure Modes
-------------
- ``EntityNotFoundError``: order absent or soft-deleted.
- ``InvalidReferenceError``: customer, product, variant, location, or user
  missing.
- ``IllegalTransitionError`` / ``TransitionPreconditionError``: refused
  status change.
- ``DocumentLockedError``: edit outside the allow-list.
- ``DeletionNotAllowedError``: delete outside draft / cancelled.

Usage::

    orders = SalesOrderService(session, SqlReferenceDirectory(session), auto_commit=True)
    order = orders.create_order(SalesOrderInput(customer_id=cid, warehouse_id=wh,
                                items=(SalesOrderItemInput(pid, Decimal("10"), Decimal("5")),)),
                                acting_user_id=actor_id)
    orders.change_status(order.id, SalesOrderStatus.APPROVED, actor_id)
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from erp_config.schema import ErpSettings
from erp_kernel.db.types import round_amount, round_quantity
from erp_kernel.domain.clock import Clock, SystemClock
from erp_kernel.exceptions import (
    DeletionNotAllowedError,
    DocumentLockedError,
    DocumentReloadError,
    EntityNotFoundError,
    IllegalTransitionError,
    InvalidDocumentError,
    InvalidReferenceError,
    LocationExclusivityError,
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
from erp_modules.inventory.models import MovementRequest, MovementType
from erp_modules.inventory.service import StockLedgerService
from erp_modules.reference.directory import ReferenceDirectory, resolve_product
from erp_modules.reference.models import LocationType
from erp_modules.sales.models import (
    ITEM_EDITABLE_STATUSES,
    RESERVED_STATUSES,
    SalesOrder,
    SalesOrderInput,
    SalesOrderItemChange,
    SalesOrderItemInput,
    SalesOrderStatus,
)
from erp_modules.sales.orm import SalesOrderItemModel, SalesOrderModel
from erp_modules.sales.workflows import HAS_ITEMS, SALES_ORDER_WORKFLOW

logger = get_logger("modules.sales.service")

DOCUMENT_TYPE = "SalesOrder"
ORDER_NUMBER_PREFIX = "SO"
MOVEMENT_REFERENCE_TYPE = "sales_order_item"

INITIAL_STATUSES = frozenset({
    SalesOrderStatus.DRAFT,
    SalesOrderStatus.PENDING_APPROVAL,
    SalesOrderStatus.APPROVED,
})

UPDATABLE_FIELDS = frozenset({
    "customer_id",
    "warehouse_id",
    "shop_id",
    "order_date",
    "shipping_fees_ht",
    "notes",
    "items",
})

# Changing these after approval would strand reservations.
PRE_APPROVAL_FIELDS = frozenset({"items", "warehouse_id", "shop_id"})

DELETABLE_STATUSES = frozenset({SalesOrderStatus.DRAFT, SalesOrderStatus.CANCELLED})


class SalesOrderService(TransactionalService):
    """
    Sales order lifecycle.

    Contract
    --------
    Every public write takes the acting user's id and runs as one unit of
    work; ``auto_commit`` decides whether that unit commits here or in the
    caller's ``session_scope()``.
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

    # =========================================================================
    # Create / update
    # =========================================================================

    def create_order(self, data: SalesOrderInput, acting_user_id: UUID) -> SalesOrder:
        """
        Create an order with its lines and server-side totals.

        An order created directly as ``approved`` reserves stock like an
        approval transition would.
        """
        with self._unit_of_work("create_order", DOCUMENT_TYPE):
            self._require_user(acting_user_id)
            self._require_customer(data.customer_id)
            self._require_dispatch_location(data.warehouse_id, data.shop_id)
            if data.status not in INITIAL_STATUSES:
                raise InvalidDocumentError(
                    DOCUMENT_TYPE, None,
                    f"initial status must be one of "
                    f"{', '.join(sorted(s.value for s in INITIAL_STATUSES))}",
                )
            if data.status is not SalesOrderStatus.DRAFT and not data.items:
                raise InvalidDocumentError(
                    DOCUMENT_TYPE, None, f"a '{data.status.value}' order needs at least one item",
                )

            order = SalesOrderModel(
                id=uuid4(),
                order_number=generate_document_number(ORDER_NUMBER_PREFIX, self._clock),
                customer_id=data.customer_id,
                status=data.status.value,
                order_date=data.order_date or self._clock.now(),
                warehouse_id=data.warehouse_id,
                shop_id=data.shop_id,
                shipping_fees_ht=round_amount(data.shipping_fees_ht),
                notes=data.notes,
                created_by_id=acting_user_id,
            )
            for line_number, item_input in enumerate(data.items, start=1):
                order.items.append(self._build_item(item_input, line_number, acting_user_id))
            self._apply_totals(order)

            self.session.add(order)
            self.session.flush()

            if data.status in RESERVED_STATUSES:
                self._write_order_movements(
                    order, MovementType.SALE_DELIVERY, acting_user_id, "reserved",
                )

            with LogContext.bind(document_id=order.id, actor_id=acting_user_id):
                logger.info(
                    "sales_order_created",
                    extra={
                        "order_number": order.order_number,
                        "status": order.status,
                        "item_count": len(order.items),
                        "total_amount_ttc": str(order.total_amount_ttc),
                    },
                )
        return self._reload(order.id)

    def update_order(
        self,
        order_id: UUID,
        changes: Mapping[str, object],
        acting_user_id: UUID,
    ) -> SalesOrder:
        """
        Apply a partial update.

        ``changes`` maps field names to new values; ``items`` is an iterable
        of ``SalesOrderItemChange``.  On a locked order, any key outside
        ``sales.locked_editable_fields`` rejects the whole update.
        """
        with self._unit_of_work("update_order", DOCUMENT_TYPE, order_id):
            self._require_user(acting_user_id)
            unknown = sorted(set(changes) - UPDATABLE_FIELDS)
            if unknown:
                raise InvalidDocumentError(
                    DOCUMENT_TYPE, str(order_id), f"unknown fields: {', '.join(unknown)}",
                )

            order = self._load(order_id, for_update=True)
            status = order.status_enum
            if SALES_ORDER_WORKFLOW.is_locked(order.status):
                check_locked_update(
                    DOCUMENT_TYPE, order.id, order.status, changes,
                    self._settings.sales.locked_editable_fields,
                )
            touched_pre_approval = sorted(PRE_APPROVAL_FIELDS & set(changes))
            if touched_pre_approval and status not in ITEM_EDITABLE_STATUSES:
                raise DocumentLockedError(
                    document_type=DOCUMENT_TYPE,
                    document_id=str(order.id),
                    status=order.status,
                    rejected_fields=tuple(touched_pre_approval),
                    allowed_fields=tuple(sorted(UPDATABLE_FIELDS - PRE_APPROVAL_FIELDS)),
                )

            if "customer_id" in changes:
                self._require_customer(changes["customer_id"])
                order.customer_id = changes["customer_id"]
            if "warehouse_id" in changes or "shop_id" in changes:
                warehouse_id = changes.get("warehouse_id", order.warehouse_id)
                shop_id = changes.get("shop_id", order.shop_id)
                self._require_dispatch_location(warehouse_id, shop_id)
                order.warehouse_id = warehouse_id
                order.shop_id = shop_id
            if "order_date" in changes:
                order.order_date = changes["order_date"]
            if "shipping_fees_ht" in changes:
                order.shipping_fees_ht = round_amount(changes["shipping_fees_ht"])
            if "notes" in changes:
                order.notes = changes["notes"]
            if "items" in changes:
                self._apply_item_changes(order, changes["items"], acting_user_id)

            if status is not SalesOrderStatus.DRAFT and not order.active_items:
                raise InvalidDocumentError(
                    DOCUMENT_TYPE, str(order.id),
                    f"a '{order.status}' order needs at least one item",
                )

            self._apply_totals(order)
            order.updated_by_id = acting_user_id
            logger.info(
                "sales_order_updated",
                extra={
                    "order_id": str(order.id),
                    "fields": sorted(changes),
                    "actor_id": str(acting_user_id),
                },
            )
        return self._reload(order.id)

    # =========================================================================
    # Status
    # =========================================================================

    def change_status(
        self,
        order_id: UUID,
        target: SalesOrderStatus,
        acting_user_id: UUID,
    ) -> SalesOrder:
        """
        Move the order to ``target`` and run the transition's stock effects.

        Same-status requests are a no-op.

        Raises:
            IllegalTransitionError: current status is terminal, or the pair is
                not in the workflow table.
            TransitionPreconditionError: in_preparation from anything other
                than approved / payment_received, or leaving draft without
                items.
        """
        with self._unit_of_work("change_status", DOCUMENT_TYPE, order_id):
            self._require_user(acting_user_id)
            order = self._load(order_id, for_update=True)
            current = order.status_enum
            if target is current:
                return order.to_dto()

            self._validate_transition(order, current, target)

            if target in RESERVED_STATUSES and current not in RESERVED_STATUSES:
                self._write_order_movements(
                    order, MovementType.SALE_DELIVERY, acting_user_id, "reserved",
                )
            elif target is SalesOrderStatus.CANCELLED and current in RESERVED_STATUSES:
                self._write_order_movements(
                    order, MovementType.CUSTOMER_RETURN, acting_user_id, "released",
                )

            order.status = target.value
            order.updated_by_id = acting_user_id
            with LogContext.bind(document_id=order.id, actor_id=acting_user_id):
                logger.info(
                    "sales_order_status_changed",
                    extra={
                        "order_number": order.order_number,
                        "from_status": current.value,
                        "to_status": target.value,
                    },
                )
        return self._reload(order.id)

    def _validate_transition(
        self,
        order: SalesOrderModel,
        current: SalesOrderStatus,
        target: SalesOrderStatus,
    ) -> None:
        if SALES_ORDER_WORKFLOW.is_terminal(current.value):
            raise IllegalTransitionError(DOCUMENT_TYPE, str(order.id), current.value, target.value)

        if target is SalesOrderStatus.IN_PREPARATION and current not in (
            SalesOrderStatus.APPROVED, SalesOrderStatus.PAYMENT_RECEIVED,
        ):
            raise TransitionPreconditionError(
                DOCUMENT_TYPE, str(order.id), current.value, target.value,
                "order must be 'approved' or 'payment_received'",
            )

        transition = SALES_ORDER_WORKFLOW.find_transition(current.value, target.value)
        if transition is None:
            raise IllegalTransitionError(DOCUMENT_TYPE, str(order.id), current.value, target.value)

        if transition.guard is HAS_ITEMS and not order.active_items:
            raise TransitionPreconditionError(
                DOCUMENT_TYPE, str(order.id), current.value, target.value,
                "order has no items",
            )

    def _write_order_movements(
        self,
        order: SalesOrderModel,
        movement_type: MovementType,
        acting_user_id: UUID,
        verb: str,
    ) -> None:
        """One movement per active line at the order's dispatch location."""
        if order.warehouse_id is None and order.shop_id is None:
            logger.warning(
                "sales_order_no_dispatch_location",
                extra={
                    "order_id": str(order.id),
                    "movement_type": movement_type.value,
                    "item_count": len(order.active_items),
                },
            )
            return

        for item in order.active_items:
            self._ledger.append(
                MovementRequest(
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    movement_type=movement_type,
                    quantity=item.quantity,
                    user_id=acting_user_id,
                    warehouse_id=order.warehouse_id,
                    shop_id=order.shop_id,
                    reference_document_type=MOVEMENT_REFERENCE_TYPE,
                    reference_document_id=str(item.id),
                    notes=f"Stock {verb} for sales order {order.order_number} (item {item.id})",
                )
            )
        logger.info(
            "sales_order_stock_" + verb,
            extra={
                "order_id": str(order.id),
                "movement_type": movement_type.value,
                "item_count": len(order.active_items),
            },
        )

    # =========================================================================
    # Delete / read
    # =========================================================================

    def delete_order(self, order_id: UUID, acting_user_id: UUID) -> None:
        """Soft-delete a draft or cancelled order and its lines."""
        with self._unit_of_work("delete_order", DOCUMENT_TYPE, order_id):
            self._require_user(acting_user_id)
            order = self._load(order_id, for_update=True)
            if order.status_enum not in DELETABLE_STATUSES:
                raise DeletionNotAllowedError(
                    DOCUMENT_TYPE, str(order.id), order.status,
                    "only draft or cancelled orders can be deleted",
                )
            now = self._clock.now()
            for item in order.active_items:
                item.deleted_at = now
            order.deleted_at = now
            order.updated_by_id = acting_user_id
            logger.info(
                "sales_order_deleted",
                extra={"order_id": str(order.id), "actor_id": str(acting_user_id)},
            )

    def get_order(self, order_id: UUID) -> SalesOrder:
        return self._load(order_id).to_dto()

    def recalculate_totals(self, order_id: UUID) -> SalesOrder:
        """Recompute line and header totals from current lines."""
        with self._unit_of_work("recalculate_totals", DOCUMENT_TYPE, order_id):
            order = self._load(order_id)
            self._apply_totals(order)
        return self._reload(order.id)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _load(self, order_id: UUID, for_update: bool = False) -> SalesOrderModel:
        stmt = select(SalesOrderModel).where(
            SalesOrderModel.id == order_id,
            SalesOrderModel.deleted_at.is_(None),
        )
        if for_update:
            stmt = stmt.with_for_update()
        order = self.session.scalars(stmt).first()
        if order is None:
            raise EntityNotFoundError(DOCUMENT_TYPE, str(order_id))
        return order

    def _reload(self, order_id: UUID) -> SalesOrder:
        order = self.session.get(SalesOrderModel, order_id)
        if order is None:
            raise DocumentReloadError(DOCUMENT_TYPE, str(order_id))
        return order.to_dto()

    def _require_user(self, user_id: UUID) -> None:
        if self._directory.find_user(user_id) is None:
            raise InvalidReferenceError("User", str(user_id), "does not exist")

    def _require_customer(self, customer_id: object) -> None:
        if self._directory.find_customer(customer_id) is None:
            raise InvalidReferenceError("Customer", str(customer_id), "does not exist")

    def _require_dispatch_location(
        self,
        warehouse_id: UUID | None,
        shop_id: UUID | None,
    ) -> None:
        """An order may have no dispatch location, but never two."""
        if warehouse_id is not None and shop_id is not None:
            raise LocationExclusivityError(str(warehouse_id), str(shop_id))
        if warehouse_id is not None and self._directory.find_location(
            LocationType.WAREHOUSE, warehouse_id,
        ) is None:
            raise InvalidReferenceError("Warehouse", str(warehouse_id), "does not exist")
        if shop_id is not None and self._directory.find_location(
            LocationType.SHOP, shop_id,
        ) is None:
            raise InvalidReferenceError("Shop", str(shop_id), "does not exist")

    def _build_item(
        self,
        data: SalesOrderItemInput,
        line_number: int,
        acting_user_id: UUID,
    ) -> SalesOrderItemModel:
        validate_line_values(
            data.quantity, data.unit_price_ht,
            data.discount_percentage, data.vat_rate_percentage,
        )
        product, variant_name = resolve_product(self._directory, data.product_id, data.variant_id)

        vat_rate = data.vat_rate_percentage
        if vat_rate is None:
            vat_rate = product.default_vat_rate_percentage
        return SalesOrderItemModel(
            id=uuid4(),
            line_number=line_number,
            product_id=data.product_id,
            variant_id=data.variant_id,
            description=data.description or variant_name or product.name,
            quantity=round_quantity(data.quantity),
            unit_price_ht=round_amount(data.unit_price_ht),
            discount_percentage=data.discount_percentage,
            vat_rate_percentage=vat_rate,
            quantity_shipped=Decimal("0"),
            quantity_invoiced=Decimal("0"),
            created_by_id=acting_user_id,
        )

    def _apply_item_changes(
        self,
        order: SalesOrderModel,
        item_changes: Iterable[SalesOrderItemChange],
        acting_user_id: UUID,
    ) -> None:
        by_id = {item.id: item for item in order.active_items}
        next_line = max((item.line_number for item in order.items), default=0) + 1
        now = self._clock.now()

        for change in item_changes:
            if change.id is None:
                if change.product_id is None or change.quantity is None or change.unit_price_ht is None:
                    raise InvalidDocumentError(
                        DOCUMENT_TYPE, str(order.id),
                        "a new item needs product_id, quantity and unit_price_ht",
                    )
                order.items.append(self._build_item(
                    SalesOrderItemInput(
                        product_id=change.product_id,
                        quantity=change.quantity,
                        unit_price_ht=change.unit_price_ht,
                        variant_id=change.variant_id,
                        description=change.description,
                        discount_percentage=(
                            change.discount_percentage
                            if change.discount_percentage is not None else Decimal("0")
                        ),
                        vat_rate_percentage=change.vat_rate_percentage,
                    ),
                    next_line,
                    acting_user_id,
                ))
                next_line += 1
                continue

            item = by_id.get(change.id)
            if item is None:
                raise InvalidReferenceError(
                    "SalesOrderItem", str(change.id), f"is not an item of order {order.id}",
                )
            if change.delete:
                item.deleted_at = now
                item.updated_by_id = acting_user_id
                continue

            validate_line_values(
                change.quantity if change.quantity is not None else item.quantity,
                change.unit_price_ht,
                change.discount_percentage,
                change.vat_rate_percentage,
            )
            if change.product_id is not None or change.variant_id is not None:
                product_id = change.product_id or item.product_id
                product, variant_name = resolve_product(
                    self._directory, product_id, change.variant_id,
                )
                item.product_id = product_id
                item.variant_id = change.variant_id
                item.description = variant_name or product.name
                if change.vat_rate_percentage is None:
                    item.vat_rate_percentage = product.default_vat_rate_percentage
            if change.description is not None:
                item.description = change.description
            if change.quantity is not None:
                item.quantity = round_quantity(change.quantity)
            if change.unit_price_ht is not None:
                item.unit_price_ht = round_amount(change.unit_price_ht)
            if change.discount_percentage is not None:
                item.discount_percentage = change.discount_percentage
            if change.vat_rate_percentage is not None:
                item.vat_rate_percentage = change.vat_rate_percentage
            item.updated_by_id = acting_user_id

    @staticmethod
    def _apply_totals(order: SalesOrderModel) -> None:
        items = order.active_items
        for item in items:
            item.total_line_amount_ht = calculate_line_total(
                item.quantity, item.unit_price_ht, item.discount_percentage,
            )
        totals = calculate_header_totals(items, order.shipping_fees_ht)
        order.total_amount_ht = totals.total_amount_ht
        order.total_vat_amount = totals.total_vat_amount
        order.total_amount_ttc = totals.total_amount_ttc
