"""
Stock Ledger Service (``erp_modules.inventory.service``).

Responsibility
--------------
Appends signed, immutable stock movements and derives current stock by
aggregation.  Also hosts the movement factory: the referential checks
performed before a public movement is appended, and the manual-adjustment
entry point.

Architecture
------------
Layer: **Modules** -- flush-only service (``BaseService``).  It runs inside
the caller's transaction: the document services call ``append`` in the same
unit of work as their status and accumulator writes, so a failure anywhere
rolls the movement back too.

Invariants
----------
- The movement type is authoritative for the sign; the caller's sign is
  advisory (``normalize_quantity``).
- Zero quantities are rejected.
- Exactly one of warehouse / shop.
- ``append`` never mutates any other aggregate.  Callers that need an
  accumulator update do it explicitly.
- Current stock is always a SUM over the ledger, never a stored counter.

Failure Modes
-------------
- ``InvalidQuantityError`` / ``LocationExclusivityError`` for malformed
  requests.
- ``InvalidReferenceError`` when a product, variant, location, or user
  referenced by a public movement request is missing.
- ``InvalidMovementTypeError`` when a manual adjustment uses a non-manual type.
- ``EntityNotFoundError`` from ``current_stock`` for a missing product,
  variant, or location -- independent of whether movements exist.

Usage::

    ledger = StockLedgerService(session, SqlReferenceDirectory(session))
    ledger.create_manual_adjustment(
        MovementRequest(product_id=pid, movement_type=MovementType.MANUAL_ENTRY_OUT,
                        quantity=Decimal("5"), user_id=actor_id, warehouse_id=wh_id),
        acting_user_id=actor_id,
    )
    level = ledger.current_stock(pid, warehouse_id=wh_id)
"""

from __future__ import annotations

from dataclasses import replace
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from erp_config.schema import ErpSettings
from erp_kernel.domain.clock import Clock, SystemClock
from erp_kernel.exceptions import (
    EntityNotFoundError,
    InvalidDocumentError,
    InvalidMovementTypeError,
    InvalidQuantityError,
    InvalidReferenceError,
)
from erp_kernel.logging_config import get_logger
from erp_kernel.services.base import BaseService
from erp_modules.inventory.helpers import normalize_quantity, resolve_location
from erp_modules.inventory.models import (
    MANUAL_MOVEMENT_TYPES,
    NOTES_MAX_LENGTH,
    REFERENCE_DOCUMENT_ID_MAX_LENGTH,
    REFERENCE_DOCUMENT_TYPE_MAX_LENGTH,
    MovementRequest,
    StockLevel,
    StockMovement,
)
from erp_modules.inventory.orm import StockMovementModel
from erp_modules.inventory.selectors import StockLedgerSelector
from erp_modules.reference.directory import ReferenceDirectory
from erp_modules.reference.models import LocationType

logger = get_logger("modules.inventory.service")


class StockLedgerService(BaseService[StockMovementModel]):
    """
    Append-only stock ledger.

    Contract
    --------
    ``append`` is the internal write path used by the document services;
    they have already validated their references.  ``create_movement`` and
    ``create_manual_adjustment`` are the public write paths and check every
    reference first.

    Guarantees
    ----------
    - Every persisted movement satisfies the sign invariant.
    - ``current_stock`` after an ``append`` differs from before by exactly
      the appended signed quantity.

    Non-goals
    ---------
    - No negative-stock prevention: the ledger records what happened.
    - No commit / rollback -- the caller owns the transaction.
    """

    def __init__(
        self,
        session: Session,
        directory: ReferenceDirectory,
        clock: Clock | None = None,
        settings: ErpSettings | None = None,
    ):
        super().__init__(session)
        self._directory = directory
        self._clock = clock or SystemClock()
        self._settings = settings or ErpSettings()
        self._selector = StockLedgerSelector(session)

    # =========================================================================
    # Writes
    # =========================================================================

    def append(self, request: MovementRequest) -> StockMovement:
        """
        Normalize and persist one ledger entry in the caller's transaction.

        Preconditions:
            - Referenced product / variant / location / user exist (the
              caller has checked, or uses ``create_movement``).
        Postconditions:
            - One new row in ``stock_movements``, flushed.
            - The stored quantity carries the sign of the movement type.
        Raises:
            InvalidQuantityError: zero quantity or negative unit cost.
            LocationExclusivityError: both or neither location set.
            InvalidDocumentError: reference / notes text too long.
        """
        quantity = normalize_quantity(
            request.movement_type,
            request.quantity,
            self._settings.amounts.quantity_places,
        )
        location_type, location_id = resolve_location(request.warehouse_id, request.shop_id)
        if request.unit_cost is not None and request.unit_cost < 0:
            raise InvalidQuantityError("unit_cost", request.unit_cost, "must be >= 0")
        self._check_lengths(request)

        model = StockMovementModel(
            id=uuid4(),
            product_id=request.product_id,
            variant_id=request.variant_id,
            warehouse_id=request.warehouse_id,
            shop_id=request.shop_id,
            movement_type=request.movement_type.value,
            quantity=quantity,
            movement_date=request.movement_date or self._clock.now(),
            unit_cost_at_movement=request.unit_cost,
            user_id=request.user_id,
            reference_document_type=request.reference_document_type,
            reference_document_id=request.reference_document_id,
            notes=request.notes,
            created_by_id=request.user_id,
        )
        self.session.add(model)
        self._flush("StockMovement", model.id)

        logger.info(
            "stock_movement_appended",
            extra={
                "movement_id": str(model.id),
                "product_id": str(request.product_id),
                "variant_id": str(request.variant_id) if request.variant_id else None,
                "location_type": location_type.value,
                "location_id": str(location_id),
                "movement_type": request.movement_type.value,
                "requested_quantity": str(request.quantity),
                "quantity": str(quantity),
                "reference_document_type": request.reference_document_type,
                "reference_document_id": request.reference_document_id,
            },
        )
        return model.to_dto()

    def create_movement(self, request: MovementRequest) -> StockMovement:
        """
        Validate every reference of a public movement request, then append.

        Checks, in order: product exists; variant exists and belongs to the
        product; exactly one location and it exists; acting user exists.

        Raises:
            InvalidReferenceError: a referenced entity is missing or foreign.
            LocationExclusivityError: both or neither location set.
        """
        self._check_references(request)
        return self.append(request)

    def create_manual_adjustment(
        self,
        request: MovementRequest,
        acting_user_id: UUID,
    ) -> StockMovement:
        """
        Record a manual stock correction.

        Only ``MANUAL_ENTRY_IN`` / ``MANUAL_ENTRY_OUT`` are accepted.  The
        acting user is recorded as the movement's user regardless of the
        request's ``user_id``.

        Raises:
            InvalidMovementTypeError: any other movement type.
            InvalidReferenceError / LocationExclusivityError: as create_movement.
        """
        if request.movement_type not in MANUAL_MOVEMENT_TYPES:
            raise InvalidMovementTypeError(
                request.movement_type.value,
                tuple(t.value for t in MANUAL_MOVEMENT_TYPES),
            )
        request = replace(
            request,
            user_id=acting_user_id,
            reference_document_type=request.reference_document_type or "manual_adjustment",
        )
        movement = self.create_movement(request)
        logger.info(
            "manual_adjustment_recorded",
            extra={
                "movement_id": str(movement.id),
                "movement_type": movement.movement_type.value,
                "quantity": str(movement.quantity),
                "actor_id": str(acting_user_id),
            },
        )
        return movement

    # =========================================================================
    # Reads
    # =========================================================================

    def current_stock(
        self,
        product_id: UUID,
        variant_id: UUID | None = None,
        warehouse_id: UUID | None = None,
        shop_id: UUID | None = None,
    ) -> StockLevel:
        """
        Derived stock for one (product, variant, location) key.

        Returns a zero level when no movement matches.

        Raises:
            LocationExclusivityError: both or neither location set.
            EntityNotFoundError: product, variant (or variant of another
                product), or location does not exist.
        """
        location_type, location_id = resolve_location(warehouse_id, shop_id)

        if self._directory.find_product(product_id) is None:
            raise EntityNotFoundError("Product", str(product_id))
        if variant_id is not None:
            variant = self._directory.find_variant(variant_id)
            if variant is None or variant.product_id != product_id:
                raise EntityNotFoundError("ProductVariant", str(variant_id))
        if self._directory.find_location(location_type, location_id) is None:
            raise EntityNotFoundError(_location_entity(location_type), str(location_id))

        quantity = self._selector.sum_quantity(product_id, variant_id, location_type, location_id)
        logger.debug(
            "current_stock_computed",
            extra={
                "product_id": str(product_id),
                "variant_id": str(variant_id) if variant_id else None,
                "location_id": str(location_id),
                "quantity": str(quantity),
            },
        )
        return StockLevel(
            product_id=product_id,
            variant_id=variant_id,
            location_id=location_id,
            location_type=location_type,
            quantity=quantity,
        )

    def get_movement(self, movement_id: UUID) -> StockMovement:
        movement = self._selector.get(movement_id)
        if movement is None:
            raise EntityNotFoundError("StockMovement", str(movement_id))
        return movement

    def list_movements(self, **filters) -> list[StockMovement]:
        """See ``StockLedgerSelector.list_movements`` for the accepted filters."""
        return self._selector.list_movements(**filters)

    # =========================================================================
    # Validation
    # =========================================================================

    def _check_references(self, request: MovementRequest) -> None:
        if self._directory.find_product(request.product_id) is None:
            raise InvalidReferenceError("Product", str(request.product_id), "does not exist")

        if request.variant_id is not None:
            variant = self._directory.find_variant(request.variant_id)
            if variant is None:
                raise InvalidReferenceError(
                    "ProductVariant", str(request.variant_id), "does not exist",
                )
            if variant.product_id != request.product_id:
                raise InvalidReferenceError(
                    "ProductVariant",
                    str(request.variant_id),
                    f"does not belong to product {request.product_id}",
                )

        location_type, location_id = resolve_location(request.warehouse_id, request.shop_id)
        if self._directory.find_location(location_type, location_id) is None:
            raise InvalidReferenceError(
                _location_entity(location_type), str(location_id), "does not exist",
            )

        if self._directory.find_user(request.user_id) is None:
            raise InvalidReferenceError("User", str(request.user_id), "does not exist")

    @staticmethod
    def _check_lengths(request: MovementRequest) -> None:
        limits = (
            ("reference_document_type", request.reference_document_type,
             REFERENCE_DOCUMENT_TYPE_MAX_LENGTH),
            ("reference_document_id", request.reference_document_id,
             REFERENCE_DOCUMENT_ID_MAX_LENGTH),
            ("notes", request.notes, NOTES_MAX_LENGTH),
        )
        for field_name, value, limit in limits:
            if value is not None and len(value) > limit:
                raise InvalidDocumentError(
                    "StockMovement", None,
                    f"{field_name} exceeds {limit} characters",
                )


def _location_entity(location_type: LocationType) -> str:
    return "Warehouse" if location_type is LocationType.WAREHOUSE else "Shop"
