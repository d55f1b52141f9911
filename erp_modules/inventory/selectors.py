"""
Stock ledger read side (``erp_modules.inventory.selectors``).

Read-only aggregation and listing over ``stock_movements``.  Existence
checks on products and locations belong to the service; this selector only
answers questions about ledger rows.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from erp_kernel.db.types import coerce_sum, round_quantity
from erp_kernel.selectors.base import BaseSelector
from erp_modules.inventory.models import MovementType, StockMovement
from erp_modules.inventory.orm import StockMovementModel
from erp_modules.reference.models import LocationType


class StockLedgerSelector(BaseSelector[StockMovementModel]):
    """Sums and lists stock movements.  Never mutates."""

    def sum_quantity(
        self,
        product_id: UUID,
        variant_id: UUID | None,
        location_type: LocationType,
        location_id: UUID,
    ) -> Decimal:
        """
        Sum of signed quantities for the exact (product, variant, location) key.

        ``variant_id=None`` matches only movements recorded without a variant.
        Returns 0 when no movement matches.
        """
        stmt = select(func.sum(StockMovementModel.quantity)).where(
            StockMovementModel.product_id == product_id,
        )
        if variant_id is None:
            stmt = stmt.where(StockMovementModel.variant_id.is_(None))
        else:
            stmt = stmt.where(StockMovementModel.variant_id == variant_id)
        if location_type is LocationType.WAREHOUSE:
            stmt = stmt.where(StockMovementModel.warehouse_id == location_id)
        else:
            stmt = stmt.where(StockMovementModel.shop_id == location_id)
        return round_quantity(coerce_sum(self.session.scalar(stmt)))

    def get(self, movement_id: UUID) -> StockMovement | None:
        row = self.session.get(StockMovementModel, movement_id)
        return row.to_dto() if row is not None else None

    def list_movements(
        self,
        product_id: UUID | None = None,
        variant_id: UUID | None = None,
        warehouse_id: UUID | None = None,
        shop_id: UUID | None = None,
        movement_type: MovementType | None = None,
        reference_document_type: str | None = None,
        reference_document_id: str | None = None,
    ) -> list[StockMovement]:
        """Movements matching every given filter, oldest first."""
        stmt = select(StockMovementModel)
        if product_id is not None:
            stmt = stmt.where(StockMovementModel.product_id == product_id)
        if variant_id is not None:
            stmt = stmt.where(StockMovementModel.variant_id == variant_id)
        if warehouse_id is not None:
            stmt = stmt.where(StockMovementModel.warehouse_id == warehouse_id)
        if shop_id is not None:
            stmt = stmt.where(StockMovementModel.shop_id == shop_id)
        if movement_type is not None:
            stmt = stmt.where(StockMovementModel.movement_type == movement_type.value)
        if reference_document_type is not None:
            stmt = stmt.where(
                StockMovementModel.reference_document_type == reference_document_type
            )
        if reference_document_id is not None:
            stmt = stmt.where(
                StockMovementModel.reference_document_id == reference_document_id
            )
        stmt = stmt.order_by(StockMovementModel.movement_date, StockMovementModel.created_at)
        return [row.to_dto() for row in self.session.scalars(stmt)]
