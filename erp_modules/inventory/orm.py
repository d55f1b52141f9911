"""
Module: erp_modules.inventory.orm
Responsibility: SQLAlchemy persistence for the append-only stock ledger.

Architecture position: Modules > Inventory > ORM.  Inherits from TrackedBase.
    Products, variants, locations, and users are referenced by UUID with NO
    foreign key constraints; existence is checked by the service through the
    reference directory.

Invariants enforced:
    - CHECK: exactly one of warehouse_id / shop_id is set.
    - CHECK: quantity is non-zero.
    - Rows are never updated or deleted once flushed.  ORM listeners in
      ``erp_kernel.db.immutability`` raise ImmutabilityViolationError on any
      attempt.
    - Quantities use Numeric(15, 3), unit costs Numeric(15, 4).

Audit relevance:
    The ledger is the single source of truth for stock.  Current stock is a
    SUM over these rows; there is no maintained counter that could drift.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from erp_kernel.db.base import TrackedBase
from erp_kernel.db.types import AMOUNT, QUANTITY
from erp_modules.inventory.models import (
    NOTES_MAX_LENGTH,
    REFERENCE_DOCUMENT_ID_MAX_LENGTH,
    REFERENCE_DOCUMENT_TYPE_MAX_LENGTH,
    MovementType,
    StockMovement,
)


class StockMovementModel(TrackedBase):
    """
    ORM model for one signed stock ledger entry.

    Maps to: erp_modules.inventory.models.StockMovement (frozen dataclass).
    """

    __tablename__ = "stock_movements"

    __table_args__ = (
        CheckConstraint(
            "(warehouse_id IS NULL) <> (shop_id IS NULL)",
            name="ck_stock_movement_single_location",
        ),
        CheckConstraint("quantity <> 0", name="ck_stock_movement_nonzero"),
        Index("idx_stock_mvt_wh_key", "product_id", "variant_id", "warehouse_id"),
        Index("idx_stock_mvt_shop_key", "product_id", "variant_id", "shop_id"),
        Index("idx_stock_mvt_reference", "reference_document_type", "reference_document_id"),
        Index("idx_stock_mvt_date", "movement_date"),
    )

    product_id: Mapped[UUID] = mapped_column()
    variant_id: Mapped[UUID | None] = mapped_column(nullable=True)
    warehouse_id: Mapped[UUID | None] = mapped_column(nullable=True)
    shop_id: Mapped[UUID | None] = mapped_column(nullable=True)

    # MovementType enum stored as string
    movement_type: Mapped[str] = mapped_column(String(50))
    quantity: Mapped[Decimal] = mapped_column(QUANTITY)
    movement_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    unit_cost_at_movement: Mapped[Decimal | None] = mapped_column(AMOUNT, nullable=True)

    user_id: Mapped[UUID] = mapped_column()

    reference_document_type: Mapped[str | None] = mapped_column(
        String(REFERENCE_DOCUMENT_TYPE_MAX_LENGTH), nullable=True,
    )  # sales_order_item, delivery, manual, ...
    reference_document_id: Mapped[str | None] = mapped_column(
        String(REFERENCE_DOCUMENT_ID_MAX_LENGTH), nullable=True,
    )
    notes: Mapped[str | None] = mapped_column(String(NOTES_MAX_LENGTH), nullable=True)

    def to_dto(self) -> StockMovement:
        return StockMovement(
            id=self.id,
            product_id=self.product_id,
            movement_type=MovementType(self.movement_type),
            quantity=self.quantity,
            movement_date=self.movement_date,
            user_id=self.user_id,
            variant_id=self.variant_id,
            warehouse_id=self.warehouse_id,
            shop_id=self.shop_id,
            unit_cost_at_movement=self.unit_cost_at_movement,
            reference_document_type=self.reference_document_type,
            reference_document_id=self.reference_document_id,
            notes=self.notes,
        )

    def __repr__(self) -> str:
        return (
            f"<StockMovementModel {self.movement_type} {self.quantity} "
            f"product={self.product_id}>"
        )
