"""
Sales Order ORM Models (``erp_modules.sales.orm``).

Responsibility
--------------
SQLAlchemy persistence for sales order headers and lines.

Architecture position
---------------------
**Modules layer** -- persistence.  Imports from ``erp_kernel.db`` and the
sibling ``models.py``.  MUST NOT be imported by ``erp_kernel`` (except the
immutability and registry hooks that import lazily).

Invariants enforced
-------------------
* The header owns its lines (``cascade="all, delete-orphan"``).  Services
  only soft-delete, so the cascade matters for session bookkeeping, not for
  physical deletes.
* ``SalesOrderItemModel`` carries a ``version_id_col``: the reconciliation
  accumulators ``quantity_shipped`` / ``quantity_invoiced`` are the contended
  resource, and a concurrent writer surfaces as ``StaleDataError`` at flush.
* CHECK: line quantity > 0; accumulators >= 0.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import BigInteger, CheckConstraint, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from erp_kernel.db.base import SoftDeleteMixin, TrackedBase
from erp_kernel.db.types import AMOUNT, PERCENTAGE, QUANTITY
from erp_modules.sales.models import (
    DESCRIPTION_MAX_LENGTH,
    SalesOrder,
    SalesOrderItem,
    SalesOrderStatus,
)


class SalesOrderModel(SoftDeleteMixin, TrackedBase):
    """
    ORM model for a sales order header.

    Maps to the ``SalesOrder`` frozen dataclass.  Only non-deleted lines are
    carried into the DTO.
    """

    __tablename__ = "sales_orders"

    __table_args__ = (
        Index("idx_sales_order_number", "order_number", unique=True),
        Index("idx_sales_order_customer", "customer_id"),
        Index("idx_sales_order_status", "status"),
    )

    order_number: Mapped[str] = mapped_column(String(50), nullable=False)
    customer_id: Mapped[UUID] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=SalesOrderStatus.DRAFT.value,
    )
    order_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Dispatch location: at most one of the two.
    warehouse_id: Mapped[UUID | None] = mapped_column(nullable=True)
    shop_id: Mapped[UUID | None] = mapped_column(nullable=True)

    shipping_fees_ht: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    total_amount_ht: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    total_vat_amount: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    total_amount_ttc: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    items: Mapped[list["SalesOrderItemModel"]] = relationship(
        back_populates="sales_order",
        cascade="all, delete-orphan",
        order_by="SalesOrderItemModel.line_number",
    )

    @property
    def active_items(self) -> list["SalesOrderItemModel"]:
        return [item for item in self.items if item.deleted_at is None]

    @property
    def status_enum(self) -> SalesOrderStatus:
        return SalesOrderStatus(self.status)

    def to_dto(self) -> SalesOrder:
        return SalesOrder(
            id=self.id,
            order_number=self.order_number,
            customer_id=self.customer_id,
            status=SalesOrderStatus(self.status),
            order_date=self.order_date,
            shipping_fees_ht=self.shipping_fees_ht,
            total_amount_ht=self.total_amount_ht,
            total_vat_amount=self.total_vat_amount,
            total_amount_ttc=self.total_amount_ttc,
            created_by_id=self.created_by_id,
            items=tuple(item.to_dto() for item in self.active_items),
            warehouse_id=self.warehouse_id,
            shop_id=self.shop_id,
            notes=self.notes,
            updated_by_id=self.updated_by_id,
            deleted_at=self.deleted_at,
        )

    def __repr__(self) -> str:
        return f"<SalesOrderModel {self.order_number} [{self.status}]>"


class SalesOrderItemModel(SoftDeleteMixin, TrackedBase):
    """
    ORM model for one sales order line.

    Maps to the ``SalesOrderItem`` frozen dataclass.

    Guarantees:
        - version_id increments on every UPDATE; a stale in-memory copy fails
          its flush instead of overwriting a concurrent accumulator write.
    """

    __tablename__ = "sales_order_items"

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_so_item_quantity_positive"),
        CheckConstraint("quantity_shipped >= 0", name="ck_so_item_shipped_nonneg"),
        CheckConstraint("quantity_invoiced >= 0", name="ck_so_item_invoiced_nonneg"),
        Index("idx_so_item_order", "sales_order_id"),
        Index("idx_so_item_product", "product_id", "variant_id"),
    )

    sales_order_id: Mapped[UUID] = mapped_column(ForeignKey("sales_orders.id"), nullable=False)
    line_number: Mapped[int] = mapped_column(BigInteger, nullable=False, default=1)
    product_id: Mapped[UUID] = mapped_column(nullable=False)
    variant_id: Mapped[UUID | None] = mapped_column(nullable=True)
    description: Mapped[str | None] = mapped_column(String(DESCRIPTION_MAX_LENGTH), nullable=True)

    quantity: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False)
    unit_price_ht: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    discount_percentage: Mapped[Decimal] = mapped_column(PERCENTAGE, default=Decimal("0"))
    vat_rate_percentage: Mapped[Decimal | None] = mapped_column(PERCENTAGE, nullable=True)
    total_line_amount_ht: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))

    # Reconciliation accumulators, re-summed from downstream lines.
    quantity_shipped: Mapped[Decimal] = mapped_column(QUANTITY, default=Decimal("0"))
    quantity_invoiced: Mapped[Decimal] = mapped_column(QUANTITY, default=Decimal("0"))

    version_id: Mapped[int] = mapped_column(BigInteger, nullable=False)

    sales_order: Mapped[SalesOrderModel] = relationship(back_populates="items")

    __mapper_args__ = {"version_id_col": version_id}

    def to_dto(self) -> SalesOrderItem:
        return SalesOrderItem(
            id=self.id,
            sales_order_id=self.sales_order_id,
            product_id=self.product_id,
            description=self.description,
            quantity=self.quantity,
            unit_price_ht=self.unit_price_ht,
            discount_percentage=self.discount_percentage,
            vat_rate_percentage=self.vat_rate_percentage,
            total_line_amount_ht=self.total_line_amount_ht,
            quantity_shipped=self.quantity_shipped,
            quantity_invoiced=self.quantity_invoiced,
            variant_id=self.variant_id,
        )

    def __repr__(self) -> str:
        return (
            f"<SalesOrderItemModel {self.product_id} qty={self.quantity} "
            f"shipped={self.quantity_shipped} invoiced={self.quantity_invoiced}>"
        )
