"""
Delivery ORM Models (``erp_modules.deliveries.orm``).

Responsibility
--------------
SQLAlchemy persistence for delivery headers and lines.

Architecture position
---------------------
**Modules layer** -- persistence.  Delivery lines hold a non-owning foreign
key to ``sales_order_items``; nothing cascades across that reference.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import BigInteger, CheckConstraint, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from erp_kernel.db.base import SoftDeleteMixin, TrackedBase
from erp_kernel.db.types import QUANTITY
from erp_modules.deliveries.models import Delivery, DeliveryItem, DeliveryStatus


class DeliveryModel(SoftDeleteMixin, TrackedBase):
    """
    ORM model for a delivery header.

    Maps to the ``Delivery`` frozen dataclass.
    """

    __tablename__ = "deliveries"

    __table_args__ = (
        Index("idx_delivery_number", "delivery_number", unique=True),
        Index("idx_delivery_sales_order", "sales_order_id"),
        Index("idx_delivery_status", "status"),
    )

    delivery_number: Mapped[str] = mapped_column(String(50), nullable=False)
    sales_order_id: Mapped[UUID] = mapped_column(ForeignKey("sales_orders.id"), nullable=False)
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=DeliveryStatus.PENDING.value,
    )

    warehouse_id: Mapped[UUID | None] = mapped_column(nullable=True)
    shop_id: Mapped[UUID | None] = mapped_column(nullable=True)

    planned_delivery_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    ship_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_delivery_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    carrier_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tracking_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    items: Mapped[list["DeliveryItemModel"]] = relationship(
        back_populates="delivery",
        cascade="all, delete-orphan",
        order_by="DeliveryItemModel.line_number",
    )

    @property
    def active_items(self) -> list["DeliveryItemModel"]:
        return [item for item in self.items if item.deleted_at is None]

    @property
    def status_enum(self) -> DeliveryStatus:
        return DeliveryStatus(self.status)

    def to_dto(self) -> Delivery:
        return Delivery(
            id=self.id,
            delivery_number=self.delivery_number,
            sales_order_id=self.sales_order_id,
            status=DeliveryStatus(self.status),
            created_by_id=self.created_by_id,
            items=tuple(item.to_dto() for item in self.active_items),
            warehouse_id=self.warehouse_id,
            shop_id=self.shop_id,
            planned_delivery_date=self.planned_delivery_date,
            ship_date=self.ship_date,
            actual_delivery_date=self.actual_delivery_date,
            carrier_name=self.carrier_name,
            tracking_number=self.tracking_number,
            notes=self.notes,
            updated_by_id=self.updated_by_id,
            deleted_at=self.deleted_at,
        )

    def __repr__(self) -> str:
        return f"<DeliveryModel {self.delivery_number} [{self.status}]>"


class DeliveryItemModel(SoftDeleteMixin, TrackedBase):
    """ORM model for one delivery line."""

    __tablename__ = "delivery_items"

    __table_args__ = (
        CheckConstraint("quantity_shipped > 0", name="ck_delivery_item_quantity_positive"),
        Index("idx_delivery_item_delivery", "delivery_id"),
        Index("idx_delivery_item_so_item", "sales_order_item_id"),
    )

    delivery_id: Mapped[UUID] = mapped_column(ForeignKey("deliveries.id"), nullable=False)
    line_number: Mapped[int] = mapped_column(BigInteger, nullable=False, default=1)
    sales_order_item_id: Mapped[UUID] = mapped_column(
        ForeignKey("sales_order_items.id"), nullable=False,
    )
    product_id: Mapped[UUID] = mapped_column(nullable=False)
    variant_id: Mapped[UUID | None] = mapped_column(nullable=True)
    quantity_shipped: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    delivery: Mapped[DeliveryModel] = relationship(back_populates="items")

    def to_dto(self) -> DeliveryItem:
        return DeliveryItem(
            id=self.id,
            delivery_id=self.delivery_id,
            sales_order_item_id=self.sales_order_item_id,
            product_id=self.product_id,
            quantity_shipped=self.quantity_shipped,
            variant_id=self.variant_id,
            notes=self.notes,
        )

    def __repr__(self) -> str:
        return (
            f"<DeliveryItemModel so_item={self.sales_order_item_id} "
            f"qty={self.quantity_shipped}>"
        )
