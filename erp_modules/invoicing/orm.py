"""
Customer Invoice ORM Models (``erp_modules.invoicing.orm``).

Responsibility
--------------
SQLAlchemy persistence for invoice headers, invoice lines, and the
invoice-to-sales-order link table.

Architecture position
---------------------
**Modules layer** -- persistence.

Invariants enforced
-------------------
* ``CustomerInvoiceModel`` carries a ``version_id_col``: ``amount_paid`` is
  written by payment application and must not be lost to a concurrent
  payment.
* Links to sales orders are header-level (many-to-many), unique per pair.
* Line references to sales order lines and delivery lines are non-owning.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from erp_kernel.db.base import SoftDeleteMixin, TrackedBase
from erp_kernel.db.types import AMOUNT, PERCENTAGE, QUANTITY
from erp_modules.invoicing.models import CustomerInvoice, CustomerInvoiceItem, InvoiceStatus


class CustomerInvoiceModel(SoftDeleteMixin, TrackedBase):
    """
    ORM model for a customer invoice header.

    Maps to the ``CustomerInvoice`` frozen dataclass.
    """

    __tablename__ = "customer_invoices"

    __table_args__ = (
        CheckConstraint("amount_paid >= 0", name="ck_invoice_amount_paid_nonneg"),
        Index("idx_invoice_number", "invoice_number", unique=True),
        Index("idx_invoice_customer", "customer_id"),
        Index("idx_invoice_status", "status"),
    )

    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False)
    customer_id: Mapped[UUID] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=InvoiceStatus.DRAFT.value,
    )
    invoice_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    shipping_fees_ht: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    total_amount_ht: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    total_vat_amount: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    total_amount_ttc: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))
    amount_paid: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    terms_and_conditions: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_attachment_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)

    version_id: Mapped[int] = mapped_column(BigInteger, nullable=False)

    items: Mapped[list["CustomerInvoiceItemModel"]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="CustomerInvoiceItemModel.line_number",
    )
    sales_order_links: Mapped[list["CustomerInvoiceSalesOrderModel"]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def active_items(self) -> list["CustomerInvoiceItemModel"]:
        return [item for item in self.items if item.deleted_at is None]

    @property
    def status_enum(self) -> InvoiceStatus:
        return InvoiceStatus(self.status)

    def to_dto(self) -> CustomerInvoice:
        return CustomerInvoice(
            id=self.id,
            invoice_number=self.invoice_number,
            customer_id=self.customer_id,
            status=InvoiceStatus(self.status),
            invoice_date=self.invoice_date,
            shipping_fees_ht=self.shipping_fees_ht,
            total_amount_ht=self.total_amount_ht,
            total_vat_amount=self.total_vat_amount,
            total_amount_ttc=self.total_amount_ttc,
            amount_paid=self.amount_paid,
            created_by_id=self.created_by_id,
            items=tuple(item.to_dto() for item in self.active_items),
            sales_order_ids=tuple(link.sales_order_id for link in self.sales_order_links),
            due_date=self.due_date,
            notes=self.notes,
            terms_and_conditions=self.terms_and_conditions,
            file_attachment_url=self.file_attachment_url,
            updated_by_id=self.updated_by_id,
            deleted_at=self.deleted_at,
        )

    def __repr__(self) -> str:
        return f"<CustomerInvoiceModel {self.invoice_number} [{self.status}]>"


class CustomerInvoiceItemModel(SoftDeleteMixin, TrackedBase):
    """ORM model for one invoice line."""

    __tablename__ = "customer_invoice_items"

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_invoice_item_quantity_positive"),
        Index("idx_invoice_item_invoice", "customer_invoice_id"),
        Index("idx_invoice_item_so_item", "sales_order_item_id"),
        Index("idx_invoice_item_delivery_item", "delivery_item_id"),
    )

    customer_invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("customer_invoices.id"), nullable=False,
    )
    line_number: Mapped[int] = mapped_column(BigInteger, nullable=False, default=1)
    product_id: Mapped[UUID | None] = mapped_column(nullable=True)
    variant_id: Mapped[UUID | None] = mapped_column(nullable=True)
    sales_order_item_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("sales_order_items.id"), nullable=True,
    )
    delivery_item_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("delivery_items.id"), nullable=True,
    )
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)

    quantity: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False)
    unit_price_ht: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    discount_percentage: Mapped[Decimal] = mapped_column(PERCENTAGE, default=Decimal("0"))
    vat_rate_percentage: Mapped[Decimal | None] = mapped_column(PERCENTAGE, nullable=True)
    total_line_amount_ht: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"))

    invoice: Mapped[CustomerInvoiceModel] = relationship(back_populates="items")

    def to_dto(self) -> CustomerInvoiceItem:
        return CustomerInvoiceItem(
            id=self.id,
            customer_invoice_id=self.customer_invoice_id,
            description=self.description,
            quantity=self.quantity,
            unit_price_ht=self.unit_price_ht,
            discount_percentage=self.discount_percentage,
            vat_rate_percentage=self.vat_rate_percentage,
            total_line_amount_ht=self.total_line_amount_ht,
            product_id=self.product_id,
            variant_id=self.variant_id,
            sales_order_item_id=self.sales_order_item_id,
            delivery_item_id=self.delivery_item_id,
        )


class CustomerInvoiceSalesOrderModel(TrackedBase):
    """Header-level link between an invoice and a sales order."""

    __tablename__ = "customer_invoice_sales_orders"

    __table_args__ = (
        UniqueConstraint(
            "customer_invoice_id", "sales_order_id", name="uq_invoice_sales_order",
        ),
        Index("idx_invoice_link_sales_order", "sales_order_id"),
    )

    customer_invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("customer_invoices.id"), nullable=False,
    )
    sales_order_id: Mapped[UUID] = mapped_column(ForeignKey("sales_orders.id"), nullable=False)

    invoice: Mapped[CustomerInvoiceModel] = relationship(back_populates="sales_order_links")
