"""
Payment ORM Models (``erp_modules.payments.orm``).

Responsibility
--------------
SQLAlchemy persistence for recorded payments.  A reversal soft-deletes the
row and appends a marker to its notes; the row is never removed.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from erp_kernel.db.base import SoftDeleteMixin, TrackedBase
from erp_kernel.db.types import AMOUNT
from erp_modules.payments.models import Payment, PaymentDirection, PaymentMethod


class PaymentModel(SoftDeleteMixin, TrackedBase):
    """
    ORM model for one payment.

    Maps to the ``Payment`` frozen dataclass.
    """

    __tablename__ = "payments"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_amount_positive"),
        CheckConstraint(
            "direction IN ('inbound', 'outbound')", name="ck_payment_direction",
        ),
        Index("idx_payment_invoice", "customer_invoice_id"),
        Index("idx_payment_customer", "customer_id"),
    )

    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(30), nullable=False)
    payment_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # No foreign key: the payment stands even if the invoice is absent.
    customer_invoice_id: Mapped[UUID | None] = mapped_column(nullable=True)
    customer_id: Mapped[UUID | None] = mapped_column(nullable=True)
    reference_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    def to_dto(self) -> Payment:
        return Payment(
            id=self.id,
            amount=self.amount,
            direction=PaymentDirection(self.direction),
            payment_method=PaymentMethod(self.payment_method),
            payment_date=self.payment_date,
            created_by_id=self.created_by_id,
            customer_invoice_id=self.customer_invoice_id,
            customer_id=self.customer_id,
            reference_number=self.reference_number,
            notes=self.notes,
            deleted_at=self.deleted_at,
        )

    def __repr__(self) -> str:
        return f"<PaymentModel {self.direction} {self.amount}>"
