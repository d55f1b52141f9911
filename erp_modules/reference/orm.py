"""
Module: erp_modules.reference.orm
Responsibility: Minimal SQLAlchemy tables for the collaborator entities
    (products, variants, warehouses, shops, users, customers).  They hold just
    enough columns for existence checks, variant ownership, and the default
    VAT rate and purchase price the document services copy onto lines.

Architecture position: Modules > Reference > ORM.  Inherits from TrackedBase.
    Document and ledger tables reference these rows by UUID without foreign
    keys, so the ledger stays writable even if reference CRUD moves to
    another store.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from erp_kernel.db.base import TrackedBase
from erp_kernel.db.types import AMOUNT, PERCENTAGE
from erp_modules.reference.models import (
    CustomerRef,
    LocationRef,
    LocationType,
    ProductRef,
    UserRef,
    VariantRef,
)


class ProductModel(TrackedBase):
    __tablename__ = "products"

    __table_args__ = (
        Index("idx_product_sku", "sku", unique=True),
    )

    sku: Mapped[str] = mapped_column(String(100))
    name: Mapped[str] = mapped_column(String(255))
    default_vat_rate_percentage: Mapped[Decimal | None] = mapped_column(PERCENTAGE, nullable=True)
    default_purchase_price: Mapped[Decimal | None] = mapped_column(AMOUNT, nullable=True)

    def to_dto(self) -> ProductRef:
        return ProductRef(
            id=self.id,
            sku=self.sku,
            name=self.name,
            default_vat_rate_percentage=self.default_vat_rate_percentage,
            default_purchase_price=self.default_purchase_price,
        )

    def __repr__(self) -> str:
        return f"<ProductModel {self.sku}>"


class ProductVariantModel(TrackedBase):
    __tablename__ = "product_variants"

    __table_args__ = (
        Index("idx_variant_product", "product_id"),
    )

    product_id: Mapped[UUID] = mapped_column()
    name_variant: Mapped[str] = mapped_column(String(255))
    purchase_price: Mapped[Decimal | None] = mapped_column(AMOUNT, nullable=True)

    def to_dto(self) -> VariantRef:
        return VariantRef(
            id=self.id,
            product_id=self.product_id,
            name=self.name_variant,
            purchase_price=self.purchase_price,
        )

    def __repr__(self) -> str:
        return f"<ProductVariantModel {self.name_variant} product={self.product_id}>"


class WarehouseModel(TrackedBase):
    __tablename__ = "warehouses"

    name: Mapped[str] = mapped_column(String(255))
    code: Mapped[str | None] = mapped_column(String(50), nullable=True)

    def to_dto(self) -> LocationRef:
        return LocationRef(id=self.id, location_type=LocationType.WAREHOUSE, name=self.name)


class ShopModel(TrackedBase):
    __tablename__ = "shops"

    name: Mapped[str] = mapped_column(String(255))
    code: Mapped[str | None] = mapped_column(String(50), nullable=True)

    def to_dto(self) -> LocationRef:
        return LocationRef(id=self.id, location_type=LocationType.SHOP, name=self.name)


class UserModel(TrackedBase):
    __tablename__ = "users"

    __table_args__ = (
        Index("idx_user_username", "username", unique=True),
    )

    username: Mapped[str] = mapped_column(String(150))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    def to_dto(self) -> UserRef:
        return UserRef(id=self.id, username=self.username)


class CustomerModel(TrackedBase):
    __tablename__ = "customers"

    name: Mapped[str] = mapped_column(String(255))
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def to_dto(self) -> CustomerRef:
        return CustomerRef(id=self.id, name=self.name)
