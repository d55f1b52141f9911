"""
Reference directories (``erp_modules.reference.directory``).

Responsibility
--------------
Defines the collaborator interfaces the stock ledger and the document
services depend on, and one SQLAlchemy-backed implementation of all of them.
Services type their dependency against the Protocols; tests and production
both pass a ``SqlReferenceDirectory`` bound to the same session as the
service, so lookups see uncommitted rows of the current transaction.

Failure Modes
-------------
Lookups never raise for a missing id; they return ``None`` and the caller
decides between not-found and invalid-reference semantics.
"""

from __future__ import annotations

from typing import Protocol
from uuid import UUID

from sqlalchemy.orm import Session

from erp_kernel.exceptions import InvalidReferenceError
from erp_modules.reference.models import (
    CustomerRef,
    LocationRef,
    LocationType,
    ProductRef,
    UserRef,
    VariantRef,
)
from erp_modules.reference.orm import (
    CustomerModel,
    ProductModel,
    ProductVariantModel,
    ShopModel,
    UserModel,
    WarehouseModel,
)


class CatalogDirectory(Protocol):
    def find_product(self, product_id: UUID) -> ProductRef | None: ...

    def find_variant(self, variant_id: UUID) -> VariantRef | None: ...


class LocationDirectory(Protocol):
    def find_warehouse(self, warehouse_id: UUID) -> LocationRef | None: ...

    def find_shop(self, shop_id: UUID) -> LocationRef | None: ...


class IdentityDirectory(Protocol):
    def find_user(self, user_id: UUID) -> UserRef | None: ...


class CustomerDirectory(Protocol):
    def find_customer(self, customer_id: UUID) -> CustomerRef | None: ...


class ReferenceDirectory(
    CatalogDirectory, LocationDirectory, IdentityDirectory, CustomerDirectory, Protocol
):
    """All collaborator lookups in one interface."""

    def find_location(
        self, location_type: LocationType, location_id: UUID,
    ) -> LocationRef | None: ...


class SqlReferenceDirectory:
    """ReferenceDirectory implementation over the reference tables."""

    def __init__(self, session: Session):
        self._session = session

    def find_product(self, product_id: UUID) -> ProductRef | None:
        row = self._session.get(ProductModel, product_id)
        return row.to_dto() if row is not None else None

    def find_variant(self, variant_id: UUID) -> VariantRef | None:
        row = self._session.get(ProductVariantModel, variant_id)
        return row.to_dto() if row is not None else None

    def find_warehouse(self, warehouse_id: UUID) -> LocationRef | None:
        row = self._session.get(WarehouseModel, warehouse_id)
        return row.to_dto() if row is not None else None

    def find_shop(self, shop_id: UUID) -> LocationRef | None:
        row = self._session.get(ShopModel, shop_id)
        return row.to_dto() if row is not None else None

    def find_location(
        self, location_type: LocationType, location_id: UUID,
    ) -> LocationRef | None:
        if location_type is LocationType.WAREHOUSE:
            return self.find_warehouse(location_id)
        return self.find_shop(location_id)

    def find_user(self, user_id: UUID) -> UserRef | None:
        row = self._session.get(UserModel, user_id)
        if row is None or not row.is_active:
            return None
        return row.to_dto()

    def find_customer(self, customer_id: UUID) -> CustomerRef | None:
        row = self._session.get(CustomerModel, customer_id)
        return row.to_dto() if row is not None else None


def resolve_product(
    catalog: CatalogDirectory,
    product_id: UUID,
    variant_id: UUID | None,
) -> tuple[ProductRef, str | None]:
    """
    Product and, when a variant is given, the variant's name.

    Raises:
        InvalidReferenceError: unknown product, or a variant that does not
            belong to it.
    """
    product = catalog.find_product(product_id)
    if product is None:
        raise InvalidReferenceError("Product", str(product_id), "does not exist")
    if variant_id is None:
        return product, None
    variant = catalog.find_variant(variant_id)
    if variant is None or variant.product_id != product_id:
        raise InvalidReferenceError(
            "ProductVariant", str(variant_id), f"does not exist for product {product_id}",
        )
    return product, variant.name
