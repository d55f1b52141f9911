"""
Reference collaborators: catalog, locations, identity, customers.

The back-office CRUD for these entities lives elsewhere; this package only
exposes the lookups the stock ledger and document services depend on.
"""

from erp_modules.reference.directory import (
    CatalogDirectory,
    CustomerDirectory,
    IdentityDirectory,
    LocationDirectory,
    ReferenceDirectory,
    SqlReferenceDirectory,
    resolve_product,
)
from erp_modules.reference.models import (
    CustomerRef,
    LocationRef,
    LocationType,
    ProductRef,
    UserRef,
    VariantRef,
)

__all__ = [
    "CatalogDirectory",
    "CustomerDirectory",
    "IdentityDirectory",
    "LocationDirectory",
    "ReferenceDirectory",
    "SqlReferenceDirectory",
    "resolve_product",
    "CustomerRef",
    "LocationRef",
    "LocationType",
    "ProductRef",
    "UserRef",
    "VariantRef",
]
