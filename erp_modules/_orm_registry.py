"""
Module ORM Registry (``erp_modules._orm_registry``).

Responsibility
--------------
Ensure every module-level SQLAlchemy ORM model is imported so that
``Base.metadata`` contains its table before tables are created.

Architecture position
---------------------
**Modules layer** -- utility.  Called by ``erp_kernel.db.engine.create_tables``
and by ``tests/conftest.py``.
"""


def import_all_orm_models() -> None:
    """Import every ``erp_modules.*.orm`` module.  Idempotent."""
    # fmt: off
    import erp_modules.reference.orm  # noqa: F401
    import erp_modules.inventory.orm  # noqa: F401
    import erp_modules.sales.orm  # noqa: F401
    import erp_modules.deliveries.orm  # noqa: F401
    import erp_modules.invoicing.orm  # noqa: F401
    import erp_modules.payments.orm  # noqa: F401
    # fmt: on
