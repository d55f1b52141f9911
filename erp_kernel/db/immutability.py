"""
ORM-Level Immutability Enforcement for the stock ledger.

===============================================================================
WHY THIS EXISTS
===============================================================================

Stock is derived by summing ledger rows.  If a row could be edited or
deleted, historical stock would silently change and no offsetting entry
would explain it.  Corrections are therefore always NEW entries.

SQLAlchemy fires mapper events before UPDATE/DELETE reach the database:

    session.flush()
         |
         v
    [before_update] --> _check_stock_movement_update() --> ImmutabilityViolationError
         |
    [before_delete] --> _check_stock_movement_delete() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

===============================================================================
DESIGN DECISIONS
===============================================================================

1. updated_at / updated_by_id changes are allowed: they are audit metadata,
   not ledger data.

2. Inline imports avoid a kernel -> modules import at module load time.

3. Bulk ``session.execute(update(...))`` bypasses mapper events.  Services
   never issue bulk statements against the ledger.

===============================================================================
USAGE
===============================================================================

    from erp_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # Called once at startup

    # TESTS ONLY
    unregister_immutability_listeners()
"""

from sqlalchemy import event
from sqlalchemy.orm.attributes import get_history

from erp_kernel.exceptions import ImmutabilityViolationError
from erp_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_AUDIT_METADATA_FIELDS = frozenset({"updated_at", "updated_by_id"})


def _changed_fields(target) -> list[str]:
    changed = []
    for attr in target.__mapper__.column_attrs:
        if attr.key in _AUDIT_METADATA_FIELDS:
            continue
        if get_history(target, attr.key).has_changes():
            changed.append(attr.key)
    return changed


def _check_stock_movement_update(mapper, connection, target):
    """Refuse any change to a flushed stock movement's ledger fields."""
    changed = _changed_fields(target)
    if not changed:
        return
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "StockMovement",
            "entity_id": str(target.id),
            "operation": "UPDATE",
            "fields": changed,
        },
    )
    raise ImmutabilityViolationError(
        entity_type="StockMovement",
        entity_id=str(target.id),
        reason=f"stock movements are append-only; attempted to change {', '.join(changed)}",
    )


def _check_stock_movement_delete(mapper, connection, target):
    """Refuse deletion of a stock movement."""
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "StockMovement",
            "entity_id": str(target.id),
            "operation": "DELETE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="StockMovement",
        entity_id=str(target.id),
        reason="stock movements are append-only; record an offsetting movement instead",
    )


def register_immutability_listeners() -> None:
    """Register the ledger immutability listeners (idempotent)."""
    from erp_modules.inventory.orm import StockMovementModel

    if not event.contains(StockMovementModel, "before_update", _check_stock_movement_update):
        event.listen(StockMovementModel, "before_update", _check_stock_movement_update)
    if not event.contains(StockMovementModel, "before_delete", _check_stock_movement_delete):
        event.listen(StockMovementModel, "before_delete", _check_stock_movement_delete)
    logger.debug("immutability_listeners_registered")


def unregister_immutability_listeners() -> None:
    """
    Remove the ledger immutability listeners.

    WARNING: Only use in tests.
    """
    from erp_modules.inventory.orm import StockMovementModel

    if event.contains(StockMovementModel, "before_update", _check_stock_movement_update):
        event.remove(StockMovementModel, "before_update", _check_stock_movement_update)
    if event.contains(StockMovementModel, "before_delete", _check_stock_movement_delete):
        event.remove(StockMovementModel, "before_delete", _check_stock_movement_delete)
