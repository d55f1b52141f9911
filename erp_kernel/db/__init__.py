"""Database layer - engine, base classes, decimal types, and ledger immutability."""

from erp_kernel.db.base import UUID, Base, SoftDeleteMixin, TrackedBase, UUIDString
from erp_kernel.db.engine import create_tables, get_engine, get_session, session_scope
from erp_kernel.db.types import AMOUNT, PERCENTAGE, QUANTITY, round_amount, round_quantity

__all__ = [
    "get_engine",
    "get_session",
    "session_scope",
    "create_tables",
    "Base",
    "TrackedBase",
    "SoftDeleteMixin",
    "UUIDString",
    "UUID",
    "AMOUNT",
    "PERCENTAGE",
    "QUANTITY",
    "round_amount",
    "round_quantity",
]
