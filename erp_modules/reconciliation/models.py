"""
Reconciliation value objects (``erp_modules.reconciliation.models``).

``RemainingQuantity`` is the answer to "how much of this upstream line is
still free for a new downstream commitment".
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from uuid import UUID


class ReconciliationEffect(Enum):
    """Which accumulator a downstream line consumes."""
    SHIP = "ship"
    INVOICE = "invoice"


class QuantityBasis(Enum):
    """Ceiling for invoice lines that reference a sales order line."""
    ORDERED = "ordered"
    SHIPPED = "shipped"


@dataclass(frozen=True)
class RemainingQuantity:
    """
    ceiling - committed for one upstream line.

    ``ordered`` is the ceiling in effect (ordered quantity, shipped quantity,
    or delivery line quantity depending on the check).
    """
    upstream_id: UUID
    ordered: Decimal
    committed: Decimal
    remaining: Decimal

    def allows(self, requested: Decimal) -> bool:
        return requested <= self.remaining
