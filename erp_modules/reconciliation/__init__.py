"""
Quantity reconciliation between sales order lines and their downstream
delivery and invoice lines.
"""

from erp_modules.reconciliation.models import (
    QuantityBasis,
    ReconciliationEffect,
    RemainingQuantity,
)
from erp_modules.reconciliation.service import (
    DELIVERY_ITEM,
    SALES_ORDER_ITEM,
    QuantityReconciliationTracker,
)

__all__ = [
    "DELIVERY_ITEM",
    "SALES_ORDER_ITEM",
    "QuantityBasis",
    "QuantityReconciliationTracker",
    "ReconciliationEffect",
    "RemainingQuantity",
]
