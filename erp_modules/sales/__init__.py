"""
Sales orders: the upstream document of the reconciliation chain.
"""

from erp_modules.sales.models import (
    RESERVED_STATUSES,
    SalesOrder,
    SalesOrderInput,
    SalesOrderItem,
    SalesOrderItemChange,
    SalesOrderItemInput,
    SalesOrderStatus,
)
from erp_modules.sales.workflows import SALES_ORDER_WORKFLOW

__all__ = [
    "RESERVED_STATUSES",
    "SALES_ORDER_WORKFLOW",
    "SalesOrder",
    "SalesOrderInput",
    "SalesOrderItem",
    "SalesOrderItemChange",
    "SalesOrderItemInput",
    "SalesOrderStatus",
]
