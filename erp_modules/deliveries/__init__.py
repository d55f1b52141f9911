"""
Deliveries: shipments against sales order lines.
"""

from erp_modules.deliveries.models import (
    SHIPPABLE_STATUSES,
    SHIPPED_STATUSES,
    Delivery,
    DeliveryInput,
    DeliveryItem,
    DeliveryItemChange,
    DeliveryItemInput,
    DeliveryStatus,
)
from erp_modules.deliveries.workflows import DELIVERY_WORKFLOW

__all__ = [
    "DELIVERY_WORKFLOW",
    "SHIPPABLE_STATUSES",
    "SHIPPED_STATUSES",
    "Delivery",
    "DeliveryInput",
    "DeliveryItem",
    "DeliveryItemChange",
    "DeliveryItemInput",
    "DeliveryStatus",
]
