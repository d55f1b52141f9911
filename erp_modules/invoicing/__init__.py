"""
Customer invoices and payment application.
"""

from erp_modules.invoicing.models import (
    RELEASED_STATUSES,
    CustomerInvoice,
    CustomerInvoiceInput,
    CustomerInvoiceItem,
    CustomerInvoiceItemChange,
    CustomerInvoiceItemInput,
    InvoiceStatus,
    PaymentApplication,
)
from erp_modules.invoicing.workflows import CUSTOMER_INVOICE_WORKFLOW

__all__ = [
    "CUSTOMER_INVOICE_WORKFLOW",
    "RELEASED_STATUSES",
    "CustomerInvoice",
    "CustomerInvoiceInput",
    "CustomerInvoiceItem",
    "CustomerInvoiceItemChange",
    "CustomerInvoiceItemInput",
    "InvoiceStatus",
    "PaymentApplication",
]
