"""
Payments: recorded money movements and their reversal.
"""

from erp_modules.payments.models import Payment, PaymentDirection, PaymentInput, PaymentMethod

__all__ = [
    "Payment",
    "PaymentDirection",
    "PaymentInput",
    "PaymentMethod",
]
