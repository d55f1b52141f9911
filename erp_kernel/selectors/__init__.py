"""Selector base for the ERP kernel (read side)."""

from erp_kernel.selectors.base import BaseSelector

__all__ = ["BaseSelector"]
