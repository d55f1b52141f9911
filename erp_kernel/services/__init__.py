"""Service bases for the ERP kernel (write side)."""

from erp_kernel.services.base import BaseService, TransactionalService

__all__ = ["BaseService", "TransactionalService"]
