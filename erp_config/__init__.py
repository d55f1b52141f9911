"""
erp_config -- single public entrypoint for runtime settings.

Responsibility:
    ``get_active_settings()`` is the only way services and entrypoints obtain
    settings.  It reads the packaged ``defaults.yaml``, merges the file named
    by ``ERP_CONFIG`` (if set) and applies ``DATABASE_URL`` (if set).

Architecture position:
    Configuration.  ``erp_kernel`` never imports from ``erp_config``; the
    module services receive an ``ErpSettings`` instance by injection.

Failure modes:
    - ``FileNotFoundError`` -- ``ERP_CONFIG`` names a missing file.
    - ``ValueError`` -- unknown keys or invalid values.
"""

from __future__ import annotations

import os
from pathlib import Path

from erp_config.loader import load_settings
from erp_config.schema import ErpSettings
from erp_kernel.logging_config import get_logger

logger = get_logger("config")

__all__ = ["ErpSettings", "get_active_settings", "load_settings"]


def get_active_settings(config_path: Path | None = None) -> ErpSettings:
    """Resolve settings from defaults, ``ERP_CONFIG`` and ``DATABASE_URL``."""
    path = config_path
    if path is None and os.environ.get("ERP_CONFIG"):
        path = Path(os.environ["ERP_CONFIG"])
    settings = load_settings(path, database_url=os.environ.get("DATABASE_URL"))
    logger.info(
        "settings_loaded",
        extra={
            "source": str(path) if path else "defaults",
            "dialect": settings.database.url.split(":", 1)[0],
            "tolerance": settings.amounts.tolerance,
            "invoice_quantity_basis": settings.invoicing.quantity_basis,
            "strict_invoice_lookup": settings.payments.strict_invoice_lookup,
        },
    )
    return settings
