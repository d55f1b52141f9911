"""
Settings schema (``erp_config.schema``).

Frozen dataclasses describing every tunable of the stock and document core.
Validation happens in ``__post_init__`` so an invalid YAML file fails at
load time, not in the middle of a transaction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

VALID_QUANTITY_BASES = ("ordered", "shipped")
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class DatabaseSettings:
    url: str = "sqlite:///erp.db"
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10

    def __post_init__(self) -> None:
        if not self.url:
            raise ValueError("database.url must not be empty")
        if self.pool_size < 1:
            raise ValueError(f"database.pool_size must be >= 1, got {self.pool_size}")


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"

    def __post_init__(self) -> None:
        if self.level.upper() not in VALID_LOG_LEVELS:
            raise ValueError(f"logging.level must be one of {VALID_LOG_LEVELS}, got '{self.level}'")


@dataclass(frozen=True)
class AmountSettings:
    """Rounding and settlement tolerance for amounts and quantities."""
    tolerance: Decimal = Decimal("0.005")
    amount_places: int = 4
    quantity_places: int = 3

    def __post_init__(self) -> None:
        if self.tolerance < 0:
            raise ValueError(f"amounts.tolerance must be >= 0, got {self.tolerance}")
        if not 0 <= self.amount_places <= 9 or not 0 <= self.quantity_places <= 9:
            raise ValueError("amounts.*_places must be between 0 and 9")


@dataclass(frozen=True)
class ConcurrencySettings:
    lock_upstream_rows: bool = True


@dataclass(frozen=True)
class DocumentSettings:
    """Per-document settings: fields still editable once the document is locked."""
    locked_editable_fields: tuple[str, ...] = ()


@dataclass(frozen=True)
class InvoicingSettings:
    quantity_basis: str = "ordered"
    locked_editable_fields: tuple[str, ...] = (
        "notes",
        "terms_and_conditions",
        "file_attachment_url",
    )

    def __post_init__(self) -> None:
        if self.quantity_basis not in VALID_QUANTITY_BASES:
            raise ValueError(
                f"invoicing.quantity_basis must be one of {VALID_QUANTITY_BASES}, "
                f"got '{self.quantity_basis}'"
            )


@dataclass(frozen=True)
class PaymentSettings:
    strict_invoice_lookup: bool = False


@dataclass(frozen=True)
class ErpSettings:
    """
    Root settings object.

    Field defaults match ``defaults.yaml`` so services can be constructed
    with ``ErpSettings()`` in isolation.
    """
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    amounts: AmountSettings = field(default_factory=AmountSettings)
    concurrency: ConcurrencySettings = field(default_factory=ConcurrencySettings)
    sales: DocumentSettings = field(
        default_factory=lambda: DocumentSettings(locked_editable_fields=("notes",))
    )
    deliveries: DocumentSettings = field(
        default_factory=lambda: DocumentSettings(
            locked_editable_fields=("notes", "tracking_number", "carrier_name")
        )
    )
    invoicing: InvoicingSettings = field(default_factory=InvoicingSettings)
    payments: PaymentSettings = field(default_factory=PaymentSettings)
