"""
Settings Loader (``erp_config.loader``).

Responsibility
--------------
Loads YAML settings files and parses them into the frozen
``erp_config.schema`` dataclasses.  Services never call this directly;
the runtime entry point is ``erp_config.get_active_settings()``.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass from ``schema.py``.
* Amounts are parsed from strings into ``Decimal`` -- never via float.
* Unknown top-level or section keys are rejected, so a typo in an override
  file cannot silently fall back to a default.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown keys or invalid values  -> ``ValueError``.
"""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml

from erp_config.schema import (
    AmountSettings,
    ConcurrencySettings,
    DatabaseSettings,
    DocumentSettings,
    ErpSettings,
    InvoicingSettings,
    LoggingSettings,
    PaymentSettings,
)

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"

_SECTIONS: dict[str, type] = {
    "database": DatabaseSettings,
    "logging": LoggingSettings,
    "amounts": AmountSettings,
    "concurrency": ConcurrencySettings,
    "sales": DocumentSettings,
    "deliveries": DocumentSettings,
    "invoicing": InvoicingSettings,
    "payments": PaymentSettings,
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Postconditions:
        - Returns a ``dict`` (empty if the YAML document is empty).
    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top-level document is not a mapping.
    """
    with open(path, encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Settings file {path} must contain a mapping, got {type(data).__name__}")
    return data


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return ``base`` with ``override`` merged in; nested mappings merge, everything else replaces."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _parse_section(name: str, cls: type, raw: dict[str, Any]) -> Any:
    if not isinstance(raw, dict):
        raise ValueError(f"Settings section '{name}' must be a mapping")
    allowed = set(cls.__dataclass_fields__)
    unknown = set(raw) - allowed
    if unknown:
        raise ValueError(f"Unknown key(s) in settings section '{name}': {sorted(unknown)}")

    kwargs: dict[str, Any] = {}
    for key, value in raw.items():
        if key == "tolerance":
            kwargs[key] = Decimal(str(value))
        elif key == "locked_editable_fields":
            kwargs[key] = tuple(str(v) for v in (value or ()))
        elif key == "level":
            kwargs[key] = str(value).upper()
        else:
            kwargs[key] = value
    return cls(**kwargs)


def parse_settings(data: dict[str, Any]) -> ErpSettings:
    """Parse a merged settings mapping into ``ErpSettings``."""
    unknown = set(data) - set(_SECTIONS)
    if unknown:
        raise ValueError(f"Unknown settings section(s): {sorted(unknown)}")
    sections = {
        name: _parse_section(name, cls, data[name])
        for name, cls in _SECTIONS.items()
        if name in data
    }
    return ErpSettings(**sections)


def load_settings(
    path: Path | None = None,
    database_url: str | None = None,
) -> ErpSettings:
    """
    Load the packaged defaults, merge an optional override file, apply a
    database URL override, and parse the result.
    """
    data = load_yaml_file(DEFAULTS_PATH)
    if path is not None:
        data = deep_merge(data, load_yaml_file(Path(path)))
    if database_url:
        data = deep_merge(data, {"database": {"url": database_url}})
    return parse_settings(data)
