"""Tests for YAML settings loading and the runtime settings entry point."""

from __future__ import annotations

from decimal import Decimal

import pytest
import yaml

from erp_config import get_active_settings
from erp_config.loader import deep_merge, load_settings, load_yaml_file, parse_settings
from erp_config.schema import AmountSettings, ErpSettings, InvoicingSettings, LoggingSettings


def _write(tmp_path, data, name="override.yaml"):
    path = tmp_path / name
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


class TestDefaults:

    def test_packaged_defaults_match_dataclass_defaults(self):
        assert load_settings() == ErpSettings()

    def test_default_values(self):
        settings = load_settings()
        assert settings.amounts.tolerance == Decimal("0.005")
        assert settings.invoicing.quantity_basis == "ordered"
        assert settings.sales.locked_editable_fields == ("notes",)
        assert settings.deliveries.locked_editable_fields == (
            "notes", "tracking_number", "carrier_name",
        )
        assert settings.payments.strict_invoice_lookup is False
        assert settings.concurrency.lock_upstream_rows is True


class TestOverrides:

    def test_override_file_merges_into_defaults(self, tmp_path):
        path = _write(tmp_path, {
            "amounts": {"tolerance": "0.01"},
            "invoicing": {"quantity_basis": "shipped"},
        })
        settings = load_settings(path)

        assert settings.amounts.tolerance == Decimal("0.01")
        assert settings.amounts.amount_places == 4
        assert settings.invoicing.quantity_basis == "shipped"
        assert settings.invoicing.locked_editable_fields == (
            "notes", "terms_and_conditions", "file_attachment_url",
        )

    def test_tolerance_parsed_without_float(self, tmp_path):
        path = _write(tmp_path, {"amounts": {"tolerance": 0.1}})
        assert load_settings(path).amounts.tolerance == Decimal("0.1")

    def test_database_url_override(self, tmp_path):
        settings = load_settings(database_url="postgresql://erp@localhost/erp")
        assert settings.database.url == "postgresql://erp@localhost/erp"

    def test_empty_override_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert load_settings(path) == ErpSettings()

    def test_deep_merge(self):
        merged = deep_merge(
            {"a": {"x": 1, "y": 2}, "b": [1]},
            {"a": {"y": 3}, "b": [2]},
        )
        assert merged == {"a": {"x": 1, "y": 3}, "b": [2]}


class TestValidation:

    def test_unknown_section(self):
        with pytest.raises(ValueError, match="Unknown settings section"):
            parse_settings({"reporting": {}})

    def test_unknown_key(self, tmp_path):
        path = _write(tmp_path, {"payments": {"strict": True}})
        with pytest.raises(ValueError, match="Unknown key"):
            load_settings(path)

    def test_invalid_quantity_basis(self):
        with pytest.raises(ValueError, match="quantity_basis"):
            InvoicingSettings(quantity_basis="delivered")

    def test_negative_tolerance(self):
        with pytest.raises(ValueError, match="tolerance"):
            AmountSettings(tolerance=Decimal("-0.01"))

    def test_invalid_log_level(self):
        with pytest.raises(ValueError, match="logging.level"):
            LoggingSettings(level="LOUD")

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ValueError, match="mapping"):
            load_yaml_file(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_settings(tmp_path / "absent.yaml")


class TestActiveSettings:

    def test_environment(self, tmp_path, monkeypatch):
        path = _write(tmp_path, {"payments": {"strict_invoice_lookup": True}})
        monkeypatch.setenv("ERP_CONFIG", str(path))
        monkeypatch.setenv("DATABASE_URL", "sqlite:///other.db")

        settings = get_active_settings()

        assert settings.payments.strict_invoice_lookup is True
        assert settings.database.url == "sqlite:///other.db"

    def test_explicit_path_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ERP_CONFIG", str(tmp_path / "absent.yaml"))
        monkeypatch.delenv("DATABASE_URL", raising=False)
        path = _write(tmp_path, {"invoicing": {"quantity_basis": "shipped"}})

        assert get_active_settings(path).invoicing.quantity_basis == "shipped"

    def test_load_is_logged(self, monkeypatch, captured_logs):
        monkeypatch.delenv("ERP_CONFIG", raising=False)
        monkeypatch.delenv("DATABASE_URL", raising=False)
        get_active_settings()

        records = [r for r in captured_logs() if r["message"] == "settings_loaded"]
        assert records[0]["source"] == "defaults"
        assert records[0]["tolerance"] == "0.005"
