"""
Tests for the constraint catalog.

Validates:
- Built-in catalog content
- Lookup and dimension grouping
- Fatal configuration errors
- Loading from a JSON file
- Injection bindings cover every injectable key
"""

import json

import pytest

from tds_console.core.errors import CatalogConfigurationError, NotFound
from tds_console.models.catalog import ConstraintMode, Dimension, ValueKind
from tds_console.services.catalog_service import DEFAULT_CATALOG_ENTRIES, ConstraintCatalog, load_catalog
from tds_console.services.injection import check_bindings


def _entry(**overrides):
    entry = {"key": "usageCount", "dimension": "Time", "allowedModes": ["Negotiable", "Locked"],
             "defaultMode": "Negotiable", "valueKind": "number", "bounds": {"min": 100, "max": 5000}}
    entry.update(overrides)
    return entry


class TestBuiltInCatalog:
    """The default catalog loads and exposes the contract terms."""

    def test_usage_count_definition(self, catalog):
        definition = catalog.lookup("usageCount")
        assert definition.default_mode == ConstraintMode.NEGOTIABLE
        assert definition.value_kind == ValueKind.NUMBER
        assert definition.bounds.min == 100
        assert definition.bounds.max == 5000
        assert definition.negotiable

    def test_environment_is_locked_enum(self, catalog):
        definition = catalog.lookup("environment")
        assert definition.allowed_modes == (ConstraintMode.LOCKED,)
        assert definition.options == ("None", "TEE", "Sandbox", "PrivacyCompute")

    def test_injected_keys(self, catalog):
        for key in ("consumerConnectorId", "sourceIp", "certFingerprint"):
            assert catalog.lookup(key).injected

    def test_every_entry_is_loaded(self, catalog):
        assert len(catalog) == len(DEFAULT_CATALOG_ENTRIES)
        assert catalog.keys()[0] == DEFAULT_CATALOG_ENTRIES[0]["key"]

    def test_by_dimension_covers_all_dimensions(self, catalog):
        grouped = catalog.by_dimension()
        assert set(grouped) == set(Dimension)
        assert "usageCount" in [d.key for d in grouped[Dimension.TIME]]
        assert sum(len(v) for v in grouped.values()) == len(catalog)

    def test_bindings_are_complete(self, catalog):
        check_bindings(catalog)


class TestLookup:

    def test_unknown_key_raises_not_found(self, catalog):
        with pytest.raises(NotFound):
            catalog.lookup("doesNotExist")

    def test_get_returns_none_for_unknown_key(self, catalog):
        assert catalog.get("doesNotExist") is None
        assert "doesNotExist" not in catalog
        assert "usageCount" in catalog


class TestConfigurationErrors:
    """A broken catalog is a fatal startup error."""

    def test_duplicate_keys(self):
        with pytest.raises(CatalogConfigurationError, match="Duplicate"):
            ConstraintCatalog.from_entries([_entry(), _entry()])

    def test_default_mode_outside_allowed_modes(self):
        with pytest.raises(CatalogConfigurationError, match="default mode"):
            ConstraintCatalog.from_entries([_entry(allowedModes=["Locked"], defaultMode="Negotiable")])

    def test_enum_without_options(self):
        with pytest.raises(CatalogConfigurationError, match="enum"):
            ConstraintCatalog.from_entries([_entry(valueKind="enum", bounds=None)])

    def test_bounds_on_text_key(self):
        with pytest.raises(CatalogConfigurationError, match="not numeric"):
            ConstraintCatalog.from_entries([_entry(valueKind="text")])

    def test_min_greater_than_max(self):
        with pytest.raises(CatalogConfigurationError, match="min greater than max"):
            ConstraintCatalog.from_entries([_entry(bounds={"min": 10, "max": 1})])

    def test_malformed_entry(self):
        with pytest.raises(CatalogConfigurationError):
            ConstraintCatalog.from_entries([{"key": "x"}])

    def test_injected_key_without_binding(self):
        catalog = ConstraintCatalog.from_entries([
            {"key": "deviceSerial", "dimension": "Subject", "allowedModes": ["Injected"],
             "defaultMode": "Injected", "valueKind": "text"},
        ])
        with pytest.raises(CatalogConfigurationError, match="deviceSerial"):
            check_bindings(catalog)


class TestLoadCatalog:

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps([_entry()]), encoding="utf-8")
        catalog = load_catalog(str(path))
        assert catalog.keys() == ["usageCount"]

    def test_file_must_hold_a_list(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps(_entry()), encoding="utf-8")
        with pytest.raises(CatalogConfigurationError, match="list"):
            load_catalog(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(CatalogConfigurationError):
            load_catalog(str(tmp_path / "missing.json"))
