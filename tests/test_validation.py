"""
Tests for the validation engine.

Validates:
- Mode gating against the catalog's allowed modes
- Inclusive numeric bounds and their hints
- Enum options
- Injected keys never accept authored values
- Per-key issue maps (no fail-fast)
- Value normalization used by equality checks
"""

import pytest

from tds_console.core.errors import InvalidMode, LockedFieldMutation, NotFound, OutOfBounds
from tds_console.models.catalog import Bounds, ConstraintMode
from tds_console.services.validation import (
    check_range,
    effective_bounds,
    normalize_value,
    raise_for_issue,
    validate,
    validate_terms,
)


class TestModeGating:
    """A mode outside the allowed set is rejected regardless of value."""

    @pytest.mark.parametrize("value", [None, "", 1000, "TEE"])
    def test_negotiable_environment_rejected(self, catalog, value):
        issue = validate(catalog, "environment", ConstraintMode.NEGOTIABLE, value)
        assert issue.kind == "InvalidMode"
        assert issue.bound_hint == ["Locked"]

    def test_every_key_rejects_disallowed_modes(self, catalog):
        for definition in catalog:
            for mode in ConstraintMode:
                issue = validate(catalog, definition.key, mode, None)
                if definition.allows(mode):
                    assert issue is None, definition.key
                else:
                    assert issue.kind == "InvalidMode", definition.key

    def test_unknown_mode(self, catalog):
        assert validate(catalog, "usageCount", "Flexible", 1000).kind == "InvalidMode"

    def test_unknown_key(self, catalog):
        assert validate(catalog, "nope", "Locked", 1).kind == "NotFound"


class TestNumericBounds:

    @pytest.mark.parametrize("value", [100, 101, 2500, 4999, 5000, "2000", 100.0])
    def test_values_inside_bounds_pass(self, catalog, value):
        assert validate(catalog, "usageCount", "Negotiable", value) is None

    def test_above_ceiling(self, catalog):
        issue = validate(catalog, "usageCount", "Negotiable", 6000)
        assert issue.kind == "OutOfBounds"
        assert issue.reason == "exceeds provider-set ceiling"
        assert issue.bound_hint == 5000

    def test_below_minimum(self, catalog):
        issue = validate(catalog, "usageCount", "Negotiable", 99)
        assert issue.kind == "OutOfBounds"
        assert issue.reason == "below minimum"
        assert issue.bound_hint == 100

    def test_not_a_number(self, catalog):
        assert validate(catalog, "usageCount", "Negotiable", "lots").kind == "OutOfBounds"
        assert validate(catalog, "usageCount", "Negotiable", True).kind == "OutOfBounds"

    @pytest.mark.parametrize("value", ["nan", "NaN", float("nan"), "inf", float("-inf"), "1e999"])
    def test_non_finite_numbers_rejected(self, catalog, value):
        issue = validate(catalog, "usageCount", "Negotiable", value)
        assert issue.kind == "OutOfBounds"
        assert issue.reason == "expected a number"

    def test_narrowed_range(self, catalog):
        narrowed = Bounds(min=500, max=2000)
        assert validate(catalog, "usageCount", "Negotiable", 2000, narrowed) is None
        issue = validate(catalog, "usageCount", "Negotiable", 2001, narrowed)
        assert issue.bound_hint == 2000

    def test_effective_bounds_never_widen_the_catalog(self, catalog):
        bounds = effective_bounds(catalog.lookup("usageCount"), Bounds(min=10, max=9000))
        assert (bounds.min, bounds.max) == (100, 5000)


class TestEnumAndInjected:

    def test_enum_option_accepted(self, catalog):
        assert validate(catalog, "environment", "Locked", "TEE") is None

    def test_enum_value_outside_options(self, catalog):
        issue = validate(catalog, "environment", "Locked", "Quantum")
        assert issue.kind == "OutOfBounds"
        assert issue.bound_hint == ["None", "TEE", "Sandbox", "PrivacyCompute"]

    def test_injected_value_rejected(self, catalog):
        issue = validate(catalog, "consumerConnectorId", "Injected", "did:conn:x")
        assert issue.kind == "LockedFieldMutation"

    def test_injected_without_value_accepted(self, catalog):
        assert validate(catalog, "consumerConnectorId", "Injected", None) is None

    def test_dates(self, catalog):
        assert validate(catalog, "validUntil", "Negotiable", "2025-12-31") is None
        assert validate(catalog, "validUntil", "Negotiable", "31/12/2025").kind == "OutOfBounds"


class TestValidateTerms:
    """Every failing key is reported at once."""

    def test_multiple_issues(self, catalog):
        issues = validate_terms(catalog, {
            "usageCount": 6000,
            "environment": "Quantum",
            "sourceIp": "10.0.0.1",
            "validUntil": "2025-12-31",
        })
        assert set(issues) == {"usageCount", "environment", "sourceIp"}
        assert issues["usageCount"].bound_hint == 5000
        assert issues["sourceIp"].kind == "LockedFieldMutation"

    def test_restricted_to_keys(self, catalog):
        issues = validate_terms(catalog, {"usageCount": 6000, "environment": "Quantum"}, keys=["environment"])
        assert list(issues) == ["environment"]

    def test_clean_terms(self, catalog, initial_policy):
        assert validate_terms(catalog, initial_policy.constraints) == {}


class TestCheckRange:

    def test_valid_range(self, catalog):
        assert check_range(catalog, "usageCount", Bounds(min=200, max=3000)) is None

    def test_range_beyond_catalog(self, catalog):
        assert check_range(catalog, "usageCount", Bounds(min=200, max=9000)).bound_hint == 5000

    def test_inverted_range(self, catalog):
        assert check_range(catalog, "usageCount", Bounds(min=3000, max=200)).kind == "OutOfBounds"

    def test_range_on_locked_only_key(self, catalog):
        assert check_range(catalog, "environment", Bounds(min=1)).kind == "InvalidMode"


class TestNormalization:

    def test_numbers(self, catalog):
        definition = catalog.lookup("usageCount")
        assert normalize_value(definition, 2000) == normalize_value(definition, "2000") == normalize_value(definition, 2000.0)

    def test_dates(self, catalog):
        definition = catalog.lookup("validUntil")
        assert normalize_value(definition, "2025-12-31T00:00:00") == "2025-12-31"

    def test_empty(self, catalog):
        assert normalize_value(catalog.lookup("usageCount"), "") is None

    def test_nan_compares_equal_to_itself(self, catalog):
        definition = catalog.lookup("usageCount")
        assert normalize_value(definition, float("nan")) == normalize_value(definition, float("nan"))


class TestRaiseForIssue:

    def test_maps_kinds_to_errors(self, catalog):
        with pytest.raises(OutOfBounds) as exc:
            raise_for_issue(validate(catalog, "usageCount", "Negotiable", 6000))
        assert exc.value.bound_hint == 5000
        with pytest.raises(InvalidMode):
            raise_for_issue(validate(catalog, "environment", "Negotiable", "TEE"))
        with pytest.raises(LockedFieldMutation):
            raise_for_issue(validate(catalog, "sourceIp", "Injected", "1.2.3.4"))
        with pytest.raises(NotFound):
            raise_for_issue(validate(catalog, "nope", "Locked", 1))

    def test_none_is_a_no_op(self):
        raise_for_issue(None)
