"""Tests for the change-summary generator."""

import pytest

from tds_console.models.contract import ContractPolicy
from tds_console.services.diff import diff

BASE = ContractPolicy(
    actions=["read"],
    constraints={"usageCount": 1000, "validUntil": "2025-12-31", "environment": "None", "sourceIp": None},
)


class TestDiff:

    def test_reflexive(self, catalog):
        assert diff(catalog, BASE, BASE) == []

    @pytest.mark.parametrize("value", ["NaN", float("nan"), float("inf")])
    def test_reflexive_with_non_finite_count(self, catalog, value):
        policy = ContractPolicy(constraints={**BASE.constraints, "usageCount": value})
        assert diff(catalog, policy, policy) == []

    def test_reserialized_policy_is_unchanged(self, catalog):
        copy = ContractPolicy.model_validate_json(BASE.model_dump_json(by_alias=True))
        assert diff(catalog, BASE, copy) == []

    def test_value_level_equality(self, catalog):
        candidate = ContractPolicy(constraints={**BASE.constraints, "usageCount": "1000",
                                                "validUntil": "2025-12-31T00:00:00"})
        assert diff(catalog, BASE, candidate) == []

    def test_reports_negotiable_changes_sorted(self, catalog):
        candidate = ContractPolicy(constraints={**BASE.constraints, "validUntil": "2026-06-30", "usageCount": 2000})
        changes = diff(catalog, BASE, candidate)
        assert [c.key for c in changes] == ["usageCount", "validUntil"]
        assert changes[1].from_value == "2025-12-31"
        assert changes[1].to_value == "2026-06-30"

    @pytest.mark.parametrize("key,value", [("environment", "TEE"), ("sourceIp", "10.0.0.1"), ("ipWhitelist", "10.0.0.0/8")])
    def test_never_reports_locked_or_injected_keys(self, catalog, key, value):
        candidate = ContractPolicy(constraints={**BASE.constraints, key: value})
        assert diff(catalog, BASE, candidate) == []

    def test_added_and_removed_terms(self, catalog):
        candidate = ContractPolicy(constraints={"validFrom": "2025-06-01"})
        changes = {c.key: (c.from_value, c.to_value) for c in diff(catalog, BASE, candidate)}
        assert changes == {"usageCount": (1000, None), "validUntil": ("2025-12-31", None), "validFrom": (None, "2025-06-01")}

    def test_empty_base(self, catalog):
        assert [c.key for c in diff(catalog, None, BASE)] == ["usageCount", "validUntil"]

    def test_serialized_change_uses_from_and_to(self, catalog):
        candidate = ContractPolicy(constraints={**BASE.constraints, "usageCount": 2000})
        assert diff(catalog, BASE, candidate)[0].model_dump(by_alias=True) == {"key": "usageCount", "from": 1000, "to": 2000}
