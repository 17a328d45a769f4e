"""
Shared fixtures for the negotiation engine tests.

The application is configured for in-memory storage with EDC sync
disabled before anything from `tds_console` is imported.
"""

import os
from datetime import datetime, timezone

import pytest

os.environ["STORAGE_BACKEND"] = "memory"
os.environ["EDC_MANAGEMENT_URL"] = ""
os.environ["EDC_API_KEY"] = ""
os.environ.pop("CATALOG_PATH", None)

from tds_console.db.stores import InMemoryContractStore, InMemoryPolicyStore  # noqa: E402
from tds_console.models.contract import ContractPolicy, SigningProof  # noqa: E402
from tds_console.services import negotiation  # noqa: E402
from tds_console.services.catalog_service import load_catalog  # noqa: E402
from tds_console.services.contracts_service import ContractService  # noqa: E402
from tds_console.services.policies_service import PolicyRegistry  # noqa: E402

T0 = datetime(2025, 5, 8, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def catalog():
    return load_catalog()


@pytest.fixture
def initial_policy():
    """Provider offer: 1000 calls, read only, no special environment."""
    return ContractPolicy(
        actions=["read"],
        constraints={"usageCount": 1000, "validUntil": "2025-12-31", "environment": "None"},
    )


@pytest.fixture
def draft(catalog, initial_policy):
    return negotiation.create_contract(
        catalog,
        product_ref="DP-BJ-882001",
        role="Provider",
        my_policy=initial_policy,
        name="Regional weather data",
        counterparty_did="did:conn:group:556677",
        contract_id="CNT-2025-001",
        now=T0,
    )


@pytest.fixture
def negotiating(catalog, draft):
    return negotiation.submit(catalog, draft, now=T0)


@pytest.fixture
def proof():
    return SigningProof(signer_did="did:conn:node_0086_bank01", proof="ukey-signature")


@pytest.fixture
def contract_service(catalog):
    return ContractService(InMemoryContractStore(), catalog)


@pytest.fixture
def policy_registry(catalog):
    return PolicyRegistry(InMemoryPolicyStore(), catalog)


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from tds_console.main import app

    with TestClient(app) as test_client:
        yield test_client
