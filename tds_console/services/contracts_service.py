"""
Contracts service.

This module implements the business logic for managing contracts between
two parties. It wraps the pure transitions of
`tds_console.services.negotiation` with storage and with the concurrency
rules of a negotiation:

- Writes to one contract are serialized by a per-contract `asyncio.Lock`.
  Different contracts never wait on each other. A lock exists only while a
  write to an existing contract is running or waiting.
- A proposal carries the version it was based on. If another round was
  recorded in the meantime the proposal is rejected with `VersionConflict`
  rather than silently rebased.
- The store write itself is a compare-and-set on the version, which covers
  several processes sharing one database.

Handled responsibilities:
    - Contract creation and submission
    - Proposals from either party
    - Signing, usage metering, termination and revocation
    - History and diff queries
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from tds_console.core.errors import NotFound, VersionConflict
from tds_console.models.contract import (
    ConstraintChange,
    Contract,
    ContractPolicy,
    HistoryEntry,
    Proposer,
    SigningProof,
    UsageResult,
)
from tds_console.services import negotiation
from tds_console.services.catalog_service import ConstraintCatalog
from tds_console.services.injection import RuntimeContext
from tds_console.services.validation import ValidationIssue

logger = logging.getLogger(__name__)


class ContractService:
    """
    Store-backed contract operations.

    Example:
        >>> service = ContractService(InMemoryContractStore(), catalog)
        >>> contract = await service.create_contract(product_ref="DP-BJ-882001", role="Provider",
        ...                                          my_policy=ContractPolicy(constraints={"usageCount": 1000}))
        >>> contract = await service.submit_draft(contract.id)
    """

    def __init__(self, store, catalog: ConstraintCatalog):
        self._store = store
        self._catalog = catalog
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @property
    def catalog(self) -> ConstraintCatalog:
        return self._catalog

    # --------------------------------------------------------------------------
    # Queries
    # --------------------------------------------------------------------------

    async def get_contract(self, contract_id: str) -> Contract:
        """
        Returns a contract by id.

        Raises:
            NotFound: If no contract has this id.
        """

        contract = await self._store.get(contract_id)
        if contract is None:
            raise NotFound(f"Contract {contract_id} not found", contractId=contract_id)
        return contract

    async def list_contracts(self, status: Optional[str] = None) -> List[Contract]:
        contracts = await self._store.list()
        if status is not None:
            contracts = [c for c in contracts if c.status.value == status]
        return contracts

    async def get_history(self, contract_id: str) -> Tuple[HistoryEntry, ...]:
        return (await self.get_contract(contract_id)).history

    async def get_diff(self, contract_id: str) -> List[ConstraintChange]:
        """Negotiable terms on which the two parties currently disagree."""

        contract = await self.get_contract(contract_id)
        return negotiation.current_diff(self._catalog, contract)

    async def get_outstanding_issues(self, contract_id: str) -> Dict[str, ValidationIssue]:
        contract = await self.get_contract(contract_id)
        return negotiation.outstanding_issues(self._catalog, contract)

    # --------------------------------------------------------------------------
    # Transitions
    # --------------------------------------------------------------------------

    async def create_contract(self, **fields: Any) -> Contract:
        """Creates a Draft. See `negotiation.create_contract` for the fields."""

        contract = negotiation.create_contract(self._catalog, **fields)
        await self._store.insert(contract)
        return contract

    async def _apply(self, contract_id: str, transition, base_version: Optional[int] = None):
        """
        Runs `transition` on the stored contract under its lock and saves it.

        `transition` receives the current contract and returns the new one,
        or a `(contract, result)` pair whose result is handed back as well.
        """

        await self.get_contract(contract_id)

        lock = self._locks.setdefault(contract_id, asyncio.Lock())
        self._lock_users[contract_id] = self._lock_users.get(contract_id, 0) + 1
        try:
            async with lock:
                return await self._apply_locked(contract_id, transition, base_version)
        finally:
            self._lock_users[contract_id] -= 1
            if not self._lock_users[contract_id]:
                del self._lock_users[contract_id]
                del self._locks[contract_id]

    async def _apply_locked(self, contract_id: str, transition, base_version: Optional[int]):
        current = await self.get_contract(contract_id)
        if base_version is not None and base_version != current.version:
            logger.warning("Contract %s: stale write based on v%d (current v%d)",
                           contract_id, base_version, current.version)
            raise VersionConflict(base_version, current.version)

        outcome = transition(current)
        updated, result = outcome if isinstance(outcome, tuple) else (outcome, None)
        await self._store.save(updated, expected_version=current.version)
        return updated, result

    async def submit_draft(self, contract_id: str, comment: str = "") -> Contract:
        contract, _ = await self._apply(contract_id, lambda c: negotiation.submit(self._catalog, c, comment))
        return contract

    async def propose(
        self,
        contract_id: str,
        version: int,
        policy: ContractPolicy,
        comment: str = "",
        proposer: Proposer = Proposer.ME,
    ) -> Contract:
        """
        Records a proposal made on top of `version`.

        Raises:
            VersionConflict: If `version` is not the current version.
            ProposalRejected: If a changed term is invalid. The stored contract
                is left untouched.
        """

        contract, _ = await self._apply(
            contract_id,
            lambda c: negotiation.propose(self._catalog, c, proposer, policy, comment, base_version=version),
            base_version=version,
        )
        return contract

    async def request_signature(self, contract_id: str) -> Contract:
        contract, _ = await self._apply(contract_id, negotiation.request_signature)
        return contract

    async def accept_and_sign(self, contract_id: str, proof: SigningProof, version: Optional[int] = None) -> Contract:
        """
        Accepts the latest proposal and activates the contract.

        `version`, when given, pins the round being accepted so that a party
        never signs terms that changed after it last looked.
        """

        contract, _ = await self._apply(
            contract_id,
            lambda c: negotiation.accept_and_sign(self._catalog, c, proof),
            base_version=version,
        )
        return contract

    async def record_usage(self, contract_id: str, context: Optional[RuntimeContext] = None) -> UsageResult:
        """
        Meters one access request.

        Raises:
            QuotaExhausted: If the contract has no remaining calls.
        """

        _, result = await self._apply(contract_id, lambda c: negotiation.record_usage(self._catalog, c, context))
        return result

    async def terminate(self, contract_id: str) -> Contract:
        contract, _ = await self._apply(contract_id, negotiation.terminate)
        return contract

    async def revoke(self, contract_id: str) -> Contract:
        contract, _ = await self._apply(contract_id, negotiation.revoke)
        return contract


# ------------------------------------------------------------------------------
# Process-wide instance
# ------------------------------------------------------------------------------

_service: Optional[ContractService] = None


def init_contract_service(store, catalog: ConstraintCatalog) -> ContractService:
    global _service
    _service = ContractService(store, catalog)
    return _service


def get_contract_service() -> ContractService:
    if _service is None:
        raise RuntimeError("Contract service was not initialized. Call init_contract_service() first.")
    return _service
