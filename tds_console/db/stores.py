"""
Contract and policy stores.

Two interchangeable backends, selected by `STORAGE_BACKEND`:

- `memory`: dictionaries guarded by an `asyncio.Lock`; used by default and
  in tests. State is lost on restart.
- `mongo`: Motor collections `contracts` and `policies`.

Contracts are written with compare-and-set: `save(contract, expected_version)`
only succeeds when the stored contract is still at `expected_version`, so a
writer that read a stale contract gets `VersionConflict` instead of
overwriting someone else's round. Policies are immutable once published and
are keyed by `(uid, version)`.
"""

import asyncio
import logging
import re
from typing import Dict, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError

from tds_console.core.errors import IllegalTransition, VersionConflict
from tds_console.models.contract import Contract
from tds_console.models.policy import Policy

logger = logging.getLogger(__name__)


def version_key(version: str) -> Tuple[int, ...]:
    """Sort key for 'v1.2' style versions. Unparsable parts sort first."""

    return tuple(int(part) for part in re.findall(r"\d+", version or "")) or (0,)


# ------------------------------------------------------------------------------
# In-memory backend
# ------------------------------------------------------------------------------

class InMemoryContractStore:
    def __init__(self):
        self._contracts: Dict[str, Contract] = {}
        self._lock = asyncio.Lock()

    async def get(self, contract_id: str) -> Optional[Contract]:
        return self._contracts.get(contract_id)

    async def list(self) -> List[Contract]:
        return sorted(self._contracts.values(), key=lambda c: c.id)

    async def insert(self, contract: Contract) -> None:
        async with self._lock:
            if contract.id in self._contracts:
                raise IllegalTransition(f"Contract {contract.id} already exists")
            self._contracts[contract.id] = contract

    async def save(self, contract: Contract, expected_version: int) -> None:
        async with self._lock:
            current = self._contracts.get(contract.id)
            actual = current.version if current is not None else -1
            if actual != expected_version:
                raise VersionConflict(expected_version, actual)
            self._contracts[contract.id] = contract


class InMemoryPolicyStore:
    def __init__(self):
        self._policies: Dict[Tuple[str, str], Policy] = {}

    async def get(self, uid: str, version: Optional[str] = None) -> Optional[Policy]:
        if version is not None:
            return self._policies.get((uid, version))
        versions = await self.versions(uid)
        return versions[-1] if versions else None

    async def versions(self, uid: str) -> List[Policy]:
        found = [p for (p_uid, _), p in self._policies.items() if p_uid == uid]
        return sorted(found, key=lambda p: version_key(p.version))

    async def list(self) -> List[Policy]:
        return sorted(self._policies.values(), key=lambda p: (p.uid, version_key(p.version)))

    async def save(self, policy: Policy) -> None:
        self._policies[(policy.uid, policy.version)] = policy


# ------------------------------------------------------------------------------
# MongoDB backend
# ------------------------------------------------------------------------------

def _contract_to_document(contract: Contract) -> dict:
    document = contract.model_dump(mode="json")
    document["_id"] = document.pop("id")
    return document


def _contract_from_document(document: dict) -> Contract:
    document = dict(document)
    document["id"] = document.pop("_id")
    return Contract.model_validate(document)


class MongoContractStore:
    """
    Contracts collection. The document `_id` is the contract id and the
    `version` field doubles as the compare-and-set token.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self._collection = db["contracts"]

    async def get(self, contract_id: str) -> Optional[Contract]:
        document = await self._collection.find_one({"_id": contract_id})
        return _contract_from_document(document) if document else None

    async def list(self) -> List[Contract]:
        documents = await self._collection.find().sort("_id", ASCENDING).to_list(length=None)
        return [_contract_from_document(d) for d in documents]

    async def insert(self, contract: Contract) -> None:
        try:
            await self._collection.insert_one(_contract_to_document(contract))
        except DuplicateKeyError as e:
            raise IllegalTransition(f"Contract {contract.id} already exists") from e

    async def save(self, contract: Contract, expected_version: int) -> None:
        result = await self._collection.replace_one(
            {"_id": contract.id, "version": expected_version},
            _contract_to_document(contract),
        )
        if result.matched_count == 0:
            current = await self._collection.find_one({"_id": contract.id}, {"version": 1})
            actual = current["version"] if current else -1
            logger.warning("Compare-and-set failed for %s: expected v%d, found v%d", contract.id, expected_version, actual)
            raise VersionConflict(expected_version, actual)


class MongoPolicyStore:
    """Policies collection, one document per `(uid, version)`."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self._collection = db["policies"]

    @staticmethod
    def _from_document(document: dict) -> Policy:
        document = dict(document)
        document.pop("_id", None)
        return Policy.model_validate(document)

    async def get(self, uid: str, version: Optional[str] = None) -> Optional[Policy]:
        if version is not None:
            document = await self._collection.find_one({"_id": f"{uid}@{version}"})
            return self._from_document(document) if document else None
        versions = await self.versions(uid)
        return versions[-1] if versions else None

    async def versions(self, uid: str) -> List[Policy]:
        documents = await self._collection.find({"uid": uid}).to_list(length=None)
        return sorted((self._from_document(d) for d in documents), key=lambda p: version_key(p.version))

    async def list(self) -> List[Policy]:
        documents = await self._collection.find().to_list(length=None)
        policies = [self._from_document(d) for d in documents]
        return sorted(policies, key=lambda p: (p.uid, version_key(p.version)))

    async def save(self, policy: Policy) -> None:
        document = policy.model_dump(mode="json", by_alias=True)
        document["_id"] = policy.ref
        await self._collection.replace_one({"_id": policy.ref}, document, upsert=True)
