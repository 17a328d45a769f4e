"""
Negotiation state machine and signing gate.

Pure transitions over immutable `Contract` values. Each function takes a
contract and returns a new one, or raises a `NegotiationError` subclass
and leaves its input untouched. Nothing here performs I/O or keeps state;
serialization of concurrent writers is the job of
`tds_console.services.contracts_service`.

Lifecycle:

    Draft --submit--> Negotiating --request_signature--> PendingSignature
    Negotiating/PendingSignature --accept_and_sign--> Active --revoke--> Revoked
    Negotiating/PendingSignature --terminate--> Terminated

`propose` is symmetric: "Me" and "Counterparty" go through the same checks
and differ only in the policy slot they replace.
"""

import hashlib
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from tds_console.core.errors import IllegalTransition, ProposalRejected, QuotaExhausted, VersionConflict
from tds_console.models.catalog import Bounds, ConstraintMode
from tds_console.models.contract import (
    Contract,
    ContractPolicy,
    ContractStatus,
    ExecutionStats,
    HistoryEntry,
    PartyRole,
    Proposer,
    Signature,
    SignMode,
    SigningProof,
    UsageResult,
)
from tds_console.services.catalog_service import ConstraintCatalog
from tds_console.services.diff import diff
from tds_console.services.injection import RuntimeContext, resolve_injected
from tds_console.services.validation import (
    ValidationIssue,
    as_number,
    check_range,
    normalize_value,
    validate,
    validate_terms,
)

logger = logging.getLogger(__name__)

USAGE_COUNT_KEY = "usageCount"

_OPEN_STATES = (ContractStatus.NEGOTIATING, ContractStatus.PENDING_SIGNATURE)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_contract_id(now: Optional[datetime] = None) -> str:
    """Returns a fresh contract identifier such as `CNT-2025-1f3a9c02`."""

    year = (now or _now()).year
    return f"CNT-{year}-{uuid.uuid4().hex[:8]}"


# ------------------------------------------------------------------------------
# Creation
# ------------------------------------------------------------------------------

def create_contract(
    catalog: ConstraintCatalog,
    *,
    product_ref: str,
    role: Union[PartyRole, str],
    my_policy: ContractPolicy,
    name: str = "",
    description: Optional[str] = None,
    product_name: Optional[str] = None,
    counterparty_name: Optional[str] = None,
    counterparty_did: Optional[str] = None,
    signatory_point_id: Optional[str] = None,
    sign_mode: Union[SignMode, str] = SignMode.BROKER,
    negotiation_ranges: Optional[Mapping[str, Union[Bounds, dict]]] = None,
    contract_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Contract:
    """
    Creates a contract in Draft with version 0 and an empty history.

    The initial policy and the negotiation ranges are validated against the
    catalog; every failing key is reported at once.

    Raises:
        ProposalRejected: If a term or a range is invalid.
    """

    now = now or _now()
    ranges = {key: Bounds.model_validate(value) if isinstance(value, dict) else value
              for key, value in (negotiation_ranges or {}).items()}

    issues: Dict[str, ValidationIssue] = {}
    for key, negotiation_range in ranges.items():
        issue = check_range(catalog, key, negotiation_range)
        if issue is not None:
            issues[key] = issue
    for key, issue in validate_terms(catalog, my_policy.constraints, ranges).items():
        issues.setdefault(key, issue)
    if issues:
        logger.warning("Contract creation rejected: %s", ", ".join(sorted(issues)))
        raise ProposalRejected(issues)

    contract = Contract(
        id=contract_id or new_contract_id(now),
        name=name,
        description=description,
        product_ref=product_ref,
        product_name=product_name,
        role=role,
        counterparty_name=counterparty_name,
        counterparty_did=counterparty_did,
        signatory_point_id=signatory_point_id,
        sign_mode=sign_mode,
        my_policy=my_policy.model_copy(deep=True),
        negotiation_ranges=ranges,
        created_at=now,
        last_updated=now,
    )
    logger.info("Contract %s created for product %s as %s", contract.id, product_ref, contract.role.value)
    return contract


def submit(catalog: ConstraintCatalog, contract: Contract, comment: str = "", now: Optional[datetime] = None) -> Contract:
    """
    Moves a Draft into Negotiating.

    Appends history entry 1 with `my_policy` as snapshot and seeds the
    counterparty slot with a provisional copy of it. The seed is flagged so
    the diff can tell it apart from a real counter-proposal.
    """

    if contract.status != ContractStatus.DRAFT:
        raise IllegalTransition(f"Only a Draft can be submitted; contract {contract.id} is {contract.status.value}")

    now = now or _now()
    snapshot = contract.my_policy
    entry = HistoryEntry(
        version=1,
        proposer=Proposer.ME,
        timestamp=now,
        comment=comment or "Initial offer",
        policy_snapshot=snapshot,
        changes=tuple(diff(catalog, None, snapshot)),
    )
    submitted = contract.model_copy(update={
        "status": ContractStatus.NEGOTIATING,
        "version": 1,
        "history": (entry,),
        "counterparty_policy": snapshot.model_copy(deep=True),
        "counterparty_provisional": True,
        "last_updated": now,
    })
    logger.info("Contract %s submitted (v1)", contract.id)
    return submitted


# ------------------------------------------------------------------------------
# Proposals
# ------------------------------------------------------------------------------

def _changed_keys(catalog: ConstraintCatalog, before: Mapping[str, Any], after: Mapping[str, Any]):
    for key in sorted(set(before) | set(after)):
        definition = catalog.get(key)
        if normalize_value(definition, before.get(key)) != normalize_value(definition, after.get(key)):
            yield key


def check_proposal(catalog: ConstraintCatalog, contract: Contract, new_policy: ContractPolicy) -> Dict[str, ValidationIssue]:
    """
    Validates the terms a proposal changes with respect to the latest round.

    Changed keys are checked in their catalog default mode and against the
    contract's negotiation ranges. A Locked key must keep the value of the
    first round; an Injected key never carries a value.

    Returns:
        dict[str, ValidationIssue]: One issue per failing key, empty when the proposal is acceptable.
    """

    latest = contract.latest_entry
    previous = latest.policy_snapshot.constraints if latest is not None else contract.my_policy.constraints
    original = contract.history[0].policy_snapshot.constraints if contract.history else previous

    issues: Dict[str, ValidationIssue] = {}
    for key in _changed_keys(catalog, previous, new_policy.constraints):
        definition = catalog.get(key)
        value = new_policy.constraints.get(key)
        mode = definition.default_mode if definition is not None else ConstraintMode.LOCKED

        issue = validate(catalog, key, mode, value, contract.negotiation_ranges.get(key))
        if issue is None and mode == ConstraintMode.LOCKED \
                and normalize_value(definition, value) != normalize_value(definition, original.get(key)):
            issue = ValidationIssue(
                key=key,
                kind="LockedFieldMutation",
                reason=f"'{key}' is locked by the policy author",
                bound_hint=original.get(key),
            )
        if issue is not None:
            issues[key] = issue
    return issues


def propose(
    catalog: ConstraintCatalog,
    contract: Contract,
    proposer: Union[Proposer, str],
    new_policy: ContractPolicy,
    comment: str = "",
    base_version: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Contract:
    """
    Records a new round of the negotiation.

    Args:
        catalog (ConstraintCatalog): Catalog the terms are validated against.
        contract (Contract): Contract being negotiated.
        proposer (Proposer): Party putting the policy forward.
        new_policy (ContractPolicy): The complete proposed position.
        comment (str): Free text attached to the history entry.
        base_version (int, optional): Version the proposer based the change on.
            When given it must equal the current version.
        now (datetime, optional): Timestamp of the round.

    Returns:
        Contract: The contract with version + 1, one more history entry and the
        proposer's slot replaced. Status is (back to) Negotiating.

    Raises:
        IllegalTransition: If the contract is not open for proposals.
        VersionConflict: If `base_version` is stale.
        ProposalRejected: If any changed term fails validation.
    """

    proposer = Proposer(proposer)
    if contract.status not in _OPEN_STATES:
        raise IllegalTransition(f"Contract {contract.id} is {contract.status.value} and accepts no proposals")
    if base_version is not None and base_version != contract.version:
        raise VersionConflict(base_version, contract.version)

    issues = check_proposal(catalog, contract, new_policy)
    if issues:
        logger.warning("Proposal by %s on %s rejected: %s", proposer.value, contract.id, ", ".join(issues))
        raise ProposalRejected(issues)

    new_policy = new_policy.model_copy(deep=True)
    now = now or _now()
    version = contract.version + 1
    entry = HistoryEntry(
        version=version,
        proposer=proposer,
        timestamp=now,
        comment=comment,
        policy_snapshot=new_policy,
        changes=tuple(diff(catalog, contract.latest_entry.policy_snapshot, new_policy)),
    )

    update = {
        "status": ContractStatus.NEGOTIATING,
        "version": version,
        "history": contract.history + (entry,),
        "last_updated": now,
    }
    if proposer == Proposer.ME:
        update["my_policy"] = new_policy
    else:
        update["counterparty_policy"] = new_policy
        update["counterparty_provisional"] = False

    logger.info("Contract %s: %s proposed v%d (%d change(s))", contract.id, proposer.value, version, len(entry.changes))
    return contract.model_copy(update=update)


def current_diff(catalog: ConstraintCatalog, contract: Contract):
    """
    Changes between the two parties' current positions.

    While the counterparty slot is only the provisional seed, nothing was
    counter-proposed yet and the diff is taken against an empty base.
    """

    if contract.counterparty_policy is None:
        return []
    base = None if contract.counterparty_provisional else contract.my_policy
    return diff(catalog, base, contract.counterparty_policy)


def outstanding_issues(catalog: ConstraintCatalog, contract: Contract) -> Dict[str, ValidationIssue]:
    """Validation issues of the proposal a signature would accept."""

    latest = contract.latest_entry
    if latest is None:
        return {}
    return validate_terms(catalog, latest.policy_snapshot.constraints, contract.negotiation_ranges)


# ------------------------------------------------------------------------------
# Signing & activation
# ------------------------------------------------------------------------------

def usage_quota(policy: ContractPolicy) -> int:
    """Number of calls granted by `policy`: its `usageCount` term, or 0."""

    number = as_number(policy.constraints.get(USAGE_COUNT_KEY))
    return int(number) if number is not None and number > 0 else 0


def compute_signature_hash(contract: Contract, agreed: ContractPolicy, proof: SigningProof) -> str:
    """
    SHA-256 over the canonical JSON of the agreed terms and the signer's proof.

    Keys are sorted so the same terms always hash the same way.
    """

    hashable = {
        "contractId": contract.id,
        "version": contract.version,
        "productRef": contract.product_ref,
        "counterpartyDid": contract.counterparty_did,
        "terms": agreed.model_dump(mode="json", by_alias=True),
        "signerDid": proof.signer_did,
        "proof": proof.proof,
    }
    canonical = json.dumps(hashable, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def request_signature(contract: Contract, now: Optional[datetime] = None) -> Contract:
    """Negotiating -> PendingSignature. The terms on the table stay as they are."""

    if contract.status != ContractStatus.NEGOTIATING:
        raise IllegalTransition(f"Cannot request a signature on a {contract.status.value} contract")

    logger.info("Contract %s awaiting signature at v%d", contract.id, contract.version)
    return contract.model_copy(update={"status": ContractStatus.PENDING_SIGNATURE, "last_updated": now or _now()})


def accept_and_sign(
    catalog: ConstraintCatalog,
    contract: Contract,
    proof: SigningProof,
    now: Optional[datetime] = None,
) -> Contract:
    """
    Accepts the latest proposal, signs it and activates the contract.

    Negotiating and PendingSignature both lead straight to Active. The
    agreed terms are frozen, a single signature is stamped and metering
    starts with `remainingCalls` taken from the `usageCount` term.

    Raises:
        IllegalTransition: If the contract is not open or was already signed.
        ProposalRejected: If the accepted terms still have validation issues.
    """

    if contract.signature is not None or contract.status == ContractStatus.ACTIVE:
        raise IllegalTransition(f"Contract {contract.id} is already signed")
    if contract.status not in _OPEN_STATES:
        raise IllegalTransition(f"Cannot sign a {contract.status.value} contract")

    issues = outstanding_issues(catalog, contract)
    if issues:
        logger.warning("Signature on %s refused: %s", contract.id, ", ".join(issues))
        raise ProposalRejected(issues)

    now = now or _now()
    agreed = contract.latest_entry.policy_snapshot
    signature = Signature(hash=compute_signature_hash(contract, agreed, proof), signer_did=proof.signer_did, timestamp=now)
    stats = ExecutionStats(total_calls=0, remaining_calls=usage_quota(agreed), last_call_time=None)

    logger.info("Contract %s signed by %s, %d call(s) granted", contract.id, proof.signer_did, stats.remaining_calls)
    return contract.model_copy(update={
        "status": ContractStatus.ACTIVE,
        "agreed_policy": agreed,
        "signature": signature,
        "execution_stats": stats,
        "last_updated": now,
    })


def record_usage(
    catalog: ConstraintCatalog,
    contract: Contract,
    context: Optional[RuntimeContext] = None,
    now: Optional[datetime] = None,
) -> Tuple[Contract, UsageResult]:
    """
    Meters one access against an Active contract.

    Returns:
        tuple[Contract, UsageResult]: The updated contract and the answer for the
        caller, including the runtime values bound to the injected terms.

    Raises:
        IllegalTransition: If the contract is not Active.
        QuotaExhausted: If no calls remain.
    """

    if contract.status != ContractStatus.ACTIVE or contract.execution_stats is None:
        raise IllegalTransition(f"Contract {contract.id} is {contract.status.value} and cannot be used")

    stats = contract.execution_stats
    if stats.remaining_calls <= 0:
        logger.warning("Contract %s: usage refused, quota exhausted", contract.id)
        raise QuotaExhausted(contract.id)

    now = now or _now()
    stats = stats.model_copy(update={
        "total_calls": stats.total_calls + 1,
        "remaining_calls": stats.remaining_calls - 1,
        "last_call_time": now,
    })
    injected = resolve_injected(catalog, contract.agreed_policy.constraints, context)
    result = UsageResult(allowed=True, remaining_calls=stats.remaining_calls, injected=injected)

    logger.debug("Contract %s: call %d, %d remaining", contract.id, stats.total_calls, stats.remaining_calls)
    return contract.model_copy(update={"execution_stats": stats, "last_updated": now}), result


# ------------------------------------------------------------------------------
# Termination
# ------------------------------------------------------------------------------

def terminate(contract: Contract, now: Optional[datetime] = None) -> Contract:
    """Ends an unsigned negotiation. Terminated is final."""

    if contract.status not in _OPEN_STATES:
        raise IllegalTransition(f"Cannot terminate a {contract.status.value} contract")

    logger.info("Contract %s terminated at v%d", contract.id, contract.version)
    return contract.model_copy(update={"status": ContractStatus.TERMINATED, "last_updated": now or _now()})


def revoke(contract: Contract, now: Optional[datetime] = None) -> Contract:
    """Withdraws an Active contract. Metering stops; the signature is kept for audit."""

    if contract.status != ContractStatus.ACTIVE:
        raise IllegalTransition(f"Only an Active contract can be revoked; contract {contract.id} is {contract.status.value}")

    logger.info("Contract %s revoked", contract.id)
    return contract.model_copy(update={"status": ContractStatus.REVOKED, "last_updated": now or _now()})
