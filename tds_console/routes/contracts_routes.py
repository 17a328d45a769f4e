"""
Contract routes.

This module defines the API endpoints of the negotiation: creating a
contract, exchanging proposals, signing, and metering the signed
contract's usage.

All endpoints in this module interact with the contract service
(`tds_console.services.contracts_service`). A rejected operation answers
with a typed error body and leaves the stored contract unchanged.
"""

from typing import List, Optional

from fastapi import APIRouter, Body

from tds_console.models.contract import ConstraintChange, Contract, HistoryEntry, SigningProof, UsageResult
from tds_console.schemas.catalog import CheckResult
from tds_console.schemas.contract import ContractCreate, ProposalRequest, SignRequest, SubmitRequest
from tds_console.services.contracts_service import get_contract_service
from tds_console.services.injection import RuntimeContext

router = APIRouter()


@router.post("", status_code=201, response_model=Contract)
async def create_contract_route(data: ContractCreate):
    """
    Create a contract in Draft.

    Args:
        data (ContractCreate): Product, role, counterparty and the initial
            policy, plus optional negotiation ranges.

    Returns:
        Contract: The new contract at version 0 with an empty history.

    Example:
        >>> POST /contracts
        {
            "productRef": "DP-BJ-882001",
            "role": "Provider",
            "counterpartyDid": "did:conn:group:556677",
            "myPolicy": {"actions": ["read"], "constraints": {"usageCount": 1000}}
        }
    """

    return await get_contract_service().create_contract(**dict(data))


@router.get("", response_model=List[Contract])
async def list_contracts(status: Optional[str] = None):
    """
    Retrieve all contracts, optionally filtered by status.

    Args:
        status (str, optional): Draft, Negotiating, PendingSignature, Active,
            Terminated or Revoked.

    Returns:
        List[Contract]: Matching contracts ordered by id.

    Example:
        >>> GET /contracts?status=Negotiating
    """

    return await get_contract_service().list_contracts(status)


@router.get("/{contract_id}", response_model=Contract)
async def get_contract(contract_id: str):
    """
    Retrieve one contract.

    Args:
        contract_id (str): Identifier of the contract.

    Returns:
        Contract: The stored contract.

    Example:
        >>> GET /contracts/CNT-2025-001
    """

    return await get_contract_service().get_contract(contract_id)


@router.post("/{contract_id}/submit", response_model=Contract)
async def submit_contract(contract_id: str, data: Optional[SubmitRequest] = Body(default=None)):
    """
    Send the Draft to the counterparty. The contract moves to Negotiating at version 1.

    Args:
        contract_id (str): Identifier of the Draft.
        data (SubmitRequest, optional): Comment for the first history entry.

    Returns:
        Contract: The contract in Negotiating.

    Example:
        >>> POST /contracts/CNT-2025-001/submit
        {"comment": "Initial offer"}
    """

    comment = data.comment if data is not None else ""
    return await get_contract_service().submit_draft(contract_id, comment)


@router.post("/{contract_id}/proposals", response_model=Contract)
async def propose(contract_id: str, data: ProposalRequest):
    """
    Record a new proposal based on `version`.

    Args:
        contract_id (str): Identifier of the contract.
        data (ProposalRequest): Base version, proposer, comment and the
            complete proposed policy.

    Returns:
        Contract: The contract with one more history entry.

    Example:
        >>> POST /contracts/CNT-2025-001/proposals
        {"version": 1, "proposer": "Counterparty", "comment": "Need more calls",
         "policy": {"actions": ["read"], "constraints": {"usageCount": 2000}}}
    """

    return await get_contract_service().propose(
        contract_id, data.version, data.policy, data.comment, data.proposer
    )


@router.post("/{contract_id}/request-signature", response_model=Contract)
async def request_signature(contract_id: str):
    """
    Move a Negotiating contract to PendingSignature.

    Args:
        contract_id (str): Identifier of the contract.

    Returns:
        Contract: The contract awaiting signature.

    Example:
        >>> POST /contracts/CNT-2025-001/request-signature
    """

    return await get_contract_service().request_signature(contract_id)


@router.post("/{contract_id}/sign", response_model=Contract)
async def sign_contract(contract_id: str, data: SignRequest):
    """
    Accept the latest proposal and activate the contract.

    Args:
        contract_id (str): Identifier of the contract.
        data (SignRequest): Signer DID, signing proof and, optionally, the
            version the signer reviewed.

    Returns:
        Contract: The Active contract with its signature and usage counters.

    Example:
        >>> POST /contracts/CNT-2025-001/sign
        {"signerDid": "did:conn:group:112233", "proof": "sig-0x9f", "version": 2}
    """

    proof = SigningProof(signer_did=data.signer_did, proof=data.proof)
    return await get_contract_service().accept_and_sign(contract_id, proof, data.version)


@router.get("/{contract_id}/history", response_model=List[HistoryEntry])
async def get_history(contract_id: str):
    """
    Retrieve the negotiation history, oldest round first.

    Args:
        contract_id (str): Identifier of the contract.

    Returns:
        List[HistoryEntry]: One entry per version.

    Example:
        >>> GET /contracts/CNT-2025-001/history
    """

    return list(await get_contract_service().get_history(contract_id))


@router.get("/{contract_id}/diff", response_model=List[ConstraintChange])
async def get_diff(contract_id: str):
    """
    Negotiable terms on which the two parties currently disagree.

    Args:
        contract_id (str): Identifier of the contract.

    Returns:
        List[ConstraintChange]: Changes sorted by key, empty when both sides agree.

    Example:
        >>> GET /contracts/CNT-2025-001/diff
    """

    return await get_contract_service().get_diff(contract_id)


@router.get("/{contract_id}/issues", response_model=CheckResult)
async def get_issues(contract_id: str):
    """
    Validation issues that would block a signature now.

    Args:
        contract_id (str): Identifier of the contract.

    Returns:
        CheckResult: `valid` and the per-key issues.

    Example:
        >>> GET /contracts/CNT-2025-001/issues
    """

    issues = await get_contract_service().get_outstanding_issues(contract_id)
    return CheckResult(valid=not issues, errors={key: issue.to_dict() for key, issue in issues.items()})


@router.post("/{contract_id}/usage", response_model=UsageResult)
async def record_usage(contract_id: str, context: Optional[RuntimeContext] = Body(default=None)):
    """
    Meter one access request against an Active contract.

    Args:
        contract_id (str): Identifier of the contract.
        context (RuntimeContext, optional): Caller facts used to fill the
            Injected terms.

    Returns:
        UsageResult: `{"allowed": true, "remainingCalls": n}`. Once the calls
        are used up the answer is 429 with `QuotaExhausted`.

    Example:
        >>> POST /contracts/CNT-2025-001/usage
        {"connectorDid": "did:conn:group:556677", "sourceIp": "10.0.0.8"}
    """

    return await get_contract_service().record_usage(contract_id, context)


@router.post("/{contract_id}/terminate", response_model=Contract)
async def terminate_contract(contract_id: str):
    """
    Abandon a contract that is still being negotiated.

    Args:
        contract_id (str): Identifier of the contract.

    Returns:
        Contract: The Terminated contract.

    Example:
        >>> POST /contracts/CNT-2025-001/terminate
    """

    return await get_contract_service().terminate(contract_id)


@router.post("/{contract_id}/revoke", response_model=Contract)
async def revoke_contract(contract_id: str):
    """
    Revoke an Active contract. Further usage is refused.

    Args:
        contract_id (str): Identifier of the contract.

    Returns:
        Contract: The Revoked contract.

    Example:
        >>> POST /contracts/CNT-2025-001/revoke
    """

    return await get_contract_service().revoke(contract_id)
