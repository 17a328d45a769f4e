"""
Contract model definition.

This module defines the `Contract` data model, the negotiation unit
between exactly two parties over a data product. Each party's position is
a simplified `{actions, constraints}` policy drawn from the constraint
catalog; every round of the negotiation is appended to the contract's
history, and the contract ends up Active (signed and metered),
Terminated or Revoked.

Invariants kept by `tds_console.services.negotiation`:
- `version` grows by exactly 1 per history entry and `history[0].version == 1`.
- each party's policy slot equals the snapshot of its latest history entry.
- `role`, counterparty identity and signature are set once and never change.

The models use snake_case attributes and serialize with camelCase aliases,
which is the shape the console consumes.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from tds_console.models.catalog import Bounds


class ContractStatus(str, Enum):
    DRAFT = "Draft"
    NEGOTIATING = "Negotiating"
    PENDING_SIGNATURE = "PendingSignature"
    ACTIVE = "Active"
    TERMINATED = "Terminated"
    REVOKED = "Revoked"


class PartyRole(str, Enum):
    PROVIDER = "Provider"
    CONSUMER = "Consumer"


class Proposer(str, Enum):
    ME = "Me"
    COUNTERPARTY = "Counterparty"


class SignMode(str, Enum):
    P2P = "Point-to-Point"
    BROKER = "Broker-Mediated"


class _ContractModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)


class ContractPolicy(_ContractModel):
    """
    One party's position: granted actions and constraint values.

    Example:
        >>> ContractPolicy(
        ...     actions=["read", "desensitize"],
        ...     constraints={"usageCount": 1000, "validUntil": "2025-12-31", "environment": "None"}
        ... )
    """

    actions: Tuple[str, ...] = ()
    """Granted actions (e.g. 'read', 'transfer')."""

    constraints: Dict[str, Any] = Field(default_factory=dict)
    """Constraint values keyed by catalog key."""

    @field_validator("actions", mode="before")
    @classmethod
    def normalize_actions(cls, v):
        if isinstance(v, (list, tuple)):
            return tuple(a.split(":")[-1].lower() if isinstance(a, str) else a for a in v)
        return v


class ConstraintChange(_ContractModel):
    """A negotiable term that differs between two policies."""

    key: str
    from_value: Any = Field(default=None, alias="from")
    to_value: Any = Field(default=None, alias="to")


class HistoryEntry(_ContractModel):
    """
    One round of the negotiation.

    Example:
        >>> HistoryEntry(
        ...     version=2,
        ...     proposer="Counterparty",
        ...     timestamp=datetime(2025, 5, 8, 16, 30),
        ...     comment="Raise usage count for model training",
        ...     policy_snapshot=ContractPolicy(actions=["read"], constraints={"usageCount": 2000})
        ... )
    """

    version: int
    proposer: Proposer
    timestamp: datetime
    comment: str = ""

    policy_snapshot: ContractPolicy
    """Exact policy the proposer put forward in this round."""

    changes: Tuple[ConstraintChange, ...] = ()
    """Negotiable terms changed with respect to the previous round."""


class Signature(_ContractModel):
    """Signature artifact stamped on activation. One per contract."""

    hash: str
    signer_did: str = Field(min_length=1)
    timestamp: datetime


class SigningProof(_ContractModel):
    """
    Proof supplied by the signer.

    `proof` is an opaque token (e.g. the output of a U-Key) that is mixed
    into the signature hash. No cryptographic verification is done here.
    """

    signer_did: str = Field(min_length=1)
    proof: str = ""


class ExecutionStats(_ContractModel):
    """Usage metering state of an Active contract."""

    total_calls: int = 0
    remaining_calls: int = 0
    last_call_time: Optional[datetime] = None


class Contract(_ContractModel):
    """
    A bilateral contract under negotiation or in force.

    Example:
        >>> contract = Contract(
        ...     id="CNT-2025-001",
        ...     name="Regional weather data for research",
        ...     product_ref="DP-BJ-882001",
        ...     role="Provider",
        ...     counterparty_did="did:conn:group:556677",
        ...     my_policy=ContractPolicy(actions=["read"], constraints={"usageCount": 1000}),
        ... )
        >>> contract.status
        <ContractStatus.DRAFT: 'Draft'>
    """

    id: str
    """Unique identifier of the contract."""

    name: str = ""
    description: Optional[str] = None

    product_ref: str
    """Identifier of the data product the contract governs."""

    product_name: Optional[str] = None

    role: PartyRole
    """Role of the initiating party ('Me'). Fixed at creation."""

    counterparty_name: Optional[str] = None
    counterparty_did: Optional[str] = None
    """Identity of the other party. Fixed at creation."""

    signatory_point_id: Optional[str] = None
    """Connector that executes the contract on our side."""

    sign_mode: SignMode = SignMode.BROKER

    status: ContractStatus = ContractStatus.DRAFT
    version: int = 0

    my_policy: ContractPolicy
    counterparty_policy: Optional[ContractPolicy] = None

    counterparty_provisional: bool = False
    """True while `counterparty_policy` is only a display copy of `my_policy`."""

    negotiation_ranges: Dict[str, Bounds] = Field(default_factory=dict)
    """Originator-defined ranges narrowing the catalog bounds of negotiable keys."""

    history: Tuple[HistoryEntry, ...] = ()
    """Append-only negotiation log, oldest first."""

    agreed_policy: Optional[ContractPolicy] = None
    """Terms frozen at signature."""

    signature: Optional[Signature] = None
    execution_stats: Optional[ExecutionStats] = None

    created_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    @property
    def latest_entry(self) -> Optional[HistoryEntry]:
        return self.history[-1] if self.history else None

    def latest_entry_by(self, proposer: Proposer) -> Optional[HistoryEntry]:
        for entry in reversed(self.history):
            if entry.proposer == proposer:
                return entry
        return None

    def policy_of(self, proposer: Proposer) -> Optional[ContractPolicy]:
        return self.my_policy if proposer == Proposer.ME else self.counterparty_policy


class UsageResult(_ContractModel):
    """Answer to a metered access request."""

    allowed: bool
    remaining_calls: int
    injected: Dict[str, Any] = Field(default_factory=dict)
    """Runtime values bound to the contract's injected terms for this call."""
