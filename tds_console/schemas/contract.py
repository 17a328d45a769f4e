from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tds_console.models.catalog import Bounds
from tds_console.models.contract import ContractPolicy, PartyRole, Proposer, SignMode


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class ContractCreate(_Request):
    product_ref: str
    role: PartyRole
    my_policy: ContractPolicy
    name: str = ""
    description: Optional[str] = None
    product_name: Optional[str] = None
    counterparty_name: Optional[str] = None
    counterparty_did: Optional[str] = None
    signatory_point_id: Optional[str] = None
    sign_mode: SignMode = SignMode.BROKER
    negotiation_ranges: Dict[str, Bounds] = Field(default_factory=dict)


class SubmitRequest(_Request):
    comment: str = ""


class ProposalRequest(_Request):
    version: int
    """Version the proposal is based on."""

    policy: ContractPolicy
    comment: str = ""
    proposer: Proposer = Proposer.ME


class SignRequest(_Request):
    signer_did: str = Field(min_length=1)
    proof: str = ""
    version: Optional[int] = None
