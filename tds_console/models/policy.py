"""
Policy model definition.

This module defines the data models that represent access and usage
policies in the trusted data space. Policies are based on the ODRL (Open
Digital Rights Language) specification and describe permissions, the
constraints that restrict them, and the duties attached to them.

The models follow a hierarchical structure:
- Operator: comparison operator of a constraint.
- Constraint: a condition (leftOperand, operator, rightOperand) plus its
  negotiation mode and, for negotiable terms, the accepted range.
- Duty: an obligation attached to a permission, configured by constraints.
- Permission: an action on a target, restricted by constraints and duties.
- Policy: a named, versioned bundle of permissions.

All models are immutable. Authoring operations in
`tds_console.services.policies_service` return new instances.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, Tuple, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tds_console.models.catalog import Bounds, ConstraintMode, Dimension


RightOperand = Union[int, float, str, Tuple[str, ...]]


class Operator(str, Enum):
    """
    ODRL comparison operators accepted in constraints.

    Example:
        >>> Operator("odrl:gteq")
        <Operator.GTE: 'gte'>
    """

    EQ = "eq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    NEQ = "neq"
    HAS_PART = "hasPart"
    IS_PART_OF = "isPartOf"
    IS_A = "isA"
    IS_ALL_OF = "isAllOf"
    IS_ANY_OF = "isAnyOf"
    IS_NONE_OF = "isNoneOf"

    @classmethod
    def _missing_(cls, value):
        # admits 'odrl:eq', 'EQ', and the 'gteq'/'lteq' spellings
        if isinstance(value, str):
            name = value.split(":")[-1]
            name = {"gteq": "gte", "lteq": "lte"}.get(name.lower(), name)
            for member in cls:
                if member.value.lower() == name.lower():
                    return member
        return None


class PolicyStatus(str, Enum):
    ACTIVE = "Active"
    DISABLED = "Disabled"


def _normalize_action(v):
    # admits 'odrl:use', 'use', 'USE'…
    if isinstance(v, str):
        v = v.split(":")[-1].lower()
    return v


class Constraint(BaseModel):
    """
    Defines a constraint that applies to a permission or a duty.

    Example:
        >>> constraint = Constraint(
        ...     leftOperand="count",
        ...     operator="lte",
        ...     rightOperand=1000,
        ...     mode="Negotiable",
        ...     dimension="Time",
        ...     negotiationOptions=Bounds(min=100, max=5000)
        ... )
    """

    model_config = ConfigDict(frozen=True)

    leftOperand: str
    """Catalog key restricted by this constraint (e.g. 'count', 'dateTime')."""

    operator: Optional[Operator] = None
    """Operator relating the operands. Empty for injected constraints."""

    rightOperand: Optional[RightOperand] = None
    """Authored value. Empty for injected constraints."""

    mode: ConstraintMode = ConstraintMode.LOCKED
    """Negotiation mode, one of the catalog's allowed modes for the key."""

    dimension: Optional[Dimension] = None
    """Dimension copied from the catalog when the constraint was added."""

    negotiationOptions: Optional[Bounds] = None
    """Range a counterparty may propose values in. Negotiable constraints only."""

    comment: Optional[str] = None

    @field_validator("operator", mode="before")
    @classmethod
    def normalize_operator(cls, v):
        # admits the EDC form {"@id": "odrl:eq"}
        if isinstance(v, dict):
            v = v.get("@id") or v.get("id")
        if isinstance(v, str):
            return Operator(v)
        return v

    @model_validator(mode="after")
    def check_mode_fields(self):
        if self.mode == ConstraintMode.INJECTED and (self.operator is not None or self.rightOperand not in (None, "")):
            raise ValueError(f"Injected constraint '{self.leftOperand}' cannot carry an operator or a value")
        if self.negotiationOptions is not None and self.mode != ConstraintMode.NEGOTIABLE:
            raise ValueError(f"Only negotiable constraints carry negotiationOptions ('{self.leftOperand}')")
        return self


class Duty(BaseModel):
    """
    An obligation attached to a permission (e.g. anonymize before use).

    Example:
        >>> duty = Duty(
        ...     action="anonymize",
        ...     target="mobile",
        ...     constraint=[Constraint(leftOperand="algorithm", operator="eq", rightOperand="Masking")]
        ... )
    """

    model_config = ConfigDict(frozen=True)

    action: str
    target: Optional[str] = None
    constraint: Tuple[Constraint, ...] = ()

    @field_validator("action", mode="before")
    @classmethod
    def normalize_action(cls, v):
        return _normalize_action(v)


class Permission(BaseModel):
    """
    A permitted action on a target.

    Example:
        >>> permission = Permission(
        ...     action="use",
        ...     target="http://data.example.com/dataset/weather",
        ...     constraint=[Constraint(leftOperand="dateTime", operator="gte", rightOperand="2024-01-01")]
        ... )
    """

    model_config = ConfigDict(frozen=True)

    action: str
    """Primary action, usually 'use', 'read' or 'transfer'."""

    target: Optional[str] = None
    """Asset the permission applies to. Empty in templates."""

    constraint: Tuple[Constraint, ...] = ()
    duty: Tuple[Duty, ...] = ()

    @field_validator("action", mode="before")
    @classmethod
    def normalize_action(cls, v):
        return _normalize_action(v)

    def find(self, key: str) -> Optional[Constraint]:
        for constraint in self.constraint:
            if constraint.leftOperand == key:
                return constraint
        return None


class Policy(BaseModel):
    """
    A named, versioned bundle of permissions.

    A policy is a draft while `publishedAt` is empty. Publishing makes it
    Active and freezes it; a change after that is a new version of the
    same `uid`, so anything bound to `(uid, version)` keeps being governed
    by exactly the terms it was bound to.

    Example:
        >>> policy = Policy(
        ...     uid="POL-001",
        ...     humanName="Research use only",
        ...     version="v1.2",
        ...     priority=50,
        ...     permission=[Permission(action="use")]
        ... )
        >>> policy.ref
        'POL-001@v1.2'
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    context: str = Field(default="http://www.w3.org/ns/odrl.jsonld", alias="@context")
    """JSON-LD context for ODRL policy definitions."""

    type: str = Field(default="Set", alias="@type")
    """Type of policy according to ODRL ('Set', 'Offer' or 'Agreement')."""

    uid: str
    """Policy identifier, shared by all versions of the policy."""

    humanName: str = ""
    description: str = ""

    status: PolicyStatus = PolicyStatus.DISABLED
    """Lifecycle status. Drafts are Disabled until published."""

    priority: int = 10
    """Tie breaker when several policies apply to a resource. Higher wins."""

    version: str = "v1.0"

    createdAt: Optional[datetime] = None
    publishedAt: Optional[datetime] = None

    permission: Tuple[Permission, ...] = ()

    @property
    def ref(self) -> str:
        return f"{self.uid}@{self.version}"

    @property
    def published(self) -> bool:
        return self.publishedAt is not None
