"""
Constraint catalog model definition.

The catalog is the static registry of every constraint key a policy or a
contract may use. Each entry says which dimension the key belongs to,
which negotiation modes it may take, which mode it takes by default, and
how its value is typed and bounded.

Modes:
- Locked: fixed term set unilaterally by the author.
- Negotiable: the counterparty may propose another value within bounds.
- Injected: no authored value; filled by the runtime at access time.

Entries are immutable and shared process-wide.
"""

from enum import Enum
from typing import Optional, Tuple, Union
from pydantic import BaseModel, ConfigDict, Field


class Dimension(str, Enum):
    TIME = "Time"
    LOCATION = "Location"
    SUBJECT = "Subject"
    OBJECT = "Object"
    COMMUNICATION = "Communication"
    STORAGE = "Storage"


class ConstraintMode(str, Enum):
    LOCKED = "Locked"
    NEGOTIABLE = "Negotiable"
    INJECTED = "Injected"


class ValueKind(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    ENUM = "enum"
    LIST = "list"


class Bounds(BaseModel):
    """
    Inclusive numeric bounds of a negotiable key.

    Example:
        >>> Bounds(min=100, max=5000)
    """

    model_config = ConfigDict(frozen=True)

    min: Optional[Union[int, float]] = None
    """Lowest accepted value (inclusive)."""

    max: Optional[Union[int, float]] = None
    """Highest accepted value (inclusive), the provider-set ceiling."""


class ConstraintDefinition(BaseModel):
    """
    A single catalog entry.

    Example:
        >>> definition = ConstraintDefinition(
        ...     key="usageCount",
        ...     dimension="Time",
        ...     allowedModes=["Negotiable", "Locked"],
        ...     defaultMode="Negotiable",
        ...     valueKind="number",
        ...     bounds=Bounds(min=100, max=5000)
        ... )
        >>> definition.negotiable
        True
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    key: str
    """Unique key, used as the ODRL left operand."""

    dimension: Dimension
    """Classification tag used to group constraints for presentation."""

    allowed_modes: Tuple[ConstraintMode, ...] = Field(alias="allowedModes")
    """Modes a constraint on this key may take."""

    default_mode: ConstraintMode = Field(alias="defaultMode")
    """Mode assigned when the key is added without an explicit mode."""

    value_kind: ValueKind = Field(alias="valueKind")
    """Type of the right operand."""

    options: Optional[Tuple[str, ...]] = None
    """Accepted values for enum keys."""

    bounds: Optional[Bounds] = None
    """Numeric bounds for negotiable number keys."""

    label: str = ""
    description: str = ""

    @property
    def negotiable(self) -> bool:
        return self.default_mode == ConstraintMode.NEGOTIABLE

    @property
    def injected(self) -> bool:
        return self.default_mode == ConstraintMode.INJECTED

    def allows(self, mode: ConstraintMode) -> bool:
        return mode in self.allowed_modes
