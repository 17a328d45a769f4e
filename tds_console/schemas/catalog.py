from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from tds_console.models.catalog import Bounds


class ValueCheck(BaseModel):
    key: str
    mode: Optional[str] = None
    """Mode the value is authored in. Defaults to the key's catalog default mode."""

    value: Any = None
    negotiationOptions: Optional[Bounds] = None


class TermsCheck(BaseModel):
    constraints: Dict[str, Any] = Field(default_factory=dict)
    ranges: Dict[str, Bounds] = Field(default_factory=dict)


class CheckResult(BaseModel):
    valid: bool
    errors: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
