from typing import Optional, Tuple, Union
from pydantic import BaseModel, ConfigDict, Field

from tds_console.models.catalog import Bounds, ConstraintMode


class PolicyCreate(BaseModel):
    humanName: str = ""
    description: str = ""
    priority: int = 10


class PolicyUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    humanName: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[int] = None
    type: Optional[str] = Field(default=None, alias="@type")


class PermissionUpdate(BaseModel):
    action: Optional[str] = None
    target: Optional[str] = None


class ConstraintUpdate(BaseModel):
    """Fields left out of the request keep their current value."""

    operator: Optional[str] = None
    rightOperand: Optional[Union[int, float, str, Tuple[str, ...]]] = None
    mode: Optional[ConstraintMode] = None
    negotiationOptions: Optional[Bounds] = None
    comment: Optional[str] = None
