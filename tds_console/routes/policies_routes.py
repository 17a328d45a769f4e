"""
Policy routes.

This module defines the API endpoints for authoring usage policies. A
policy is edited as a draft, published once, and changed afterwards only
by opening a new version.

All endpoints delegate to the policy registry
(`tds_console.services.policies_service`). Errors raised there are
rendered by the application's exception handler.
"""

from typing import List, Optional

from fastapi import APIRouter, Body

from tds_console.models.policy import Duty, Policy
from tds_console.schemas.policy import ConstraintUpdate, PermissionUpdate, PolicyCreate, PolicyUpdate
from tds_console.services.policies_service import get_policy_registry

router = APIRouter()


@router.post("", status_code=201, response_model=Policy)
async def create_policy_route(data: PolicyCreate):
    """
    Create a new draft policy.

    Example:
        >>> POST /policies
        {"humanName": "Research use only", "priority": 50}
    """

    return await get_policy_registry().create_draft(
        human_name=data.humanName, description=data.description, priority=data.priority
    )


@router.get("", response_model=List[Policy])
async def list_policies(latest_only: bool = True):
    """List policies. By default only the latest version of each uid."""

    return await get_policy_registry().list(latest_only=latest_only)


@router.post("/import", status_code=201, response_model=Policy)
async def import_policy(document: dict = Body(...)):
    """Import a policy export document as-is."""

    return await get_policy_registry().import_document(document)


@router.get("/resolve", response_model=Policy)
async def resolve_policy(target: Optional[str] = None):
    """
    Return the Active policy governing a resource.

    Example:
        >>> GET /policies/resolve?target=http://data.example.com/dataset/weather
    """

    return await get_policy_registry().resolve(target)


@router.get("/{uid}", response_model=Policy)
async def get_policy(uid: str, version: Optional[str] = None):
    """
    Retrieve a policy. Without `version`, the latest one.

    Args:
        uid (str): Policy identifier.
        version (str, optional): Version to read, e.g. `1.0.0`.

    Returns:
        Policy: The requested policy version.

    Example:
        >>> GET /policies/POL-001?version=1.0.0
    """

    return await get_policy_registry().get(uid, version)


@router.get("/{uid}/versions", response_model=List[Policy])
async def list_versions(uid: str):
    """
    Retrieve every version of a policy, oldest first.

    Args:
        uid (str): Policy identifier.

    Returns:
        List[Policy]: All stored versions.

    Example:
        >>> GET /policies/POL-001/versions
    """

    return await get_policy_registry().versions(uid)


@router.post("/{uid}/versions", status_code=201, response_model=Policy)
async def create_version(uid: str):
    """Open a new draft version seeded from the latest published one."""

    return await get_policy_registry().new_version(uid)


@router.patch("/{uid}", response_model=Policy)
async def update_policy(uid: str, data: PolicyUpdate):
    """
    Update the descriptive fields of the latest draft.

    Args:
        uid (str): Policy identifier.
        data (PolicyUpdate): Fields to change. Absent fields are kept.

    Returns:
        Policy: The updated draft.

    Example:
        >>> PATCH /policies/POL-001
        {"humanName": "Research use only", "priority": 80}
    """

    return await get_policy_registry().update_draft(uid, **data.model_dump(exclude_none=True))


@router.put("/{uid}/permission/{index}", response_model=Policy)
async def update_permission(uid: str, index: int, data: PermissionUpdate):
    """
    Set the action and target of one permission of the draft.

    Args:
        uid (str): Policy identifier.
        index (int): Position of the permission.
        data (PermissionUpdate): Action and target.

    Returns:
        Policy: The updated draft.

    Example:
        >>> PUT /policies/POL-001/permission/0
        {"action": "use", "target": "http://data.example.com/dataset/weather"}
    """

    return await get_policy_registry().set_permission(uid, data.action, data.target, index)


@router.put("/{uid}/constraints/{key}", response_model=Policy)
async def update_constraint(uid: str, key: str, data: ConstraintUpdate, permission: int = 0):
    """
    Add a constraint to the draft, or update it.

    Only the fields present in the request are changed.

    Example:
        >>> PUT /policies/POL-001/constraints/count
        {"mode": "Negotiable", "operator": "lte", "rightOperand": 1000,
         "negotiationOptions": {"min": 100, "max": 5000}}
    """

    updates = data.model_dump(exclude_unset=True)
    return await get_policy_registry().update_constraint(uid, key, updates, permission)


@router.delete("/{uid}/constraints/{key}", response_model=Policy)
async def delete_constraint(uid: str, key: str, permission: int = 0):
    """
    Remove a constraint from the draft.

    Args:
        uid (str): Policy identifier.
        key (str): Catalog key of the constraint.
        permission (int): Index of the permission holding it.

    Returns:
        Policy: The updated draft.

    Example:
        >>> DELETE /policies/POL-001/constraints/count
    """

    return await get_policy_registry().remove_constraint(uid, key, permission)


@router.post("/{uid}/duties", response_model=Policy)
async def add_duty(uid: str, duty: Duty, permission: int = 0):
    """
    Attach an obligation to the draft.

    Example:
        >>> POST /policies/POL-001/duties
        {"action": "anonymize", "target": "mobile",
         "constraint": [{"leftOperand": "algorithm", "operator": "eq", "rightOperand": "Masking"}]}
    """

    return await get_policy_registry().add_duty(uid, duty, permission)


@router.delete("/{uid}/duties/{action}", response_model=Policy)
async def delete_duty(uid: str, action: str, permission: int = 0):
    """
    Remove an obligation from the draft.

    Args:
        uid (str): Policy identifier.
        action (str): Action of the duty, e.g. `anonymize`.
        permission (int): Index of the permission holding it.

    Returns:
        Policy: The updated draft.

    Example:
        >>> DELETE /policies/POL-001/duties/anonymize
    """

    return await get_policy_registry().remove_duty(uid, action, permission)


@router.post("/{uid}/publish", response_model=Policy)
async def publish_policy(uid: str):
    """Publish the latest draft. It can no longer be edited afterwards."""

    return await get_policy_registry().publish(uid)


@router.post("/{uid}/disable", response_model=Policy)
async def disable_policy(uid: str, version: Optional[str] = None):
    """
    Disable a policy version. It is no longer selected by `/policies/resolve`.

    Args:
        uid (str): Policy identifier.
        version (str, optional): Version to disable. Defaults to the latest.

    Returns:
        Policy: The disabled version.

    Example:
        >>> POST /policies/POL-001/disable
    """

    return await get_policy_registry().disable(uid, version)


@router.get("/{uid}/export")
async def export_policy(uid: str, version: Optional[str] = None):
    """
    Export a policy in the JSON format consumed by the product catalog and
    the access-decision point.
    """

    return await get_policy_registry().export_document(uid, version)
