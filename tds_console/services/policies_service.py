"""
Policies Service.

This module implements policy authoring on top of the constraint catalog,
the export format other subsystems consume, and the registration of
published policies in an EDC connector.

Authoring functions are pure: each takes a `Policy` and returns a new one,
or raises a `NegotiationError`. A policy can only be edited while it is a
draft. Once published it is frozen and referenced by `uid@version`;
changing it means creating a new draft seeded from it, which keeps the uid
and bumps the version.

`PolicyRegistry` stores the versions and wires the pure functions to a
policy store and, when `EDC_MANAGEMENT_URL` is set, to the connector.

Handled responsibilities:
    - Draft creation, constraint and duty editing, publishing, disabling
    - Policy selection by priority for a target resource
    - ODRL document export and import
    - Conversion to the EDC JSON-LD format and registration in EDC
"""

import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

import httpx
from pydantic import ValidationError

from tds_console.core.errors import (
    ConnectorSyncError,
    IllegalTransition,
    InvalidDocument,
    InvalidMode,
    LockedFieldMutation,
    NotFound,
    OutOfBounds,
    ProposalRejected,
)
from tds_console.models.catalog import Bounds, ConstraintMode
from tds_console.models.policy import Constraint, Duty, Operator, Permission, Policy, PolicyStatus
from tds_console.services.catalog_service import ConstraintCatalog
from tds_console.services.validation import ValidationIssue, check_range, raise_for_issue, validate
from tds_console.util.edc_helpers import get_api_key, get_base_url, sync_enabled

logger = logging.getLogger(__name__)

ODRL_CONTEXT = "http://www.w3.org/ns/odrl.jsonld"
EDC_CONTEXT = {"@vocab": "https://w3id.org/edc/v0.0.1/ns/"}


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ------------------------------------------------------------------------------
# Drafts & versions
# ------------------------------------------------------------------------------

def bump_version(version: str) -> str:
    """
    Returns the next minor version.

    Example:
        >>> bump_version("v1.2")
        'v1.3'
    """

    match = re.fullmatch(r"v?(\d+)\.(\d+)", version or "")
    if not match:
        return f"{version}.1"
    major, minor = match.groups()
    return f"v{major}.{int(minor) + 1}"


def create_draft_policy(
    seed: Optional[Policy] = None,
    *,
    human_name: Optional[str] = None,
    description: Optional[str] = None,
    priority: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Policy:
    """
    Creates a new draft (Disabled, unpublished).

    Args:
        seed (Policy, optional): Policy the draft starts from. The draft keeps
            its uid and content and gets the next version.
        human_name (str, optional): Display name.
        description (str, optional): Free text.
        priority (int, optional): Selection priority, higher wins.
        now (datetime, optional): Creation timestamp.

    Returns:
        Policy: The new draft. A fresh draft has a new uid and version "v1.0".
    """

    now = now or _now()
    if seed is None:
        base = Policy(uid=f"POL-{uuid.uuid4().hex[:12].upper()}", createdAt=now)
    else:
        base = seed.model_copy(update={
            "version": bump_version(seed.version),
            "status": PolicyStatus.DISABLED,
            "createdAt": now,
            "publishedAt": None,
        })

    update: Dict[str, Any] = {}
    if human_name is not None:
        update["humanName"] = human_name
    if description is not None:
        update["description"] = description
    if priority is not None:
        update["priority"] = priority
    return base.model_copy(update=update) if update else base


def _require_draft(policy: Policy) -> None:
    if policy.published:
        raise IllegalTransition(
            f"Policy {policy.ref} is published and cannot be edited; create a new version instead"
        )


def update_draft(policy: Policy, **fields: Any) -> Policy:
    """Changes the descriptive fields of a draft (humanName, description, priority, type)."""

    _require_draft(policy)
    allowed = {"humanName", "description", "priority", "type"}
    unknown = set(fields) - allowed
    if unknown:
        raise InvalidDocument(f"Fields cannot be edited this way: {', '.join(sorted(unknown))}")
    return policy.model_copy(update={k: v for k, v in fields.items() if v is not None})


def _permissions(policy: Policy, index: int) -> List[Permission]:
    permissions = list(policy.permission) or [Permission(action="use")]
    if index < 0 or index >= len(permissions):
        raise NotFound(f"Policy {policy.ref} has no permission #{index}")
    return permissions


def set_permission(policy: Policy, action: Optional[str] = None, target: Optional[str] = None,
                   index: int = 0) -> Policy:
    """Sets the action and/or target of a draft's permission."""

    _require_draft(policy)
    permissions = _permissions(policy, index)
    update = {}
    if action is not None:
        update["action"] = action
    if target is not None:
        update["target"] = target or None
    permissions[index] = Permission.model_validate({**permissions[index].model_dump(), **update})
    return policy.model_copy(update={"permission": tuple(permissions)})


# ------------------------------------------------------------------------------
# Constraints
# ------------------------------------------------------------------------------

def _parse_operator(key: str, operator: Any) -> Optional[Operator]:
    if operator is None or isinstance(operator, Operator):
        return operator
    if isinstance(operator, dict):
        operator = operator.get("@id") or operator.get("id")
    try:
        return Operator(operator)
    except ValueError:
        raise OutOfBounds(f"{key}: unknown operator '{operator}'", bound_hint=[o.value for o in Operator], key=key)


def build_constraint(catalog: ConstraintCatalog, key: str, fields: Mapping[str, Any],
                     existing: Optional[Constraint] = None) -> Constraint:
    """
    Builds a checked constraint for `key` from authored fields.

    The dimension is copied from the catalog the first time the key is added
    and kept afterwards, even if the catalog changes. Switching a constraint
    to Injected clears its operator and value unless new ones are supplied,
    in which case the change is rejected.

    Raises:
        NotFound: If `key` is not in the catalog.
        InvalidMode: If the mode is not allowed for the key, or a range is given
            for a non negotiable constraint.
        OutOfBounds: If the value or the range falls outside the catalog bounds.
        LockedFieldMutation: If an injected constraint is given a value.
    """

    definition = catalog.lookup(key)
    if existing is not None:
        merged = existing.model_dump()
    else:
        merged = {"operator": Operator.EQ, "rightOperand": None, "mode": definition.default_mode}
    merged.update(fields)
    merged["leftOperand"] = key
    merged["dimension"] = existing.dimension if existing is not None and existing.dimension else definition.dimension

    raw_mode = merged.get("mode") or definition.default_mode
    try:
        mode = ConstraintMode(raw_mode)
    except ValueError:
        mode = None

    if mode == ConstraintMode.INJECTED:
        if fields.get("operator") is not None:
            raise LockedFieldMutation(f"{key}: injected constraints carry no operator", key=key)
        if "rightOperand" not in fields:
            merged["rightOperand"] = None
        merged["operator"] = None
    else:
        merged["operator"] = _parse_operator(key, merged.get("operator")) or Operator.EQ

    raise_for_issue(validate(catalog, key, raw_mode, merged.get("rightOperand")))

    options = merged.get("negotiationOptions")
    if mode != ConstraintMode.NEGOTIABLE:
        if fields.get("negotiationOptions") is not None:
            raise InvalidMode(f"{key}: only negotiable constraints carry negotiationOptions", key=key)
        merged["negotiationOptions"] = None
    elif options is not None:
        bounds = options if isinstance(options, Bounds) else Bounds.model_validate(options)
        raise_for_issue(check_range(catalog, key, bounds))
        raise_for_issue(validate(catalog, key, mode, merged.get("rightOperand"), bounds))
        merged["negotiationOptions"] = bounds

    merged["mode"] = mode
    return Constraint.model_validate(merged)


def add_or_update_constraint(
    catalog: ConstraintCatalog,
    policy: Policy,
    key: str,
    updates: Optional[Mapping[str, Any]] = None,
    permission_index: int = 0,
) -> Policy:
    """
    Adds the constraint `key` to a draft, or merges `updates` into it.

    Args:
        catalog (ConstraintCatalog): Catalog the key must belong to.
        policy (Policy): Draft policy.
        key (str): Catalog key (the constraint's leftOperand).
        updates (Mapping, optional): Any of operator, rightOperand, mode,
            negotiationOptions, comment.
        permission_index (int): Permission the constraint belongs to. A policy
            without permissions gets a 'use' permission.

    Returns:
        Policy: The updated draft.
    """

    _require_draft(policy)
    permissions = _permissions(policy, permission_index)
    permission = permissions[permission_index]

    existing = permission.find(key)
    constraint = build_constraint(catalog, key, dict(updates or {}), existing)

    if existing is None:
        constraints = permission.constraint + (constraint,)
    else:
        constraints = tuple(constraint if c.leftOperand == key else c for c in permission.constraint)
    permissions[permission_index] = permission.model_copy(update={"constraint": constraints})

    logger.debug("Policy %s: constraint %s set (%s)", policy.ref, key, constraint.mode.value)
    return policy.model_copy(update={"permission": tuple(permissions)})


def remove_constraint(policy: Policy, key: str, permission_index: int = 0) -> Policy:
    """
    Removes the constraint `key` from a draft.

    Raises:
        NotFound: If the permission has no such constraint.
    """

    _require_draft(policy)
    permissions = _permissions(policy, permission_index)
    permission = permissions[permission_index]
    if permission.find(key) is None:
        raise NotFound(f"Policy {policy.ref} has no constraint '{key}'", key=key)

    constraints = tuple(c for c in permission.constraint if c.leftOperand != key)
    permissions[permission_index] = permission.model_copy(update={"constraint": constraints})
    return policy.model_copy(update={"permission": tuple(permissions)})


def add_duty(policy: Policy, duty: Duty, permission_index: int = 0) -> Policy:
    """Attaches an obligation to a draft's permission. Duty constraints are free-form."""

    _require_draft(policy)
    permissions = _permissions(policy, permission_index)
    permission = permissions[permission_index]
    permissions[permission_index] = permission.model_copy(update={"duty": permission.duty + (duty,)})
    return policy.model_copy(update={"permission": tuple(permissions)})


def remove_duty(policy: Policy, action: str, permission_index: int = 0) -> Policy:
    _require_draft(policy)
    permissions = _permissions(policy, permission_index)
    permission = permissions[permission_index]
    action = action.split(":")[-1].lower()
    if not any(d.action == action for d in permission.duty):
        raise NotFound(f"Policy {policy.ref} has no '{action}' duty")
    duties = tuple(d for d in permission.duty if d.action != action)
    permissions[permission_index] = permission.model_copy(update={"duty": duties})
    return policy.model_copy(update={"permission": tuple(permissions)})


def check_policy(catalog: ConstraintCatalog, policy: Policy) -> Dict[str, ValidationIssue]:
    """
    Re-validates every permission constraint of a policy against the catalog.

    Returns:
        dict[str, ValidationIssue]: One issue per failing key, empty when valid.
    """

    issues: Dict[str, ValidationIssue] = {}
    for permission in policy.permission:
        for constraint in permission.constraint:
            key = constraint.leftOperand
            issue = validate(catalog, key, constraint.mode, constraint.rightOperand, constraint.negotiationOptions)
            if issue is None and constraint.negotiationOptions is not None:
                issue = check_range(catalog, key, constraint.negotiationOptions)
            if issue is not None:
                issues.setdefault(key, issue)
    return issues


# ------------------------------------------------------------------------------
# Lifecycle
# ------------------------------------------------------------------------------

def publish(policy: Policy, now: Optional[datetime] = None) -> Policy:
    """
    Publishes a draft: status Active, `publishedAt` set, no further edits.

    Raises:
        IllegalTransition: If the policy is already published.
    """

    if policy.published:
        raise IllegalTransition(f"Policy {policy.ref} is already published")
    return policy.model_copy(update={"status": PolicyStatus.ACTIVE, "publishedAt": now or _now()})


def disable(policy: Policy) -> Policy:
    """Takes a policy out of selection. Its terms stay as they are."""

    if policy.status == PolicyStatus.DISABLED:
        raise IllegalTransition(f"Policy {policy.ref} is already disabled")
    return policy.model_copy(update={"status": PolicyStatus.DISABLED})


def _applies_to(policy: Policy, target: Optional[str]) -> bool:
    if target is None:
        return True
    return any(permission.target in (None, target) for permission in policy.permission)


def select_policy(policies: Iterable[Policy], target: Optional[str] = None) -> Optional[Policy]:
    """
    Picks the policy governing `target`.

    Among Active policies with a permission on `target` (or without a
    target), the highest `priority` wins; on a tie the most recently created
    wins, and after that the highest `uid@version`.

    Returns:
        Policy | None: The winner, or None when no policy applies.
    """

    candidates = [p for p in policies if p.status == PolicyStatus.ACTIVE and _applies_to(p, target)]
    if not candidates:
        return None

    def rank(policy: Policy):
        created = policy.createdAt.timestamp() if policy.createdAt is not None else float("-inf")
        return policy.priority, created, policy.ref

    return max(candidates, key=rank)


# ------------------------------------------------------------------------------
# Export
# ------------------------------------------------------------------------------

def to_odrl_document(policy: Policy) -> dict:
    """
    Serializes a policy to its JSON export document.

    Constraints are written as `{leftOperand, operator, rightOperand, mode}`
    plus `dimension`, `negotiationOptions` and `comment` when present.
    """

    return policy.model_dump(mode="json", by_alias=True, exclude_none=True)


def from_odrl_document(document: Mapping[str, Any]) -> Policy:
    """
    Reads a policy export document.

    Raises:
        InvalidDocument: If the document does not describe a valid policy.
    """

    try:
        return Policy.model_validate(dict(document))
    except ValidationError as e:
        raise InvalidDocument(f"Invalid policy document: {e.error_count()} error(s)", errors=e.errors(include_url=False, include_context=False)) from e


# ------------------------------------------------------------------------------
# EDC sync
# ------------------------------------------------------------------------------

def _edc_id(policy: Policy) -> str:
    return f"{policy.uid}-{policy.version}"


def _convert_constraints(constraints: Iterable[Constraint]) -> list:
    converted = []
    for c in constraints:
        # injected terms have no value until execution time
        if c.mode == ConstraintMode.INJECTED or c.operator is None:
            continue
        right = list(c.rightOperand) if isinstance(c.rightOperand, tuple) else c.rightOperand
        converted.append({
            "leftOperand": c.leftOperand,
            "operator": {"@id": f"odrl:{c.operator.value}"},
            "rightOperand": right,
        })
    return converted


def _convert_rules(permissions: Iterable[Permission]) -> list:
    """
    Converts permissions into EDC ODRL-compliant rules.

    Args:
        permissions (Iterable[Permission]): Policy permissions.

    Returns:
        list: EDC-compatible rule dictionaries.
    """

    result = []
    for permission in permissions:
        converted: Dict[str, Any] = {"action": permission.action}
        if permission.target:
            converted["target"] = permission.target

        constraints = _convert_constraints(permission.constraint)
        if constraints:
            converted["constraint"] = constraints

        if permission.duty:
            converted["duty"] = []
            for duty in permission.duty:
                rule: Dict[str, Any] = {"action": duty.action}
                duty_constraints = _convert_constraints(duty.constraint)
                if duty_constraints:
                    rule["constraint"] = duty_constraints
                converted["duty"].append(rule)

        result.append(converted)
    return result


def convert_policy_to_edc_format(policy: Policy) -> dict:
    """
    Converts a policy into the EDC Management API `PolicyDefinition` body.

    Args:
        policy (Policy): Published policy.

    Returns:
        dict: Policy formatted according to the EDC Management API schema.
    """

    return {
        "@context": EDC_CONTEXT,
        "@id": _edc_id(policy),
        "policy": {
            "@context": ODRL_CONTEXT,
            "@type": policy.type,
            "permission": _convert_rules(policy.permission),
            "prohibition": [],
            "obligation": [],
        },
    }


async def register_policy_with_edc(
    policy: Policy,
    client: Optional[httpx.AsyncClient] = None,
    base_url: Optional[str] = None,
    api_key: Optional[str] = None,
) -> dict:
    """
    Registers a policy definition in the EDC Management API.

    Args:
        policy (Policy): Policy to register.
        client (httpx.AsyncClient, optional): Client to use. A short-lived one is
            opened when omitted.
        base_url (str, optional): Management URL overriding `EDC_MANAGEMENT_URL`.
        api_key (str, optional): API key overriding `EDC_API_KEY`.

    Raises:
        ConnectorSyncError: If the connector is not configured, cannot be
            reached or answers with an error.

    Returns:
        dict: JSON response from the EDC confirming registration.
    """

    url = get_base_url("/v3/policydefinitions", base_url)
    headers = {"x-api-key": get_api_key(api_key)}
    payload = convert_policy_to_edc_format(policy)

    try:
        if client is None:
            async with httpx.AsyncClient() as own_client:
                response = await own_client.post(url, json=payload, headers=headers)
        else:
            response = await client.post(url, json=payload, headers=headers)
        response.raise_for_status()

    except httpx.HTTPStatusError as e:
        logger.error("EDC rejected policy %s: %s %s", policy.ref, e.response.status_code, e.response.text)
        raise ConnectorSyncError(
            f"HTTP error from EDC: {e.response.status_code}", status=e.response.status_code
        ) from e

    except httpx.RequestError as e:
        logger.error("EDC request for policy %s failed: %s", policy.ref, e)
        raise ConnectorSyncError(f"Connection error to EDC: {e}") from e

    logger.info("Policy %s registered in EDC as %s", policy.ref, payload["@id"])
    return response.json() if response.content else {}


# ------------------------------------------------------------------------------
# Registry
# ------------------------------------------------------------------------------

class PolicyRegistry:
    """
    Store-backed policy versions.

    Every method loads the policy, applies one pure authoring function and
    saves the result. Edits always target the latest version of a uid,
    which must be a draft.
    """

    def __init__(self, store, catalog: ConstraintCatalog, http_client: Optional[httpx.AsyncClient] = None,
                 edc_url: Optional[str] = None, edc_api_key: Optional[str] = None):
        self._store = store
        self._catalog = catalog
        self._http_client = http_client
        self._edc_url = edc_url
        self._edc_api_key = edc_api_key

    async def get(self, uid: str, version: Optional[str] = None) -> Policy:
        policy = await self._store.get(uid, version)
        if policy is None:
            ref = f"{uid}@{version}" if version else uid
            raise NotFound(f"Policy {ref} not found")
        return policy

    async def list(self, latest_only: bool = True) -> List[Policy]:
        policies = await self._store.list()
        if not latest_only:
            return policies
        latest: Dict[str, Policy] = {}
        for policy in policies:
            latest[policy.uid] = policy
        return list(latest.values())

    async def versions(self, uid: str) -> List[Policy]:
        versions = await self._store.versions(uid)
        if not versions:
            raise NotFound(f"Policy {uid} not found")
        return versions

    async def create_draft(self, **fields: Any) -> Policy:
        policy = create_draft_policy(**fields)
        await self._store.save(policy)
        logger.info("Draft policy %s created", policy.ref)
        return policy

    async def new_version(self, uid: str) -> Policy:
        """Opens a draft seeded from the latest published version of `uid`."""

        latest = await self.get(uid)
        if not latest.published:
            raise IllegalTransition(f"Policy {latest.ref} is still a draft")
        draft = create_draft_policy(latest)
        await self._store.save(draft)
        logger.info("Policy %s: new draft version %s", uid, draft.version)
        return draft

    async def _edit(self, uid: str, edit) -> Policy:
        policy = await self.get(uid)
        updated = edit(policy)
        await self._store.save(updated)
        return updated

    async def update_draft(self, uid: str, **fields: Any) -> Policy:
        return await self._edit(uid, lambda p: update_draft(p, **fields))

    async def set_permission(self, uid: str, action: Optional[str] = None, target: Optional[str] = None,
                             index: int = 0) -> Policy:
        return await self._edit(uid, lambda p: set_permission(p, action, target, index))

    async def update_constraint(self, uid: str, key: str, updates: Mapping[str, Any], permission_index: int = 0) -> Policy:
        return await self._edit(uid, lambda p: add_or_update_constraint(self._catalog, p, key, updates, permission_index))

    async def remove_constraint(self, uid: str, key: str, permission_index: int = 0) -> Policy:
        return await self._edit(uid, lambda p: remove_constraint(p, key, permission_index))

    async def add_duty(self, uid: str, duty: Duty, permission_index: int = 0) -> Policy:
        return await self._edit(uid, lambda p: add_duty(p, duty, permission_index))

    async def remove_duty(self, uid: str, action: str, permission_index: int = 0) -> Policy:
        return await self._edit(uid, lambda p: remove_duty(p, action, permission_index))

    async def publish(self, uid: str) -> Policy:
        """
        Publishes the latest draft of `uid`.

        When an EDC connector is configured the policy is registered there
        first; a failed registration leaves the draft unpublished.
        """

        draft = await self.get(uid)
        issues = check_policy(self._catalog, draft)
        if issues:
            raise ProposalRejected(issues)

        published = publish(draft)
        if sync_enabled(self._edc_url):
            await register_policy_with_edc(published, self._http_client, self._edc_url, self._edc_api_key)
        await self._store.save(published)
        logger.info("Policy %s published", published.ref)
        return published

    async def disable(self, uid: str, version: Optional[str] = None) -> Policy:
        policy = disable(await self.get(uid, version))
        await self._store.save(policy)
        logger.info("Policy %s disabled", policy.ref)
        return policy

    async def import_document(self, document: Mapping[str, Any]) -> Policy:
        policy = from_odrl_document(document)
        if await self._store.get(policy.uid, policy.version) is not None:
            raise IllegalTransition(f"Policy {policy.ref} already exists")
        issues = check_policy(self._catalog, policy)
        if issues:
            raise ProposalRejected(issues)
        await self._store.save(policy)
        logger.info("Policy %s imported", policy.ref)
        return policy

    async def export_document(self, uid: str, version: Optional[str] = None) -> dict:
        return to_odrl_document(await self.get(uid, version))

    async def resolve(self, target: Optional[str] = None) -> Policy:
        """
        Returns the policy governing `target`, considering the latest
        published version of each uid.

        Raises:
            NotFound: If no Active policy applies.
        """

        candidates: Dict[str, Policy] = {}
        for policy in await self._store.list():
            if policy.published:
                candidates[policy.uid] = policy
        selected = select_policy(candidates.values(), target)
        if selected is None:
            raise NotFound(f"No active policy applies to {target or 'any resource'}")
        return selected


# ------------------------------------------------------------------------------
# Process-wide instance
# ------------------------------------------------------------------------------

_registry: Optional[PolicyRegistry] = None


def init_policy_registry(store, catalog: ConstraintCatalog, **kwargs: Any) -> PolicyRegistry:
    global _registry
    _registry = PolicyRegistry(store, catalog, **kwargs)
    return _registry


def get_policy_registry() -> PolicyRegistry:
    if _registry is None:
        raise RuntimeError("Policy registry was not initialized. Call init_policy_registry() first.")
    return _registry
