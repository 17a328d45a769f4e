"""
Validation engine.

Pure functions deciding whether a value is acceptable for a catalog key
in a given mode. Nothing here keeps state: the catalog is passed in and
results are returned as `ValidationIssue` objects, so the functions can be
called repeatedly and from concurrent requests.

Checks never fail fast. `validate_terms` runs every key and collects one
issue per failing key, which lets a form flag all offending fields at once.
"""

import math
from datetime import date, datetime
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict

from tds_console.core.errors import InvalidMode, LockedFieldMutation, NotFound, OutOfBounds
from tds_console.models.catalog import Bounds, ConstraintDefinition, ConstraintMode, ValueKind
from tds_console.services.catalog_service import ConstraintCatalog

Number = Union[int, float]


class ValidationIssue(BaseModel):
    """
    A single rejected term.

    Example:
        >>> ValidationIssue(key="usageCount", kind="OutOfBounds",
        ...                 reason="exceeds provider-set ceiling", bound_hint=5000)
    """

    model_config = ConfigDict(frozen=True)

    key: str
    kind: str
    """Error kind: NotFound, InvalidMode, OutOfBounds or LockedFieldMutation."""

    reason: str
    bound_hint: Any = None
    """The violated bound (min, max or the enum options), when there is one."""

    def to_dict(self) -> dict:
        return {"key": self.key, "kind": self.kind, "reason": self.reason, "boundHint": self.bound_hint}


def is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def as_number(value: Any) -> Optional[float]:
    """
    Returns `value` as a number, accepting numeric strings.

    Booleans, NaN and infinity are not numbers.
    """

    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    return None


def as_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            return None
    return None


def as_list(value: Any) -> Optional[Tuple[str, ...]]:
    if isinstance(value, (list, tuple)):
        if not all(isinstance(item, str) for item in value):
            return None
        return tuple(item.strip() for item in value)
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(",") if part.strip())
    return None


def normalize_value(definition: Optional[ConstraintDefinition], value: Any) -> Any:
    """
    Canonical form of a value for equality checks.

    `2000`, `2000.0` and `"2000"` compare equal for a number key, as do
    `"2025-12-31"` and `"2025-12-31T00:00:00"` for a date key. Values that
    do not parse are returned unchanged.
    """

    if is_empty(value):
        return None
    kind = definition.value_kind if definition is not None else None
    if kind == ValueKind.NUMBER:
        number = as_number(value)
        if number is not None:
            return float(number)
        # NaN is not equal to itself
        return repr(value) if isinstance(value, float) else value
    if kind == ValueKind.DATE:
        parsed = as_date(value)
        return parsed.isoformat() if parsed is not None else value
    if kind == ValueKind.LIST:
        items = as_list(value)
        return items if items is not None else value
    if isinstance(value, str):
        return value.strip()
    return value


def effective_bounds(definition: ConstraintDefinition, narrowed: Optional[Bounds] = None) -> Optional[Bounds]:
    """Catalog bounds, narrowed by an originator-defined negotiation range."""

    base = definition.bounds
    if narrowed is None:
        return base
    if base is None:
        return narrowed

    lows = [b for b in (base.min, narrowed.min) if b is not None]
    highs = [b for b in (base.max, narrowed.max) if b is not None]
    return Bounds(min=max(lows) if lows else None, max=min(highs) if highs else None)


def validate(
    catalog: ConstraintCatalog,
    key: str,
    mode: Union[ConstraintMode, str],
    value: Any,
    narrowed: Optional[Bounds] = None,
) -> Optional[ValidationIssue]:
    """
    Checks one value for one key.

    Args:
        catalog (ConstraintCatalog): Catalog the key is resolved against.
        key (str): Constraint key.
        mode (ConstraintMode): Mode the value is authored in.
        value (Any): Proposed right operand.
        narrowed (Bounds, optional): Negotiation range narrowing the catalog bounds.

    Returns:
        ValidationIssue | None: The first failed rule, or None when the value is accepted.
    """

    definition = catalog.get(key)
    if definition is None:
        return ValidationIssue(key=key, kind="NotFound", reason=f"unknown constraint key '{key}'")

    try:
        mode = ConstraintMode(mode)
    except ValueError:
        return ValidationIssue(key=key, kind="InvalidMode", reason=f"unknown mode '{mode}'",
                               bound_hint=[m.value for m in definition.allowed_modes])

    if not definition.allows(mode):
        return ValidationIssue(
            key=key,
            kind="InvalidMode",
            reason=f"mode {mode.value} is not allowed for '{key}'",
            bound_hint=[m.value for m in definition.allowed_modes],
        )

    if mode == ConstraintMode.INJECTED:
        if not is_empty(value):
            return ValidationIssue(
                key=key,
                kind="LockedFieldMutation",
                reason=f"'{key}' is injected at execution time and cannot be authored",
            )
        return None

    if is_empty(value):
        return None

    return _validate_value(definition, value, effective_bounds(definition, narrowed))


def _validate_value(definition: ConstraintDefinition, value: Any, bounds: Optional[Bounds]) -> Optional[ValidationIssue]:
    key = definition.key
    kind = definition.value_kind

    if kind == ValueKind.NUMBER:
        number = as_number(value)
        if number is None:
            return ValidationIssue(key=key, kind="OutOfBounds", reason="expected a number")
        if bounds is not None:
            # Both limits are checked; the last failing one is reported.
            issue = None
            if bounds.min is not None and number < bounds.min:
                issue = ValidationIssue(key=key, kind="OutOfBounds", reason="below minimum", bound_hint=bounds.min)
            if bounds.max is not None and number > bounds.max:
                issue = ValidationIssue(key=key, kind="OutOfBounds", reason="exceeds provider-set ceiling",
                                        bound_hint=bounds.max)
            return issue
        return None

    if kind == ValueKind.DATE:
        if as_date(value) is None:
            return ValidationIssue(key=key, kind="OutOfBounds", reason="expected an ISO date (YYYY-MM-DD)")
        return None

    if kind == ValueKind.ENUM:
        if value not in (definition.options or ()):
            return ValidationIssue(key=key, kind="OutOfBounds", reason=f"'{value}' is not an accepted option",
                                   bound_hint=list(definition.options or ()))
        return None

    if kind == ValueKind.LIST:
        if as_list(value) is None:
            return ValidationIssue(key=key, kind="OutOfBounds", reason="expected a list of strings")
        return None

    if isinstance(value, (dict, list, tuple, bool)):
        return ValidationIssue(key=key, kind="OutOfBounds", reason="expected text")
    return None


def check_range(catalog: ConstraintCatalog, key: str, negotiation_range: Bounds) -> Optional[ValidationIssue]:
    """
    Checks an originator-defined negotiation range against the catalog.

    The range must belong to a numeric key that may be negotiated, have
    `min <= max`, and stay inside the catalog bounds.
    """

    definition = catalog.get(key)
    if definition is None:
        return ValidationIssue(key=key, kind="NotFound", reason=f"unknown constraint key '{key}'")
    if not definition.allows(ConstraintMode.NEGOTIABLE):
        return ValidationIssue(key=key, kind="InvalidMode", reason=f"'{key}' cannot carry a negotiation range")
    if definition.value_kind != ValueKind.NUMBER:
        return ValidationIssue(key=key, kind="OutOfBounds", reason="negotiation ranges apply to numeric keys only")

    low, high = negotiation_range.min, negotiation_range.max
    if low is not None and high is not None and low > high:
        return ValidationIssue(key=key, kind="OutOfBounds", reason="range minimum is greater than its maximum",
                               bound_hint=high)

    bounds = definition.bounds
    if bounds is not None:
        if bounds.min is not None and low is not None and low < bounds.min:
            return ValidationIssue(key=key, kind="OutOfBounds", reason="below minimum", bound_hint=bounds.min)
        if bounds.max is not None and high is not None and high > bounds.max:
            return ValidationIssue(key=key, kind="OutOfBounds", reason="exceeds provider-set ceiling",
                                   bound_hint=bounds.max)
    return None


def validate_terms(
    catalog: ConstraintCatalog,
    constraints: Mapping[str, Any],
    ranges: Optional[Mapping[str, Bounds]] = None,
    keys: Optional[Iterable[str]] = None,
) -> Dict[str, ValidationIssue]:
    """
    Validates a contract term map, one issue per failing key.

    Each key is checked in its catalog default mode. `keys` restricts the
    run to a subset, e.g. the keys a proposal changed.
    """

    ranges = ranges or {}
    selected = list(constraints) if keys is None else [k for k in keys if k in constraints]

    issues: Dict[str, ValidationIssue] = {}
    for key in selected:
        definition = catalog.get(key)
        mode = definition.default_mode if definition is not None else ConstraintMode.LOCKED
        issue = validate(catalog, key, mode, constraints[key], ranges.get(key))
        if issue is not None:
            issues[key] = issue
    return issues


_ERRORS = {
    "NotFound": NotFound,
    "InvalidMode": InvalidMode,
    "LockedFieldMutation": LockedFieldMutation,
}


def raise_for_issue(issue: Optional[ValidationIssue]) -> None:
    """Raises the typed error matching `issue`. Does nothing for None."""

    if issue is None:
        return
    detail = f"{issue.key}: {issue.reason}"
    if issue.kind == "OutOfBounds":
        raise OutOfBounds(detail, bound_hint=issue.bound_hint, key=issue.key)
    raise _ERRORS[issue.kind](detail, key=issue.key, boundHint=issue.bound_hint)
