"""
Catalog routes.

Read-only view of the constraint catalog, plus validation endpoints that
let a form check a value or a whole term map before submitting it.
"""

from typing import Dict, List

from fastapi import APIRouter

from tds_console.models.catalog import ConstraintDefinition
from tds_console.schemas.catalog import CheckResult, TermsCheck, ValueCheck
from tds_console.services.catalog_service import get_catalog
from tds_console.services.validation import validate, validate_terms

router = APIRouter()


@router.get("", response_model=List[ConstraintDefinition])
async def list_definitions():
    """
    List every constraint definition, in catalog order.

    Returns:
        List[ConstraintDefinition]: The catalog as loaded at startup.

    Example:
        >>> GET /catalog
    """

    return list(get_catalog())


@router.get("/dimensions", response_model=Dict[str, List[ConstraintDefinition]])
async def list_by_dimension():
    """
    Constraint definitions grouped by dimension (Time, Location, ...).

    Returns:
        Dict[str, List[ConstraintDefinition]]: Definitions keyed by dimension name.

    Example:
        >>> GET /catalog/dimensions
    """

    return {dimension.value: definitions for dimension, definitions in get_catalog().by_dimension().items()}


@router.post("/validate", response_model=CheckResult)
async def validate_value(data: ValueCheck):
    """
    Check one value for one key.

    Args:
        data (ValueCheck): Key, value and optionally the mode and a
            negotiation range. The mode defaults to the key's default mode.

    Returns:
        CheckResult: `valid`, and the issue under the key when it fails.

    Example:
        >>> POST /catalog/validate
        {"key": "usageCount", "value": 6000}
    """

    catalog = get_catalog()
    definition = catalog.lookup(data.key)
    issue = validate(catalog, data.key, data.mode or definition.default_mode, data.value, data.negotiationOptions)
    if issue is None:
        return CheckResult(valid=True)
    return CheckResult(valid=False, errors={data.key: issue.to_dict()})


@router.post("/validate-terms", response_model=CheckResult)
async def validate_term_map(data: TermsCheck):
    """
    Check a contract term map. Every failing key is reported.

    Args:
        data (TermsCheck): Term map and optional negotiation ranges.

    Returns:
        CheckResult: `valid` and one issue per failing key.

    Example:
        >>> POST /catalog/validate-terms
        {"constraints": {"usageCount": 6000, "environment": "Quantum"}}
    """

    issues = validate_terms(get_catalog(), data.constraints, data.ranges)
    return CheckResult(valid=not issues, errors={key: issue.to_dict() for key, issue in issues.items()})


@router.get("/{key}", response_model=ConstraintDefinition)
async def get_definition(key: str):
    """
    Retrieve the definition of one key.

    Args:
        key (str): Catalog key, e.g. `usageCount`.

    Returns:
        ConstraintDefinition: The definition. Unknown keys answer 404.

    Example:
        >>> GET /catalog/usageCount
    """

    return get_catalog().lookup(key)
