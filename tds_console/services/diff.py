"""
Change-summary generator.

Computes which negotiable terms differ between two contract policies.
Locked and Injected keys are never reported: they cannot legally differ
between rounds, and showing them would only add noise to the summary.

Values are compared after normalization (see
`tds_console.services.validation.normalize_value`), so a value that went
through a JSON round-trip or a form field compares equal to the original.
"""

from typing import List, Optional

from tds_console.models.contract import ConstraintChange, ContractPolicy
from tds_console.services.catalog_service import ConstraintCatalog
from tds_console.services.validation import normalize_value


def diff(catalog: ConstraintCatalog, base: Optional[ContractPolicy], candidate: ContractPolicy) -> List[ConstraintChange]:
    """
    Lists the negotiable terms changed from `base` to `candidate`.

    Args:
        catalog (ConstraintCatalog): Catalog deciding which keys are negotiable.
        base (ContractPolicy | None): Reference policy. None means nothing was
            proposed yet, so every negotiable term of `candidate` is a change.
        candidate (ContractPolicy): Policy being compared.

    Returns:
        list[ConstraintChange]: Changes sorted by key. Empty when both sides agree.
    """

    base_terms = base.constraints if base is not None else {}
    candidate_terms = candidate.constraints

    changes = []
    for key in sorted(set(base_terms) | set(candidate_terms)):
        definition = catalog.get(key)
        if definition is None or not definition.negotiable:
            continue

        before = base_terms.get(key)
        after = candidate_terms.get(key)
        if normalize_value(definition, before) != normalize_value(definition, after):
            changes.append(ConstraintChange(key=key, from_value=before, to_value=after))
    return changes
