"""
Error types.

Every rejected negotiation or authoring operation raises a subclass of
`NegotiationError`. The routes never catch them: a single exception
handler registered in `main.py` turns them into JSON responses using the
`status_code` and `kind` carried by each class.

A rejected operation never leaves partial state behind. Services build the
new contract or policy first and only store it once every check passed.

`CatalogConfigurationError` is the odd one out: it signals a broken
constraint catalog, which is a configuration defect, and is meant to stop
the process at startup.
"""

from typing import Any, Dict, Optional


class NegotiationError(Exception):
    """Base class for all recoverable errors of the negotiation core."""

    kind = "NegotiationError"
    status_code = 400

    def __init__(self, detail: str, **extra: Any):
        super().__init__(detail)
        self.detail = detail
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.kind, "detail": self.detail}
        body.update(self.extra)
        return body


class NotFound(NegotiationError):
    """Unknown catalog key, contract id or policy reference."""

    kind = "NotFound"
    status_code = 404


class InvalidMode(NegotiationError):
    """Constraint mode outside the catalog's allowed set for the key."""

    kind = "InvalidMode"
    status_code = 422


class OutOfBounds(NegotiationError):
    """Value outside the numeric bounds or the enum options of the key."""

    kind = "OutOfBounds"
    status_code = 422

    def __init__(self, detail: str, bound_hint: Any = None, **extra: Any):
        super().__init__(detail, boundHint=bound_hint, **extra)
        self.bound_hint = bound_hint


class LockedFieldMutation(NegotiationError):
    """Attempt to change a Locked term or to author an Injected one."""

    kind = "LockedFieldMutation"
    status_code = 422


class VersionConflict(NegotiationError):
    """Write based on a version that is no longer the current one."""

    kind = "VersionConflict"
    status_code = 409

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"Stale version {expected}: contract is at version {actual}",
            expectedVersion=expected,
            currentVersion=actual,
        )
        self.expected = expected
        self.actual = actual


class IllegalTransition(NegotiationError):
    """Operation not allowed in the current lifecycle state."""

    kind = "IllegalTransition"
    status_code = 409


class QuotaExhausted(NegotiationError):
    """The contract has no remaining calls."""

    kind = "QuotaExhausted"
    status_code = 429

    def __init__(self, contract_id: str):
        super().__init__(
            f"Contract {contract_id} has no remaining calls",
            allowed=False,
            remainingCalls=0,
        )


class ProposalRejected(NegotiationError):
    """
    One or more terms failed validation.

    Carries the full per-key issue map so callers can show every failing
    field at once. `kind` reports the kind of the first failing key, which
    is the one a single-field form would display.
    """

    status_code = 422

    def __init__(self, issues: Dict[str, Any]):
        self.issues = dict(issues)
        first = next(iter(self.issues.values()))
        super().__init__(
            f"{len(self.issues)} term(s) failed validation",
            key=first.key,
            boundHint=first.bound_hint,
            errors={key: issue.to_dict() for key, issue in self.issues.items()},
        )
        self.kind = first.kind
        self.bound_hint: Optional[Any] = first.bound_hint


class InvalidDocument(NegotiationError):
    """A policy or contract document that does not match the expected shape."""

    kind = "InvalidDocument"
    status_code = 422


class ConnectorSyncError(NegotiationError):
    """The EDC connector rejected or did not answer a policy sync request."""

    kind = "ConnectorSyncError"
    status_code = 502


class CatalogConfigurationError(Exception):
    """Broken constraint catalog. Raised at startup and not recovered from."""
