"""
Injected constraint binding.

Injected constraints have no authored value. Their value comes from the
runtime context of each access request, supplied by the trusted execution
environment that calls the metering hook. This module fixes which runtime
fact fills which catalog key:

    consumerConnectorId, usageConnector  <- connector_did
    sourceIp                             <- source_ip
    certFingerprint                      <- cert_fingerprint

Every catalog key that may be Injected must appear in the table;
`check_bindings` is run at startup and a missing binding is a catalog
configuration error.
"""

from typing import Any, Dict, Iterable, Optional
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from tds_console.core.errors import CatalogConfigurationError
from tds_console.models.catalog import ConstraintMode
from tds_console.services.catalog_service import ConstraintCatalog


INJECTION_BINDINGS: Dict[str, str] = {
    "consumerConnectorId": "connector_did",
    "usageConnector": "connector_did",
    "sourceIp": "source_ip",
    "certFingerprint": "cert_fingerprint",
}


class RuntimeContext(BaseModel):
    """
    Facts about the caller of an access request.

    Example:
        >>> RuntimeContext(connector_did="did:conn:node_0086_bank01", source_ip="10.25.102.14")
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    connector_did: Optional[str] = None
    source_ip: Optional[str] = None
    cert_fingerprint: Optional[str] = None


def check_bindings(catalog: ConstraintCatalog) -> None:
    """Fails when an injectable catalog key has no runtime binding."""

    for definition in catalog:
        if definition.allows(ConstraintMode.INJECTED) and definition.key not in INJECTION_BINDINGS:
            raise CatalogConfigurationError(f"Injected key '{definition.key}' has no runtime binding")


def resolve_injected(catalog: ConstraintCatalog, keys: Iterable[str], context: Optional[RuntimeContext]) -> Dict[str, Any]:
    """
    Fills the injected keys among `keys` from the runtime context.

    Keys that are not injected by default are skipped. A missing context
    resolves every injected key to None.
    """

    resolved = {}
    for key in keys:
        definition = catalog.get(key)
        if definition is None or not definition.injected:
            continue
        attribute = INJECTION_BINDINGS[key]
        resolved[key] = getattr(context, attribute) if context is not None else None
    return resolved
