"""
Constraint Catalog service.

This module builds the process-wide `ConstraintCatalog` from the built-in
strategy definitions or from a JSON file named by `CATALOG_PATH`, and
exposes key lookup to the rest of the application.

The catalog is checked once while it is built. Any inconsistency
(duplicate keys, a default mode outside the allowed set, an enum without
options, bounds on a non-numeric key) raises `CatalogConfigurationError`,
which aborts startup. After that the catalog is read-only and is passed by
reference into the validation engine, so it needs no locking.

Handled responsibilities:
    - Built-in catalog of policy operands and contract terms
    - Loading and checking catalog configuration
    - Lookup by key and grouping by dimension
"""

import json
import logging
from collections import OrderedDict
from typing import Dict, Iterable, Iterator, List, Optional

from pydantic import ValidationError

from tds_console.core.errors import CatalogConfigurationError, NotFound
from tds_console.models.catalog import ConstraintDefinition, Dimension, ValueKind

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------------------
# Built-in catalog
# ------------------------------------------------------------------------------

DEFAULT_CATALOG_ENTRIES: List[dict] = [
    # Time
    {"key": "count", "dimension": "Time", "allowedModes": ["Locked", "Negotiable"], "defaultMode": "Negotiable",
     "valueKind": "number", "bounds": {"min": 1}, "label": "Usage count limit",
     "description": "Maximum number of uses within the validity period."},
    {"key": "dateTime", "dimension": "Time", "allowedModes": ["Locked", "Negotiable"], "defaultMode": "Locked",
     "valueKind": "date", "label": "Usage period",
     "description": "Use is only allowed within the configured dates."},
    {"key": "timeInterval", "dimension": "Time", "allowedModes": ["Locked"], "defaultMode": "Locked",
     "valueKind": "text", "label": "Usage window",
     "description": "Daily time window and recurrence, e.g. 09:00-18:00; Weekly."},
    {"key": "frequency", "dimension": "Time", "allowedModes": ["Locked", "Negotiable"], "defaultMode": "Locked",
     "valueKind": "text", "label": "Call frequency",
     "description": "Calls allowed per time unit, e.g. 100/min."},
    {"key": "usageCount", "dimension": "Time", "allowedModes": ["Negotiable", "Locked"], "defaultMode": "Negotiable",
     "valueKind": "number", "bounds": {"min": 100, "max": 5000}, "label": "Max count",
     "description": "Number of calls granted by the contract."},
    {"key": "validFrom", "dimension": "Time", "allowedModes": ["Negotiable", "Locked"], "defaultMode": "Negotiable",
     "valueKind": "date", "label": "Effective date",
     "description": "Date the contract takes effect. Empty means on signature."},
    {"key": "validUntil", "dimension": "Time", "allowedModes": ["Negotiable", "Locked"], "defaultMode": "Negotiable",
     "valueKind": "date", "label": "Expiry",
     "description": "Last day the contract can be used."},

    # Location
    {"key": "virtualLocation", "dimension": "Location", "allowedModes": ["Locked"], "defaultMode": "Locked",
     "valueKind": "text", "label": "Network address",
     "description": "Only usable from the given IP address or range."},
    {"key": "executionEnvironment", "dimension": "Location", "allowedModes": ["Locked"], "defaultMode": "Locked",
     "valueKind": "enum", "options": ["None", "TEE", "Sandbox", "PrivacyCompute"], "label": "Execution environment",
     "description": "Secure computing environment the data must be used in."},
    {"key": "environment", "dimension": "Location", "allowedModes": ["Locked"], "defaultMode": "Locked",
     "valueKind": "enum", "options": ["None", "TEE", "Sandbox", "PrivacyCompute"], "label": "Environment",
     "description": "Secure computing environment required by the contract."},
    {"key": "ipWhitelist", "dimension": "Location", "allowedModes": ["Locked"], "defaultMode": "Locked",
     "valueKind": "text", "label": "IP whitelist",
     "description": "Only the given network segment may access the data."},
    {"key": "sourceIp", "dimension": "Location", "allowedModes": ["Injected"], "defaultMode": "Injected",
     "valueKind": "text", "label": "Source IP",
     "description": "Address the access request was received from."},

    # Subject
    {"key": "usageConnector", "dimension": "Subject", "allowedModes": ["Locked", "Injected"], "defaultMode": "Injected",
     "valueKind": "text", "label": "Usage connector",
     "description": "Connector identity the data may be used on."},
    {"key": "role", "dimension": "Subject", "allowedModes": ["Locked"], "defaultMode": "Locked",
     "valueKind": "enum", "options": ["Any", "DataScientist", "Auditor", "SystemAdmin", "AppService"],
     "label": "Role", "description": "Role the user or service account must hold."},
    {"key": "securityLevel", "dimension": "Subject", "allowedModes": ["Locked"], "defaultMode": "Locked",
     "valueKind": "text", "label": "Minimum security level",
     "description": "Security certification level the consumer must hold."},
    {"key": "consumerConnectorId", "dimension": "Subject", "allowedModes": ["Injected"], "defaultMode": "Injected",
     "valueKind": "text", "label": "Consumer connector DID",
     "description": "Bound to the identity of the calling connector."},
    {"key": "certFingerprint", "dimension": "Subject", "allowedModes": ["Injected"], "defaultMode": "Injected",
     "valueKind": "text", "label": "Certificate fingerprint",
     "description": "Digest of the certificate presented by the caller."},

    # Object
    {"key": "assetState", "dimension": "Object", "allowedModes": ["Locked"], "defaultMode": "Locked",
     "valueKind": "enum", "options": ["Raw", "Encrypted", "Anonymized", "Watermarked"], "label": "Asset state",
     "description": "State the data must be in before use."},
    {"key": "usageVolume", "dimension": "Object", "allowedModes": ["Negotiable", "Locked"], "defaultMode": "Negotiable",
     "valueKind": "text", "label": "Usage volume",
     "description": "Maximum data volume, e.g. 1GB or 1M rows."},
    {"key": "targetPart", "dimension": "Object", "allowedModes": ["Locked", "Negotiable"], "defaultMode": "Locked",
     "valueKind": "list", "label": "Fields",
     "description": "Columns or fields of the resource that may be accessed."},

    # Communication
    {"key": "networkConnection", "dimension": "Communication", "allowedModes": ["Locked"], "defaultMode": "Locked",
     "valueKind": "enum", "options": ["Public Internet", "VPN", "Private Line (APN)", "Intranet"],
     "label": "Network", "description": "Network channel type."},
    {"key": "transportProtocol", "dimension": "Communication", "allowedModes": ["Locked"], "defaultMode": "Locked",
     "valueKind": "enum", "options": ["HTTPS", "TLS", "SFTP", "gRPC", "AMQP"],
     "label": "Transport protocol", "description": "Transport or application protocol."},
    {"key": "communicationChannel", "dimension": "Communication", "allowedModes": ["Locked"], "defaultMode": "Locked",
     "valueKind": "enum", "options": ["TLS 1.2", "TLS 1.3", "IPSec", "GmSSL (SM2/SM3/SM4)"],
     "label": "Channel security", "description": "Encryption level of the channel."},

    # Storage
    {"key": "storageMethod", "dimension": "Storage", "allowedModes": ["Locked"], "defaultMode": "Locked",
     "valueKind": "enum", "options": ["Persistent", "Volatile (Memory Only)", "Cache Only"],
     "label": "Storage method", "description": "Whether data may be persisted."},
    {"key": "storageFormat", "dimension": "Storage", "allowedModes": ["Locked"], "defaultMode": "Locked",
     "valueKind": "enum", "options": ["Plaintext", "Encrypted (AES-256)", "Encrypted (SM4)", "Encrypted (TDE)"],
     "label": "Storage format", "description": "Encryption required at rest."},
    {"key": "storageLocation", "dimension": "Storage", "allowedModes": ["Locked"], "defaultMode": "Locked",
     "valueKind": "text", "label": "Storage location",
     "description": "Physical or logical location data may be stored in."},
    {"key": "storageDuration", "dimension": "Storage", "allowedModes": ["Locked", "Negotiable"], "defaultMode": "Locked",
     "valueKind": "text", "label": "Retention",
     "description": "Maximum retention after use, e.g. P7D."},
]


# ------------------------------------------------------------------------------
# Catalog
# ------------------------------------------------------------------------------

class ConstraintCatalog:
    """
    Immutable, checked registry of constraint definitions.

    Example:
        >>> catalog = ConstraintCatalog.from_entries(DEFAULT_CATALOG_ENTRIES)
        >>> catalog.lookup("usageCount").bounds.max
        5000
    """

    def __init__(self, definitions: Iterable[ConstraintDefinition]):
        entries: "OrderedDict[str, ConstraintDefinition]" = OrderedDict()
        for definition in definitions:
            if definition.key in entries:
                raise CatalogConfigurationError(f"Duplicate catalog key '{definition.key}'")
            _check_definition(definition)
            entries[definition.key] = definition
        self._entries = entries

    @classmethod
    def from_entries(cls, raw_entries: Iterable[dict]) -> "ConstraintCatalog":
        definitions = []
        for raw in raw_entries:
            try:
                definitions.append(ConstraintDefinition.model_validate(raw))
            except ValidationError as e:
                raise CatalogConfigurationError(f"Invalid catalog entry {raw.get('key')!r}: {e}") from e
        return cls(definitions)

    def lookup(self, key: str) -> ConstraintDefinition:
        """
        Returns the definition registered for `key`.

        Raises:
            NotFound: If the key is not part of the catalog.
        """

        definition = self._entries.get(key)
        if definition is None:
            raise NotFound(f"Unknown constraint key '{key}'", key=key)
        return definition

    def get(self, key: str) -> Optional[ConstraintDefinition]:
        return self._entries.get(key)

    def keys(self) -> List[str]:
        return list(self._entries)

    def by_dimension(self) -> Dict[Dimension, List[ConstraintDefinition]]:
        grouped: Dict[Dimension, List[ConstraintDefinition]] = {dimension: [] for dimension in Dimension}
        for definition in self._entries.values():
            grouped[definition.dimension].append(definition)
        return grouped

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[ConstraintDefinition]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)


def _check_definition(definition: ConstraintDefinition) -> None:
    key = definition.key
    if not definition.allowed_modes:
        raise CatalogConfigurationError(f"Catalog key '{key}' has no allowed modes")
    if definition.default_mode not in definition.allowed_modes:
        raise CatalogConfigurationError(
            f"Catalog key '{key}': default mode {definition.default_mode.value} is not an allowed mode"
        )
    if definition.value_kind == ValueKind.ENUM and not definition.options:
        raise CatalogConfigurationError(f"Catalog key '{key}' is an enum without options")
    bounds = definition.bounds
    if bounds is not None:
        if definition.value_kind != ValueKind.NUMBER:
            raise CatalogConfigurationError(f"Catalog key '{key}' has bounds but is not numeric")
        if bounds.min is not None and bounds.max is not None and bounds.min > bounds.max:
            raise CatalogConfigurationError(f"Catalog key '{key}' has min greater than max")


# ------------------------------------------------------------------------------
# Process-wide instance
# ------------------------------------------------------------------------------

_catalog: Optional[ConstraintCatalog] = None


def load_catalog(path: Optional[str] = None) -> ConstraintCatalog:
    """
    Builds a catalog from a JSON file, or from the built-in entries.

    Args:
        path (str, optional): JSON file holding a list of catalog entries.

    Raises:
        CatalogConfigurationError: If the file cannot be read or an entry is invalid.

    Returns:
        ConstraintCatalog: The checked catalog.
    """

    if path is None:
        return ConstraintCatalog.from_entries(DEFAULT_CATALOG_ENTRIES)

    try:
        with open(path, encoding="utf-8") as fh:
            raw_entries = json.load(fh)
    except (OSError, ValueError) as e:
        raise CatalogConfigurationError(f"Cannot read catalog file {path}: {e}") from e

    if not isinstance(raw_entries, list):
        raise CatalogConfigurationError(f"Catalog file {path} must contain a list of entries")
    return ConstraintCatalog.from_entries(raw_entries)


def init_catalog(path: Optional[str] = None) -> ConstraintCatalog:
    """Loads the process-wide catalog. Called once at application startup."""

    global _catalog
    _catalog = load_catalog(path)
    logger.info("Constraint catalog loaded with %d keys (source: %s)", len(_catalog), path or "built-in")
    return _catalog


def get_catalog() -> ConstraintCatalog:
    """
    Returns the process-wide catalog.

    Raises:
        RuntimeError: If `init_catalog()` has not been called yet.
    """

    if _catalog is None:
        raise RuntimeError("Constraint catalog was not initialized. Call init_catalog() first.")
    return _catalog
