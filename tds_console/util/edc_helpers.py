"""
EDC helpers.

Utility functions to build EDC Management API URLs and to retrieve the
authentication data of the connector that receives published policies.

Responsibilities:
    - Compose Management API URLs from `EDC_MANAGEMENT_URL`.
    - Return the API key sent in the `x-api-key` header.
"""

from typing import Optional

from tds_console.core import config
from tds_console.core.errors import ConnectorSyncError


def sync_enabled(base_url: Optional[str] = None) -> bool:
    """True when a Management API URL is configured."""

    return bool(base_url if base_url is not None else config.EDC_MANAGEMENT_URL)


def get_base_url(path: str, base_url: Optional[str] = None) -> str:
    """
    Builds a Management API URL and appends a path.

    Args:
        path (str): Path to append to the management URL
            (e.g., "/v3/policydefinitions").
        base_url (str, optional): Management URL overriding `EDC_MANAGEMENT_URL`.

    Raises:
        ConnectorSyncError: If no management URL is configured.

    Returns:
        str: Fully qualified URL to call the EDC Management API.
    """

    base_url = base_url if base_url is not None else config.EDC_MANAGEMENT_URL
    if not base_url:
        raise ConnectorSyncError("EDC Management API URL not configured")
    return f"{base_url.rstrip('/')}{path}"


def get_api_key(api_key: Optional[str] = None) -> str:
    """
    Returns the API key configured for the connector.

    Raises:
        ConnectorSyncError: If the API key is missing or empty.
    """

    api_key = api_key if api_key is not None else config.EDC_API_KEY
    if not api_key:
        raise ConnectorSyncError("Connector API key not configured")
    return api_key
