"""
Application configuration.

Settings are read once from the environment (and an optional `.env` file)
when this module is imported. Changing any of them requires a restart;
there is no hot reload.

Environment variables:
    - STORAGE_BACKEND:    `memory` (default) or `mongo`
    - MONGODB_URI:        MongoDB connection string (default: mongodb://localhost:27017)
    - MONGODB_DB:         Database name (default: tds_console)
    - CATALOG_PATH:       Optional JSON file replacing the built-in constraint catalog
    - LOG_LEVEL:          Root log level (default: INFO)
    - EDC_MANAGEMENT_URL: Management API base URL of the connector that receives
                          published policies. Sync is disabled when empty.
    - EDC_API_KEY:        API key sent as `x-api-key` to the connector
    - CORS_ORIGINS:       Comma separated list of allowed origins (default: *)
"""

import os
from dotenv import load_dotenv

load_dotenv()

# ------------------------------------------------------------------------------
# Storage
# ------------------------------------------------------------------------------

STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "memory").lower()
MONGO_URI = os.getenv("MONGODB_URI", "mongodb://localhost:27017")
MONGO_DB_NAME = os.getenv("MONGODB_DB", "tds_console")

# ------------------------------------------------------------------------------
# Catalog
# ------------------------------------------------------------------------------

CATALOG_PATH = os.getenv("CATALOG_PATH") or None

# ------------------------------------------------------------------------------
# Logging
# ------------------------------------------------------------------------------

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# ------------------------------------------------------------------------------
# EDC connector sync
# ------------------------------------------------------------------------------

EDC_MANAGEMENT_URL = os.getenv("EDC_MANAGEMENT_URL", "")
EDC_API_KEY = os.getenv("EDC_API_KEY", "")

# ------------------------------------------------------------------------------
# HTTP
# ------------------------------------------------------------------------------

CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]
