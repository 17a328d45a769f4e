"""
MongoDB client initialization and access utilities.

This module configures and manages the asynchronous MongoDB client used
by the Mongo-backed stores. It connects to the database using Motor (the
async MongoDB driver for Python) and exposes a global client and database
instance. It is only initialized when `STORAGE_BACKEND=mongo`.

Usage example:
    >>> from tds_console.db.client import init_mongo, get_db
    >>> await init_mongo()
    >>> db = get_db()
    >>> print(await db.list_collection_names())
"""

import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from tds_console.core import config

logger = logging.getLogger(__name__)

# Global MongoDB client and database references
client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None

# ------------------------------------------------------------------------------
# Initialization
# ------------------------------------------------------------------------------

async def init_mongo(uri: Optional[str] = None, db_name: Optional[str] = None) -> AsyncIOMotorDatabase:
    """
    Initialize the global MongoDB client and database connection.

    Uses `MONGODB_URI` and `MONGODB_DB` unless overridden. Should be called
    once during application startup (see `main.py`).

    Returns:
        AsyncIOMotorDatabase: The connected database.
    """

    global client, _db
    uri = uri or config.MONGO_URI
    db_name = db_name or config.MONGO_DB_NAME
    client = AsyncIOMotorClient(uri)
    _db = client[db_name]
    logger.info("Connected to MongoDB at %s, using database '%s'", uri, db_name)
    return _db


def close_mongo() -> None:
    global client, _db
    if client is not None:
        client.close()
        logger.info("MongoDB connection closed")
    client = None
    _db = None

# ------------------------------------------------------------------------------
# Database Access
# ------------------------------------------------------------------------------

def get_db() -> AsyncIOMotorDatabase:
    """
    Retrieve the initialized MongoDB database instance.

    Raises:
        RuntimeError: If the database has not been initialized yet
        (i.e., `init_mongo()` has not been called).
    """

    if _db is None:
        raise RuntimeError("MongoDB was not initialized. Call init_mongo() first.")
    return _db
