from __future__ import annotations

from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from .logging import get_logger
from .settings import Settings

logger = get_logger(__name__)

_client: Optional[AsyncIOMotorClient] = None


# PUBLIC_INTERFACE
def get_mongo_client(settings: Settings) -> AsyncIOMotorClient:
    """Return a singleton motor client using the configured connection string."""
    global _client
    if _client is None:
        logger.info("Connecting to MongoDB...")
        _client = AsyncIOMotorClient(settings.store.MONGODB_URL)
    return _client


# PUBLIC_INTERFACE
def get_database(settings: Settings) -> AsyncIOMotorDatabase:
    """Get the configured MongoDB database handle."""
    return get_mongo_client(settings)[settings.store.MONGODB_DB]


# PUBLIC_INTERFACE
def close_mongo_client() -> None:
    """Close the shared client, if one was opened."""
    global _client
    if _client is not None:
        _client.close()
        _client = None
