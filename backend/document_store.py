"""
Document store wiring for audit logs (MongoDB via pymongo).

The client is created lazily so that importing the application never
blocks on an unreachable MongoDB; read paths degrade to demo data instead.
"""

import logging
import time
from typing import Any, Dict, Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

import config

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None


def get_client() -> MongoClient:
    global _client
    if _client is None:
        logger.info(f"Connecting to document store at {config.mask_url(config.MONGO_URL)}")
        _client = MongoClient(
            config.MONGO_URL,
            serverSelectionTimeoutMS=config.MONGO_TIMEOUT_MS,
            connectTimeoutMS=config.MONGO_TIMEOUT_MS,
        )
    return _client


def get_log_collection() -> Collection:
    """FastAPI dependency returning the audit log collection."""
    return get_client()[config.MONGO_DATABASE][config.MONGO_LOG_COLLECTION]


def ensure_indexes(collection: Collection) -> None:
    """Create the indexes used by log queries (idempotent)."""
    try:
        collection.create_index([("task_id", ASCENDING), ("created_at", DESCENDING)])
        collection.create_index([("action", ASCENDING), ("created_at", DESCENDING)])
        collection.create_index([("user_id", ASCENDING)])
        collection.create_index([("created_at", DESCENDING)])
        logger.info("Document store indexes ensured")
    except PyMongoError as e:
        logger.warning(f"Could not ensure document store indexes: {e}")


def ping(collection: Collection) -> Dict[str, Any]:
    """
    Check that the document store is reachable.

    Args:
        collection: Collection whose database should be checked

    Returns:
        Dictionary with status ("healthy"/"unhealthy"), response_time_ms and error
    """
    started = time.perf_counter()
    try:
        collection.find_one({}, {"_id": 1})
        elapsed = round((time.perf_counter() - started) * 1000, 2)
        return {"status": "healthy", "response_time_ms": elapsed, "error": None}
    except PyMongoError as e:
        elapsed = round((time.perf_counter() - started) * 1000, 2)
        logger.error(f"Document store ping failed: {e}")
        return {"status": "unhealthy", "response_time_ms": elapsed, "error": str(e)}


def close_client() -> None:
    global _client
    if _client is not None:
        _client.close()
        _client = None
