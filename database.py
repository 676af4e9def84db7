"""
MongoDB connection helpers.

``db`` is None when no server is reachable so the API can still report its
own health; ``MongoStore`` wraps the handle for the services.
"""

import logging
from typing import Optional

from pymongo import MongoClient
from pymongo.errors import PyMongoError

from config import settings

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None
db = None


def connect(url: Optional[str] = None, name: Optional[str] = None):
    """Open the client lazily and return the database handle."""
    global _client, db
    if db is not None:
        return db
    try:
        _client = MongoClient(url or settings.DATABASE_URL, serverSelectionTimeoutMS=5000)
        db = _client[name or settings.DATABASE_NAME]
        logger.info("MongoDB client ready for database '%s'", db.name)
    except PyMongoError as e:
        logger.error("Could not create MongoDB client: %s", e)
        _client, db = None, None
        raise
    return db


def close():
    global _client, db
    if _client is not None:
        _client.close()
    _client, db = None, None
