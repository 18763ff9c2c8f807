"""
MongoDB connection lifecycle and storage helpers.

The client is process-wide state owned by the app lifespan: ``connect()`` on
startup, ``disconnect()`` on shutdown. Route handlers and services receive the
database handle through ``get_db`` instead of importing a global.

Collections (lowercase of the schema class name):
- user
- store
- rating
"""

import functools
import re
from datetime import datetime, timezone
from typing import Optional

import structlog
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import ConnectionFailure, ExecutionTimeout, WTimeoutError

import settings
from errors import InvalidInput, Unavailable

logger = structlog.get_logger(__name__)

# Storage failures that are worth retrying and otherwise surface as 503
TRANSIENT_ERRORS = (ConnectionFailure, ExecutionTimeout, WTimeoutError)

_client: Optional[MongoClient] = None
_db: Optional[Database] = None


def connect(url: Optional[str] = None, name: Optional[str] = None) -> Database:
    global _client, _db
    if _db is not None:
        return _db
    _client = MongoClient(
        url or settings.DATABASE_URL,
        serverSelectionTimeoutMS=settings.STORAGE_TIMEOUT_MS,
        socketTimeoutMS=settings.STORAGE_TIMEOUT_MS,
        tz_aware=True,
    )
    _db = _client[name or settings.DATABASE_NAME]
    ensure_indexes(_db)
    logger.info("database_connected", database=_db.name)
    return _db


def disconnect() -> None:
    global _client, _db
    if _client is not None:
        _client.close()
        logger.info("database_disconnected")
    _client = None
    _db = None


def get_db() -> Database:
    if _db is None:
        raise Unavailable("Database not connected")
    return _db


def ensure_indexes(db: Database) -> None:
    """Install the unique constraints the domain relies on.

    The compound ``rating(user_id, store_id)`` index is what keeps two racing
    submissions from the same user for the same store from both inserting.
    """
    db["user"].create_index([("email", ASCENDING)], unique=True)
    db["store"].create_index([("email", ASCENDING)], unique=True)
    db["store"].create_index([("owner_id", ASCENDING)])
    db["rating"].create_index([("user_id", ASCENDING), ("store_id", ASCENDING)], unique=True)
    db["rating"].create_index([("store_id", ASCENDING)])


def to_object_id(id_str) -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise InvalidInput(f"Invalid id format: {id_str!r}")


def create_document(db: Database, collection_name: str, data: dict) -> dict:
    """Insert ``data`` stamped with created/updated times; returns the stored doc."""
    now = datetime.now(timezone.utc)
    doc = {**data, "created_at": now, "updated_at": now}
    res = db[collection_name].insert_one(doc)
    doc["_id"] = res.inserted_id
    return doc


def retry_transient(attempts: Optional[int] = None):
    """Re-run an idempotent storage step on transient failures.

    Raises ``Unavailable`` once the attempts are used up.
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            limit = attempts or settings.RECOMPUTE_ATTEMPTS
            for attempt in range(1, limit + 1):
                try:
                    return func(*args, **kwargs)
                except TRANSIENT_ERRORS as e:
                    logger.warning(
                        "storage_retry",
                        operation=func.__name__,
                        attempt=attempt,
                        error=type(e).__name__,
                    )
                    if attempt == limit:
                        raise Unavailable("Storage temporarily unavailable") from e
        return wrapper
    return decorator


def regex_filter(text: str) -> dict:
    """Case-insensitive substring match on user-supplied text."""
    return {"$regex": re.escape(text), "$options": "i"}
