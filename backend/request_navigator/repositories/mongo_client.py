"""MongoDB Client - Connection and Collection Management"""
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel
from pymongo import MongoClient as PyMongoClient
from pymongo.database import Database
from pymongo.collection import Collection
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure

from ..config.settings import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Collection names
COUNTERS = "counters"
REQUESTS = "requests"
NOTIFICATION_OUTBOX = "notification_outbox"
ADMIN_DIGEST_QUEUE = "notification_admin_digest_queue"
MAIL_SETTINGS = "m365_mail_settings"
MAIL_TOKENS = "m365_mail_tokens"
DEVICE_CODE_SESSIONS = "m365_device_code_sessions"

# Global client instance
_client: Optional[PyMongoClient] = None
_database: Optional[Database] = None


def get_client() -> PyMongoClient:
    """Get or create MongoDB client"""
    global _client
    if _client is None:
        logger.info(f"Connecting to MongoDB: {settings.mongo_uri}")
        _client = PyMongoClient(
            settings.mongo_uri,
            tz_aware=True,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=5000,
            socketTimeoutMS=30000,
        )
        # Test connection
        try:
            _client.admin.command("ping")
            logger.info("MongoDB connection successful")
        except ConnectionFailure as e:
            logger.error(f"MongoDB connection failed: {e}")
            raise
    return _client


def get_database() -> Database:
    """Get the application database"""
    global _database
    if _database is None:
        client = get_client()
        _database = client[settings.mongo_db]
        logger.info(f"Using database: {settings.mongo_db}")
    return _database


def get_collection(name: str, db: Optional[Database] = None) -> Collection:
    """Get a collection from the given database, or the application database"""
    database = db if db is not None else get_database()
    return database[name]


def to_document(model: BaseModel, **dump_kwargs: Any) -> Dict[str, Any]:
    """Dump a model for storage: enums become plain values, datetimes stay native"""
    return _plain(model.model_dump(**dump_kwargs))


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {_plain(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def close_connection() -> None:
    """Close MongoDB connection"""
    global _client, _database
    if _client is not None:
        _client.close()
        _client = None
        _database = None
        logger.info("MongoDB connection closed")


def create_indexes(db: Optional[Database] = None) -> None:
    """Create all required indexes"""
    database = db if db is not None else get_database()
    logger.info("Creating MongoDB indexes...")

    # Requests collection
    requests = database[REQUESTS]
    requests.create_index("request_id", unique=True)
    requests.create_index("status")
    requests.create_index("updated_at", background=True)

    # Notification outbox collection (dispatcher scans by status + due time)
    notification_outbox = database[NOTIFICATION_OUTBOX]
    notification_outbox.create_index("notification_id", unique=True)
    notification_outbox.create_index([("status", ASCENDING), ("next_attempt_at", ASCENDING)])
    notification_outbox.create_index([("request_id", ASCENDING), ("created_at", ASCENDING)])
    notification_outbox.create_index("dedupe_key", unique=True, sparse=True)

    # Admin digest queue collection
    digest_queue = database[ADMIN_DIGEST_QUEUE]
    digest_queue.create_index("digest_entry_id", unique=True)
    digest_queue.create_index([
        ("status", ASCENDING), ("digest_date", ASCENDING), ("next_attempt_at", ASCENDING)
    ])
    digest_queue.create_index([("digest_date", ASCENDING), ("created_at", ASCENDING)])
    digest_queue.create_index("claimed_by")

    # Device-code sessions collection
    device_code_sessions = database[DEVICE_CODE_SESSIONS]
    device_code_sessions.create_index("session_id", unique=True)
    device_code_sessions.create_index([("status", ASCENDING), ("created_at", DESCENDING)])

    logger.info("MongoDB indexes created successfully")


def health_check() -> Dict[str, Any]:
    """Check MongoDB health"""
    try:
        client = get_client()
        client.admin.command("ping")
        return {
            "status": "healthy",
            "database": settings.mongo_db,
            "connection": "ok"
        }
    except Exception as e:
        logger.error(f"MongoDB health check failed: {e}")
        return {
            "status": "unhealthy",
            "database": settings.mongo_db,
            "error": str(e)
        }
