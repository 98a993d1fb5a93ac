import logging
from typing import Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from . import config

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None


def get_client() -> MongoClient:
    global _client
    if _client is None:
        _client = MongoClient(config.MONGO_URI)
    return _client


def get_db() -> Database:
    """FastAPI dependency returning the application database.

    Tests swap it out through ``app.dependency_overrides``.
    """
    return get_client()[config.MONGO_DB_NAME]


def check_connection() -> bool:
    try:
        get_client().admin.command("ping")
        logger.info("Connected to MongoDB at %s", config.MONGO_URI)
        return True
    except Exception as e:
        logger.error("MongoDB connection failed: %s", e)
        return False


def create_indexes(db: Database = None):
    db = db if db is not None else get_db()
    db.users.create_index("username", unique=True)

    db.conversations.create_index("participants")
    db.conversations.create_index([
        ("metadata.isArchived", ASCENDING),
        ("metadata.isPinned", DESCENDING),
        ("updatedAt", DESCENDING),
    ])
    # one direct conversation per unordered pair; groups carry no key
    db.conversations.create_index("directKey", unique=True, sparse=True)

    db.messages.create_index([("conversation", ASCENDING), ("createdAt", DESCENDING)])
    db.messages.create_index([("sender", ASCENDING), ("createdAt", DESCENDING)])

    db.audit_log.create_index("timestamp")
    logger.info("MongoDB indexes verified")
