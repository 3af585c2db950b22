"""
MongoDB access for the bookstore.

One pooled client per process. Every call is bounded by DB_TIMEOUT_MS so a
stalled server surfaces as a PyMongoError instead of hanging the request.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from errors import ValidationError

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "bookstore")
DB_TIMEOUT_MS = int(os.getenv("DB_TIMEOUT_MS", 10000))

USERS = "users"
BOOKS = "books"
ORDERS = "orders"
ORDER_ITEMS = "order_items"
DIGITAL_ACCESS = "digital_access"

# MongoClient connects lazily, so importing this module never blocks.
client = MongoClient(
    DATABASE_URL,
    tz_aware=True,
    serverSelectionTimeoutMS=DB_TIMEOUT_MS,
    connectTimeoutMS=DB_TIMEOUT_MS,
    timeoutMS=DB_TIMEOUT_MS,
)
db: Database = client[DATABASE_NAME]


def get_db() -> Database:
    return db


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored datetimes may come back naive (UTC) depending on the client."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def to_obj_id(id_str: str, what: str = "id") -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {what}")


def sanitize(doc: Dict) -> Dict:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    d.pop("password_hash", None)
    return d


def create_document(database: Database, collection: str, data: Any) -> str:
    """Insert a pydantic model or dict with fresh timestamps; returns the new id."""
    doc = data.model_dump() if hasattr(data, "model_dump") else dict(data)
    ts = now_utc()
    doc.setdefault("created_at", ts)
    doc.setdefault("updated_at", ts)
    res = database[collection].insert_one(doc)
    return str(res.inserted_id)


def ensure_indexes(database: Database) -> None:
    database[USERS].create_index([("username", ASCENDING)], unique=True)
    database[USERS].create_index([("email", ASCENDING)], unique=True)
    database[ORDERS].create_index([("user_id", ASCENDING)])
    database[ORDERS].create_index([("status", ASCENDING)])
    database[ORDER_ITEMS].create_index([("order_id", ASCENDING)])
    database[DIGITAL_ACCESS].create_index([("user_id", ASCENDING)])
    database[DIGITAL_ACCESS].create_index([("book_id", ASCENDING)])
    logger.info("Database indexes ensured on %s", database.name)
