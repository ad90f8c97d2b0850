"""
MongoDB access helpers.

The database handle is created from DATABASE_URL / DATABASE_NAME. When no
URL is configured `db` is None and endpoints answer 503, so the service can
still boot (and report its state on /test) without a database.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import settings
from errors import ApiError

logger = logging.getLogger(__name__)

client: Optional[MongoClient] = None
db: Optional[Database] = None

if settings.DATABASE_URL:
    client = MongoClient(settings.DATABASE_URL, tz_aware=True)
    db = client[settings.DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise ApiError(503, "Database not available")
    return db


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored datetimes come back naive (UTC) unless the client is tz-aware."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def oid(value: Any) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except Exception:
        raise ApiError(400, "Invalid id")


def owned_by(field: str, user_id: Any) -> Dict[str, Any]:
    """Ownership filter; older documents stored the user id as a plain string."""
    return {field: {"$in": [oid(user_id), str(user_id)]}}


def jsonable(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return as_utc(value).astimezone(timezone.utc).isoformat()
    if isinstance(value, dict):
        return {k: jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [jsonable(v) for v in value]
    return value


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Mongo document -> JSON-ready dict with `id` instead of `_id`."""
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return jsonable(d)


def create_document(collection_name: str, data: Dict[str, Any], database: Optional[Database] = None) -> str:
    database = database if database is not None else get_db()
    payload = dict(data)
    stamp = now_utc()
    payload.setdefault("createdAt", stamp)
    payload.setdefault("updatedAt", stamp)
    result = database[collection_name].insert_one(payload)
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    database: Optional[Database] = None,
) -> List[Dict[str, Any]]:
    database = database if database is not None else get_db()
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["task"].create_index([("user", ASCENDING), ("status", ASCENDING)])
    database["conversation"].create_index([("user", ASCENDING), ("updatedAt", DESCENDING)])
    database["notification"].create_index([("userId", ASCENDING), ("timestamp", DESCENDING)])
    logger.info("MongoDB indexes ensured on %s", database.name)
