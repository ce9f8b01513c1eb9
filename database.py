"""
MongoDB access for SkillSwap.

`db` is None when DATABASE_URL / DATABASE_NAME are not configured; helpers
raise in that case so routes fail loudly instead of silently doing nothing.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

from config import DATABASE_NAME, DATABASE_URL

logger = logging.getLogger(__name__)

_client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def _require_db():
    if db is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME.")
    return db


def utcnow() -> datetime:
    # Mongo hands datetimes back naive (UTC); keep everything we store the same way.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id as str."""
    database = _require_db()
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, sort: Optional[List] = None) -> List[Dict[str, Any]]:
    database = _require_db()
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def get_document(collection_name: str, doc_id: Any) -> Optional[Dict[str, Any]]:
    database = _require_db()
    try:
        _id = doc_id if isinstance(doc_id, ObjectId) else ObjectId(str(doc_id))
    except Exception:
        return None
    return database[collection_name].find_one({"_id": _id})


def update_document(collection_name: str, filter_dict: Dict[str, Any], values: Dict[str, Any]) -> int:
    """$set values on documents matching filter_dict. Returns the modified count."""
    database = _require_db()
    values = dict(values)
    values["updated_at"] = utcnow()
    result = database[collection_name].update_many(filter_dict, {"$set": values})
    return result.modified_count


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Copy a raw Mongo document into a JSON-friendly dict with a string `id`."""
    if doc is None:
        return None
    out = {k: v for k, v in doc.items() if k != "_id"}
    if "_id" in doc:
        out["id"] = str(doc["_id"])
    return out


def serialize_all(docs) -> List[Dict[str, Any]]:
    return [serialize(d) for d in docs]


def ensure_indexes() -> None:
    database = _require_db()
    database["wallet"].create_index([("user_id", ASCENDING)], unique=True)
    database["credittransaction"].create_index([("idempotency_key", ASCENDING)], unique=True)
    database["credittransaction"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database["profile"].create_index([("user_id", ASCENDING)], unique=True)
    database["referral"].create_index([("referred_user_id", ASCENDING)], unique=True)
    database["review"].create_index([("session_id", ASCENDING), ("reviewer_id", ASCENDING)], unique=True)
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["token"].create_index([("token", ASCENDING)], unique=True)
    database["message"].create_index([("thread_id", ASCENDING), ("created_at", ASCENDING)])
    database["chatthread"].create_index([("pair_key", ASCENDING)], unique=True, sparse=True)
    logger.info("MongoDB indexes ensured on %s", database.name)
