"""
Database helpers

MongoDB access for every collection. Each Pydantic model in schemas.py maps
to a collection; documents use string ids generated by `new_id()`.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

import config

_client = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    _client = MongoClient(config.DATABASE_URL)
    db = _client[config.DATABASE_NAME]


def _require_db():
    if db is None:
        raise RuntimeError("Database not configured. Set DATABASE_URL and DATABASE_NAME.")
    return db


def new_id() -> str:
    return str(ObjectId())


def utc_now() -> datetime:
    # pymongo hands datetimes back naive, so store them naive (UTC) as well
    return datetime.now(timezone.utc).replace(tzinfo=None)


def collection(name: str):
    return _require_db()[name]


def create_document(collection_name: str, data, doc_id: Optional[str] = None) -> str:
    """Insert a document (Pydantic model or dict) with timestamps and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utc_now()
    data_dict["_id"] = doc_id or data_dict.pop("id", None) or new_id()
    data_dict.setdefault("created_at", now)
    data_dict.setdefault("updated_at", now)
    result = collection(collection_name).insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[dict]:
    cursor = collection(collection_name).find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def get_document(collection_name: str, doc_id: str) -> Optional[dict]:
    return collection(collection_name).find_one({"_id": doc_id})


def set_document(collection_name: str, doc_id: str, doc: Dict[str, Any]) -> None:
    body = {k: v for k, v in doc.items() if k != "_id"}
    collection(collection_name).replace_one({"_id": doc_id}, body, upsert=True)


def update_document(collection_name: str, doc_id: str, partial: Dict[str, Any]) -> bool:
    updates = dict(partial)
    updates["updated_at"] = utc_now()
    result = collection(collection_name).update_one({"_id": doc_id}, {"$set": updates})
    return result.matched_count > 0


def delete_document(collection_name: str, doc_id: str) -> bool:
    result = collection(collection_name).delete_one({"_id": doc_id})
    return result.deleted_count > 0


def query_documents(
    collection_name: str,
    filters: Optional[Dict[str, Any]] = None,
    order_by: Optional[Sequence[Tuple[str, int]]] = None,
    limit: Optional[int] = None,
    offset: int = 0,
) -> List[dict]:
    cursor = collection(collection_name).find(filters or {})
    if order_by:
        cursor = cursor.sort(list(order_by))
    if offset:
        cursor = cursor.skip(offset)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def count_documents(collection_name: str, filters: Optional[Dict[str, Any]] = None) -> int:
    return collection(collection_name).count_documents(filters or {})


def ensure_indexes():
    database = _require_db()
    database["users"].create_index([("username", ASCENDING)], unique=True)
    database["users"].create_index([("email", ASCENDING)], unique=True)
    database["reviews"].create_index([("order_id", ASCENDING)], unique=True)
    database["reviews"].create_index([("stall_id", ASCENDING)])
    database["orders"].create_index([("user_id", ASCENDING)])
    database["orders"].create_index([("stall_id", ASCENDING)])
    database["menu_items"].create_index([("stall_id", ASCENDING)])
    database["stalls"].create_index([("owner_id", ASCENDING)])
