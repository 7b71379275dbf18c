from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict

import pymongo
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import MongoClient

from config import get_settings
from errors import NotFound, ValidationError

SECRET_FIELDS = ("password_hash", "reset_password_token", "reset_password_expire")


@lru_cache()
def get_client() -> MongoClient:
    settings = get_settings()
    timeout = settings.STORE_TIMEOUT_MS
    return MongoClient(
        settings.DATABASE_URL,
        serverSelectionTimeoutMS=timeout,
        connectTimeoutMS=timeout,
        socketTimeoutMS=timeout,
        timeoutMS=timeout,
    )


def get_db():
    return get_client()[get_settings().DATABASE_NAME]


def ensure_indexes(db) -> None:
    db["user"].create_index("email", unique=True)
    db["lab"].create_index("name", unique=True)
    db["lab"].create_index("email", unique=True)
    db["patient"].create_index("patient_id", unique=True)
    db["patient"].create_index([("lab", pymongo.ASCENDING), ("created_at", pymongo.DESCENDING)])
    db["report"].create_index([("lab", pymongo.ASCENDING), ("status", pymongo.ASCENDING)])
    db["report"].create_index([("assigned_to", pymongo.ASCENDING), ("status", pymongo.ASCENDING)])
    db["report"].create_index([("patient", pymongo.ASCENDING), ("created_at", pymongo.DESCENDING)])
    db["systemlog"].create_index("timestamp")


def to_object_id(value: Any, label: str = "Resource", from_path: bool = True) -> ObjectId:
    """Parse an id. Bad path ids read as missing; bad body refs are invalid input."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        if from_path:
            raise NotFound(f"{label} not found")
        raise ValidationError(f"Invalid {label.lower()} id")


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _serialize_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    d = {k: v for k, v in doc.items() if k not in SECRET_FIELDS}
    if d.get("_id"):
        d["id"] = d.pop("_id")
    return _serialize_value(d)


def to_store_time(value: datetime) -> datetime:
    """Naive UTC, the form MongoDB hands back, for use in query filters."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value
