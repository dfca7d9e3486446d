"""
Database Helper Functions

MongoDB connection plus the helpers the API uses to read, write and
serialize documents. Timestamps are stored as naive UTC datetimes with
millisecond precision, which is what MongoDB keeps.
"""
import os
from datetime import datetime, timezone
from typing import Any, Optional

from bson import ObjectId
from dotenv import load_dotenv
from fastapi import HTTPException
from pymongo import ASCENDING, MongoClient

# Load environment variables from .env file
load_dotenv()

_client = None
db = None

database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME")

if database_url and database_name:
    _client = MongoClient(database_url)
    db = _client[database_name]


def get_db():
    if db is None:
        raise HTTPException(status_code=503, detail="Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return db


def ensure_indexes(database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["chat"].create_index([("restaurant", ASCENDING), ("ngo", ASCENDING)], unique=True)
    database["donation"].create_index([("restaurant", ASCENDING)])
    database["donation"].create_index([("requestedBy", ASCENDING)])
    database["revoked_token"].create_index([("jti", ASCENDING)], unique=True)


# Time

def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def utcnow() -> datetime:
    return to_naive_utc(datetime.now(timezone.utc))


# Ids

def oid(id_str: Any) -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(id_str)
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid ID")


def find_by_id(database, collection_name: str, _id: Any) -> Optional[dict]:
    return database[collection_name].find_one({"_id": oid(_id)})


# Serialization

def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _serialize_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value


def serialize_doc(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return None
    return _serialize_value(dict(doc))
