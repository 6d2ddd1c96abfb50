"""
MongoDB access for ContractIQ.

`db` is None when DATABASE_URL is unset; routes answer 503 in that case.
Documents are written from pydantic models using their camelCase aliases.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from loguru import logger
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

from config import DATABASE_NAME, DATABASE_URL

client = MongoClient(DATABASE_URL) if DATABASE_URL else None
db = client[DATABASE_NAME] if client is not None else None


def utcnow() -> datetime:
    # naive UTC at millisecond precision, the way BSON stores datetimes
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


class DatabaseUnavailable(RuntimeError):
    pass


def get_collection(name: str):
    if db is None:
        raise DatabaseUnavailable("Database not configured")
    return db[name]


def create_document(collection: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    doc = data.model_dump(by_alias=True) if isinstance(data, BaseModel) else dict(data)
    result = get_collection(collection).insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    collection: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[List[tuple]] = None,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    cursor = get_collection(collection).find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes() -> None:
    if db is None:
        logger.warning("DATABASE_URL not set; skipping index creation")
        return
    db["user"].create_index("googleId", unique=True)
    db["session"].create_index("token", unique=True)
    # Mongo TTL monitor drops expired sessions
    db["session"].create_index("expiresAt", expireAfterSeconds=0)
    db["contractanalysis"].create_index([("userId", ASCENDING), ("createdAt", DESCENDING)])
    db["chatmessage"].create_index([("contractId", ASCENDING), ("createdAt", ASCENDING)])
