"""
Redis-backed blob cache.

Raw uploads are parked here between the upload request and text extraction;
analysis records are cached here for read-through lookups.
"""
import json
import secrets
import time
from typing import Any, Dict, Optional

import redis

from config import REDIS_URL

UPLOAD_TTL_SECONDS = 3600
RECORD_TTL_SECONDS = 3600

redis_client = redis.Redis.from_url(REDIS_URL)


def upload_key(user_id: str) -> str:
    return f"file:{user_id}:{int(time.time() * 1000)}:{secrets.token_hex(4)}"


def contract_key(user_id: str, contract_id: str) -> str:
    return f"contract:{user_id}:{contract_id}"


def cache_upload(key: str, content: bytes, ttl: int = UPLOAD_TTL_SECONDS) -> None:
    redis_client.set(key, content, ex=ttl)


def get_upload(key: str) -> Optional[bytes]:
    return redis_client.get(key)


def delete_key(key: str) -> None:
    redis_client.delete(key)


def get_json(key: str) -> Optional[Dict[str, Any]]:
    raw = redis_client.get(key)
    if raw is None:
        return None
    return json.loads(raw)


def set_json(key: str, value: Dict[str, Any], ttl: int = RECORD_TTL_SECONDS) -> None:
    redis_client.set(key, json.dumps(value), ex=ttl)


def ping() -> bool:
    try:
        return bool(redis_client.ping())
    except redis.RedisError:
        return False
