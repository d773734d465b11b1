"""
Optional Redis cache for per-user read responses.

Every operation is best-effort: a Redis failure is logged and treated
as a cache miss, never surfaced to the request.
"""

import json
import logging
from typing import Iterable, Optional

import redis

logger = logging.getLogger(__name__)


class ResponseCache:
    def __init__(self, client: Optional[redis.Redis] = None, ttl_seconds: int = 300):
        self._client = client
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, redis_url: Optional[str], ttl_seconds: int = 300) -> "ResponseCache":
        if not redis_url:
            logger.info("REDIS_URL not set, response caching disabled")
            return cls(None, ttl_seconds)
        return cls(redis.Redis.from_url(redis_url, decode_responses=True), ttl_seconds)

    @staticmethod
    def chat_list_key(user_id: int) -> str:
        return f"cache:{user_id}:chats"

    def get(self, key: str) -> Optional[dict]:
        if self._client is None:
            return None
        try:
            raw = self._client.get(key)
        except redis.RedisError as e:
            logger.warning(f"Cache get failed for {key}: {e}")
            return None
        return json.loads(raw) if raw else None

    def set(self, key: str, value: dict) -> None:
        if self._client is None:
            return
        try:
            self._client.set(key, json.dumps(value, default=str), ex=self.ttl_seconds)
        except redis.RedisError as e:
            logger.warning(f"Cache set failed for {key}: {e}")

    def invalidate_chat_lists(self, user_ids: Iterable[int]) -> None:
        if self._client is None:
            return
        keys = [self.chat_list_key(user_id) for user_id in user_ids]
        if not keys:
            return
        try:
            self._client.delete(*keys)
        except redis.RedisError as e:
            logger.warning(f"Cache invalidation failed: {e}")
