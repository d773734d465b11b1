"""
Short-lived code store for email one-time passwords.

Codes are single-use: a successful verify consumes the code. A wrong
guess leaves it in place until it expires.
"""

import logging
import time
from typing import Dict, Optional, Protocol, Tuple

import redis

from relaychat.utils import codes_match

logger = logging.getLogger(__name__)


class CodeStore(Protocol):
    def set(self, key: str, code: str, ttl_seconds: int) -> None:
        ...

    def verify(self, key: str, code: str) -> bool:
        ...


class MemoryCodeStore:
    """Process-local store; codes are lost on restart."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._codes: Dict[str, Tuple[str, float]] = {}

    def set(self, key: str, code: str, ttl_seconds: int) -> None:
        self._codes[key] = (code, self._clock() + ttl_seconds)
        logger.info(f"Code stored, expires in {ttl_seconds}s")

    def verify(self, key: str, code: str) -> bool:
        stored = self._codes.get(key)
        if stored is None:
            logger.info("Code verification failed: no code issued")
            return False

        expected, expires_at = stored
        if self._clock() > expires_at:
            del self._codes[key]
            logger.info("Code verification failed: expired")
            return False

        if not codes_match(expected, code):
            logger.info("Code verification failed: mismatch")
            return False

        del self._codes[key]
        return True


class RedisCodeStore:
    """Shared store backed by Redis key expiry."""

    def __init__(self, client: redis.Redis, prefix: str = "otp:"):
        self._client = client
        self._prefix = prefix

    def set(self, key: str, code: str, ttl_seconds: int) -> None:
        self._client.set(self._prefix + key, code, ex=ttl_seconds)

    def verify(self, key: str, code: str) -> bool:
        stored: Optional[str] = self._client.get(self._prefix + key)
        if stored is None or not codes_match(stored, code):
            return False
        # Only the caller that deletes the key wins a concurrent verify
        return self._client.delete(self._prefix + key) == 1


def build_code_store(redis_url: Optional[str]):
    if redis_url:
        logger.info("Using Redis code store")
        return RedisCodeStore(redis.Redis.from_url(redis_url, decode_responses=True))
    logger.info("Using in-memory code store")
    return MemoryCodeStore()
