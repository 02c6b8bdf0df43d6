"""Redis cache for the latest system validation report."""

import json
import logging
from typing import Optional, Any
import redis

from rolekeeper.core.config import settings

logger = logging.getLogger("rolekeeper.cache")

VALIDATION_REPORT_KEY = "role_validation:latest"
VALIDATION_REPORT_TTL_SECONDS = 24 * 60 * 60


class CacheService:
    """Redis-backed caching service."""

    def __init__(self, url: Optional[str] = None):
        self._url = url
        self._client: Optional[redis.Redis] = None

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                self._url or settings.REDIS_URL,
                decode_responses=True,
                max_connections=20,
            )
        return self._client

    def get(self, key: str) -> Optional[str]:
        try:
            return self.client.get(key)
        except redis.ConnectionError as e:
            logger.warning("Cache read of %s failed: %s", key, e)
            return None

    def set(self, key: str, value: str, ttl_seconds: int = 600) -> bool:
        """Set a cached value with TTL; False when redis is unreachable."""
        try:
            self.client.setex(key, ttl_seconds, value)
            return True
        except redis.ConnectionError as e:
            logger.warning("Cache write of %s failed: %s", key, e)
            return False

    def get_json(self, key: str) -> Optional[Any]:
        raw = self.get(key)
        if raw:
            return json.loads(raw)
        return None

    def set_json(self, key: str, value: Any, ttl_seconds: int = 600) -> bool:
        return self.set(key, json.dumps(value, default=str), ttl_seconds)

    def store_validation_report(self, report: dict) -> bool:
        return self.set_json(VALIDATION_REPORT_KEY, report, VALIDATION_REPORT_TTL_SECONDS)

    def latest_validation_report(self) -> Optional[dict]:
        return self.get_json(VALIDATION_REPORT_KEY)

    def health_check(self) -> bool:
        try:
            return self.client.ping()
        except redis.ConnectionError:
            return False


cache_service = CacheService()
