"""
Profile Cache - Redis cache for identity profile lookups

Cache misses and Redis outages fall through to ClickHouse; they never
fail the request.
"""
import json
import logging
import re
from typing import Dict, Iterable, Optional

import redis

from identity_graph.config import Settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "identity:profile"

_GLOB_CHARS = re.compile(r"([*?\[\]\\])")


class ProfileCache:
    """Repository for cached identity profiles in Redis"""

    def __init__(self, client: redis.Redis, ttl: int = 300):
        self.client = client
        self.ttl = ttl

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["ProfileCache"]:
        if not settings.redis_url:
            return None
        client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        return cls(client, settings.profile_cache_ttl_seconds)

    @staticmethod
    def key(user_id: str, email: Optional[str] = None) -> str:
        return f"{KEY_PREFIX}:{user_id}:{email or ''}"

    def get_profile(self, user_id: str, email: Optional[str] = None) -> Optional[Dict]:
        try:
            data = self.client.get(self.key(user_id, email))
        except redis.RedisError as e:
            logger.warning("[ProfileCache] read failed for %s: %s", user_id, e)
            return None
        if data:
            return json.loads(data)
        return None

    def store_profile(self, user_id: str, email: Optional[str], profile: Dict) -> None:
        try:
            self.client.setex(self.key(user_id, email), self.ttl, json.dumps(profile, default=str))
        except redis.RedisError as e:
            logger.warning("[ProfileCache] write failed for %s: %s", user_id, e)

    def invalidate_users(self, user_ids: Iterable[str]) -> int:
        """Drop every cached profile (any email variant) for these users"""
        removed = 0
        try:
            for user_id in user_ids:
                escaped = _GLOB_CHARS.sub(r"\\\1", user_id)
                pattern = f"{KEY_PREFIX}:{escaped}:*"
                keys = list(self.client.scan_iter(match=pattern))
                if keys:
                    removed += self.client.delete(*keys)
        except redis.RedisError as e:
            logger.warning("[ProfileCache] invalidation failed: %s", e)
        return removed

    def clear(self) -> int:
        removed = 0
        try:
            keys = list(self.client.scan_iter(match=f"{KEY_PREFIX}:*"))
            if keys:
                removed = self.client.delete(*keys)
        except redis.RedisError as e:
            logger.warning("[ProfileCache] clear failed: %s", e)
        return removed

    def ping(self) -> None:
        self.client.ping()
