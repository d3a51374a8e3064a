from __future__ import annotations

import json
import logging
from typing import Any

from redis import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


def cache_key_for_code(code: str) -> str:
    return f"code:{code}"


def rate_limit_key(user_id: int | str) -> str:
    return f"rl:{user_id}"


def analytics_key(code: str) -> str:
    return f"analytics:{code}"


def topic_analytics_key(user_id: int | str, topic: str) -> str:
    return f"topicAnalytics:{user_id}:{topic}"


def overall_analytics_key(user_id: int | str) -> str:
    return f"overallAnalytics:{user_id}"


def user_topics_key(user_id: int | str) -> str:
    return f"user:{user_id}:topics"


def recent_urls_key(user_id: int | str, topic: str | None, sort: str, page: int, limit: int) -> str:
    # Real topics carry a prefix so none can collide with the unfiltered listing.
    scope = f"topic={topic}" if topic else "all"
    return f"recentUrls:{user_id}:{scope}:{sort}:{page}:{limit}"


def user_listing_keys(user_id: int | str) -> list[str]:
    """Keys that go stale whenever one of the user's links changes."""
    return [
        f"recentUrls:{user_id}:*",
        f"topicAnalytics:{user_id}:*",
        overall_analytics_key(user_id),
        user_topics_key(user_id),
    ]


class LinkCache:
    """
    Advisory JSON cache on top of Redis.

    Every Redis failure is logged and swallowed: a miss is returned on read
    and writes are dropped, so callers always fall back to the database.
    Passing client=None disables caching entirely.
    """

    def __init__(self, client: Redis | None) -> None:
        self.client = client

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def get_json(self, key: str) -> Any | None:
        if self.client is None:
            return None
        try:
            raw = self.client.get(key)
        except RedisError:
            logger.warning("cache read failed for %s", key, exc_info=True)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("dropping undecodable cache entry %s", key)
            self.invalidate(key)
            return None

    def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        if self.client is None:
            return
        try:
            self.client.setex(key, max(1, ttl_seconds), json.dumps(value, default=str))
        except RedisError:
            logger.warning("cache write failed for %s", key, exc_info=True)

    def invalidate(self, *keys: str) -> None:
        """
        Delete exact keys; keys containing '*' are expanded with SCAN.
        """
        if self.client is None:
            return
        try:
            to_delete: list[str] = []
            for key in keys:
                if "*" in key:
                    to_delete.extend(self.client.scan_iter(match=key, count=500))
                else:
                    to_delete.append(key)
            if to_delete:
                self.client.delete(*to_delete)
        except RedisError:
            logger.warning("cache invalidation failed for %s", keys, exc_info=True)
