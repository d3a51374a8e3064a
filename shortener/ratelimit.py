from __future__ import annotations

import logging

from fastapi import Depends, Request
from redis.exceptions import RedisError

from shortener.auth import current_user_id
from shortener.cache import rate_limit_key
from shortener.errors import RateLimited

logger = logging.getLogger(__name__)


def enforce_rate_limit(request: Request, user_id: int = Depends(current_user_id)) -> None:
    """
    Fixed-window rate limiting per user using Redis:
      rl:{user_id} -> INCR, EXPIRE window on the first hit of the window.
    Once the count passes the limit every request is rejected until the key
    expires. If Redis is down the request is let through.
    """
    settings = request.app.state.settings
    redis_client = request.app.state.redis
    if redis_client is None:
        return

    key = rate_limit_key(user_id)
    try:
        current = redis_client.incr(key)
        if current == 1:
            redis_client.expire(key, settings.rate_limit_window_seconds)
    except RedisError:
        logger.warning("rate limiter unavailable, allowing user %s", user_id, exc_info=True)
        return

    if current > settings.rate_limit_per_hour:
        logger.info("rate limit hit for user %s (%s requests)", user_id, current)
        raise RateLimited()
