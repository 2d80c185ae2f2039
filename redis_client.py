"""
redis_client.py — Optional Redis connection for Itinerizer

Used by:
  - sessions.RedisSessionStore (SESSION_BACKEND=redis)
  - auth.RateLimiter           (login + designer message windows)

Graceful degradation
--------------------
If REDIS_URL is not set, or the server is unreachable, connect_redis()
returns None. Every caller checks for None and falls back to its in-memory
implementation, so local development works without a Redis instance.

The client is created once by container.build_container() and passed down;
there is no module-level singleton.
"""

import logging
from urllib.parse import urlparse, urlunparse

import redis

logger = logging.getLogger(__name__)


def connect_redis(url: str):
    """Return a connected Redis client, or None if Redis is unavailable."""
    url = (url or '').strip()
    if not url:
        logger.info(
            "REDIS_URL not set — using in-memory session store and rate limiters. "
            "Set REDIS_URL for multi-worker safety."
        )
        return None

    try:
        client = redis.Redis.from_url(
            url,
            decode_responses=True,   # always return str, never bytes
            socket_connect_timeout=3,
            socket_timeout=3,
        )
        client.ping()                # fail fast if unreachable
    except redis.RedisError as exc:
        logger.warning(
            "Redis unavailable (%s) — falling back to in-memory stores. "
            "Sessions and rate limits will be per-worker only.",
            exc,
        )
        return None

    logger.info("Redis connected: %s", _redact_url(url))
    return client


def _redact_url(url: str) -> str:
    """Return the Redis URL with the password replaced by ***."""
    p = urlparse(url)
    if p.password:
        netloc = f"{p.username or ''}:***@{p.hostname}" + (f":{p.port}" if p.port else "")
        return urlunparse(p._replace(netloc=netloc))
    return url
