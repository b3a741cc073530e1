"""
cache/store.py -- Redis-backed Session Cache.

Holds three namespaces, all TTL-bound so nothing ever needs explicit cleanup:

    user:{id}          compact session projection (roles, permissions, names)
    blacklist:{token}  revoked access tokens, kept until the token's own expiry
    captcha:{id}       plaintext captcha code, single use

The cache is a performance shortcut, never the source of truth. Every Redis
failure is logged and degrades to "miss" (reads) or "no-op" (writes); the
callers already know how to rebuild a projection from the Credential Store.

The client is built once by create_redis_client() and injected -- there is no
module-level connection.

Usage:
    cache = SessionCache(create_redis_client(get_settings()))
    cache.set_json(user_key(1), {"id": 1}, ttl=1800)
    data = cache.get_json(user_key(1))   # returns dict or None
    cache.delete_pattern("user:*")
    cache.close()
"""

from __future__ import annotations

import json
import logging
from typing import Any

import redis
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.retry import Retry

from core.config import Settings

logger = logging.getLogger("crmadmin.cache")

USER_PREFIX = "user:"
BLACKLIST_PREFIX = "blacklist:"
CAPTCHA_PREFIX = "captcha:"


def user_key(user_id: int | str) -> str:
    return f"{USER_PREFIX}{user_id}"


def blacklist_key(token: str) -> str:
    return f"{BLACKLIST_PREFIX}{token}"


def captcha_key(captcha_id: str) -> str:
    return f"{CAPTCHA_PREFIX}{captcha_id}"


def create_redis_client(settings: Settings) -> redis.Redis:
    """Build a Redis client with capped, bounded reconnect backoff.

    Retry re-issues a command after connection or timeout errors, sleeping
    min(cap, base * 2**n) between attempts, and gives up after
    redis_max_retries attempts so a dead cache cannot stall a request forever.
    """
    retry = Retry(
        ExponentialBackoff(cap=settings.redis_backoff_cap, base=settings.redis_backoff_base),
        settings.redis_max_retries,
    )
    return redis.Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_connect_timeout=5,
        retry=retry,
        retry_on_error=[RedisConnectionError, RedisTimeoutError],
    )


class SessionCache:
    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except RedisError as exc:
            logger.error("Redis health check failed: %s", exc)
            return False

    def get_json(self, key: str) -> Any | None:
        """Return the decoded value for key, or None if absent, expired or unreadable."""
        try:
            raw = self._client.get(key)
        except RedisError as exc:
            logger.error("Redis GET failed [%s]: %s", key, exc)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Discarding undecodable cache entry [%s]", key)
            return None

    def set_json(self, key: str, value: Any, ttl: int | None = None) -> None:
        """Store value as JSON. ttl in seconds; None stores without expiry."""
        payload = json.dumps(value)
        try:
            if ttl:
                self._client.set(key, payload, ex=ttl)
            else:
                self._client.set(key, payload)
        except RedisError as exc:
            logger.error("Redis SET failed [%s]: %s", key, exc)

    def pop_json(self, key: str) -> Any | None:
        """Atomically read and delete key (GETDEL). Only one caller ever gets the value."""
        try:
            raw = self._client.getdel(key)
        except RedisError as exc:
            logger.error("Redis GETDEL failed [%s]: %s", key, exc)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Discarding undecodable cache entry [%s]", key)
            return None

    def delete(self, key: str) -> None:
        try:
            self._client.delete(key)
        except RedisError as exc:
            logger.error("Redis DEL failed [%s]: %s", key, exc)

    def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern. Returns the number removed.

        Uses SCAN rather than KEYS so a large keyspace does not block the
        server; deletes in batches of 500.
        """
        removed = 0
        batch: list[str] = []
        try:
            for key in self._client.scan_iter(match=pattern, count=500):
                batch.append(key)
                if len(batch) >= 500:
                    removed += self._client.delete(*batch)
                    batch = []
            if batch:
                removed += self._client.delete(*batch)
        except RedisError as exc:
            logger.error("Redis pattern delete failed [%s]: %s", pattern, exc)
        return removed

    def exists(self, key: str) -> bool:
        try:
            return self._client.exists(key) == 1
        except RedisError as exc:
            logger.error("Redis EXISTS failed [%s]: %s", key, exc)
            return False

    def ttl(self, key: str) -> int:
        """Remaining lifetime in seconds; -2 when absent, -1 when persistent or unreadable."""
        try:
            return int(self._client.ttl(key))
        except RedisError as exc:
            logger.error("Redis TTL failed [%s]: %s", key, exc)
            return -1

    def close(self) -> None:
        try:
            self._client.close()
        except RedisError as exc:
            logger.error("Redis disconnect failed: %s", exc)
