from __future__ import annotations

import threading
import time
from typing import Dict, Optional, Set, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for the logout denylist and login throttle markers."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic add + TTL extension: the set lives as long as its longest-lived member
    _REVOKE_SCRIPT = """
local added = redis.call('SADD', KEYS[1], ARGV[1])
local ttl = tonumber(ARGV[2])
local current = redis.call('TTL', KEYS[1])
if current < ttl then
  redis.call('EXPIRE', KEYS[1], ttl)
end
return added
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._revoke = self.client.register_script(self._REVOKE_SCRIPT)

    @staticmethod
    def _revoked_key(subject_id: str) -> str:
        return f"auth:revoked:{subject_id}"

    @staticmethod
    def _attempt_key(subject_id: str) -> str:
        return f"auth:login_attempt:{subject_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def add_revoked(self, subject_id: str, fingerprint: str, ttl_seconds: int) -> None:
        await self._revoke(
            keys=[self._revoked_key(subject_id)],
            args=[fingerprint, max(1, int(ttl_seconds))],
        )

    async def is_member_revoked(self, subject_id: str, fingerprint: str) -> bool:
        return bool(
            await self.client.sismember(self._revoked_key(subject_id), fingerprint)
        )

    async def set_login_attempt(
        self, subject_id: str, timestamp: float, ttl_seconds: int
    ) -> None:
        await self.client.set(
            self._attempt_key(subject_id), str(timestamp), ex=max(1, int(ttl_seconds))
        )

    async def get_login_attempt(self, subject_id: str) -> Optional[float]:
        raw = await self.client.get(self._attempt_key(subject_id))
        if raw is None:
            return None
        try:
            return float(raw)
        except (TypeError, ValueError):
            return None

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class MemoryCache:
    """Process-local stand-in for RedisCache with the same expiry semantics.

    Used for tests and single-process development; entries are swept lazily on read.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._revoked: Dict[str, Tuple[Set[str], float]] = {}
        self._attempts: Dict[str, Tuple[float, float]] = {}

    def _clock(self) -> float:
        return time.monotonic()

    def verify_connection(self) -> None:
        return None

    async def add_revoked(self, subject_id: str, fingerprint: str, ttl_seconds: int) -> None:
        now = self._clock()
        expires_at = now + max(1, int(ttl_seconds))
        with self._lock:
            members, current = self._revoked.get(subject_id, (set(), 0.0))
            if current <= now:
                members = set()
            members.add(fingerprint)
            self._revoked[subject_id] = (members, max(current, expires_at))

    async def is_member_revoked(self, subject_id: str, fingerprint: str) -> bool:
        with self._lock:
            entry = self._revoked.get(subject_id)
            if not entry:
                return False
            members, expires_at = entry
            if expires_at <= self._clock():
                self._revoked.pop(subject_id, None)
                return False
            return fingerprint in members

    async def set_login_attempt(
        self, subject_id: str, timestamp: float, ttl_seconds: int
    ) -> None:
        with self._lock:
            self._attempts[subject_id] = (
                timestamp,
                self._clock() + max(1, int(ttl_seconds)),
            )

    async def get_login_attempt(self, subject_id: str) -> Optional[float]:
        with self._lock:
            entry = self._attempts.get(subject_id)
            if not entry:
                return None
            timestamp, expires_at = entry
            if expires_at <= self._clock():
                self._attempts.pop(subject_id, None)
                return None
            return timestamp

    async def close(self) -> None:
        with self._lock:
            self._revoked.clear()
            self._attempts.clear()
