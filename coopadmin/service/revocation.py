from __future__ import annotations

import asyncio
import hashlib
import time
from typing import Awaitable, Optional, Protocol, TypeVar

from coopadmin.logging import get_logger
from coopadmin.storage.errors import StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


class RevocationBackend(Protocol):
    async def add_revoked(self, subject_id: str, fingerprint: str, ttl_seconds: int) -> None: ...

    async def is_member_revoked(self, subject_id: str, fingerprint: str) -> bool: ...

    async def set_login_attempt(
        self, subject_id: str, timestamp: float, ttl_seconds: int
    ) -> None: ...

    async def get_login_attempt(self, subject_id: str) -> Optional[float]: ...


def fingerprint(token: str) -> str:
    """Fixed-size lookup key for a token; the raw token never reaches the cache."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class RevocationCache:
    """Logout denylist and login throttle on top of a TTL key-value store.

    Failure policy when the backend is unreachable:

    * ``revoke`` raises :class:`StoreUnavailable`; a logout never silently no-ops.
    * ``is_revoked`` reports the token as revoked unless ``fail_open`` is set, in
      which case it is accepted and a warning is logged.
    * throttle reads and writes are best-effort and only log.
    """

    def __init__(
        self,
        backend: RevocationBackend,
        *,
        ceiling_seconds: int = 60 * 60 * 24 * 2,
        timeout_seconds: float = 5.0,
        fail_open: bool = False,
    ) -> None:
        self.backend = backend
        self.ceiling_seconds = ceiling_seconds
        self.timeout_seconds = timeout_seconds
        self.fail_open = fail_open

    async def _bounded(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, self.timeout_seconds)
        except Exception as exc:
            raise StoreUnavailable("revocation cache", operation, exc) from exc

    def _clamp_ttl(self, ttl_seconds: Optional[int]) -> int:
        if ttl_seconds is None:
            return self.ceiling_seconds
        return max(1, min(int(ttl_seconds), self.ceiling_seconds))

    async def revoke(self, subject_id: str, token: str, ttl_seconds: Optional[int] = None) -> None:
        ttl = self._clamp_ttl(ttl_seconds)
        try:
            await self._bounded(
                "revoke", self.backend.add_revoked(subject_id, fingerprint(token), ttl)
            )
        except StoreUnavailable as exc:
            logger.error(
                "token_revoke_failed", subject_id=subject_id, error=str(exc.cause or exc)
            )
            raise
        logger.info("token_revoked", subject_id=subject_id, ttl_seconds=ttl)

    async def is_revoked(self, subject_id: str, token: str) -> bool:
        try:
            return await self._bounded(
                "is_revoked",
                self.backend.is_member_revoked(subject_id, fingerprint(token)),
            )
        except StoreUnavailable as exc:
            if self.fail_open:
                logger.warning(
                    "revocation_check_failed_accepting_token",
                    subject_id=subject_id,
                    error=str(exc.cause or exc),
                )
                return False
            logger.warning(
                "revocation_check_failed_defaulting_to_revoked",
                subject_id=subject_id,
                error=str(exc.cause or exc),
            )
            return True

    async def record_login_attempt(self, subject_id: str, window_seconds: int) -> None:
        if window_seconds <= 0:
            return
        try:
            await self._bounded(
                "record_login_attempt",
                self.backend.set_login_attempt(subject_id, time.time(), window_seconds),
            )
        except StoreUnavailable as exc:
            logger.warning(
                "login_attempt_record_failed", subject_id=subject_id, error=str(exc.cause or exc)
            )

    async def is_throttled(self, subject_id: str, window_seconds: int) -> bool:
        if window_seconds <= 0:
            return False
        try:
            last = await self._bounded(
                "is_throttled", self.backend.get_login_attempt(subject_id)
            )
        except StoreUnavailable as exc:
            logger.warning(
                "login_throttle_check_failed", subject_id=subject_id, error=str(exc.cause or exc)
            )
            return False
        if last is None:
            return False
        return time.time() - last < window_seconds
