from __future__ import annotations

import asyncio
import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine, List, Optional, Protocol, Set, TypeVar

from coopadmin.config import Settings
from coopadmin.logging import get_logger, hash_email
from coopadmin.service.email import EmailService
from coopadmin.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    NotFoundError,
    ServerError,
)
from coopadmin.service.passwords import PasswordHasher, PasswordPolicy
from coopadmin.service.revocation import RevocationCache
from coopadmin.service.tokens import (
    InviteTokens,
    SessionClaims,
    SessionTokenIssuer,
    SessionTokenValidator,
    TokenCodec,
    TokenError,
)
from coopadmin.storage.errors import ConstraintViolation, StoreUnavailable
from coopadmin.storage.models import Admin

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_ERR_MESSAGE = "Invalid login credentials, check and try again."
DISABLED_MESSAGE = "Account disabled or Unauthorized Access"
THROTTLED_MESSAGE = "Too many login attempts, wait a moment and try again."
SESSION_ERR_MESSAGE = "Invalid or expired Authentication, please login again"
RESET_INVALID_MESSAGE = "Password reset token is invalid or expired"
INVITE_INVALID_MESSAGE = "Invite link is invalid or expired"

_EMAIL_PATTERN = re.compile(r"^[+a-z0-9._-]+@[a-z0-9._-]+\.[a-z0-9_-]+$")


class CredentialStore(Protocol):
    def create_admin(self, email: str, *, is_disabled: bool = False) -> Admin: ...

    def get_admin(self, admin_id: str) -> Optional[Admin]: ...

    def get_admin_by_email(self, email: str) -> Optional[Admin]: ...

    def get_admin_by_reset_token(self, token: str) -> Optional[Admin]: ...

    def list_admins(self, limit: int = 100) -> List[Admin]: ...

    def set_password(self, admin_id: str, password_hash: str) -> Optional[Admin]: ...

    def set_reset_token(self, admin_id: str, token: str, expires_at: int) -> None: ...

    def consume_reset_token(
        self, token: str, password_hash: str, now_ts: int
    ) -> Optional[Admin]: ...

    def set_disabled(self, admin_id: str, disabled: bool) -> Optional[Admin]: ...

    def record_login_attempt(self, admin_id: str, at: datetime) -> None: ...

    def verify_connection(self) -> None: ...

    def close(self) -> None: ...


@dataclass
class AuthContext:
    admin_id: str
    email: str
    token: str
    claims: SessionClaims
    admin: Admin


def normalize_email(raw: Optional[str]) -> str:
    """Trim, drop anything after the first space and lower-case."""
    parts = (raw or "").strip().split(" ")
    return parts[0].lower() if parts else ""


def is_valid_email(email: str) -> bool:
    return bool(email) and len(email) <= 254 and bool(_EMAIL_PATTERN.match(email))


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class AuthService:
    """Login, logout, password change/reset and admin invite orchestration."""

    def __init__(
        self,
        store: CredentialStore,
        revocation: RevocationCache,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
        email: Optional[EmailService] = None,
    ) -> None:
        self.store = store
        self.revocation = revocation
        self.settings = settings
        self.hasher = hasher or PasswordHasher(
            algo=settings.password_algo, iterations=settings.password_iterations
        )
        self.policy = PasswordPolicy(
            settings.password_pattern, settings.password_rule_message
        )
        session_codec = TokenCodec(settings.access_token_secret, issuer=settings.jwt_issuer)
        self.sessions = SessionTokenIssuer(
            session_codec, settings.access_token_ttl_minutes * 60
        )
        self.validator = SessionTokenValidator(session_codec)
        self.invites = InviteTokens(
            TokenCodec(settings.invite_token_secret, issuer=settings.jwt_issuer),
            settings.invite_token_ttl_minutes * 60,
        )
        self.email = email
        self.logger = logger
        self._background: Set[asyncio.Task] = set()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _store(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking store call in a worker thread under the store timeout."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args), self.settings.store_timeout_seconds
            )
        except (ConstraintViolation, StoreUnavailable):
            raise
        except asyncio.TimeoutError as exc:
            raise StoreUnavailable("credential store", operation, exc) from exc

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        """Fire-and-forget a notification; the response never waits on delivery."""
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for queued notifications (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # -- sessions -----------------------------------------------------------

    async def login(self, email: Optional[str], password: Optional[str]) -> tuple[Admin, str]:
        normalized = normalize_email(email)
        if not normalized or not password:
            raise AuthenticationError(DEFAULT_ERR_MESSAGE)
        admin = await self._store("get_admin_by_email", self.store.get_admin_by_email, normalized)
        if admin is None or not admin.password_hash:
            self.logger.info("login_unknown_or_pending", email_hash=hash_email(normalized))
            raise AuthenticationError(DEFAULT_ERR_MESSAGE)

        window = self.settings.login_throttle_seconds
        if await self.revocation.is_throttled(admin.id, window):
            self.logger.warning("login_throttled", admin_id=admin.id)
            raise AuthenticationError(THROTTLED_MESSAGE)

        ok = await self.hasher.verify_async(admin.password_hash, password)
        await self._store(
            "record_login_attempt", self.store.record_login_attempt, admin.id, self._now()
        )
        if not ok:
            await self.revocation.record_login_attempt(admin.id, window)
            self.logger.info("login_failed", admin_id=admin.id)
            raise AuthenticationError(DEFAULT_ERR_MESSAGE)
        if admin.is_disabled:
            self.logger.info("login_disabled_account", admin_id=admin.id)
            raise AuthenticationError(DISABLED_MESSAGE)
        if self.hasher.needs_rehash(admin.password_hash):
            await self._upgrade_hash(admin, password)

        token = self.sessions.issue(admin.id, admin.email, admin.is_disabled)
        self.logger.info("login_succeeded", admin_id=admin.id)
        return admin, token

    async def _upgrade_hash(self, admin: Admin, password: str) -> None:
        """Re-hash with the configured algorithm and cost; the login succeeds either way."""
        new_hash = await self.hasher.hash_async(password)
        try:
            await self._store("set_password", self.store.set_password, admin.id, new_hash)
        except StoreUnavailable:
            self.logger.warning("password_rehash_failed", admin_id=admin.id)
            return
        self.logger.info("password_rehashed", admin_id=admin.id)

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve a bearer header to an identity or raise AuthenticationError."""
        token = extract_bearer(authorization)
        if not token:
            raise AuthenticationError(SESSION_ERR_MESSAGE)
        try:
            claims = self.validator.validate(token)
        except TokenError as exc:
            self.logger.info("session_token_rejected", reason=type(exc).__name__)
            raise AuthenticationError(SESSION_ERR_MESSAGE) from None
        if await self.revocation.is_revoked(claims.subject_id, token):
            self.logger.info("session_token_revoked", admin_id=claims.subject_id)
            raise AuthenticationError(SESSION_ERR_MESSAGE)
        admin = await self._store("get_admin", self.store.get_admin, claims.subject_id)
        if admin is None:
            raise AuthenticationError("Incorrect login credentials.")
        if admin.is_disabled:
            raise AuthenticationError(DISABLED_MESSAGE)
        return AuthContext(
            admin_id=admin.id, email=admin.email, token=token, claims=claims, admin=admin
        )

    async def logout(self, authorization: Optional[str]) -> None:
        if not extract_bearer(authorization):
            raise AuthenticationError("Unable to validate authorization key!")
        ctx = await self.authenticate(authorization)
        try:
            await self.revocation.revoke(
                ctx.admin_id, ctx.token, ctx.claims.remaining_seconds()
            )
        except StoreUnavailable as exc:
            raise ServerError("Unable to complete logout, try again later.") from exc
        self.logger.info("logout", admin_id=ctx.admin_id)

    # -- passwords ----------------------------------------------------------

    async def change_password(
        self,
        ctx: AuthContext,
        current_password: Optional[str],
        new_password: Optional[str],
        confirm_password: Optional[str],
    ) -> None:
        if not current_password:
            raise BadRequestError("Current password is required", detail={"field": "current_password"})
        self.policy.check(new_password, confirm_password)
        admin = await self._store("get_admin", self.store.get_admin, ctx.admin_id)
        if admin is None:
            raise NotFoundError("User not found")
        if not await self.hasher.verify_async(admin.password_hash, current_password):
            raise BadRequestError("Current password did not match our record!")
        new_hash = await self.hasher.hash_async(new_password)
        await self._store("set_password", self.store.set_password, admin.id, new_hash)
        self.logger.info("password_changed", admin_id=admin.id)

    async def request_password_reset(self, email: Optional[str]) -> Optional[str]:
        """Issue a reset token if the account exists.

        Callers must answer identically whether or not a token was issued.
        """
        normalized = normalize_email(email)
        if not is_valid_email(normalized):
            raise BadRequestError("Valid email is required to reset password!")
        admin = await self._store("get_admin_by_email", self.store.get_admin_by_email, normalized)
        if admin is None:
            self.logger.info("password_reset_unknown_email", email_hash=hash_email(normalized))
            return None
        if admin.is_pending_invite:
            # Pending accounts get their first password through accept_invite only
            self.logger.info("password_reset_pending_invite", admin_id=admin.id)
            return None

        token = secrets.token_urlsafe(32)
        expires_at = int(time.time()) + self.settings.reset_token_ttl_minutes * 60
        await self._store("set_reset_token", self.store.set_reset_token, admin.id, token, expires_at)
        if self.email:
            self._spawn(self.email.deliver(self.email.send_password_reset, admin.email, token))
        self.logger.info("password_reset_requested", admin_id=admin.id)
        return token

    async def validate_reset_token(self, token: Optional[str]) -> Admin:
        if not token or not token.strip():
            raise BadRequestError("Password reset hash is required!")
        admin = await self._store(
            "get_admin_by_reset_token", self.store.get_admin_by_reset_token, token.strip()
        )
        if admin is None or admin.reset_expires is None or admin.reset_expires < int(time.time()):
            raise BadRequestError("Invalid or expire reset details")
        return admin

    async def reset_password(
        self,
        token: Optional[str],
        new_password: Optional[str],
        confirm_password: Optional[str],
    ) -> None:
        try:
            await self.validate_reset_token(token)
        except BadRequestError:
            self.logger.warning("password_reset_invalid_token")
            raise BadRequestError(RESET_INVALID_MESSAGE) from None
        self.policy.check(new_password, confirm_password)
        new_hash = await self.hasher.hash_async(new_password)
        admin = await self._store(
            "consume_reset_token",
            self.store.consume_reset_token,
            token.strip(),
            new_hash,
            int(time.time()),
        )
        if admin is None:
            raise BadRequestError(RESET_INVALID_MESSAGE)
        self.logger.info("password_reset_completed", admin_id=admin.id)

    # -- invites ------------------------------------------------------------

    async def invite_admin(self, email: Optional[str]) -> tuple[Admin, str]:
        normalized = normalize_email(email)
        if not is_valid_email(normalized):
            raise BadRequestError("Email invalid. Confirm and try again")
        try:
            admin = await self._store("create_admin", self.store.create_admin, normalized)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        token = self.invites.issue(admin.id)
        if self.email:
            self._spawn(self.email.deliver(self.email.send_admin_invite, admin.email, token))
        self.logger.info("admin_invited", admin_id=admin.id)
        return admin, token

    async def validate_invite(self, token: Optional[str]) -> str:
        try:
            return self.invites.resolve(token)
        except TokenError as exc:
            self.logger.info("invite_token_rejected", reason=type(exc).__name__)
            raise BadRequestError(INVITE_INVALID_MESSAGE) from None

    async def accept_invite(
        self,
        token: Optional[str],
        password: Optional[str],
        confirm_password: Optional[str],
    ) -> Admin:
        self.policy.check(password, confirm_password)
        admin_id = await self.validate_invite(token)
        admin = await self._store("get_admin", self.store.get_admin, admin_id)
        if admin is None:
            raise NotFoundError("Account not found")
        if not admin.is_pending_invite:
            raise BadRequestError("Invite has already been accepted")
        password_hash = await self.hasher.hash_async(password)
        updated = await self._store("set_password", self.store.set_password, admin.id, password_hash)
        self.logger.info("invite_accepted", admin_id=admin.id)
        return updated or admin
