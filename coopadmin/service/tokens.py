from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from coopadmin.logging import get_logger

logger = get_logger(__name__)

ALGORITHM = "HS256"

ACCESS = "access"
INVITE = "invite"


class TokenError(Exception):
    """Base class for token validation failures."""


class InvalidTokenError(TokenError):
    """Malformed token, wrong algorithm, bad signature or unexpected type."""


class ExpiredTokenError(TokenError):
    """Signature is valid but the token is past its ``exp``."""


@dataclass
class SessionClaims:
    subject_id: str
    email: str
    is_disabled: bool
    issued_at: int
    expires_at: int

    def remaining_seconds(self, now: Optional[float] = None) -> int:
        current = time.time() if now is None else now
        return max(0, int(self.expires_at - current))


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    """HS256 JWT signing and verification bound to one secret."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._key = secret.encode("utf-8")
        self.issuer = issuer
        self._clock = clock

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def issue(self, claims: dict[str, Any], ttl_seconds: int) -> str:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        now = int(self._clock())
        payload = dict(claims)
        payload["iat"] = now
        payload["exp"] = now + int(ttl_seconds)
        if self.issuer:
            payload["iss"] = self.issuer
        header_enc = _encode_segment(
            json.dumps({"alg": ALGORITHM, "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def validate(self, token: Optional[str], *, expected_type: Optional[str] = None) -> dict[str, Any]:
        """Return the claims of ``token`` or raise a :class:`TokenError`.

        The signature is checked before any claim is read, so a tampered token is
        always reported as invalid rather than expired.
        """
        if not isinstance(token, str) or token.count(".") != 2:
            raise InvalidTokenError("malformed token")
        header_b64, payload_b64, sig_b64 = token.split(".")

        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            raise InvalidTokenError("malformed token header") from None
        if not isinstance(header, dict) or header.get("alg") != ALGORITHM:
            alg = header.get("alg") if isinstance(header, dict) else None
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise InvalidTokenError("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidTokenError("signature mismatch")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            logger.warning("jwt_payload_decode_failed")
            raise InvalidTokenError("malformed token payload") from None
        if not isinstance(payload, dict):
            raise InvalidTokenError("malformed token payload")

        if self.issuer and payload.get("iss") != self.issuer:
            raise InvalidTokenError("unexpected issuer")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("token has no expiry") from None
        if self._clock() >= exp_ts:
            raise ExpiredTokenError("token expired")
        if expected_type and payload.get("token_type") != expected_type:
            raise InvalidTokenError("unexpected token type")
        return payload


class SessionTokenIssuer:
    """Mints admin session tokens carrying the identity snapshot."""

    def __init__(self, codec: TokenCodec, ttl_seconds: int) -> None:
        self.codec = codec
        self.ttl_seconds = ttl_seconds

    def issue(self, subject_id: str, email: str, is_disabled: bool) -> str:
        return self.codec.issue(
            {
                "sub": subject_id,
                "email": email,
                "is_disabled": bool(is_disabled),
                "token_type": ACCESS,
            },
            self.ttl_seconds,
        )


class SessionTokenValidator:
    """Resolves a session token to its claims; revocation is checked by the caller."""

    def __init__(self, codec: TokenCodec) -> None:
        self.codec = codec

    def validate(self, token: Optional[str]) -> SessionClaims:
        payload = self.codec.validate(token, expected_type=ACCESS)
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise InvalidTokenError("token has no subject")
        return SessionClaims(
            subject_id=subject,
            email=str(payload.get("email") or ""),
            is_disabled=bool(payload.get("is_disabled", False)),
            issued_at=int(payload.get("iat") or 0),
            expires_at=int(payload["exp"]),
        )


class InviteTokens:
    """Short-lived signed links scoped to a single resource and purpose."""

    def __init__(self, codec: TokenCodec, ttl_seconds: int) -> None:
        self.codec = codec
        self.ttl_seconds = ttl_seconds

    def issue(self, resource_id: str, purpose: str = INVITE) -> str:
        return self.codec.issue(
            {"sub": resource_id, "purpose": purpose, "token_type": purpose},
            self.ttl_seconds,
        )

    def resolve(self, token: Optional[str], purpose: str = INVITE) -> str:
        payload = self.codec.validate(token, expected_type=purpose)
        if payload.get("purpose") != purpose:
            raise InvalidTokenError("unexpected token purpose")
        resource_id = payload.get("sub")
        if not isinstance(resource_id, str) or not resource_id:
            raise InvalidTokenError("token has no subject")
        return resource_id
