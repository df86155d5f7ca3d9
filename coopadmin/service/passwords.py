from __future__ import annotations

import asyncio
import hashlib
import hmac
import re
import secrets
from typing import Optional

from argon2 import PasswordHasher as Argon2Hasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from coopadmin.config import (
    DEFAULT_PASSWORD_PATTERN,
    DEFAULT_PASSWORD_RULE_MESSAGE,
    GENERIC_PASSWORD_RULE_MESSAGE,
    PasswordAlgo,
)
from coopadmin.logging import get_logger
from coopadmin.service.errors import BadRequestError

logger = get_logger(__name__)

SEPARATOR = "$"
SALT_BYTES = 16
KEY_LENGTH = 512
DIGEST = "sha512"
MIN_ITERATIONS = 10_000
# Bare ``salt$hex`` hashes are always derived with this count
LEGACY_ITERATIONS = MIN_ITERATIONS
PBKDF2_PREFIX = "pbkdf2_sha512"

_HEX = re.compile(r"^[0-9a-f]+$")


class PasswordHasher:
    """Salted password hashing with PBKDF2-HMAC-SHA512 and argon2id verification.

    New hashes use ``algo``. Verification recognizes every stored format:

    * ``<salt hex>$<derived key hex>`` for PBKDF2 at the default 10000 iterations
    * ``pbkdf2_sha512$<iterations>$<salt hex>$<derived key hex>`` for any other count
    * ``$argon2id$...`` PHC strings for argon2id

    Anything else fails verification without raising.
    """

    def __init__(
        self,
        *,
        algo: PasswordAlgo = PasswordAlgo.PBKDF2_SHA512,
        iterations: int = MIN_ITERATIONS,
    ) -> None:
        if iterations < MIN_ITERATIONS:
            raise ValueError(f"iterations must be at least {MIN_ITERATIONS}")
        self.algo = PasswordAlgo(algo)
        self.iterations = iterations
        self._argon2 = Argon2Hasher(type=Type.ID)

    @staticmethod
    def _derive(password: str, salt: str, iterations: int) -> str:
        return hashlib.pbkdf2_hmac(
            DIGEST,
            password.encode("utf-8"),
            salt.encode("utf-8"),
            iterations,
            dklen=KEY_LENGTH,
        ).hex()

    @staticmethod
    def _parse_pbkdf2(stored_hash: str) -> Optional[tuple[int, str, str]]:
        """Split a PBKDF2 hash into ``(iterations, salt, key hex)``, or None."""
        if stored_hash.startswith(PBKDF2_PREFIX + SEPARATOR):
            parts = stored_hash.split(SEPARATOR)
            if len(parts) != 4 or not parts[1].isdecimal():
                return None
            _, raw_iterations, salt, expected = parts
            iterations = int(raw_iterations)
            if iterations < MIN_ITERATIONS:
                return None
        else:
            salt, sep, expected = stored_hash.partition(SEPARATOR)
            if not sep or SEPARATOR in expected:
                return None
            iterations = LEGACY_ITERATIONS
        if not salt or len(expected) != KEY_LENGTH * 2 or not _HEX.match(expected):
            return None
        return iterations, salt, expected

    def hash(self, password: str) -> str:
        if not isinstance(password, str) or not password:
            raise ValueError("password must be a non-empty string")
        if self.algo == PasswordAlgo.ARGON2ID:
            return self._argon2.hash(password)
        salt = secrets.token_hex(SALT_BYTES)
        key = self._derive(password, salt, self.iterations)
        if self.iterations == LEGACY_ITERATIONS:
            return f"{salt}{SEPARATOR}{key}"
        return SEPARATOR.join((PBKDF2_PREFIX, str(self.iterations), salt, key))

    def verify(self, stored_hash: Optional[str], candidate: Optional[str]) -> bool:
        if not isinstance(stored_hash, str) or not stored_hash:
            return False
        if not isinstance(candidate, str) or not candidate:
            return False
        if stored_hash.startswith("$argon2id$"):
            try:
                return self._argon2.verify(stored_hash, candidate)
            except (InvalidHashError, VerifyMismatchError, VerificationError):
                return False
        parsed = self._parse_pbkdf2(stored_hash)
        if parsed is None:
            logger.warning("password_hash_format_unrecognized")
            return False
        iterations, salt, expected = parsed
        try:
            derived = self._derive(candidate, salt, iterations)
        except (UnicodeEncodeError, ValueError):
            return False
        return hmac.compare_digest(derived, expected)

    def needs_rehash(self, stored_hash: Optional[str]) -> bool:
        """True when ``stored_hash`` was not produced with the current algorithm and cost."""
        if not stored_hash:
            return False
        if stored_hash.startswith("$argon2id$"):
            if self.algo != PasswordAlgo.ARGON2ID:
                return True
            try:
                return self._argon2.check_needs_rehash(stored_hash)
            except InvalidHashError:
                return False
        if self.algo == PasswordAlgo.ARGON2ID:
            return True
        parsed = self._parse_pbkdf2(stored_hash)
        return parsed is not None and parsed[0] != self.iterations

    async def hash_async(self, password: str) -> str:
        return await asyncio.to_thread(self.hash, password)

    async def verify_async(self, stored_hash: Optional[str], candidate: Optional[str]) -> bool:
        return await asyncio.to_thread(self.verify, stored_hash, candidate)


class PasswordPolicy:
    """Character-class and length rule plus confirmation match."""

    def __init__(
        self,
        pattern: str = DEFAULT_PASSWORD_PATTERN,
        rule_message: Optional[str] = None,
    ) -> None:
        self.pattern = re.compile(pattern)
        if not rule_message:
            rule_message = (
                DEFAULT_PASSWORD_RULE_MESSAGE
                if pattern == DEFAULT_PASSWORD_PATTERN
                else GENERIC_PASSWORD_RULE_MESSAGE
            )
        self.rule_message = rule_message

    def check(self, password: Optional[str], confirm: Optional[str], *, label: str = "Password") -> str:
        if not password:
            raise BadRequestError(f"{label} is required", detail={"field": "password"})
        if not self.pattern.match(password):
            raise BadRequestError(
                f"{label} {self.rule_message}",
                detail={"field": "password"},
            )
        if confirm is None or not hmac.compare_digest(
            password.encode("utf-8"), str(confirm).encode("utf-8")
        ):
            raise BadRequestError(
                "Password and confirm password must match",
                detail={"field": "confirm_password"},
            )
        return password
