from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional

from coopadmin.logging import get_logger, hash_email
from coopadmin.storage.errors import ConstraintViolation
from coopadmin.storage.models import Admin


class MemoryStore:
    """In-memory credential store for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.admins: Dict[str, Admin] = {}
        self._email_index: Dict[str, str] = {}
        self._lock = threading.Lock()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _snapshot(self, admin: Optional[Admin]) -> Optional[Admin]:
        return replace(admin) if admin else None

    def create_admin(self, email: str, *, is_disabled: bool = False) -> Admin:
        admin = Admin.new(email, is_disabled=is_disabled)
        with self._lock:
            if admin.email in self._email_index:
                raise ConstraintViolation(
                    f"{admin.email} is already in use", {"field": "email"}
                )
            self.admins[admin.id] = admin
            self._email_index[admin.email] = admin.id
        self.logger.info("admin_created", admin_id=admin.id, email_hash=hash_email(email))
        return replace(admin)

    def get_admin(self, admin_id: str) -> Optional[Admin]:
        with self._lock:
            return self._snapshot(self.admins.get(admin_id))

    def get_admin_by_email(self, email: str) -> Optional[Admin]:
        key = (email or "").strip().lower()
        with self._lock:
            admin_id = self._email_index.get(key)
            return self._snapshot(self.admins.get(admin_id)) if admin_id else None

    def get_admin_by_reset_token(self, token: str) -> Optional[Admin]:
        if not token:
            return None
        with self._lock:
            for admin in self.admins.values():
                if admin.reset_token == token:
                    return replace(admin)
        return None

    def list_admins(self, limit: int = 100) -> List[Admin]:
        with self._lock:
            return [replace(a) for a in list(self.admins.values())[:limit]]

    def set_password(self, admin_id: str, password_hash: str) -> Optional[Admin]:
        with self._lock:
            admin = self.admins.get(admin_id)
            if not admin:
                return None
            admin.password_hash = password_hash
            admin.updated_at = self._now()
            return replace(admin)

    def set_reset_token(self, admin_id: str, token: str, expires_at: int) -> None:
        with self._lock:
            admin = self.admins.get(admin_id)
            if admin:
                admin.reset_token = token
                admin.reset_expires = int(expires_at)

    def consume_reset_token(
        self, token: str, password_hash: str, now_ts: int
    ) -> Optional[Admin]:
        """Swap in a new password if ``token`` is live, clearing it in the same step."""
        if not token:
            return None
        with self._lock:
            for admin in self.admins.values():
                if admin.reset_token != token:
                    continue
                if admin.reset_expires is None or admin.reset_expires < now_ts:
                    return None
                admin.password_hash = password_hash
                admin.reset_token = None
                admin.reset_expires = None
                admin.updated_at = self._now()
                return replace(admin)
        return None

    def set_disabled(self, admin_id: str, disabled: bool) -> Optional[Admin]:
        with self._lock:
            admin = self.admins.get(admin_id)
            if not admin:
                return None
            admin.is_disabled = bool(disabled)
            admin.updated_at = self._now()
            return replace(admin)

    def record_login_attempt(self, admin_id: str, at: datetime) -> None:
        with self._lock:
            admin = self.admins.get(admin_id)
            if admin:
                admin.last_login_attempt_at = at

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None
