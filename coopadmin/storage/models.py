from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Admin:
    """Administrator credential document.

    ``password_hash`` is ``None`` while the invite is pending.
    """

    id: str
    email: str
    password_hash: Optional[str] = None
    reset_token: Optional[str] = None
    reset_expires: Optional[int] = None
    last_login_attempt_at: Optional[datetime] = None
    is_disabled: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None

    @classmethod
    def new(cls, email: str, *, is_disabled: bool = False) -> "Admin":
        return cls(
            id=uuid.uuid4().hex,
            email=email.strip().lower(),
            is_disabled=is_disabled,
        )

    @property
    def is_pending_invite(self) -> bool:
        return not self.password_hash

    def public_view(self) -> dict:
        """Fields safe to return to clients."""
        return {
            "_id": self.id,
            "email": self.email,
            "is_disabled": self.is_disabled,
        }
