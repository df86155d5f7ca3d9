from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from coopadmin.logging import get_logger, hash_email
from coopadmin.storage.errors import ConstraintViolation
from coopadmin.storage.models import Admin

_ADMIN_COLUMNS = (
    "id, email, password_hash, reset_token, reset_expires, "
    "last_login_attempt_at, is_disabled, created_at, updated_at"
)


class PostgresStore:
    """Postgres-backed credential store for administrator documents."""

    def __init__(
        self, dsn: str, *, min_size: int = 1, max_size: int = 10, timeout: float = 5.0
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=False,
        )

    def _connect(self):
        return self.pool.connection()

    def open(self) -> None:
        self.pool.open(wait=True)
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        """Create the ``admins`` table and its indexes if missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS admins (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL,
                    password_hash TEXT,
                    reset_token TEXT,
                    reset_expires BIGINT,
                    last_login_attempt_at TIMESTAMPTZ,
                    is_disabled BOOLEAN NOT NULL DEFAULT false,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ
                )
                """
            )
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS admins_email_lower ON admins (lower(email))"
            )
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS admins_reset_token ON admins (reset_token) "
                "WHERE reset_token IS NOT NULL"
            )

    @staticmethod
    def _row_to_admin(row: Optional[Dict[str, Any]]) -> Optional[Admin]:
        if not row:
            return None
        return Admin(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row.get("password_hash"),
            reset_token=row.get("reset_token"),
            reset_expires=row.get("reset_expires"),
            last_login_attempt_at=row.get("last_login_attempt_at"),
            is_disabled=bool(row.get("is_disabled", False)),
            created_at=row["created_at"],
            updated_at=row.get("updated_at"),
        )

    def _fetch_one(self, query: str, params: tuple) -> Optional[Admin]:
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._row_to_admin(row)

    def create_admin(self, email: str, *, is_disabled: bool = False) -> Admin:
        admin = Admin.new(email, is_disabled=is_disabled)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO admins (id, email, is_disabled, created_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING {_ADMIN_COLUMNS}
                    """,
                    (admin.id, admin.email, admin.is_disabled, admin.created_at),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                f"{admin.email} is already in use", {"field": "email"}
            ) from exc
        self.logger.info("admin_created", admin_id=admin.id, email_hash=hash_email(email))
        return self._row_to_admin(row) or admin

    def get_admin(self, admin_id: str) -> Optional[Admin]:
        return self._fetch_one(
            f"SELECT {_ADMIN_COLUMNS} FROM admins WHERE id = %s", (admin_id,)
        )

    def get_admin_by_email(self, email: str) -> Optional[Admin]:
        return self._fetch_one(
            f"SELECT {_ADMIN_COLUMNS} FROM admins WHERE lower(email) = %s",
            ((email or "").strip().lower(),),
        )

    def get_admin_by_reset_token(self, token: str) -> Optional[Admin]:
        if not token:
            return None
        return self._fetch_one(
            f"SELECT {_ADMIN_COLUMNS} FROM admins WHERE reset_token = %s", (token,)
        )

    def list_admins(self, limit: int = 100) -> List[Admin]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_ADMIN_COLUMNS} FROM admins ORDER BY created_at LIMIT %s",
                (limit,),
            ).fetchall()
        return [a for a in (self._row_to_admin(r) for r in rows) if a]

    def set_password(self, admin_id: str, password_hash: str) -> Optional[Admin]:
        return self._fetch_one(
            f"""
            UPDATE admins SET password_hash = %s, updated_at = now()
            WHERE id = %s
            RETURNING {_ADMIN_COLUMNS}
            """,
            (password_hash, admin_id),
        )

    def set_reset_token(self, admin_id: str, token: str, expires_at: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE admins SET reset_token = %s, reset_expires = %s WHERE id = %s",
                (token, int(expires_at), admin_id),
            )

    def consume_reset_token(
        self, token: str, password_hash: str, now_ts: int
    ) -> Optional[Admin]:
        if not token:
            return None
        return self._fetch_one(
            f"""
            UPDATE admins
            SET password_hash = %s, reset_token = NULL, reset_expires = NULL,
                updated_at = now()
            WHERE reset_token = %s AND reset_expires >= %s
            RETURNING {_ADMIN_COLUMNS}
            """,
            (password_hash, token, int(now_ts)),
        )

    def set_disabled(self, admin_id: str, disabled: bool) -> Optional[Admin]:
        return self._fetch_one(
            f"""
            UPDATE admins SET is_disabled = %s, updated_at = now()
            WHERE id = %s
            RETURNING {_ADMIN_COLUMNS}
            """,
            (bool(disabled), admin_id),
        )

    def record_login_attempt(self, admin_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE admins SET last_login_attempt_at = %s WHERE id = %s",
                (at, admin_id),
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self.pool.close()
