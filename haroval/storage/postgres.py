from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from haroval.logging import get_logger
from haroval.storage.errors import ConstraintViolation
from haroval.storage.models import LOCAL_PROVIDER, User

_USER_COLUMNS = (
    "id, username, email, password_hash, password_algo, auth_provider, "
    "google_id, avatar_url, created_at, updated_at"
)


class PostgresStore:
    """Postgres-backed credential store over a single ``users`` table."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_users_table()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _ensure_users_table(self) -> None:
        """Create the ``users`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    username TEXT NOT NULL UNIQUE,
                    email TEXT UNIQUE,
                    password_hash TEXT,
                    password_algo TEXT,
                    auth_provider TEXT NOT NULL DEFAULT 'local',
                    google_id TEXT UNIQUE,
                    avatar_url TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    @staticmethod
    def _violation(exc: errors.UniqueViolation) -> ConstraintViolation:
        constraint = getattr(exc.diag, "constraint_name", None) or ""
        for field in ("google_id", "email", "username"):
            if field in constraint:
                return ConstraintViolation(f"{field} already exists", {"field": field})
        return ConstraintViolation("unique constraint violated", {"constraint": constraint})

    @staticmethod
    def _user_from_row(row: dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row.get("email"),
            password_hash=row.get("password_hash"),
            password_algo=row.get("password_algo"),
            auth_provider=row.get("auth_provider") or LOCAL_PROVIDER,
            google_id=row.get("google_id"),
            avatar_url=row.get("avatar_url"),
            created_at=row.get("created_at") or datetime.utcnow(),
            updated_at=row.get("updated_at") or datetime.utcnow(),
        )

    def _fetch_one(self, where: str, value: Any) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE {where} = %s", (value,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def create_user(
        self,
        username: str,
        *,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        auth_provider: str = LOCAL_PROVIDER,
        google_id: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO users (id, username, email, password_hash, password_algo,
                                       auth_provider, google_id, avatar_url)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        user_id,
                        username,
                        email,
                        password_hash,
                        password_algo if password_hash else None,
                        auth_provider,
                        google_id,
                        avatar_url,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._violation(exc) from exc
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_one("id", user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_one("username", username)

    def get_user_by_email(self, email: str) -> Optional[User]:
        if not email:
            return None
        return self._fetch_one("email", email)

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        if not google_id:
            return None
        return self._fetch_one("google_id", google_id)

    def link_google_account(
        self, user_id: str, google_id: str, *, avatar_url: Optional[str] = None
    ) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE users
                    SET google_id = %s,
                        avatar_url = COALESCE(%s, avatar_url),
                        updated_at = now()
                    WHERE id = %s
                    RETURNING {_USER_COLUMNS}
                    """,
                    (google_id, avatar_url, user_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._violation(exc) from exc
        return self._user_from_row(row) if row else None

    def update_user(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
    ) -> Optional[User]:
        assignments = ["updated_at = now()"]
        params: list[Any] = []
        if username is not None:
            assignments.append("username = %s")
            params.append(username)
        if password_hash is not None:
            assignments.append("password_hash = %s")
            assignments.append("password_algo = %s")
            params.extend([password_hash, password_algo])
        params.append(user_id)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE users SET {', '.join(assignments)} WHERE id = %s "
                    f"RETURNING {_USER_COLUMNS}",
                    params,
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._violation(exc) from exc
        return self._user_from_row(row) if row else None


__all__ = ["PostgresStore"]
