from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from novachat.logging import get_logger
from novachat.storage.errors import ConstraintViolation
from novachat.storage.models import User, utcnow

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        full_name TEXT NOT NULL DEFAULT '',
        profile_pic TEXT NOT NULL DEFAULT '',
        google_id TEXT UNIQUE,
        is_admin BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        current_session_id TEXT,
        last_login_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
)


class PostgresStore:
    """Postgres-backed user and session registry store."""

    _LOOKUP_COLUMNS = frozenset({"id", "email", "google_id"})

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the user tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", tables=["app_user", "user_auth_credential"])

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            full_name=row.get("full_name") or "",
            profile_pic=row.get("profile_pic") or "",
            google_id=row.get("google_id"),
            is_admin=bool(row.get("is_admin", False)),
            created_at=row.get("created_at") or utcnow(),
            current_session_id=row.get("current_session_id"),
            last_login_at=row.get("last_login_at"),
        )

    def create_user(
        self,
        email: str,
        full_name: str = "",
        *,
        google_id: Optional[str] = None,
        profile_pic: str = "",
        is_admin: bool = False,
        password: Optional[tuple[str, str]] = None,
    ) -> User:
        """Insert the account, and its password record when given, in one transaction."""
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, full_name, profile_pic, google_id, is_admin)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, full_name, profile_pic, google_id, is_admin),
                ).fetchone()
                if password is not None:
                    conn.execute(
                        """
                        INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                        VALUES (%s, %s, %s, now())
                        """,
                        (user_id, password[0], password[1]),
                    )
        except errors.UniqueViolation as exc:
            field = "google_id" if "google_id" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row)

    def _fetch_user(self, column: str, value: str) -> Optional[User]:
        if column not in self._LOOKUP_COLUMNS:
            raise ValueError(f"cannot look users up by {column}")
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM app_user WHERE {column} = %s", (value,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            # the id column is a uuid; anything else would be a query error
            return None
        return self._fetch_user("id", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email", email)

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        return self._fetch_user("google_id", google_id)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    def set_current_session(
        self,
        user_id: str,
        session_id: Optional[str],
        *,
        last_login_at: Optional[datetime] = None,
    ) -> User:
        # single-row overwrite; concurrent logins resolve last-write-wins
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET current_session_id = %s,
                    last_login_at = COALESCE(%s, last_login_at)
                WHERE id = %s
                RETURNING *
                """,
                (session_id, last_login_at, user_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return self._user_from_row(row)

    def clear_current_session(
        self, user_id: str, *, expected_session_id: Optional[str] = None
    ) -> bool:
        with self._connect() as conn:
            if expected_session_id is None:
                cur = conn.execute(
                    """
                    UPDATE app_user SET current_session_id = NULL
                    WHERE id = %s AND current_session_id IS NOT NULL
                    """,
                    (user_id,),
                )
            else:
                cur = conn.execute(
                    """
                    UPDATE app_user SET current_session_id = NULL
                    WHERE id = %s AND current_session_id = %s
                    """,
                    (user_id, expected_session_id),
                )
            return cur.rowcount > 0
