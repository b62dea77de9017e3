from __future__ import annotations

import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from linesauth.logging import get_logger
from linesauth.storage.errors import ConstraintViolation
from linesauth.storage.models import (
    PasswordResetRequest,
    PendingRegistration,
    RefreshToken,
    Role,
    User,
    utcnow,
)

REQUIRED_TABLES = (
    "app_user",
    "user_auth_credential",
    "pending_registrations",
    "password_resets",
    "refresh_tokens",
)


class PostgresStore:
    """Postgres-backed credential, staging and refresh-token store.

    The install DDL lives in ``schema.sql`` next to this module. Race-prone
    transitions (attempt counters, OTP claims, refresh rotation) are single
    conditional statements so concurrent callers cannot both win.
    """

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply linesauth/storage/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            full_name=row.get("full_name") or "",
            role=row.get("role", Role.USER.value),
            is_active=row.get("is_active", True),
            email_verified=row.get("email_verified", False),
            email_verified_at=row.get("email_verified_at"),
            last_login=row.get("last_login"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_pending(row: Dict[str, Any]) -> PendingRegistration:
        return PendingRegistration(
            email=row["email"],
            full_name=row["full_name"],
            password_hash=row["password_hash"],
            password_algo=row["password_algo"],
            otp=row["otp"],
            otp_expiry=row["otp_expiry"],
            attempts=int(row.get("attempts") or 0),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_reset(row: Dict[str, Any]) -> PasswordResetRequest:
        return PasswordResetRequest(
            email=row["email"],
            otp=row["otp"],
            otp_expiry=row["otp_expiry"],
            attempts=int(row.get("attempts") or 0),
            verified=bool(row.get("verified", False)),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_refresh_token(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            token=row["token"],
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
        )

    # users
    def create_user(
        self,
        email: str,
        full_name: str,
        *,
        password_hash: str,
        password_algo: str,
        role: str = Role.USER.value,
        is_active: bool = True,
        email_verified: bool = False,
        email_verified_at: Optional[datetime] = None,
    ) -> User:
        user = User.new(
            email,
            full_name,
            role=role,
            is_active=is_active,
            email_verified=email_verified,
            email_verified_at=email_verified_at,
        )
        try:
            # user row and credential commit together or not at all
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, full_name, role, is_active, email_verified,
                                          email_verified_at, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.full_name,
                        user.role,
                        user.is_active,
                        user.email_verified,
                        user.email_verified_at,
                        user.created_at,
                        user.updated_at,
                    ),
                )
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    """,
                    (user.id, password_hash, password_algo),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s, updated_at = now() WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET email_verified = TRUE,
                    email_verified_at = COALESCE(email_verified_at, now()),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (user_id,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def touch_last_login(self, user_id: str, when: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login = %s WHERE id = %s",
                (when or utcnow(), user_id),
            )

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
                conn.execute(
                    "UPDATE app_user SET updated_at = now() WHERE id = %s", (user_id,)
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

    # pending registrations
    def upsert_pending_registration(
        self,
        email: str,
        full_name: str,
        *,
        password_hash: str,
        password_algo: str,
        otp: str,
        otp_expiry: datetime,
    ) -> PendingRegistration:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO pending_registrations (email, full_name, password_hash, password_algo,
                                                   otp, otp_expiry, attempts, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, 0, now(), now())
                ON CONFLICT (email) DO UPDATE
                SET full_name = EXCLUDED.full_name,
                    password_hash = EXCLUDED.password_hash,
                    password_algo = EXCLUDED.password_algo,
                    otp = EXCLUDED.otp,
                    otp_expiry = EXCLUDED.otp_expiry,
                    attempts = 0,
                    updated_at = now()
                RETURNING *
                """,
                (email, full_name, password_hash, password_algo, otp, otp_expiry),
            ).fetchone()
        return self._row_to_pending(row)

    def refresh_pending_registration_otp(
        self, email: str, otp: str, otp_expiry: datetime
    ) -> Optional[PendingRegistration]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE pending_registrations
                SET otp = %s, otp_expiry = %s, attempts = 0, updated_at = now()
                WHERE email = %s
                RETURNING *
                """,
                (otp, otp_expiry, email),
            ).fetchone()
        return self._row_to_pending(row) if row else None

    def get_pending_registration(self, email: str) -> Optional[PendingRegistration]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pending_registrations WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_pending(row) if row else None

    def increment_pending_registration_attempts(self, email: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE pending_registrations
                SET attempts = attempts + 1, updated_at = now()
                WHERE email = %s
                RETURNING attempts
                """,
                (email,),
            ).fetchone()
        return int(row["attempts"]) if row else None

    def claim_pending_registration(
        self, email: str, otp: str, *, max_attempts: int, now: datetime
    ) -> Optional[PendingRegistration]:
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM pending_registrations
                WHERE email = %s AND otp = %s AND attempts < %s AND otp_expiry > %s
                RETURNING *
                """,
                (email, otp, max_attempts, now),
            ).fetchone()
        return self._row_to_pending(row) if row else None

    def delete_pending_registration(self, email: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM pending_registrations WHERE email = %s", (email,)
            )
            return (cur.rowcount or 0) > 0

    # password resets
    def upsert_password_reset(
        self, email: str, *, otp: str, otp_expiry: datetime
    ) -> PasswordResetRequest:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO password_resets (email, otp, otp_expiry, attempts, verified, created_at, updated_at)
                VALUES (%s, %s, %s, 0, FALSE, now(), now())
                ON CONFLICT (email) DO UPDATE
                SET otp = EXCLUDED.otp,
                    otp_expiry = EXCLUDED.otp_expiry,
                    attempts = 0,
                    verified = FALSE,
                    updated_at = now()
                RETURNING *
                """,
                (email, otp, otp_expiry),
            ).fetchone()
        return self._row_to_reset(row)

    def get_password_reset(self, email: str) -> Optional[PasswordResetRequest]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_resets WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_reset(row) if row else None

    def increment_password_reset_attempts(self, email: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_resets
                SET attempts = attempts + 1, updated_at = now()
                WHERE email = %s
                RETURNING attempts
                """,
                (email,),
            ).fetchone()
        return int(row["attempts"]) if row else None

    def mark_password_reset_verified(
        self, email: str, otp: str, *, max_attempts: int, now: datetime
    ) -> Optional[PasswordResetRequest]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_resets
                SET verified = TRUE, updated_at = now()
                WHERE email = %s AND otp = %s AND attempts < %s AND otp_expiry > %s
                RETURNING *
                """,
                (email, otp, max_attempts, now),
            ).fetchone()
        return self._row_to_reset(row) if row else None

    def claim_password_reset(
        self, email: str, *, now: datetime
    ) -> Optional[PasswordResetRequest]:
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM password_resets
                WHERE email = %s AND verified = TRUE AND otp_expiry > %s
                RETURNING *
                """,
                (email, now),
            ).fetchone()
        return self._row_to_reset(row) if row else None

    def delete_password_reset(self, email: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM password_resets WHERE email = %s", (email,))
            return (cur.rowcount or 0) > 0

    # refresh tokens
    def create_refresh_token(
        self, token: str, user_id: str, expires_at: datetime
    ) -> RefreshToken:
        token_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_tokens (id, token, user_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, now())
                    RETURNING *
                    """,
                    (token_id, token, user_id, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return self._row_to_refresh_token(row)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_tokens WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def rotate_refresh_token(
        self, old_token: str, new_token: str, expires_at: datetime
    ) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_tokens
                SET token = %s, expires_at = %s
                WHERE token = %s
                RETURNING *
                """,
                (new_token, expires_at, old_token),
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def delete_refresh_token(self, token: str, user_id: Optional[str] = None) -> int:
        with self._connect() as conn:
            if user_id is None:
                cur = conn.execute(
                    "DELETE FROM refresh_tokens WHERE token = %s", (token,)
                )
            else:
                cur = conn.execute(
                    "DELETE FROM refresh_tokens WHERE token = %s AND user_id = %s",
                    (token, user_id),
                )
            return cur.rowcount or 0

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_tokens WHERE user_id = %s", (user_id,)
            )
            return cur.rowcount or 0

    def list_user_refresh_tokens(self, user_id: str) -> list[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_tokens WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._row_to_refresh_token(row) for row in rows]

    def purge_expired(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        counts: Dict[str, int] = {}
        with self._connect() as conn:
            for table, column in (
                ("refresh_tokens", "expires_at"),
                ("pending_registrations", "otp_expiry"),
                ("password_resets", "otp_expiry"),
            ):
                cur = conn.execute(
                    f"DELETE FROM {table} WHERE {column} <= %s", (now,)
                )
                counts[table] = cur.rowcount or 0
        return counts
