from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

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


class MemoryStore:
    """In-process backing store with JSON snapshots under ``fs_root/state``.

    Every mutation runs under a single RLock so attempt counters, OTP claims and
    refresh rotation behave like the conditional statements in PostgresStore.
    Callers receive copies; mutating a returned record never touches the store.
    """

    def __init__(self, fs_root: str = "/tmp/linesauth") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.pending_registrations: Dict[str, PendingRegistration] = {}
        self.password_resets: Dict[str, PasswordResetRequest] = {}
        # keyed by token string; rotation re-keys the same row id
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # RLock so helpers can be called with the lock already held
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # user / credentials
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
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(
                email,
                full_name,
                role=role,
                is_active=is_active,
                email_verified=email_verified,
                email_verified_at=email_verified_at,
            )
            self.users[user.id] = user
            self.credentials[user.id] = (password_hash, password_algo)
            self._persist_state()
            return replace(user)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            now = utcnow()
            user.email_verified = True
            user.email_verified_at = user.email_verified_at or now
            user.updated_at = now
            self._persist_state()
            return replace(user)

    def touch_last_login(self, user_id: str, when: Optional[datetime] = None) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login = when or utcnow()
            self._persist_state()

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self.users[user_id].updated_at = utcnow()
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

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
        with self._data_lock:
            now = utcnow()
            existing = self.pending_registrations.get(email)
            record = PendingRegistration(
                email=email,
                full_name=full_name,
                password_hash=password_hash,
                password_algo=password_algo,
                otp=otp,
                otp_expiry=otp_expiry,
                attempts=0,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self.pending_registrations[email] = record
            self._persist_state()
            return replace(record)

    def refresh_pending_registration_otp(
        self, email: str, otp: str, otp_expiry: datetime
    ) -> Optional[PendingRegistration]:
        with self._data_lock:
            record = self.pending_registrations.get(email)
            if not record:
                return None
            record.otp = otp
            record.otp_expiry = otp_expiry
            record.attempts = 0
            record.updated_at = utcnow()
            self._persist_state()
            return replace(record)

    def get_pending_registration(self, email: str) -> Optional[PendingRegistration]:
        with self._data_lock:
            record = self.pending_registrations.get(email)
            return replace(record) if record else None

    def increment_pending_registration_attempts(self, email: str) -> Optional[int]:
        with self._data_lock:
            record = self.pending_registrations.get(email)
            if not record:
                return None
            record.attempts += 1
            record.updated_at = utcnow()
            self._persist_state()
            return record.attempts

    def claim_pending_registration(
        self, email: str, otp: str, *, max_attempts: int, now: datetime
    ) -> Optional[PendingRegistration]:
        """Delete and return the record only if the code, bound and expiry still hold."""
        with self._data_lock:
            record = self.pending_registrations.get(email)
            if (
                not record
                or record.otp != otp
                or record.attempts >= max_attempts
                or record.otp_expiry <= now
            ):
                return None
            self.pending_registrations.pop(email, None)
            self._persist_state()
            return record

    def delete_pending_registration(self, email: str) -> bool:
        with self._data_lock:
            removed = self.pending_registrations.pop(email, None)
            if removed:
                self._persist_state()
            return removed is not None

    # password resets
    def upsert_password_reset(
        self, email: str, *, otp: str, otp_expiry: datetime
    ) -> PasswordResetRequest:
        with self._data_lock:
            now = utcnow()
            existing = self.password_resets.get(email)
            record = PasswordResetRequest(
                email=email,
                otp=otp,
                otp_expiry=otp_expiry,
                attempts=0,
                verified=False,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self.password_resets[email] = record
            self._persist_state()
            return replace(record)

    def get_password_reset(self, email: str) -> Optional[PasswordResetRequest]:
        with self._data_lock:
            record = self.password_resets.get(email)
            return replace(record) if record else None

    def increment_password_reset_attempts(self, email: str) -> Optional[int]:
        with self._data_lock:
            record = self.password_resets.get(email)
            if not record:
                return None
            record.attempts += 1
            record.updated_at = utcnow()
            self._persist_state()
            return record.attempts

    def mark_password_reset_verified(
        self, email: str, otp: str, *, max_attempts: int, now: datetime
    ) -> Optional[PasswordResetRequest]:
        with self._data_lock:
            record = self.password_resets.get(email)
            if (
                not record
                or record.otp != otp
                or record.attempts >= max_attempts
                or record.otp_expiry <= now
            ):
                return None
            record.verified = True
            record.updated_at = now
            self._persist_state()
            return replace(record)

    def claim_password_reset(
        self, email: str, *, now: datetime
    ) -> Optional[PasswordResetRequest]:
        """Delete and return a verified, unexpired reset request."""
        with self._data_lock:
            record = self.password_resets.get(email)
            if not record or not record.verified or record.otp_expiry <= now:
                return None
            self.password_resets.pop(email, None)
            self._persist_state()
            return record

    def delete_password_reset(self, email: str) -> bool:
        with self._data_lock:
            removed = self.password_resets.pop(email, None)
            if removed:
                self._persist_state()
            return removed is not None

    # refresh tokens
    def create_refresh_token(
        self, token: str, user_id: str, expires_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            if token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            record = RefreshToken.new(token, user_id, expires_at)
            self.refresh_tokens[token] = record
            self._persist_state()
            return replace(record)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            return replace(record) if record else None

    def rotate_refresh_token(
        self, old_token: str, new_token: str, expires_at: datetime
    ) -> Optional[RefreshToken]:
        """Swap ``old_token`` for ``new_token`` on the same row; ``None`` if already gone."""
        with self._data_lock:
            record = self.refresh_tokens.pop(old_token, None)
            if not record:
                return None
            record.token = new_token
            record.expires_at = expires_at
            self.refresh_tokens[new_token] = record
            self._persist_state()
            return replace(record)

    def delete_refresh_token(self, token: str, user_id: Optional[str] = None) -> int:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if not record or (user_id is not None and record.user_id != user_id):
                return 0
            self.refresh_tokens.pop(token, None)
            self._persist_state()
            return 1

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            doomed = [t for t, rec in self.refresh_tokens.items() if rec.user_id == user_id]
            for token in doomed:
                self.refresh_tokens.pop(token, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    def list_user_refresh_tokens(self, user_id: str) -> list[RefreshToken]:
        with self._data_lock:
            return [
                replace(rec)
                for rec in self.refresh_tokens.values()
                if rec.user_id == user_id
            ]

    def purge_expired(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        with self._data_lock:
            tokens = [t for t, rec in self.refresh_tokens.items() if rec.expires_at <= now]
            for token in tokens:
                self.refresh_tokens.pop(token, None)
            pending = [
                e for e, rec in self.pending_registrations.items() if rec.otp_expiry <= now
            ]
            for email in pending:
                self.pending_registrations.pop(email, None)
            resets = [e for e, rec in self.password_resets.items() if rec.otp_expiry <= now]
            for email in resets:
                self.password_resets.pop(email, None)
            counts = {
                "refresh_tokens": len(tokens),
                "pending_registrations": len(pending),
                "password_resets": len(resets),
            }
            if any(counts.values()):
                self._persist_state()
            return counts

    def close(self) -> None:
        with self._data_lock:
            self._persist_state()

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "pending_registrations": [
                self._serialize_pending(p) for p in self.pending_registrations.values()
            ],
            "password_resets": [
                self._serialize_reset(r) for r in self.password_resets.values()
            ],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.pending_registrations = {
            p["email"]: self._deserialize_pending(p)
            for p in data.get("pending_registrations", [])
        }
        self.password_resets = {
            r["email"]: self._deserialize_reset(r)
            for r in data.get("password_resets", [])
        }
        self.refresh_tokens = {
            t["token"]: self._deserialize_refresh_token(t)
            for t in data.get("refresh_tokens", [])
        }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "full_name": user.full_name,
            "role": user.role,
            "is_active": user.is_active,
            "email_verified": user.email_verified,
            "email_verified_at": self._serialize_datetime(user.email_verified_at),
            "last_login": self._serialize_datetime(user.last_login),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            full_name=data.get("full_name", ""),
            role=data.get("role", Role.USER.value),
            is_active=data.get("is_active", True),
            email_verified=data.get("email_verified", False),
            email_verified_at=self._deserialize_datetime(data.get("email_verified_at")),
            last_login=self._deserialize_datetime(data.get("last_login")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at") or data["created_at"]
            ),
        )

    def _serialize_pending(self, record: PendingRegistration) -> dict:
        return {
            "email": record.email,
            "full_name": record.full_name,
            "password_hash": record.password_hash,
            "password_algo": record.password_algo,
            "otp": record.otp,
            "otp_expiry": self._serialize_datetime(record.otp_expiry),
            "attempts": record.attempts,
            "created_at": self._serialize_datetime(record.created_at),
            "updated_at": self._serialize_datetime(record.updated_at),
        }

    def _deserialize_pending(self, data: dict) -> PendingRegistration:
        return PendingRegistration(
            email=data["email"],
            full_name=data["full_name"],
            password_hash=data["password_hash"],
            password_algo=data.get("password_algo", ""),
            otp=data["otp"],
            otp_expiry=self._deserialize_datetime(data["otp_expiry"]),
            attempts=int(data.get("attempts", 0)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_reset(self, record: PasswordResetRequest) -> dict:
        return {
            "email": record.email,
            "otp": record.otp,
            "otp_expiry": self._serialize_datetime(record.otp_expiry),
            "attempts": record.attempts,
            "verified": record.verified,
            "created_at": self._serialize_datetime(record.created_at),
            "updated_at": self._serialize_datetime(record.updated_at),
        }

    def _deserialize_reset(self, data: dict) -> PasswordResetRequest:
        return PasswordResetRequest(
            email=data["email"],
            otp=data["otp"],
            otp_expiry=self._deserialize_datetime(data["otp_expiry"]),
            attempts=int(data.get("attempts", 0)),
            verified=bool(data.get("verified", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_refresh_token(self, record: RefreshToken) -> dict:
        return {
            "id": record.id,
            "token": record.token,
            "user_id": record.user_id,
            "expires_at": self._serialize_datetime(record.expires_at),
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=str(data["id"]),
            token=data["token"],
            user_id=str(data["user_id"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
