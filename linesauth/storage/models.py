from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Platform roles a user account can hold."""

    USER = "USER"
    EDITOR = "EDITOR"
    AD_MANAGER = "AD_MANAGER"
    ADMIN = "ADMIN"

    @classmethod
    def parse(cls, value: str) -> "Role":
        """Accept any casing plus hyphenated spellings such as ``ad-manager``."""
        normalized = (value or "").strip().upper().replace("-", "_")
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"invalid role '{value}'") from None


@dataclass
class User:
    id: str
    email: str
    full_name: str
    role: str = Role.USER.value
    is_active: bool = True
    email_verified: bool = False
    email_verified_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        full_name: str,
        *,
        role: str = Role.USER.value,
        is_active: bool = True,
        email_verified: bool = False,
        email_verified_at: Optional[datetime] = None,
    ) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            full_name=full_name,
            role=role,
            is_active=is_active,
            email_verified=email_verified,
            email_verified_at=email_verified_at,
            created_at=now,
            updated_at=now,
        )


@dataclass
class PendingRegistration:
    """Unconfirmed signup waiting on its emailed passcode."""

    email: str
    full_name: str
    password_hash: str
    password_algo: str
    otp: str
    otp_expiry: datetime
    attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class PasswordResetRequest:
    email: str
    otp: str
    otp_expiry: datetime
    attempts: int = 0
    verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshToken:
    id: str
    token: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, token: str, user_id: str, expires_at: datetime) -> "RefreshToken":
        return cls(
            id=str(uuid.uuid4()),
            token=token,
            user_id=user_id,
            expires_at=expires_at,
        )
