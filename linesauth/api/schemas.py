from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from linesauth.storage.models import Role, User


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi-override characters, then NFKC-normalize."""
    # U+200B..U+200D and U+FEFF
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)

    # U+202A-U+202E, U+2066-U+2069
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "duplicate_user",
    "no_pending_registration",
    "no_reset_request",
    "not_verified",
    "otp_expired",
    "otp_invalid",
    "attempts_exceeded",
    "invalid_credentials",
    "account_inactive",
    "email_not_verified",
    "token_invalid",
    "token_expired",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable, machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Uniform response wrapper for every route."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("Valid email is required")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Valid email is required")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Valid email is required")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Valid email is required")
    return normalized


def validate_password_strength(value: str) -> str:
    """New passwords: 8-128 chars with lower, upper, digit and a symbol."""
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters long")
    if len(value) > 128:
        raise ValueError("Password must be at most 128 characters long")
    if not (
        re.search(r"[a-z]", value)
        and re.search(r"[A-Z]", value)
        and re.search(r"\d", value)
        and re.search(r"[^A-Za-z0-9\s]", value)
    ):
        raise ValueError(
            "Password must contain at least one uppercase letter, one lowercase letter, "
            "one number, and one special character"
        )
    return value


def _validate_full_name(value: str) -> str:
    trimmed = _normalize_unicode(value).strip()
    if not 2 <= len(trimmed) <= 100:
        raise ValueError("Full name must be between 2 and 100 characters")
    return trimmed


def _validate_role(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    try:
        return Role.parse(value).value
    except ValueError:
        raise ValueError("Invalid role")


class CamelModel(BaseModel):
    """camelCase on the wire; snake_case field names are accepted too."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, serialize_by_alias=True
    )


class OtpRequest(CamelModel):
    email: str
    full_name: str
    password: str = Field(..., max_length=1024)

    @field_validator("email")
    @classmethod
    def _validate_otp_email(cls, value: str) -> str:
        return validate_email(value)

    @field_validator("full_name")
    @classmethod
    def _validate_otp_full_name(cls, value: str) -> str:
        return _validate_full_name(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password_strength(value)


class EmailOnlyRequest(CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return validate_email(value)


class OtpVerifyRequest(CamelModel):
    email: str
    otp: str = Field(..., pattern=r"^\d{6}$")

    @field_validator("email")
    @classmethod
    def _validate_verify_email(cls, value: str) -> str:
        return validate_email(value)


class RegisterConfirmRequest(OtpVerifyRequest):
    role: Optional[str] = Field(default=None, max_length=32)

    @field_validator("role")
    @classmethod
    def _validate_requested_role(cls, value: Optional[str]) -> Optional[str]:
        return _validate_role(value)


class LoginRequest(CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=1024)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return validate_email(value)


class TokenRefreshRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class LogoutRequest(CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class PasswordChangeRequest(CamelModel):
    current_password: str = Field(..., min_length=1, max_length=1024)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return validate_password_strength(value)


class PasswordResetConfirmRequest(CamelModel):
    email: str
    new_password: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return validate_email(value)

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return validate_password_strength(value)


class UserResponse(CamelModel):
    id: str
    email: str
    full_name: str
    role: str
    is_active: bool
    email_verified: bool
    email_verified_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            full_name=user.full_name,
            role=user.role,
            is_active=user.is_active,
            email_verified=user.email_verified,
            email_verified_at=user.email_verified_at,
            last_login=user.last_login,
            created_at=user.created_at,
        )


class AuthTokensResponse(CamelModel):
    user: UserResponse
    access_token: str
    refresh_token: str


class OtpChallengeResponse(CamelModel):
    email: str
    expires_in: int


class MessageResponse(CamelModel):
    success: bool = True
    message: str


class CurrentUserResponse(CamelModel):
    user: UserResponse
