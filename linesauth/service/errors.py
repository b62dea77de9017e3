from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code`` that
    clients can branch on. ``message`` is the human-readable text returned in
    the error envelope and ``detail`` carries structured extras.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# registration / reset staging


class DuplicateUser(ConflictError):
    error_code = "duplicate_user"
    default_message = "User already exists with this email"


class NoPendingRegistration(ServiceError):
    error_code = "no_pending_registration"
    default_message = "No pending registration found for this email"


class NoResetRequest(ServiceError):
    error_code = "no_reset_request"
    default_message = "No password reset request found"


class NotVerified(ServiceError):
    error_code = "not_verified"
    default_message = "Please verify OTP first"


# one-time passcodes


class OtpExpired(ServiceError):
    error_code = "otp_expired"
    default_message = "OTP has expired. Please request a new one."


class OtpInvalid(ServiceError):
    """Wrong code; ``detail['attemptsLeft']`` tells the client how many remain."""

    error_code = "otp_invalid"
    default_message = "Invalid OTP. Please try again."

    def __init__(self, attempts_left: int, message: Optional[str] = None) -> None:
        super().__init__(message, detail={"attemptsLeft": attempts_left})
        self.attempts_left = attempts_left


class AttemptsExceeded(RateLimitedError):
    error_code = "attempts_exceeded"
    default_message = "Too many failed attempts. Please start again."


# credentials and tokens


class InvalidCredentials(AuthenticationError):
    error_code = "invalid_credentials"
    default_message = "Invalid credentials"


class AccountInactive(ForbiddenError):
    error_code = "account_inactive"
    default_message = "Account is deactivated. Please contact support."


class EmailNotVerified(ForbiddenError):
    error_code = "email_not_verified"
    default_message = "Please verify your email before logging in"


class TokenInvalid(AuthenticationError):
    error_code = "token_invalid"
    default_message = "Invalid token"


class TokenExpired(AuthenticationError):
    error_code = "token_expired"
    default_message = "Token expired"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "DuplicateUser",
    "NoPendingRegistration",
    "NoResetRequest",
    "NotVerified",
    "OtpExpired",
    "OtpInvalid",
    "AttemptsExceeded",
    "InvalidCredentials",
    "AccountInactive",
    "EmailNotVerified",
    "TokenInvalid",
    "TokenExpired",
]
