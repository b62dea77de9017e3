from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Protocol

from linesauth.config import Settings
from linesauth.logging import get_logger, hash_email
from linesauth.service.email import EmailService
from linesauth.service.errors import (
    AccountInactive,
    EmailNotVerified,
    InvalidCredentials,
    NotFoundError,
    TokenInvalid,
)
from linesauth.service.otp import OtpChallenge, OtpEngine
from linesauth.service.password_reset import PasswordResetManager
from linesauth.service.passwords import Argon2PasswordHasher, PasswordHasher
from linesauth.service.registration import MailQueue, PendingRegistrationManager
from linesauth.service.tokens import (
    ACCESS_TOKEN,
    REFRESH_TOKEN,
    HmacTokenSigner,
    TokenIssuer,
    TokenPair,
    TokenSigner,
)
from linesauth.storage.errors import ConstraintViolation
from linesauth.storage.models import (
    PasswordResetRequest,
    PendingRegistration,
    RefreshToken,
    Role,
    User,
)

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        full_name: str,
        *,
        password_hash: str,
        password_algo: str,
        role: str = "USER",
        is_active: bool = True,
        email_verified: bool = False,
        email_verified_at: Optional[datetime] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def touch_last_login(self, user_id: str, when: Optional[datetime] = None) -> None: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def get_pending_registration(self, email: str) -> Optional[PendingRegistration]: ...

    def get_password_reset(self, email: str) -> Optional[PasswordResetRequest]: ...

    def create_refresh_token(
        self, token: str, user_id: str, expires_at: datetime
    ) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(
        self, old_token: str, new_token: str, expires_at: datetime
    ) -> Optional[RefreshToken]: ...

    def delete_refresh_token(self, token: str, user_id: Optional[str] = None) -> int: ...

    def delete_user_refresh_tokens(self, user_id: str) -> int: ...

    def purge_expired(self, now: Optional[datetime] = None) -> Dict[str, int]: ...


@dataclass
class AuthContext:
    user_id: str
    email: str
    role: str


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair


class AuthService:
    """Credential and session lifecycle: signup, login, refresh, reset.

    Collaborators are injected; defaults are built from ``settings`` so the
    runtime only has to hand over a store and a mail transport.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        email_service: Optional[EmailService] = None,
        hasher: Optional[PasswordHasher] = None,
        otp: Optional[OtpEngine] = None,
        access_signer: Optional[TokenSigner] = None,
        refresh_signer: Optional[TokenSigner] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.logger = logger
        self.email = email_service or EmailService()
        self.hasher: PasswordHasher = hasher or Argon2PasswordHasher()
        self.otp = otp or OtpEngine()
        self.tokens = TokenIssuer(
            store,
            access_signer
            or HmacTokenSigner(
                settings.jwt_secret,
                timedelta(minutes=settings.access_token_ttl_minutes),
                issuer=settings.jwt_issuer,
                audience=settings.jwt_audience,
                token_type=ACCESS_TOKEN,
            ),
            refresh_signer
            or HmacTokenSigner(
                settings.jwt_refresh_secret,
                timedelta(minutes=settings.refresh_token_ttl_minutes),
                issuer=settings.jwt_issuer,
                audience=settings.jwt_audience,
                token_type=REFRESH_TOKEN,
            ),
            clock=self.otp.now,
        )
        self.mail_queue = MailQueue()
        self.registrations = PendingRegistrationManager(
            store,
            self.hasher,
            self.otp,
            self.email,
            self_assignable_roles=settings.self_assignable_roles,
            mail_queue=self.mail_queue,
        )
        self.password_resets = PasswordResetManager(
            store,
            self.hasher,
            self.otp,
            self.email,
            self.tokens,
            mail_queue=self.mail_queue,
        )

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    # registration
    async def request_registration(
        self, email: str, full_name: str, password: str
    ) -> OtpChallenge:
        return await self.registrations.request(email, full_name, password)

    async def resend_registration(self, email: str) -> OtpChallenge:
        return await self.registrations.resend(email)

    async def confirm_registration(
        self, email: str, otp: str, role: Optional[str] = None
    ) -> AuthResult:
        user = self.registrations.confirm(email, otp, role)
        pair = self.tokens.issue_pair(user.id)
        self._schedule_welcome(user)
        return AuthResult(user=user, tokens=pair)

    def _schedule_welcome(self, user: User) -> None:
        self.mail_queue.spawn(self._send_welcome(user))

    async def _send_welcome(self, user: User) -> None:
        try:
            sent = await asyncio.to_thread(
                self.email.send_welcome, user.email, user.full_name
            )
        except Exception as exc:
            self.logger.error(
                "welcome_email_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not sent:
            self.logger.warning("welcome_email_not_sent", user_id=user.id)

    async def wait_for_background(self) -> None:
        """Drain outstanding passcode and welcome mails (shutdown and tests)."""
        await self.mail_queue.drain()

    # sessions
    async def login(self, email: str, password: str) -> AuthResult:
        user = self.store.get_user_by_email(email)
        record = self.store.get_password_record(user.id) if user else None
        # exactly one hash verification on every path
        if user is None or record is None:
            self.hasher.verify_dummy(password)
            self.logger.warning("login_failed", email_hash=hash_email(email))
            raise InvalidCredentials()
        stored_hash, algo = record
        if algo != self.hasher.algorithm:
            self.hasher.verify_dummy(password)
            self.logger.warning("password_algo_mismatch", user_id=user.id, algo=algo)
            raise InvalidCredentials()
        if not self.hasher.verify(stored_hash, password):
            self.logger.warning("login_failed", user_id=user.id)
            raise InvalidCredentials()
        if not user.is_active:
            raise AccountInactive()
        if not user.email_verified:
            raise EmailNotVerified()
        now = self._now()
        self.store.touch_last_login(user.id, now)
        user.last_login = now
        pair = self.tokens.issue_pair(user.id)
        self.logger.info("login_succeeded", user_id=user.id)
        return AuthResult(user=user, tokens=pair)

    async def refresh(self, refresh_token: str) -> AuthResult:
        user, pair = self.tokens.rotate(refresh_token)
        return AuthResult(user=user, tokens=pair)

    async def logout(self, ctx: AuthContext, refresh_token: Optional[str] = None) -> int:
        if refresh_token:
            removed = self.tokens.revoke_token(refresh_token, ctx.user_id)
        else:
            removed = self.tokens.revoke_user(ctx.user_id)
        self.logger.info("logout", user_id=ctx.user_id, removed=removed)
        return removed

    async def logout_all(self, ctx: AuthContext) -> int:
        removed = self.tokens.revoke_user(ctx.user_id)
        self.logger.info("logout_all", user_id=ctx.user_id, removed=removed)
        return removed

    async def change_password(
        self, ctx: AuthContext, current_password: str, new_password: str
    ) -> None:
        record = self.store.get_password_record(ctx.user_id)
        if record is None or record[1] != self.hasher.algorithm:
            self.hasher.verify_dummy(current_password)
            raise InvalidCredentials("Current password is incorrect")
        if not self.hasher.verify(record[0], current_password):
            self.logger.warning("password_change_rejected", user_id=ctx.user_id)
            raise InvalidCredentials("Current password is incorrect")
        self.store.save_password(
            ctx.user_id, self.hasher.hash(new_password), self.hasher.algorithm
        )
        revoked = self.tokens.revoke_user(ctx.user_id)
        self.logger.info(
            "password_changed", user_id=ctx.user_id, sessions_revoked=revoked
        )

    # password reset
    async def request_password_reset(self, email: str) -> OtpChallenge:
        return await self.password_resets.request(email)

    async def verify_password_reset(self, email: str, otp: str) -> None:
        self.password_resets.verify(email, otp)

    async def reset_password(self, email: str, new_password: str) -> None:
        self.password_resets.reset(email, new_password)

    # access tokens
    async def authenticate(self, access_token: Optional[str]) -> AuthContext:
        if not access_token:
            raise TokenInvalid("No token provided or invalid format")
        claims = self.tokens.verify_access(access_token)
        user = self.store.get_user(str(claims["sub"]))
        if user is None:
            raise TokenInvalid("User not found")
        if not user.is_active:
            raise TokenInvalid("User account is deactivated")
        return AuthContext(user_id=user.id, email=user.email, role=user.role)

    async def get_current_user(self, ctx: AuthContext) -> User:
        user = self.store.get_user(ctx.user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    # operator helpers
    async def set_user_active(self, user_id: str, is_active: bool) -> User:
        user = self.store.set_user_active(user_id, is_active)
        if user is None:
            raise NotFoundError("User not found")
        if not is_active:
            self.tokens.revoke_user(user_id)
        self.logger.info("user_active_changed", user_id=user_id, is_active=is_active)
        return user

    async def bootstrap_admin(
        self, email: str, password: str, full_name: str = "Administrator"
    ) -> tuple[User, bool]:
        """Create a verified ADMIN, or promote the existing account. Returns ``(user, created)``."""
        password_hash = self.hasher.hash(password)
        existing = self.store.get_user_by_email(email)
        if existing is None:
            try:
                user = self.store.create_user(
                    email,
                    full_name,
                    password_hash=password_hash,
                    password_algo=self.hasher.algorithm,
                    role=Role.ADMIN.value,
                    is_active=True,
                    email_verified=True,
                    email_verified_at=self._now(),
                )
            except ConstraintViolation:
                existing = self.store.get_user_by_email(email)
                if existing is None:
                    raise
            else:
                self.logger.info("admin_bootstrapped", user_id=user.id, created=True)
                return user, True
        self.store.save_password(existing.id, password_hash, self.hasher.algorithm)
        self.store.update_user_role(existing.id, Role.ADMIN.value)
        self.store.set_user_active(existing.id, True)
        user = self.store.mark_email_verified(existing.id) or existing
        self.logger.info("admin_bootstrapped", user_id=user.id, created=False)
        return user, False

    async def purge_expired(self) -> Dict[str, int]:
        counts = await asyncio.to_thread(self.store.purge_expired, self._now())
        if any(counts.values()):
            self.logger.info("expired_records_purged", **counts)
        return counts


__all__: List[str] = ["AuthContext", "AuthResult", "AuthService", "AuthStore"]
