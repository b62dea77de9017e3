from __future__ import annotations

from typing import Optional

from linesauth.logging import get_logger, hash_email
from linesauth.service.email import OTP_PURPOSE_PASSWORD_RESET, EmailService
from linesauth.service.errors import (
    AccountInactive,
    NoResetRequest,
    NotVerified,
    OtpExpired,
)
from linesauth.service.otp import OtpChallenge, OtpEngine
from linesauth.service.passwords import PasswordHasher
from linesauth.service.registration import MailQueue, dispatch_otp
from linesauth.service.tokens import TokenIssuer
from linesauth.storage.models import User

logger = get_logger(__name__)


class PasswordResetManager:
    """Passcode-gated password reset for existing accounts.

    ``request`` answers the same way whether or not the account exists; only a
    deactivated account is refused outright.
    """

    def __init__(
        self,
        store,
        hasher: PasswordHasher,
        otp: OtpEngine,
        email_service: EmailService,
        tokens: TokenIssuer,
        *,
        mail_queue: Optional[MailQueue] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.otp = otp
        self.email_service = email_service
        self.tokens = tokens
        self.mail_queue = mail_queue or MailQueue()

    async def request(self, email: str) -> OtpChallenge:
        user = self.store.get_user_by_email(email)
        if user is None:
            logger.info("password_reset_unknown_email", email_hash=hash_email(email))
            return OtpChallenge(email=email)
        if not user.is_active:
            logger.warning("password_reset_inactive_account", user_id=user.id)
            raise AccountInactive()
        issued = self.otp.issue()
        self.store.upsert_password_reset(
            email, otp=issued.code, otp_expiry=issued.expires_at
        )
        logger.info(
            "otp_issued", purpose=OTP_PURPOSE_PASSWORD_RESET, user_id=user.id
        )
        self.mail_queue.spawn(
            dispatch_otp(
                self.email_service,
                email,
                issued.code,
                user.full_name,
                purpose=OTP_PURPOSE_PASSWORD_RESET,
            )
        )
        return OtpChallenge(email=email)

    def verify(self, email: str, otp: str) -> None:
        record = self.store.get_password_reset(email)
        if record is None:
            raise NoResetRequest()
        now = self.otp.now()
        self.otp.check(
            expected=record.otp,
            expires_at=record.otp_expiry,
            attempts=record.attempts,
            submitted=otp,
            increment=lambda: self.store.increment_password_reset_attempts(email),
            discard=lambda: self.store.delete_password_reset(email),
            missing=NoResetRequest,
            discard_on_expiry=True,
            now=now,
        )
        marked = self.store.mark_password_reset_verified(
            email, otp, max_attempts=self.otp.max_attempts, now=now
        )
        if marked is None:
            raise NoResetRequest()
        logger.info("password_reset_verified", email_hash=hash_email(email))

    def reset(self, email: str, new_password: str) -> User:
        record = self.store.get_password_reset(email)
        if record is None or not record.verified:
            raise NotVerified()
        now = self.otp.now()
        if self.otp.is_expired(record.otp_expiry, now):
            self.store.delete_password_reset(email)
            raise OtpExpired()
        user = self.store.get_user_by_email(email)
        if user is None:
            self.store.delete_password_reset(email)
            raise NoResetRequest()
        # claim before writing so a verified request can only be spent once
        if self.store.claim_password_reset(email, now=now) is None:
            raise NotVerified()
        self.store.save_password(user.id, self.hasher.hash(new_password), self.hasher.algorithm)
        revoked = self.tokens.revoke_user(user.id)
        logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        return user
