from __future__ import annotations

import asyncio
from typing import Iterable, Optional

from linesauth.logging import get_logger, hash_email
from linesauth.service.email import OTP_PURPOSE_REGISTRATION, EmailService
from linesauth.service.errors import (
    DuplicateUser,
    ForbiddenError,
    NoPendingRegistration,
    ValidationError,
)
from linesauth.service.otp import OtpChallenge, OtpEngine
from linesauth.service.passwords import PasswordHasher
from linesauth.storage.errors import ConstraintViolation
from linesauth.storage.models import Role, User

logger = get_logger(__name__)


async def dispatch_otp(
    email_service: EmailService,
    to_email: str,
    code: str,
    full_name: str,
    *,
    purpose: str,
) -> bool:
    """Send a passcode mail off the event loop; a failed send is only logged."""
    try:
        sent = await asyncio.to_thread(
            email_service.send_otp_code, to_email, code, full_name, purpose=purpose
        )
    except Exception as exc:
        logger.error(
            "otp_email_dispatch_failed",
            email_hash=hash_email(to_email),
            purpose=purpose,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return False
    if not sent:
        logger.warning(
            "otp_email_not_sent", email_hash=hash_email(to_email), purpose=purpose
        )
    return sent


class MailQueue:
    """Fire-and-forget mail tasks, tracked so shutdown and tests can drain them."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        pending = list(self._tasks)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


class PendingRegistrationManager:
    """Staging area for signups that have not proven control of their email."""

    def __init__(
        self,
        store,
        hasher: PasswordHasher,
        otp: OtpEngine,
        email_service: EmailService,
        *,
        self_assignable_roles: Optional[Iterable[str]] = None,
        mail_queue: Optional[MailQueue] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.otp = otp
        self.email_service = email_service
        self.mail_queue = mail_queue or MailQueue()
        roles = self_assignable_roles or [role.value for role in Role]
        self.self_assignable_roles = frozenset(Role.parse(r).value for r in roles)

    async def request(self, email: str, full_name: str, password: str) -> OtpChallenge:
        if self.store.get_user_by_email(email) is not None:
            raise DuplicateUser()
        password_hash = self.hasher.hash(password)
        issued = self.otp.issue()
        self.store.upsert_pending_registration(
            email,
            full_name,
            password_hash=password_hash,
            password_algo=self.hasher.algorithm,
            otp=issued.code,
            otp_expiry=issued.expires_at,
        )
        logger.info(
            "otp_issued", purpose=OTP_PURPOSE_REGISTRATION, email_hash=hash_email(email)
        )
        self.mail_queue.spawn(
            dispatch_otp(
                self.email_service,
                email,
                issued.code,
                full_name,
                purpose=OTP_PURPOSE_REGISTRATION,
            )
        )
        return OtpChallenge(email=email)

    async def resend(self, email: str) -> OtpChallenge:
        record = self.store.get_pending_registration(email)
        if record is None:
            raise NoPendingRegistration()
        issued = self.otp.issue()
        refreshed = self.store.refresh_pending_registration_otp(
            email, issued.code, issued.expires_at
        )
        if refreshed is None:
            raise NoPendingRegistration()
        logger.info(
            "otp_resent", purpose=OTP_PURPOSE_REGISTRATION, email_hash=hash_email(email)
        )
        self.mail_queue.spawn(
            dispatch_otp(
                self.email_service,
                email,
                issued.code,
                refreshed.full_name,
                purpose=OTP_PURPOSE_REGISTRATION,
            )
        )
        return OtpChallenge(email=email)

    def resolve_role(self, role: Optional[str]) -> str:
        if not role:
            return Role.USER.value
        try:
            resolved = Role.parse(role).value
        except ValueError:
            raise ValidationError("Invalid role", detail={"field": "role"})
        if resolved not in self.self_assignable_roles:
            raise ForbiddenError(
                "Role cannot be self-assigned", detail={"field": "role"}
            )
        return resolved

    def confirm(self, email: str, otp: str, role: Optional[str] = None) -> User:
        """Promote the staged signup into a verified, active user.

        Expired records are left in place so ``resend`` can still find them.
        """
        record = self.store.get_pending_registration(email)
        if record is None:
            raise NoPendingRegistration()
        resolved_role = self.resolve_role(role)
        now = self.otp.now()
        self.otp.check(
            expected=record.otp,
            expires_at=record.otp_expiry,
            attempts=record.attempts,
            submitted=otp,
            increment=lambda: self.store.increment_pending_registration_attempts(email),
            discard=lambda: self.store.delete_pending_registration(email),
            missing=NoPendingRegistration,
            now=now,
        )
        claimed = self.store.claim_pending_registration(
            email, otp, max_attempts=self.otp.max_attempts, now=now
        )
        if claimed is None:
            raise NoPendingRegistration()
        try:
            user = self.store.create_user(
                claimed.email,
                claimed.full_name,
                password_hash=claimed.password_hash,
                password_algo=claimed.password_algo,
                role=resolved_role,
                is_active=True,
                email_verified=True,
                email_verified_at=now,
            )
        except ConstraintViolation:
            raise DuplicateUser()
        logger.info("registration_confirmed", user_id=user.id, role=user.role)
        return user
