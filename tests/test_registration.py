"""Unit tests for staged signup with emailed passcodes."""

import asyncio
from datetime import timedelta

import pytest

from conftest import GatedEmailService, RecordingEmailService, fast_hasher, mailed_code
from linesauth.config import Settings
from linesauth.service.auth import AuthService
from linesauth.service.errors import (
    AttemptsExceeded,
    DuplicateUser,
    ForbiddenError,
    NoPendingRegistration,
    OtpExpired,
    OtpInvalid,
    ValidationError,
)
from linesauth.service.otp import OtpEngine
from linesauth.storage.models import Role, utcnow

EMAIL = "new.reader@example.com"
PASSWORD = "Str0ng!Pass"


class MutableClock:
    def __init__(self):
        self.current = utcnow()

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def clocked_service(memory_store, settings, mailer, clock):
    return AuthService(
        memory_store,
        settings,
        email_service=mailer,
        hasher=fast_hasher(),
        otp=OtpEngine(clock=clock),
    )


async def test_request_stages_hashed_password_and_mails_code(auth_service, memory_store, mailer):
    challenge = await auth_service.request_registration(EMAIL, "New Reader", PASSWORD)
    assert challenge.email == EMAIL
    assert challenge.expires_in == 600

    record = memory_store.get_pending_registration(EMAIL)
    assert record.password_hash != PASSWORD
    assert record.password_algo == "argon2id"
    assert record.attempts == 0
    assert await mailed_code(mailer, EMAIL) == record.otp
    assert memory_store.get_user_by_email(EMAIL) is None


async def test_request_rejects_existing_account(auth_service, memory_store):
    memory_store.create_user(EMAIL, "Taken", password_hash="h", password_algo="argon2id")
    with pytest.raises(DuplicateUser):
        await auth_service.request_registration(EMAIL, "New Reader", PASSWORD)
    assert memory_store.get_pending_registration(EMAIL) is None


async def test_confirm_creates_verified_user_and_tokens(auth_service, memory_store, mailer):
    await auth_service.request_registration(EMAIL, "New Reader", PASSWORD)
    result = await auth_service.confirm_registration(EMAIL, await mailed_code(mailer, EMAIL))
    await auth_service.wait_for_background()

    user = result.user
    assert user.email == EMAIL
    assert user.full_name == "New Reader"
    assert user.role == Role.USER.value
    assert user.is_active and user.email_verified
    assert user.email_verified_at is not None
    assert result.tokens.access_token and result.tokens.refresh_token
    assert memory_store.get_pending_registration(EMAIL) is None
    assert memory_store.get_refresh_token(result.tokens.refresh_token).user_id == user.id
    assert any(m.get("purpose") == "welcome" for m in mailer.sent)

    # staged password carries over to the account
    login = await auth_service.login(EMAIL, PASSWORD)
    assert login.user.id == user.id


async def test_confirm_with_requested_role(auth_service, mailer):
    await auth_service.request_registration(EMAIL, "New Reader", PASSWORD)
    result = await auth_service.confirm_registration(EMAIL, await mailed_code(mailer, EMAIL), "ad-manager")
    assert result.user.role == Role.AD_MANAGER.value


async def test_invalid_role_is_validation_error(auth_service, mailer, memory_store):
    await auth_service.request_registration(EMAIL, "New Reader", PASSWORD)
    with pytest.raises(ValidationError):
        await auth_service.confirm_registration(EMAIL, await mailed_code(mailer, EMAIL), "wizard")
    # nothing consumed
    assert memory_store.get_pending_registration(EMAIL).attempts == 0


async def test_restricted_role_is_forbidden(memory_store, mailer):
    settings = Settings(
        jwt_secret="unit-access-secret-0123456789-abcdefghijklmnop",
        jwt_refresh_secret="unit-refresh-secret-0123456789-abcdefghijklmnop",
        self_assignable_roles="USER,EDITOR",
    )
    service = AuthService(memory_store, settings, email_service=mailer, hasher=fast_hasher())
    await service.request_registration(EMAIL, "New Reader", PASSWORD)
    with pytest.raises(ForbiddenError):
        await service.confirm_registration(EMAIL, await mailed_code(mailer, EMAIL), "ADMIN")
    result = await service.confirm_registration(EMAIL, await mailed_code(mailer, EMAIL), "editor")
    assert result.user.role == Role.EDITOR.value


async def test_wrong_code_counts_down_then_discards(auth_service, memory_store, mailer):
    await auth_service.request_registration(EMAIL, "New Reader", PASSWORD)
    code = await mailed_code(mailer, EMAIL)
    wrong = "000000" if code != "000000" else "111111"

    for expected_left in (4, 3, 2, 1):
        with pytest.raises(OtpInvalid) as excinfo:
            await auth_service.confirm_registration(EMAIL, wrong)
        assert excinfo.value.detail == {"attemptsLeft": expected_left}

    with pytest.raises(AttemptsExceeded):
        await auth_service.confirm_registration(EMAIL, wrong)
    assert memory_store.get_pending_registration(EMAIL) is None

    with pytest.raises(NoPendingRegistration):
        await auth_service.confirm_registration(EMAIL, code)


async def test_expired_code_is_kept_for_resend(clocked_service, memory_store, mailer, clock):
    await clocked_service.request_registration(EMAIL, "New Reader", PASSWORD)
    code = await mailed_code(mailer, EMAIL)
    clock.advance(minutes=10)

    with pytest.raises(OtpExpired):
        await clocked_service.confirm_registration(EMAIL, code)
    assert memory_store.get_pending_registration(EMAIL) is not None

    await clocked_service.resend_registration(EMAIL)
    fresh = await mailed_code(mailer, EMAIL)
    result = await clocked_service.confirm_registration(EMAIL, fresh)
    assert result.user.email == EMAIL


async def test_resend_resets_attempts_and_replaces_code(auth_service, memory_store, mailer):
    await auth_service.request_registration(EMAIL, "New Reader", PASSWORD)
    first = await mailed_code(mailer, EMAIL)
    wrong = "000000" if first != "000000" else "111111"
    with pytest.raises(OtpInvalid):
        await auth_service.confirm_registration(EMAIL, wrong)

    await auth_service.resend_registration(EMAIL)
    record = memory_store.get_pending_registration(EMAIL)
    assert record.attempts == 0
    assert record.otp == await mailed_code(mailer, EMAIL)
    assert len([m for m in mailer.sent if m.get("purpose") == "registration"]) == 2


async def test_resend_without_pending(auth_service):
    with pytest.raises(NoPendingRegistration):
        await auth_service.resend_registration("nobody@example.com")


async def test_second_request_replaces_staged_signup(auth_service, memory_store, mailer):
    await auth_service.request_registration(EMAIL, "First Name", PASSWORD)
    await auth_service.wait_for_background()
    await auth_service.request_registration(EMAIL, "Second Name", "An0ther!Pass")
    record = memory_store.get_pending_registration(EMAIL)
    assert record.full_name == "Second Name"
    result = await auth_service.confirm_registration(EMAIL, await mailed_code(mailer, EMAIL))
    await auth_service.login(EMAIL, "An0ther!Pass")
    assert result.user.full_name == "Second Name"


async def test_mail_failure_does_not_fail_request(memory_store, settings):
    service = AuthService(
        memory_store,
        settings,
        email_service=RecordingEmailService(fail=True),
        hasher=fast_hasher(),
    )
    challenge = await service.request_registration(EMAIL, "New Reader", PASSWORD)
    assert challenge.email == EMAIL
    assert memory_store.get_pending_registration(EMAIL) is not None
    await service.wait_for_background()


async def test_account_created_concurrently_maps_to_duplicate(auth_service, memory_store, mailer):
    await auth_service.request_registration(EMAIL, "New Reader", PASSWORD)
    memory_store.create_user(EMAIL, "Raced", password_hash="h", password_algo="argon2id")
    with pytest.raises(DuplicateUser):
        await auth_service.confirm_registration(EMAIL, await mailed_code(mailer, EMAIL))


async def test_request_does_not_wait_for_mail_delivery(memory_store, settings):
    mailer = GatedEmailService()
    service = AuthService(memory_store, settings, email_service=mailer, hasher=fast_hasher())

    challenge = await asyncio.wait_for(
        service.request_registration(EMAIL, "New Reader", PASSWORD), timeout=2
    )
    assert challenge.email == EMAIL
    assert mailer.sent == []

    mailer.gate.set()
    await service.wait_for_background()
    assert mailer.last_code(EMAIL) == memory_store.get_pending_registration(EMAIL).otp
