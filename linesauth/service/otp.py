from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from linesauth.service.errors import AttemptsExceeded, OtpExpired, OtpInvalid
from linesauth.storage.models import utcnow

OTP_TTL = timedelta(minutes=10)
MAX_OTP_ATTEMPTS = 5
OTP_DIGITS = 6


@dataclass(frozen=True)
class IssuedOtp:
    code: str
    expires_at: datetime


class OtpEngine:
    """Six-digit passcodes with a fixed lifetime and a bounded number of guesses.

    The engine is stateless; staging managers own the records and hand them to
    ``check`` along with the store callbacks that count and discard guesses.
    """

    ttl = OTP_TTL
    max_attempts = MAX_OTP_ATTEMPTS

    def __init__(self, clock=utcnow) -> None:
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def generate(self) -> str:
        # uniform over [100000, 999999]
        return str(100000 + secrets.randbelow(900000))

    def issue(self) -> IssuedOtp:
        return IssuedOtp(code=self.generate(), expires_at=self.now() + self.ttl)

    def is_expired(self, expires_at: datetime, now: Optional[datetime] = None) -> bool:
        return expires_at <= (now or self.now())

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts

    def matches(self, expected: str, submitted: str) -> bool:
        return hmac.compare_digest(expected.encode(), (submitted or "").encode())

    def remaining(self, attempts: int) -> int:
        return max(self.max_attempts - attempts, 0)

    def check(
        self,
        *,
        expected: str,
        expires_at: datetime,
        attempts: int,
        submitted: str,
        increment: Callable[[], Optional[int]],
        discard: Callable[[], object],
        missing: Callable[[], Exception],
        discard_on_expiry: bool = False,
        now: Optional[datetime] = None,
    ) -> None:
        """Run the ordered passcode checks against a staging record.

        Returns only when ``submitted`` matches; the caller must still consume
        the record with a conditional store call. ``increment`` is the store's
        atomic counter bump and returns ``None`` once the record is gone.
        """
        if self.is_expired(expires_at, now):
            if discard_on_expiry:
                discard()
            raise OtpExpired()
        if self.exhausted(attempts):
            discard()
            raise AttemptsExceeded()
        if self.matches(expected, submitted):
            return
        new_attempts = increment()
        if new_attempts is None:
            raise missing()
        if self.exhausted(new_attempts):
            discard()
            raise AttemptsExceeded()
        raise OtpInvalid(self.remaining(new_attempts))


@dataclass(frozen=True)
class OtpChallenge:
    """What the client learns after a passcode was sent."""

    email: str
    expires_in: int = int(OTP_TTL.total_seconds())
