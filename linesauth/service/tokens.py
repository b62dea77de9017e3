from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

from linesauth.logging import get_logger
from linesauth.service.errors import AccountInactive, TokenExpired, TokenInvalid
from linesauth.storage.models import RefreshToken, User, utcnow

logger = get_logger(__name__)

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"


class TokenSigner(Protocol):
    token_type: str

    def issue(self, subject: str) -> tuple[str, datetime]: ...

    def verify(self, token: str) -> dict[str, Any]: ...


class HmacTokenSigner:
    """HS256 JWT signer bound to one secret and one ``token_type``.

    ``verify`` raises TokenInvalid for anything malformed or mis-scoped and
    TokenExpired only once the token is otherwise valid.
    """

    def __init__(
        self,
        secret: str,
        ttl: timedelta,
        *,
        issuer: str,
        audience: str,
        token_type: str,
        leeway: timedelta = timedelta(0),
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self._secret = secret.encode()
        self.ttl = ttl
        self.issuer = issuer
        self.audience = audience
        self.token_type = token_type
        self._leeway = leeway

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(self, subject: str) -> tuple[str, datetime]:
        now = datetime.now(timezone.utc)
        expires_at = now + self.ttl
        payload = {
            "sub": subject,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": str(uuid.uuid4()),
            "token_type": self.token_type,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        # exp is whole seconds; report the expiry the token actually carries
        return f"{signing_input}.{self._sign(signing_input)}", datetime.fromtimestamp(
            payload["exp"], tz=timezone.utc
        )

    def verify(self, token: str) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = (token or "").split(".")
        except ValueError:
            raise TokenInvalid()

        # reject alg confusion before touching the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed", token_type=self.token_type)
            raise TokenInvalid()
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", token_type=self.token_type)
            raise TokenInvalid()

        signing_input = f"{header_b64}.{payload_b64}"
        # bytes on both sides; compare_digest rejects non-ASCII str
        if not hmac.compare_digest(
            self._sign(signing_input).encode(),
            sig_b64.encode("utf-8", "surrogatepass"),
        ):
            raise TokenInvalid()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalid()
        if not isinstance(payload, dict):
            raise TokenInvalid()
        if payload.get("iss") != self.issuer:
            raise TokenInvalid()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenInvalid()
        if payload.get("token_type") != self.token_type or not payload.get("sub"):
            raise TokenInvalid()
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            raise TokenInvalid()
        if exp_ts <= time.time() - self._leeway.total_seconds():
            raise TokenExpired()
        return payload


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


class TokenIssuer:
    """Mints access/refresh pairs and owns the server-side refresh records."""

    def __init__(
        self,
        store,
        access_signer: TokenSigner,
        refresh_signer: TokenSigner,
        *,
        clock=utcnow,
    ) -> None:
        self.store = store
        self.access_signer = access_signer
        self.refresh_signer = refresh_signer
        self._clock = clock

    def _mint(self, user_id: str) -> TokenPair:
        access, access_exp = self.access_signer.issue(user_id)
        refresh, refresh_exp = self.refresh_signer.issue(user_id)
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def issue_pair(self, user_id: str) -> TokenPair:
        pair = self._mint(user_id)
        self.store.create_refresh_token(
            pair.refresh_token, user_id, pair.refresh_expires_at
        )
        logger.info("refresh_token_issued", user_id=user_id)
        return pair

    def rotate(self, old_token: str) -> tuple[User, TokenPair]:
        """Exchange a refresh token for a new pair, single-use.

        The store swap is conditional on the old string, so of two concurrent
        callers presenting the same token only one gets a pair back.
        """
        invalid = TokenInvalid("Invalid or expired refresh token")
        try:
            claims = self.refresh_signer.verify(old_token)
        except TokenExpired:
            if self.store.delete_refresh_token(old_token):
                logger.info("refresh_token_expired_removed")
            raise
        record: Optional[RefreshToken] = self.store.get_refresh_token(old_token)
        if record is None:
            logger.warning("refresh_token_unknown", token_prefix=old_token[:8])
            raise invalid
        if record.expires_at <= self._clock():
            self.store.delete_refresh_token(old_token)
            raise TokenExpired()
        if claims.get("sub") != record.user_id:
            logger.warning("refresh_token_subject_mismatch", user_id=record.user_id)
            raise invalid
        user = self.store.get_user(record.user_id)
        if user is None:
            self.store.delete_refresh_token(old_token)
            raise invalid
        if not user.is_active:
            self.store.delete_refresh_token(old_token)
            raise AccountInactive()

        pair = self._mint(user.id)
        rotated = self.store.rotate_refresh_token(
            old_token, pair.refresh_token, pair.refresh_expires_at
        )
        if rotated is None:
            logger.warning("refresh_token_rotation_lost", user_id=user.id)
            raise invalid
        logger.info("refresh_token_rotated", user_id=user.id, token_id=rotated.id)
        return user, pair

    def revoke_user(self, user_id: str) -> int:
        removed = self.store.delete_user_refresh_tokens(user_id)
        logger.info("refresh_tokens_revoked", user_id=user_id, count=removed)
        return removed

    def revoke_token(self, token: str, user_id: Optional[str] = None) -> int:
        removed = self.store.delete_refresh_token(token, user_id)
        logger.info("refresh_token_revoked", user_id=user_id, count=removed)
        return removed

    def verify_access(self, token: str) -> dict[str, Any]:
        return self.access_signer.verify(token)
