"""
Ecotrack - Token Issuance and Rotation

Mints access/refresh token pairs and rotates refresh tokens.

Access tokens:
- RS256 JWT produced by the injected Signer
- Claims: sub, email, iat, exp, iss, aud, jti, amr

Refresh tokens:
- 256 bits from the random source, hex encoded
- Persisted as HMAC fingerprint + bcrypt hash; the plaintext is
  returned to the caller exactly once
- Every refresh revokes the presented token (reason ``replaced``) and
  issues a new one in the same transaction, so a leaked refresh token
  is good for at most one use

Security:
- A refresh token presented again after it was replaced is treated as
  theft: every session of the owning user is revoked
- Failures return None rather than saying why
"""

import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from ecotrack.auth.clock import Clock, RandomSource, to_timestamp, utcnow
from ecotrack.auth.models import AuthMethod, RefreshToken, RevocationReason, User
from ecotrack.auth.password import hash_token, token_fingerprint, verify_token
from ecotrack.auth.signer import Signer
from ecotrack.auth.store import TokenStore, UserStore


logger = logging.getLogger(__name__)

# 256-bit refresh tokens
REFRESH_TOKEN_BYTES = 32


class DeviceInfo(BaseModel):
    """Optional client metadata stored with a refresh token."""
    user_agent: Optional[str] = Field(default=None, max_length=512)
    ip_address: Optional[str] = Field(default=None, max_length=45)
    device_id: Optional[str] = Field(default=None, max_length=255)


class TokenPair(BaseModel):
    """Tokens handed to the client after authentication."""
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = Field(..., description="Seconds until the access token expires")


class TokenIssuer:
    """Issues, rotates and revokes session credentials."""

    def __init__(
        self,
        store: TokenStore,
        users: UserStore,
        signer: Signer,
        *,
        issuer: str,
        audience: str,
        pepper: str,
        access_ttl_seconds: int = 24 * 60 * 60,
        refresh_ttl: timedelta = timedelta(days=7),
        clock: Clock = utcnow,
        random: Optional[RandomSource] = None,
    ) -> None:
        self._store = store
        self._users = users
        self._signer = signer
        self._issuer = issuer
        self._audience = audience
        self._pepper = pepper
        self._access_ttl_seconds = access_ttl_seconds
        self._refresh_ttl = refresh_ttl
        self._clock = clock
        self._random = random or RandomSource()

    @property
    def access_ttl_seconds(self) -> int:
        return self._access_ttl_seconds

    def issue_tokens(
        self,
        user: User,
        device: Optional[DeviceInfo] = None,
        auth_method: AuthMethod = AuthMethod.PASSWORD,
    ) -> TokenPair:
        """
        Mint a new access/refresh token pair for ``user``.

        The access token is signed before anything is persisted, and the
        pair is only returned once the refresh record is stored, so a
        failure at either step leaves no usable token behind.

        Raises:
            UpstreamUnavailableError: Signer or store unavailable
        """
        now = self._clock()
        access_token = self._sign_access_token(user, now, auth_method)
        plaintext, record = self._new_refresh_record(user.id, now, device, auth_method)
        self._store.add_refresh_token(record)
        logger.info("Issued session for user %s via %s", user.id, auth_method.value)
        return TokenPair(
            access_token=access_token,
            refresh_token=plaintext,
            expires_in=self._access_ttl_seconds,
        )

    def refresh(
        self,
        presented_token: str,
        device: Optional[DeviceInfo] = None,
    ) -> Optional[TokenPair]:
        """
        Exchange a valid refresh token for a new pair (rotation).

        Args:
            presented_token: Plaintext refresh token from the client
            device: Metadata for the new record; defaults to the old record's

        Returns:
            New TokenPair, or None when the token is unknown, expired,
            revoked, owned by an inactive user, or was rotated concurrently
        """
        record = self._match(presented_token)
        if record is None:
            return None

        now = self._clock()
        if record.is_revoked:
            if record.revoked_reason == RevocationReason.REPLACED:
                revoked = self._store.revoke_all_refresh_tokens(
                    record.user_id, RevocationReason.SECURITY, now
                )
                logger.warning(
                    "Refresh token reuse detected for user %s; revoked %d session(s)",
                    record.user_id, revoked,
                )
            return None
        if not record.is_valid(now):
            return None

        user = self._users.get(record.user_id)
        if user is None or not user.is_active:
            return None

        if device is None:
            device = DeviceInfo(
                user_agent=record.user_agent,
                ip_address=record.ip_address,
                device_id=record.device_id,
            )
        access_token = self._sign_access_token(user, now, AuthMethod.REFRESH)
        plaintext, new_record = self._new_refresh_record(user.id, now, device, AuthMethod.REFRESH)

        if not self._store.rotate_refresh_token(record.id, new_record, now):
            logger.info("Refresh for user %s lost a concurrent rotation", user.id)
            return None

        return TokenPair(
            access_token=access_token,
            refresh_token=plaintext,
            expires_in=self._access_ttl_seconds,
        )

    def revoke(
        self,
        presented_token: str,
        reason: RevocationReason = RevocationReason.LOGOUT,
        user_id: Optional[UUID] = None,
    ) -> bool:
        """
        Revoke a single refresh token.

        Args:
            presented_token: Plaintext refresh token
            reason: Revocation reason to record
            user_id: If given, only a token owned by this user is revoked

        Returns:
            True if a token was revoked
        """
        record = self._match(presented_token)
        if record is None or (user_id is not None and record.user_id != user_id):
            return False
        return self._store.revoke_refresh_token(record.id, reason, self._clock())

    def revoke_all(
        self,
        user_id: UUID,
        reason: RevocationReason = RevocationReason.LOGOUT_ALL,
    ) -> int:
        """Revoke every active refresh token of a user. Returns the count."""
        count = self._store.revoke_all_refresh_tokens(user_id, reason, self._clock())
        logger.info("Revoked %d session(s) for user %s (%s)", count, user_id, reason.value)
        return count

    def purge(self) -> int:
        """Delete expired refresh tokens and revoked ones past retention."""
        count = self._store.purge_refresh_tokens(self._clock())
        if count:
            logger.info("Purged %d refresh token(s)", count)
        return count

    def _match(self, presented_token: str) -> Optional[RefreshToken]:
        if not presented_token:
            return None
        record = self._store.find_refresh_token(token_fingerprint(presented_token, self._pepper))
        if record is None or not verify_token(presented_token, record.token_hash):
            return None
        return record

    def _sign_access_token(self, user: User, now: datetime, auth_method: AuthMethod) -> str:
        issued_at = to_timestamp(now)
        claims = {
            "sub": str(user.id),
            "email": user.email,
            "iat": issued_at,
            "exp": issued_at + self._access_ttl_seconds,
            "iss": self._issuer,
            "aud": self._audience,
            "jti": uuid4().hex,
            "amr": auth_method.value,
        }
        return self._signer.sign(claims)

    def _new_refresh_record(
        self,
        user_id: UUID,
        now: datetime,
        device: Optional[DeviceInfo],
        auth_method: AuthMethod,
    ) -> tuple[str, RefreshToken]:
        plaintext = self._random.token_hex(REFRESH_TOKEN_BYTES)
        device = device or DeviceInfo()
        record = RefreshToken(
            user_id=user_id,
            lookup_digest=token_fingerprint(plaintext, self._pepper),
            token_hash=hash_token(plaintext),
            expires_at=now + self._refresh_ttl,
            created_at=now,
            auth_method=auth_method,
            user_agent=device.user_agent,
            ip_address=device.ip_address,
            device_id=device.device_id,
        )
        return plaintext, record
