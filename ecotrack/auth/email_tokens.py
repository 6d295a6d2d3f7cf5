"""
Ecotrack - Email Token Lifecycle

Single-use tokens for email verification and password reset.

Lifecycle:
    issue  -> record stored (prior unused tokens of the same kind are
              invalidated in the same transaction)
    consume -> record marked used + side effect (verified flag, or new
              password hash and session revocation)
    purge  -> expired records and records used more than 7 days ago

Security:
- Wrong, expired, already used and foreign-email tokens all fail with
  the same InvalidOrExpiredTokenError
- Tokens are bound to the email captured at issuance
"""

import logging
from datetime import timedelta
from typing import Optional
from uuid import UUID

from ecotrack.auth.clock import Clock, RandomSource, utcnow
from ecotrack.auth.models import EmailToken, EmailTokenKind, User
from ecotrack.auth.password import hash_token, token_fingerprint, verify_token
from ecotrack.auth.store import TokenStore, UserStore
from ecotrack.auth.tokens import DeviceInfo
from ecotrack.errors import InvalidOrExpiredTokenError, RateLimitedError


logger = logging.getLogger(__name__)

EMAIL_TOKEN_BYTES = 32
SEND_WINDOW = timedelta(hours=24)


class EmailTokenManager:
    """Issues and redeems email verification / password reset tokens."""

    def __init__(
        self,
        store: TokenStore,
        users: UserStore,
        *,
        pepper: str,
        verification_ttl: timedelta = timedelta(hours=24),
        reset_ttl: timedelta = timedelta(hours=1),
        resend_cooldown: timedelta = timedelta(minutes=5),
        daily_send_limit: int = 5,
        clock: Clock = utcnow,
        random: Optional[RandomSource] = None,
    ) -> None:
        self._store = store
        self._users = users
        self._pepper = pepper
        self._ttls = {
            EmailTokenKind.EMAIL_VERIFICATION: verification_ttl,
            EmailTokenKind.PASSWORD_RESET: reset_ttl,
        }
        self._resend_cooldown = resend_cooldown
        self._daily_send_limit = daily_send_limit
        self._clock = clock
        self._random = random or RandomSource()

    def issue(
        self,
        user: User,
        kind: EmailTokenKind,
        device: Optional[DeviceInfo] = None,
    ) -> tuple[str, EmailToken]:
        """
        Create a token for ``user`` and invalidate earlier unused ones.

        Returns:
            (plaintext token for the mail link, stored record)
        """
        now = self._clock()
        plaintext = self._random.token_hex(EMAIL_TOKEN_BYTES)
        device = device or DeviceInfo()
        record = EmailToken(
            user_id=user.id,
            email=user.email,
            kind=kind,
            lookup_digest=token_fingerprint(plaintext, self._pepper),
            token_hash=hash_token(plaintext),
            expires_at=now + self._ttls[kind],
            created_at=now,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
        )
        record = self._store.replace_email_token(record, now)
        logger.info("Issued %s token for user %s", kind.value, user.id)
        return plaintext, record

    def discard(self, token_id: UUID) -> None:
        """Delete a token whose mail could not be delivered."""
        self._store.delete_email_token(token_id)
        logger.info("Discarded undeliverable email token %s", token_id)

    def check(self, token: str, email: str, kind: EmailTokenKind) -> EmailToken:
        """
        Validate a token without consuming it.

        Raises:
            InvalidOrExpiredTokenError: Unknown, expired, used, or issued to another email
        """
        return self._match(token, email, kind)

    def consume_verification(self, token: str, email: str) -> User:
        """Redeem a verification token and mark the user's email verified."""
        record = self._match(token, email, EmailTokenKind.EMAIL_VERIFICATION)
        if not self._store.consume_verification_token(record.id, record.user_id, self._clock()):
            raise InvalidOrExpiredTokenError()
        user = self._users.get(record.user_id)
        if user is None:
            raise InvalidOrExpiredTokenError()
        logger.info("Email verified for user %s", user.id)
        return user

    def consume_reset(self, token: str, email: str, password_hash: str) -> User:
        """
        Redeem a reset token: store ``password_hash`` and revoke every
        session of the user in one transaction.
        """
        record = self._match(token, email, EmailTokenKind.PASSWORD_RESET)
        if not self._store.consume_reset_token(record.id, record.user_id, password_hash, self._clock()):
            raise InvalidOrExpiredTokenError()
        user = self._users.get(record.user_id)
        if user is None:
            raise InvalidOrExpiredTokenError()
        logger.info("Password reset completed for user %s", user.id)
        return user

    def assert_can_send(self, user_id: UUID, kind: EmailTokenKind) -> None:
        """
        Enforce the per-user send policy: at most ``daily_send_limit``
        tokens per 24 hours and one per cooldown period.

        Raises:
            RateLimitedError: With the number of seconds to wait
        """
        now = self._clock()
        sent = self._store.count_email_tokens_since(user_id, kind, now - SEND_WINDOW)
        if sent >= self._daily_send_limit:
            raise RateLimitedError(
                int(SEND_WINDOW.total_seconds()),
                "Too many emails sent. Please check your inbox or wait 24 hours.",
            )

        latest = self._store.latest_email_token(user_id, kind)
        if latest is not None:
            elapsed = now - latest.created_at
            if elapsed < self._resend_cooldown:
                wait = int((self._resend_cooldown - elapsed).total_seconds()) or 1
                raise RateLimitedError(
                    wait,
                    f"Please wait {wait} seconds before requesting another email.",
                )

    def purge(self) -> int:
        count = self._store.purge_email_tokens(self._clock())
        if count:
            logger.info("Purged %d email token(s)", count)
        return count

    def _match(self, token: str, email: str, kind: EmailTokenKind) -> EmailToken:
        if not token or not email:
            raise InvalidOrExpiredTokenError()
        record = self._store.find_email_token(token_fingerprint(token, self._pepper), kind)
        if (
            record is None
            or record.email != email.strip().lower()
            or not verify_token(token, record.token_hash)
            or not record.is_valid(self._clock())
        ):
            raise InvalidOrExpiredTokenError()
        return record
