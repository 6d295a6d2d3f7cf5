"""
Ecotrack - Token Store

Persistence for users, refresh tokens and email tokens.
Every method opens its own database session, so a store instance can
be shared by concurrent request threads.

Security:
- Records are looked up by HMAC fingerprint, never by plaintext
- State transitions (revoke, consume) are conditional updates; the
  row count tells the caller whether it won a concurrent race
- Rotation revokes the old refresh token and inserts the new one in a
  single transaction

Failures:
- Reads are idempotent and retried a bounded number of times
- Writes are never retried
- Either way, a database that stays unreachable surfaces as
  UpstreamUnavailableError
"""

import functools
import logging
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, Optional
from uuid import UUID

from sqlalchemy import delete, func, or_, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, select

from ecotrack.auth.database import SessionFactory
from ecotrack.auth.models import (
    EmailToken,
    EmailTokenKind,
    RefreshToken,
    RevocationReason,
    User,
)
from ecotrack.errors import ConflictError, UpstreamUnavailableError


logger = logging.getLogger(__name__)

# Revoked refresh tokens are kept this long for auditing
REFRESH_TOKEN_RETENTION = timedelta(days=30)

# Used email tokens are kept this long for auditing
EMAIL_TOKEN_RETENTION = timedelta(days=7)

READ_RETRY_BACKOFF_SECONDS = 0.05


def retrying_read(method):
    """Retry a read-only store method on OperationalError, then fail closed."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        attempts = self.read_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return method(self, *args, **kwargs)
            except OperationalError as exc:
                logger.warning(
                    "Store read %s failed (attempt %d/%d): %s",
                    method.__name__, attempt, attempts, exc.__class__.__name__,
                )
                if attempt == attempts:
                    raise UpstreamUnavailableError() from exc
                time.sleep(READ_RETRY_BACKOFF_SECONDS * attempt)

    return wrapper


class _Store:

    def __init__(self, session_factory: SessionFactory, read_retries: int = 2) -> None:
        self._session_factory = session_factory
        self.read_retries = max(0, read_retries)

    @contextmanager
    def _write(self) -> Iterator[Session]:
        """Session for a write; storage errors roll back and fail closed."""
        with self._session_factory() as db:
            try:
                yield db
            except OperationalError as exc:
                db.rollback()
                logger.error("Store write failed: %s", exc.__class__.__name__)
                raise UpstreamUnavailableError() from exc


class UserStore(_Store):
    """User records needed by the auth flows."""

    @retrying_read
    def get(self, user_id: UUID) -> Optional[User]:
        with self._session_factory() as db:
            return db.get(User, user_id)

    @retrying_read
    def get_by_email(self, email: str) -> Optional[User]:
        """Case-insensitive lookup; emails are stored lower-cased."""
        with self._session_factory() as db:
            statement = select(User).where(User.email == email.strip().lower())
            return db.exec(statement).first()

    def create(self, user: User) -> User:
        """
        Insert a new user.

        Raises:
            ConflictError: Email already registered (unique index)
        """
        with self._write() as db:
            db.add(user)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise ConflictError() from exc
            db.refresh(user)
            return user

    def update_password_hash(self, user_id: UUID, password_hash: str, now: datetime) -> None:
        with self._write() as db:
            db.exec(
                update(User)
                .where(User.id == user_id)
                .values(password_hash=password_hash, updated_at=now)
            )
            db.commit()


class TokenStore(_Store):
    """Refresh-token and email-token records."""

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def add_refresh_token(self, record: RefreshToken) -> RefreshToken:
        with self._write() as db:
            db.add(record)
            db.commit()
            db.refresh(record)
            return record

    @retrying_read
    def find_refresh_token(self, lookup_digest: str) -> Optional[RefreshToken]:
        with self._session_factory() as db:
            statement = select(RefreshToken).where(RefreshToken.lookup_digest == lookup_digest)
            return db.exec(statement).first()

    def rotate_refresh_token(
        self,
        old_token_id: UUID,
        new_record: RefreshToken,
        now: datetime,
    ) -> bool:
        """
        Revoke ``old_token_id`` (reason ``replaced``) and persist ``new_record``.

        Both changes commit together. The revoke only applies to a record
        that is still valid; if it matches no row (already revoked, expired,
        or rotated by a concurrent request) nothing is written.

        Returns:
            True if the rotation committed
        """
        with self._write() as db:
            result = db.exec(
                update(RefreshToken)
                .where(
                    RefreshToken.id == old_token_id,
                    RefreshToken.is_revoked == False,  # noqa: E712
                    RefreshToken.expires_at > now,
                )
                .values(
                    is_revoked=True,
                    revoked_at=now,
                    revoked_reason=RevocationReason.REPLACED,
                    last_used_at=now,
                )
            )
            if result.rowcount != 1:
                db.rollback()
                return False
            db.add(new_record)
            db.commit()
            return True

    def revoke_refresh_token(
        self,
        token_id: UUID,
        reason: RevocationReason,
        now: datetime,
    ) -> bool:
        """Revoke one token if it is not revoked yet. Returns True if it changed."""
        with self._write() as db:
            result = db.exec(
                update(RefreshToken)
                .where(
                    RefreshToken.id == token_id,
                    RefreshToken.is_revoked == False,  # noqa: E712
                )
                .values(is_revoked=True, revoked_at=now, revoked_reason=reason)
            )
            db.commit()
            return result.rowcount == 1

    def revoke_all_refresh_tokens(
        self,
        user_id: UUID,
        reason: RevocationReason,
        now: datetime,
    ) -> int:
        """Revoke every unrevoked token of a user. Returns the count."""
        with self._write() as db:
            result = db.exec(
                update(RefreshToken)
                .where(
                    RefreshToken.user_id == user_id,
                    RefreshToken.is_revoked == False,  # noqa: E712
                )
                .values(is_revoked=True, revoked_at=now, revoked_reason=reason)
            )
            db.commit()
            return result.rowcount

    @retrying_read
    def list_active_refresh_tokens(self, user_id: UUID, now: datetime) -> list[RefreshToken]:
        with self._session_factory() as db:
            statement = select(RefreshToken).where(
                RefreshToken.user_id == user_id,
                RefreshToken.is_revoked == False,  # noqa: E712
                RefreshToken.expires_at > now,
            )
            return list(db.exec(statement).all())

    def purge_refresh_tokens(self, now: datetime) -> int:
        """Delete expired tokens and tokens revoked more than 30 days ago."""
        with self._write() as db:
            result = db.exec(
                delete(RefreshToken).where(
                    or_(
                        RefreshToken.expires_at < now,
                        RefreshToken.revoked_at < now - REFRESH_TOKEN_RETENTION,
                    )
                )
            )
            db.commit()
            return result.rowcount

    # ------------------------------------------------------------------
    # Email tokens
    # ------------------------------------------------------------------

    def replace_email_token(self, record: EmailToken, now: datetime) -> EmailToken:
        """
        Persist a new email token after invalidating the user's unused
        tokens of the same kind, in one transaction.
        """
        with self._write() as db:
            revoked = db.exec(
                update(EmailToken)
                .where(
                    EmailToken.user_id == record.user_id,
                    EmailToken.kind == record.kind,
                    EmailToken.is_used == False,  # noqa: E712
                )
                .values(is_used=True, used_at=now)
            )
            db.add(record)
            db.commit()
            db.refresh(record)
            if revoked.rowcount:
                logger.debug("Invalidated %d prior %s token(s)", revoked.rowcount, record.kind.value)
            return record

    @retrying_read
    def find_email_token(self, lookup_digest: str, kind: EmailTokenKind) -> Optional[EmailToken]:
        with self._session_factory() as db:
            statement = select(EmailToken).where(
                EmailToken.lookup_digest == lookup_digest,
                EmailToken.kind == kind,
            )
            return db.exec(statement).first()

    def delete_email_token(self, token_id: UUID) -> None:
        with self._write() as db:
            db.exec(delete(EmailToken).where(EmailToken.id == token_id))
            db.commit()

    def consume_verification_token(self, token_id: UUID, user_id: UUID, now: datetime) -> bool:
        """Mark the token used and the user's email verified, atomically."""
        with self._write() as db:
            if not self._mark_used(db, token_id, now):
                db.rollback()
                return False
            db.exec(
                update(User)
                .where(User.id == user_id)
                .values(is_email_verified=True, updated_at=now)
            )
            db.commit()
            return True

    def consume_reset_token(
        self,
        token_id: UUID,
        user_id: UUID,
        password_hash: str,
        now: datetime,
    ) -> bool:
        """
        Mark the reset token used, store the new password hash and revoke
        every refresh token of the user, atomically.
        """
        with self._write() as db:
            if not self._mark_used(db, token_id, now):
                db.rollback()
                return False
            db.exec(
                update(User)
                .where(User.id == user_id)
                .values(password_hash=password_hash, updated_at=now)
            )
            db.exec(
                update(RefreshToken)
                .where(
                    RefreshToken.user_id == user_id,
                    RefreshToken.is_revoked == False,  # noqa: E712
                )
                .values(
                    is_revoked=True,
                    revoked_at=now,
                    revoked_reason=RevocationReason.SECURITY,
                )
            )
            db.commit()
            return True

    @retrying_read
    def count_email_tokens_since(self, user_id: UUID, kind: EmailTokenKind, since: datetime) -> int:
        with self._session_factory() as db:
            statement = select(func.count()).select_from(EmailToken).where(
                EmailToken.user_id == user_id,
                EmailToken.kind == kind,
                EmailToken.created_at >= since,
            )
            return db.exec(statement).one()

    @retrying_read
    def latest_email_token(self, user_id: UUID, kind: EmailTokenKind) -> Optional[EmailToken]:
        with self._session_factory() as db:
            statement = (
                select(EmailToken)
                .where(EmailToken.user_id == user_id, EmailToken.kind == kind)
                .order_by(EmailToken.created_at.desc())
            )
            return db.exec(statement).first()

    def purge_email_tokens(self, now: datetime) -> int:
        """Delete expired tokens and tokens used more than 7 days ago."""
        with self._write() as db:
            result = db.exec(
                delete(EmailToken).where(
                    or_(
                        EmailToken.expires_at < now,
                        EmailToken.used_at < now - EMAIL_TOKEN_RETENTION,
                    )
                )
            )
            db.commit()
            return result.rowcount

    # ------------------------------------------------------------------

    @staticmethod
    def _mark_used(db, token_id: UUID, now: datetime) -> bool:
        result = db.exec(
            update(EmailToken)
            .where(
                EmailToken.id == token_id,
                EmailToken.is_used == False,  # noqa: E712
                EmailToken.expires_at > now,
            )
            .values(is_used=True, used_at=now)
        )
        return result.rowcount == 1

