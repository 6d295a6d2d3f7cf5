"""
Ecotrack - Authentication Database Models

SQLModel-based models for users and the persisted token records.
Uses PostgreSQL for production, SQLite for local development.

Security:
- Passwords stored as bcrypt hashes only
- Refresh and email tokens stored as a lookup fingerprint plus a bcrypt
  hash; plaintext tokens are never persisted
- All timestamps in UTC
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import SQLModel, Field
from sqlalchemy import Column, String, Boolean, DateTime, Enum as SQLEnum

from ecotrack.auth.clock import utcnow


# first_name and last_name column width
NAME_MAX_LENGTH = 50


class RevocationReason(str, Enum):
    """Why a refresh token stopped being valid."""
    LOGOUT = "logout"
    LOGOUT_ALL = "logout_all"
    SECURITY = "security"
    EXPIRED = "expired"
    REPLACED = "replaced"


class EmailTokenKind(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


class AuthMethod(str, Enum):
    """How the session behind a refresh token was established."""
    PASSWORD = "password"
    REFRESH = "refresh"
    BIOMETRIC = "biometric"


class User(SQLModel, table=True):
    """
    User account for authentication.

    Attributes:
        id: Unique identifier (UUIDv4)
        email: Login identifier (unique, lower-cased)
        password_hash: bcrypt hash (never store plaintext)
        first_name / last_name: Display name used in outgoing mail
        is_email_verified: Flipped by email verification
        is_active: Soft-delete flag; inactive users cannot login
    """
    __tablename__ = "users"

    id: UUID = Field(
        default_factory=uuid4,
        primary_key=True,
        description="Unique user identifier"
    )
    email: str = Field(
        sa_column=Column(String(255), unique=True, index=True, nullable=False),
        description="User email address (login identifier)"
    )
    password_hash: str = Field(
        sa_column=Column(String(255), nullable=False),
        description="bcrypt password hash"
    )
    first_name: str = Field(
        sa_column=Column(String(NAME_MAX_LENGTH), nullable=False),
    )
    last_name: str = Field(
        sa_column=Column(String(NAME_MAX_LENGTH), nullable=False),
    )
    is_email_verified: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, default=False),
        description="Whether the email address has been confirmed"
    )
    is_active: bool = Field(
        default=True,
        sa_column=Column(Boolean, nullable=False, default=True),
        description="Whether user can authenticate"
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, default=utcnow),
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow),
    )


class RefreshToken(SQLModel, table=True):
    """
    Refresh token record (one per issued session credential).

    A record is valid iff it is not revoked and ``now < expires_at``.
    Revoked records are kept for 30 days for auditing.

    Attributes:
        lookup_digest: HMAC-SHA256 fingerprint used to find the record
        token_hash: bcrypt hash used to confirm the match
        revoked_reason: One of RevocationReason
        auth_method: How the session was established (password/refresh/biometric)
        user_agent / ip_address / device_id: Optional device metadata
    """
    __tablename__ = "refresh_tokens"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(
        foreign_key="users.id",
        nullable=False,
        index=True,
    )
    lookup_digest: str = Field(
        sa_column=Column(String(64), unique=True, index=True, nullable=False),
    )
    token_hash: str = Field(
        sa_column=Column(String(60), nullable=False),
    )
    expires_at: datetime = Field(
        sa_column=Column(DateTime, nullable=False, index=True),
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, default=utcnow),
    )
    is_revoked: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, default=False, index=True),
    )
    revoked_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime, nullable=True),
    )
    revoked_reason: Optional[RevocationReason] = Field(
        default=None,
        sa_column=Column(SQLEnum(RevocationReason), nullable=True),
    )
    auth_method: AuthMethod = Field(
        default=AuthMethod.PASSWORD,
        sa_column=Column(SQLEnum(AuthMethod), nullable=False, default=AuthMethod.PASSWORD),
    )
    user_agent: Optional[str] = Field(
        default=None,
        sa_column=Column(String(512), nullable=True),
    )
    ip_address: Optional[str] = Field(
        default=None,
        sa_column=Column(String(45), nullable=True),
    )
    device_id: Optional[str] = Field(
        default=None,
        sa_column=Column(String(255), nullable=True),
    )
    last_used_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime, nullable=True),
    )

    def is_valid(self, now: datetime) -> bool:
        return not self.is_revoked and now < self.expires_at


class EmailToken(SQLModel, table=True):
    """
    Single-use token proving control of an email address.

    ``email`` is captured at issuance and matched on redemption, so a
    later change of the user's address does not redeem old links.
    Valid iff not used and ``now < expires_at``.
    """
    __tablename__ = "email_tokens"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(
        foreign_key="users.id",
        nullable=False,
        index=True,
    )
    email: str = Field(
        sa_column=Column(String(255), nullable=False, index=True),
    )
    kind: EmailTokenKind = Field(
        sa_column=Column(SQLEnum(EmailTokenKind), nullable=False, index=True),
    )
    lookup_digest: str = Field(
        sa_column=Column(String(64), unique=True, index=True, nullable=False),
    )
    token_hash: str = Field(
        sa_column=Column(String(60), nullable=False),
    )
    expires_at: datetime = Field(
        sa_column=Column(DateTime, nullable=False),
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, default=utcnow),
    )
    is_used: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, default=False, index=True),
    )
    used_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime, nullable=True),
    )
    ip_address: Optional[str] = Field(
        default=None,
        sa_column=Column(String(45), nullable=True),
    )
    user_agent: Optional[str] = Field(
        default=None,
        sa_column=Column(String(512), nullable=True),
    )

    def is_valid(self, now: datetime) -> bool:
        return not self.is_used and now < self.expires_at
