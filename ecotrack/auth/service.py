"""
Ecotrack - Authentication Service

Single entry point for the auth flows. Routes call these methods; the
service coordinates the hasher, token issuer, verifier, email-token
manager, mailer and biometric manager.

Security:
- Login and reset requests spend the same bcrypt work for unknown
  emails as for known ones
- Authentication failures raise generic errors (see ecotrack.errors)
- Password reset revokes every session of the user
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Optional
from uuid import UUID

from ecotrack.auth.biometric import BiometricChallenge, BiometricCredential, BiometricManager
from ecotrack.auth.clock import Clock, utcnow
from ecotrack.auth.email_tokens import EmailTokenManager
from ecotrack.auth.mailer import AuthMailer, redact_email
from ecotrack.auth.models import (
    NAME_MAX_LENGTH,
    AuthMethod,
    EmailTokenKind,
    RevocationReason,
    User,
)
from ecotrack.auth.password import (
    burn_verify,
    hash_password,
    needs_rehash,
    validate_password_strength,
    verify_password,
)
from ecotrack.auth.store import UserStore
from ecotrack.auth.tokens import DeviceInfo, TokenIssuer, TokenPair
from ecotrack.auth.verifier import AccessTokenClaims, TokenVerifier
from ecotrack.errors import (
    InvalidChallengeError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    InvalidTokenError,
    UpstreamUnavailableError,
    ValidationError,
    WeakPasswordError,
)


logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+$")

PASSWORD_RESET_MESSAGE = "If the email exists, a password reset link has been sent"


@dataclass
class AuthResult:
    """Authenticated user plus the freshly issued token pair."""
    user: User
    tokens: TokenPair


class AuthService:
    """Registration, login, sessions, email tokens and biometric login."""

    def __init__(
        self,
        *,
        users: UserStore,
        issuer: TokenIssuer,
        verifier: TokenVerifier,
        email_tokens: EmailTokenManager,
        mailer: AuthMailer,
        biometric: BiometricManager,
        clock: Clock = utcnow,
    ) -> None:
        self.users = users
        self.issuer = issuer
        self.verifier = verifier
        self.email_tokens = email_tokens
        self.mailer = mailer
        self.biometric = biometric
        self._clock = clock

    # ========================================================================
    # Registration and login
    # ========================================================================

    def register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        device: Optional[DeviceInfo] = None,
    ) -> AuthResult:
        """
        Create an account and sign it in.

        Raises:
            ValidationError: Bad email, missing names, or weak password
            ConflictError: Email already registered
        """
        email = (email or "").strip().lower()
        first_name = (first_name or "").strip()
        last_name = (last_name or "").strip()

        field_errors = []
        if not EMAIL_PATTERN.match(email):
            field_errors.append({"field": "email", "message": "Invalid email format"})
        for field_name, value in (("first_name", first_name), ("last_name", last_name)):
            if not value:
                field_errors.append({"field": field_name, "message": "This field is required"})
            elif len(value) > NAME_MAX_LENGTH:
                field_errors.append({
                    "field": field_name,
                    "message": f"Must be at most {NAME_MAX_LENGTH} characters",
                })
        for rule in validate_password_strength(password or ""):
            field_errors.append({"field": "password", "message": rule})
        if field_errors:
            raise ValidationError(field_errors)

        user = self.users.create(User(
            email=email,
            password_hash=hash_password(password),
            first_name=first_name,
            last_name=last_name,
        ))
        logger.info("Registered user %s (%s)", user.id, redact_email(email))

        tokens = self.issuer.issue_tokens(user, device, AuthMethod.PASSWORD)
        return AuthResult(user=user, tokens=tokens)

    def login(
        self,
        email: str,
        password: str,
        device: Optional[DeviceInfo] = None,
    ) -> AuthResult:
        """
        Authenticate with email and password.

        Raises:
            InvalidCredentialsError: Unknown email, wrong password, or inactive account
        """
        user = self.users.get_by_email(email or "")
        if user is None:
            burn_verify()
            logger.info("Login failed for %s: unknown email", redact_email(email or ""))
            raise InvalidCredentialsError()

        if not verify_password(password or "", user.password_hash):
            logger.info("Login failed for user %s: wrong password", user.id)
            raise InvalidCredentialsError()

        if not user.is_active:
            logger.info("Login refused for inactive user %s", user.id)
            raise InvalidCredentialsError()

        if needs_rehash(user.password_hash):
            user.password_hash = hash_password(password)
            self.users.update_password_hash(user.id, user.password_hash, self._clock())
            logger.info("Upgraded password hash for user %s", user.id)

        tokens = self.issuer.issue_tokens(user, device, AuthMethod.PASSWORD)
        return AuthResult(user=user, tokens=tokens)

    # ========================================================================
    # Sessions
    # ========================================================================

    def refresh_session(self, refresh_token: str, device: Optional[DeviceInfo] = None) -> TokenPair:
        """
        Rotate a refresh token.

        Raises:
            InvalidOrExpiredTokenError: Token unknown, expired, revoked or reused
        """
        tokens = self.issuer.refresh(refresh_token, device)
        if tokens is None:
            raise InvalidOrExpiredTokenError()
        return tokens

    def logout(
        self,
        user_id: UUID,
        refresh_token: Optional[str] = None,
        all_devices: bool = False,
    ) -> int:
        """
        End one session (the given refresh token) or all of them.

        Returns:
            Number of refresh tokens revoked
        """
        if all_devices:
            return self.issuer.revoke_all(user_id, RevocationReason.LOGOUT_ALL)
        if refresh_token:
            revoked = self.issuer.revoke(refresh_token, RevocationReason.LOGOUT, user_id=user_id)
            return 1 if revoked else 0
        return 0

    def verify_access_token(self, token: str) -> AccessTokenClaims:
        return self.verifier.verify(token)

    def authenticate(self, token: str) -> User:
        """
        Resolve a bearer token to an active user.

        Raises:
            InvalidTokenError: Invalid token, or the user no longer exists / is inactive
        """
        claims = self.verify_access_token(token)
        try:
            user_id = UUID(claims.sub)
        except ValueError:
            raise InvalidTokenError()
        user = self.users.get(user_id)
        if user is None or not user.is_active:
            raise InvalidTokenError()
        return user

    def get_user(self, user_id: UUID) -> Optional[User]:
        return self.users.get(user_id)

    # ========================================================================
    # Email verification and password reset
    # ========================================================================

    def send_email_verification(self, user: User, device: Optional[DeviceInfo] = None) -> None:
        """
        Email a verification link to ``user``.

        Raises:
            ValidationError: Email already verified
            RateLimitedError: Cooldown or daily limit reached
            UpstreamUnavailableError: Mail could not be delivered (token discarded)
        """
        if user.is_email_verified:
            raise ValidationError(
                [{"field": "email", "message": "Email is already verified"}],
                "Email is already verified",
            )
        self.email_tokens.assert_can_send(user.id, EmailTokenKind.EMAIL_VERIFICATION)

        token, record = self.email_tokens.issue(user, EmailTokenKind.EMAIL_VERIFICATION, device)
        if not self.mailer.send_verification(user, token):
            self.email_tokens.discard(record.id)
            raise UpstreamUnavailableError("Failed to send verification email")

    def confirm_email_verification(self, token: str, email: str) -> User:
        return self.email_tokens.consume_verification(token, email)

    def request_password_reset(self, email: str, device: Optional[DeviceInfo] = None) -> str:
        """
        Email a reset link if the account exists.

        Always returns the same message, whether or not the email is known.
        """
        user = self.users.get_by_email(email or "")
        if user is None or not user.is_active:
            burn_verify()
            logger.info("Password reset requested for unknown email %s", redact_email(email or ""))
            return PASSWORD_RESET_MESSAGE

        token, record = self.email_tokens.issue(user, EmailTokenKind.PASSWORD_RESET, device)
        if not self.mailer.send_password_reset(user, token):
            self.email_tokens.discard(record.id)
            logger.error("Password reset mail for user %s could not be delivered", user.id)
        return PASSWORD_RESET_MESSAGE

    def check_password_reset_token(self, token: str, email: str) -> None:
        """Raise InvalidOrExpiredTokenError unless the reset token is usable."""
        self.email_tokens.check(token, email, EmailTokenKind.PASSWORD_RESET)

    def confirm_password_reset(self, token: str, email: str, new_password: str) -> User:
        """
        Set a new password with a reset token and sign out every device.

        Raises:
            WeakPasswordError: New password violates the policy (token untouched)
            InvalidOrExpiredTokenError: Token unusable
        """
        unmet = validate_password_strength(new_password or "")
        if unmet:
            raise WeakPasswordError(unmet)
        return self.email_tokens.consume_reset(token, email, hash_password(new_password))

    # ========================================================================
    # Biometric
    # ========================================================================

    def register_biometric(
        self,
        user: User,
        device_id: str,
        credential_id: str,
        public_key: str,
        device_info: Optional[dict[str, Any]] = None,
    ) -> BiometricCredential:
        return self.biometric.register_credential(
            user.id, device_id, credential_id, public_key, device_info
        )

    def create_biometric_challenge(self, user_id: UUID, device_id: str) -> BiometricChallenge:
        return self.biometric.create_challenge(user_id, device_id)

    def verify_biometric_challenge(
        self,
        challenge: str,
        signature: str,
        device_id: str,
        device: Optional[DeviceInfo] = None,
    ) -> AuthResult:
        """
        Exchange a signed challenge for a token pair (``amr=biometric``).

        Raises:
            InvalidChallengeError: Any verification failure
        """
        credential = self.biometric.verify_challenge(challenge, signature, device_id)
        user = self.users.get(credential.user_id)
        if user is None or not user.is_active:
            logger.info("Biometric login refused for missing or inactive user %s", credential.user_id)
            raise InvalidChallengeError()

        device = (device or DeviceInfo()).model_copy(update={"device_id": device_id})
        tokens = self.issuer.issue_tokens(user, device, AuthMethod.BIOMETRIC)
        return AuthResult(user=user, tokens=tokens)

    def revoke_biometric_credential(self, user_id: UUID, credential_id: str) -> None:
        self.biometric.revoke_credential(user_id, credential_id)

    def list_biometric_credentials(self, user_id: UUID) -> list[BiometricCredential]:
        return self.biometric.list_credentials(user_id)

    def biometric_status(self, user_id: UUID, device_id: str) -> bool:
        """True when ``user_id`` has an active credential on ``device_id``."""
        return self.biometric.has_biometric(user_id, device_id)

    # ========================================================================
    # Maintenance
    # ========================================================================

    def purge_expired(self) -> dict[str, int]:
        """Delete expired token records and biometric challenges."""
        return {
            "refresh_tokens": self.issuer.purge(),
            "email_tokens": self.email_tokens.purge(),
            "biometric_challenges": self.biometric.sweep(),
        }
