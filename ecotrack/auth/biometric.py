"""
Ecotrack - Biometric Challenge/Response

Device-bound public-key credentials and single-use login challenges.

Flow:
1. Authenticated client registers (device_id, credential_id, public_key)
2. Client requests a challenge for (user, device)
3. Device signs the challenge with the key held in its secure enclave
4. Server verifies the signature, consumes the challenge, and the
   caller mints a token pair tagged ``amr=biometric``

Supported keys: EC P-256 (ECDSA-SHA256) and RSA >= 2048 bits
(PKCS#1 v1.5 SHA-256), as base64 DER SubjectPublicKeyInfo or PEM.

Security:
- Challenges are 256-bit random, expire after 5 minutes and are removed
  from the registry before the signature is checked, so each one can be
  attempted once
- Every verification failure raises the same InvalidChallengeError

State is process-local. Multi-instance deployments need a shared
registry implementation with the same interface.
"""

import base64
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID, uuid4

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa

from ecotrack.auth.clock import Clock, RandomSource, utcnow
from ecotrack.errors import (
    InvalidChallengeError,
    NoCredentialError,
    NotFoundError,
    ValidationError,
)


logger = logging.getLogger(__name__)

CHALLENGE_BYTES = 32
MIN_RSA_KEY_SIZE = 2048


@dataclass
class BiometricCredential:
    user_id: UUID
    device_id: str
    credential_id: str
    public_key: str
    id: str = field(default_factory=lambda: str(uuid4()))
    device_info: dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None


@dataclass
class BiometricChallenge:
    challenge: str
    user_id: UUID
    device_id: str
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at


# ============================================================================
# Key handling
# ============================================================================

def _b64decode(value: str) -> bytes:
    """Decode standard or URL-safe base64, with or without padding."""
    value = value.strip().replace("+", "-").replace("/", "_")
    value += "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value)


def load_public_key(encoded: str):
    """
    Parse a registered public key.

    Raises:
        ValueError: Undecodable key, or a type/size that is not supported
    """
    try:
        if "-----BEGIN" in encoded:
            key = serialization.load_pem_public_key(encoded.encode("ascii"))
        else:
            key = serialization.load_der_public_key(_b64decode(encoded))
    except UnsupportedAlgorithm as exc:
        raise ValueError("Unsupported key algorithm") from exc

    if isinstance(key, ec.EllipticCurvePublicKey):
        if not isinstance(key.curve, ec.SECP256R1):
            raise ValueError("EC keys must use the P-256 curve")
    elif isinstance(key, rsa.RSAPublicKey):
        if key.key_size < MIN_RSA_KEY_SIZE:
            raise ValueError("RSA keys must be at least 2048 bits")
    else:
        raise ValueError("Unsupported key type")
    return key


def verify_signature(public_key: str, message: str, signature: str) -> bool:
    """Check ``signature`` over the UTF-8 ``message``. Never raises."""
    try:
        key = load_public_key(public_key)
        raw_signature = _b64decode(signature)
    except ValueError:
        return False

    data = message.encode("utf-8")
    try:
        if isinstance(key, ec.EllipticCurvePublicKey):
            key.verify(raw_signature, data, ec.ECDSA(hashes.SHA256()))
        else:
            key.verify(raw_signature, data, padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature:
        return False
    return True


# ============================================================================
# Registry
# ============================================================================

class BiometricRegistry:
    """
    In-memory credential and challenge storage.

    All access goes through the lock; returned records are copies, so
    callers never mutate shared state directly.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._credentials: dict[str, BiometricCredential] = {}
        self._challenges: dict[str, BiometricChallenge] = {}

    def upsert_credential(
        self,
        user_id: UUID,
        device_id: str,
        credential_id: str,
        public_key: str,
        device_info: dict[str, Any],
        now: datetime,
    ) -> tuple[BiometricCredential, bool]:
        """Create or overwrite the credential for (user, device). Returns (record, created)."""
        with self._lock:
            for existing in self._credentials.values():
                if existing.user_id == user_id and existing.device_id == device_id:
                    existing.credential_id = credential_id
                    existing.public_key = public_key
                    existing.device_info = device_info
                    existing.is_active = True
                    return replace(existing), False

            credential = BiometricCredential(
                user_id=user_id,
                device_id=device_id,
                credential_id=credential_id,
                public_key=public_key,
                device_info=device_info,
                created_at=now,
            )
            self._credentials[credential.id] = credential
            return replace(credential), True

    def find_active(self, user_id: UUID, device_id: str) -> Optional[BiometricCredential]:
        with self._lock:
            for credential in self._credentials.values():
                if credential.is_active and credential.user_id == user_id and credential.device_id == device_id:
                    return replace(credential)
        return None

    def list_active(self, user_id: UUID) -> list[BiometricCredential]:
        with self._lock:
            return [
                replace(c) for c in self._credentials.values()
                if c.is_active and c.user_id == user_id
            ]

    def touch(self, credential_id: str, now: datetime) -> None:
        with self._lock:
            credential = self._credentials.get(credential_id)
            if credential is not None:
                credential.last_used_at = now

    def deactivate(self, user_id: UUID, credential_id: str) -> Optional[BiometricCredential]:
        """Soft-delete a credential owned by ``user_id`` and drop its pending challenges."""
        with self._lock:
            credential = self._credentials.get(credential_id)
            if credential is None or credential.user_id != user_id or not credential.is_active:
                return None
            credential.is_active = False
            stale = [
                key for key, ch in self._challenges.items()
                if ch.user_id == user_id and ch.device_id == credential.device_id
            ]
            for key in stale:
                del self._challenges[key]
            return replace(credential)

    def put_challenge(self, challenge: BiometricChallenge) -> None:
        with self._lock:
            self._challenges[challenge.challenge] = challenge

    def take_challenge(self, challenge: str) -> Optional[BiometricChallenge]:
        """Remove and return a challenge (at most one caller gets it)."""
        with self._lock:
            return self._challenges.pop(challenge, None)

    def sweep(self, now: datetime) -> int:
        with self._lock:
            expired = [key for key, ch in self._challenges.items() if not ch.is_valid(now)]
            for key in expired:
                del self._challenges[key]
            return len(expired)

    def pending_challenges(self) -> int:
        with self._lock:
            return len(self._challenges)


# ============================================================================
# Manager
# ============================================================================

class BiometricManager:
    """Credential registration and challenge/response verification."""

    def __init__(
        self,
        registry: Optional[BiometricRegistry] = None,
        *,
        challenge_ttl: timedelta = timedelta(minutes=5),
        clock: Clock = utcnow,
        random: Optional[RandomSource] = None,
    ) -> None:
        self.registry = registry or BiometricRegistry()
        self._challenge_ttl = challenge_ttl
        self._clock = clock
        self._random = random or RandomSource()

    def register_credential(
        self,
        user_id: UUID,
        device_id: str,
        credential_id: str,
        public_key: str,
        device_info: Optional[dict[str, Any]] = None,
    ) -> BiometricCredential:
        """
        Register (or re-register) the device credential of a user.

        Re-registering the same (user, device) overwrites the key material
        and reactivates a revoked credential.

        Raises:
            ValidationError: Public key is not a supported key
        """
        try:
            load_public_key(public_key)
        except ValueError as exc:
            raise ValidationError(
                [{"field": "public_key", "message": str(exc)}],
                "Invalid biometric public key",
            ) from exc

        credential, created = self.registry.upsert_credential(
            user_id, device_id, credential_id, public_key, device_info or {}, self._clock()
        )
        logger.info(
            "Biometric credential %s for user %s (%s)",
            "registered" if created else "updated", user_id, credential.id,
        )
        return credential

    def create_challenge(self, user_id: UUID, device_id: str) -> BiometricChallenge:
        """
        Issue a challenge for an active (user, device) credential.

        Raises:
            NoCredentialError: No active credential for this device
        """
        if self.registry.find_active(user_id, device_id) is None:
            raise NoCredentialError()
        challenge = BiometricChallenge(
            challenge=self._random.token_urlsafe(CHALLENGE_BYTES),
            user_id=user_id,
            device_id=device_id,
            expires_at=self._clock() + self._challenge_ttl,
        )
        self.registry.put_challenge(challenge)
        return challenge

    def verify_challenge(self, challenge: str, signature: str, device_id: str) -> BiometricCredential:
        """
        Verify a signed challenge and consume it.

        Returns:
            The credential that signed it (``user_id`` identifies the user)

        Raises:
            InvalidChallengeError: Unknown, expired, reused or foreign-device
                challenge, missing credential, or bad signature
        """
        now = self._clock()
        issued = self.registry.take_challenge(challenge) if challenge else None
        if issued is None:
            raise self._reject("unknown or already used challenge")
        if not issued.is_valid(now):
            raise self._reject("expired challenge")
        if issued.device_id != device_id:
            raise self._reject("device mismatch")

        credential = self.registry.find_active(issued.user_id, device_id)
        if credential is None:
            raise self._reject("no active credential")
        if not signature or not verify_signature(credential.public_key, challenge, signature):
            raise self._reject("bad signature")

        self.registry.touch(credential.id, now)
        credential.last_used_at = now
        return credential

    def revoke_credential(self, user_id: UUID, credential_id: str) -> None:
        """
        Deactivate a credential owned by ``user_id``.

        Raises:
            NotFoundError: Unknown credential, or owned by someone else
        """
        if self.registry.deactivate(user_id, credential_id) is None:
            raise NotFoundError("Biometric credential not found")
        logger.info("Biometric credential %s revoked for user %s", credential_id, user_id)

    def list_credentials(self, user_id: UUID) -> list[BiometricCredential]:
        return self.registry.list_active(user_id)

    def has_biometric(self, user_id: UUID, device_id: Optional[str] = None) -> bool:
        if device_id is not None:
            return self.registry.find_active(user_id, device_id) is not None
        return bool(self.registry.list_active(user_id))

    def sweep(self) -> int:
        """Drop expired challenges. Returns the number removed."""
        removed = self.registry.sweep(self._clock())
        if removed:
            logger.debug("Swept %d expired biometric challenge(s)", removed)
        return removed

    @staticmethod
    def _reject(reason: str) -> InvalidChallengeError:
        logger.info("Biometric verification rejected: %s", reason)
        return InvalidChallengeError()
