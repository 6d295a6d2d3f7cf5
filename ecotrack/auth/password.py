"""
Ecotrack - Credential Hashing Utilities

bcrypt for passwords (cost 12) and for refresh/email tokens (cost 10),
HMAC-SHA256 fingerprints for token lookup, and the password policy.

Security:
- Plaintext passwords and tokens are never logged
- Verification never raises; any failure is reported as a mismatch
- Hashes below the current cost are upgraded on login
"""

import hashlib
import hmac
import re
from typing import List

import bcrypt


# log2 rounds
BCRYPT_WORK_FACTOR = 12
TOKEN_WORK_FACTOR = 10

# bcrypt only reads the first 72 bytes of its input; longer secrets are refused
BCRYPT_MAX_BYTES = 72

PASSWORD_SPECIAL_CHARACTERS = '!@#$%^&*(),.?":{}|<>'

# Verified against when an account does not exist so that unknown-email
# logins cost as much as wrong-password logins.
_DUMMY_HASH = bcrypt.hashpw(b"ecotrack-timing-equalizer", bcrypt.gensalt(rounds=BCRYPT_WORK_FACTOR))


def _encode(secret: str) -> bytes:
    encoded = secret.encode("utf-8")
    if len(encoded) > BCRYPT_MAX_BYTES:
        raise ValueError(f"Secret exceeds {BCRYPT_MAX_BYTES} bytes")
    return encoded


def hash_password(password: str, work_factor: int = BCRYPT_WORK_FACTOR) -> str:
    """
    Salt and hash ``password`` at the given bcrypt cost.

    Raises:
        ValueError: ``password`` is longer than 72 UTF-8 bytes

    Example:
        >>> hashed = hash_password("Str0ng!Pass")
        >>> hashed.startswith("$2b$")
        True
    """
    salt = bcrypt.gensalt(rounds=work_factor)
    hashed = bcrypt.hashpw(_encode(password), salt)
    return hashed.decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Check a candidate password against a stored bcrypt hash.

    bcrypt compares in constant time. A missing or malformed hash, or a
    candidate too long to have been hashed, counts as a mismatch rather
    than an error.
    """
    try:
        return bcrypt.checkpw(_encode(plain_password), hashed_password.encode("utf-8"))
    except (ValueError, TypeError, AttributeError):
        return False


def hash_token(token: str) -> str:
    """Hash a high-entropy token for storage (lighter work factor)."""
    return hash_password(token, work_factor=TOKEN_WORK_FACTOR)


def verify_token(token: str, hashed_token: str) -> bool:
    """Verify a token against its stored bcrypt hash."""
    return verify_password(token, hashed_token)


def token_fingerprint(token: str, pepper: str) -> str:
    """
    Deterministic HMAC-SHA256 digest of a token, used as its lookup key.

    Not a substitute for ``hash_token``: the fingerprint only locates the
    record, the bcrypt hash confirms it.
    """
    return hmac.new(pepper.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).hexdigest()


def burn_verify() -> None:
    """Spend one password verification on a dummy hash."""
    bcrypt.checkpw(b"ecotrack-timing-check", _DUMMY_HASH)


def needs_rehash(hashed_password: str, target_work_factor: int = BCRYPT_WORK_FACTOR) -> bool:
    """
    True when ``hashed_password`` was made with a lower cost than
    ``target_work_factor`` (or is not a bcrypt hash at all), so login
    should store a fresh hash.
    """
    try:
        # $2b$<cost>$<salt+digest>
        _, work_factor_str, _ = hashed_password.split("$")[1:4]
        return int(work_factor_str) < target_work_factor
    except (ValueError, IndexError):
        return True


def validate_password_strength(password: str) -> List[str]:
    """
    Check a candidate password against the password policy.

    Returns:
        Human-readable list of unmet rules; empty when the password is acceptable.
    """
    errors = []
    if len(password) < 8:
        errors.append("Password must be at least 8 characters long")
    if len(password.encode("utf-8")) > BCRYPT_MAX_BYTES:
        errors.append(f"Password must be at most {BCRYPT_MAX_BYTES} bytes long")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", password):
        errors.append("Password must contain at least one number")
    if not any(ch in PASSWORD_SPECIAL_CHARACTERS for ch in password):
        errors.append("Password must contain at least one special character")
    return errors
