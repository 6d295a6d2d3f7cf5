"""
Ecotrack - Access Token Verification

Validates access tokens against the published key set:
1. Structure: three non-empty dot-separated base64url segments
2. Header: algorithm on the allow-list, key id present
3. Claims: exp (no leeway), iat (<= 5 minutes in the future), iss, aud
4. Signature: RS256 against the key matching ``kid``

The key set is cached for a bounded time (15 minutes by default) so
repeated verifications do not refetch it, while a key rotated or
revoked upstream stops being trusted within that window.

Security:
- Unexpected algorithms are rejected before any key lookup (no
  "none"/HS256 downgrade)
- Every failure raises the same InvalidTokenError; the precise reason
  is only logged
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Optional

from jose import jws, jwt
from jose.exceptions import JOSEError
from pydantic import BaseModel, Field

from ecotrack.auth.clock import Clock, to_timestamp, utcnow
from ecotrack.auth.signer import KeySetProvider
from ecotrack.errors import InvalidTokenError


logger = logging.getLogger(__name__)

ALLOWED_ALGORITHMS = frozenset({"RS256"})
MAX_CLOCK_SKEW_SECONDS = 300
DEFAULT_CACHE_SECONDS = 15 * 60


class AccessTokenClaims(BaseModel):
    """
    Validated access token payload.

    Attributes:
        sub: User ID
        email: User email at issuance
        jti: Unique token ID for audit correlation
        amr: Authentication method (password, refresh, biometric)
    """
    sub: str
    email: Optional[str] = None
    iat: int
    exp: int
    iss: str
    aud: str
    jti: Optional[str] = None
    amr: Optional[str] = Field(default=None, description="Authentication method")


class TokenVerifier:
    """Verifies access tokens; safe to share between threads."""

    def __init__(
        self,
        key_provider: KeySetProvider,
        *,
        issuer: str,
        audience: str,
        cache_seconds: int = DEFAULT_CACHE_SECONDS,
        clock: Clock = utcnow,
    ) -> None:
        self._key_provider = key_provider
        self._issuer = issuer
        self._audience = audience
        self._cache_seconds = cache_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._cached_keys: Optional[dict[str, Any]] = None
        self._cache_expires_at: Optional[datetime] = None

    def verify(self, token: str) -> AccessTokenClaims:
        """
        Verify an access token and return its claims.

        Raises:
            InvalidTokenError: Token is malformed, expired, not yet valid,
                issued for another issuer/audience, or has a bad signature
            UpstreamUnavailableError: The key set could not be fetched
        """
        segments = token.split(".") if isinstance(token, str) else []
        if len(segments) != 3 or not all(segments):
            raise self._reject("malformed token")

        try:
            header = jwt.get_unverified_header(token)
            payload = jwt.get_unverified_claims(token)
        except JOSEError:
            raise self._reject("undecodable header or payload")

        algorithm = header.get("alg")
        if algorithm not in ALLOWED_ALGORITHMS:
            raise self._reject(f"algorithm {algorithm!r} not allowed")

        now = to_timestamp(self._clock())
        exp = payload.get("exp")
        if not isinstance(exp, int) or exp <= now:
            raise self._reject("expired")
        iat = payload.get("iat")
        if not isinstance(iat, int) or iat > now + MAX_CLOCK_SKEW_SECONDS:
            raise self._reject("issued in the future")
        if payload.get("iss") != self._issuer:
            raise self._reject("wrong issuer")
        if payload.get("aud") != self._audience:
            raise self._reject("wrong audience")

        key = self._find_key(header.get("kid"))
        if key is None:
            raise self._reject("unknown key id")

        try:
            jws.verify(token, key, algorithms=[algorithm])
        except JOSEError:
            raise self._reject("bad signature")

        try:
            return AccessTokenClaims(**payload)
        except ValueError:
            raise self._reject("claims do not match schema")

    def clear_cache(self) -> None:
        """Drop the cached key set (forces a refetch on next verify)."""
        with self._lock:
            self._cached_keys = None
            self._cache_expires_at = None

    def _find_key(self, kid: Optional[str]) -> Optional[dict[str, Any]]:
        if not kid:
            return None
        for key in self._get_key_set().get("keys", []):
            if isinstance(key, dict) and key.get("kid") == kid and key.get("kty") == "RSA":
                return key
        return None

    def _get_key_set(self) -> dict[str, Any]:
        with self._lock:
            now = self._clock()
            if self._cached_keys is not None and self._cache_expires_at and now < self._cache_expires_at:
                return self._cached_keys
            key_set = self._key_provider.get_public_key_set()
            self._cached_keys = key_set
            self._cache_expires_at = now + timedelta(seconds=self._cache_seconds)
            logger.debug("Refreshed access token key set (%d keys)", len(key_set.get("keys", [])))
            return key_set

    @staticmethod
    def _reject(reason: str) -> InvalidTokenError:
        logger.debug("Access token rejected: %s", reason)
        return InvalidTokenError()
