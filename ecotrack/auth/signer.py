"""
Ecotrack - Access Token Signing and Key Publication

Capability interfaces for the external signer/key-publisher, plus the
implementations shipped with the service:

- LocalRSASigner: RS256 signing with a PEM key on disk (or an
  ephemeral key generated at startup for development and tests)
- RemoteKeySetProvider: fetches a published JWKS document over HTTPS

The token issuer only calls ``sign``; the verifier only calls
``get_public_key_set``. Neither knows which backend provides them.
"""

import logging
import time
from pathlib import Path
from typing import Any, Optional, Protocol

import httpx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwk, jwt
from jose.exceptions import JOSEError

from ecotrack.errors import UpstreamUnavailableError


logger = logging.getLogger(__name__)

SIGNING_ALGORITHM = "RS256"


class Signer(Protocol):
    def sign(self, claims: dict[str, Any]) -> str:
        """Return a compact JWS (header.payload.signature) over ``claims``."""
        ...


class KeySetProvider(Protocol):
    def get_public_key_set(self) -> dict[str, Any]:
        """Return ``{"keys": [jwk, ...]}`` with RSA ``kid``, ``alg``, ``n``, ``e``."""
        ...


class LocalRSASigner:
    """
    Signs access tokens with an RSA private key held in process.

    Implements both Signer and KeySetProvider.
    """

    def __init__(self, private_key: rsa.RSAPrivateKey, key_id: str) -> None:
        self.key_id = key_id
        self._private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_pem = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        public_jwk = jwk.construct(public_pem, SIGNING_ALGORITHM).to_dict()
        self._public_jwk = {
            "kty": "RSA",
            "kid": key_id,
            "use": "sig",
            "alg": SIGNING_ALGORITHM,
            "n": public_jwk["n"],
            "e": public_jwk["e"],
        }

    @classmethod
    def generate(cls, key_id: str, key_size: int = 2048) -> "LocalRSASigner":
        """Create a signer with a fresh ephemeral key."""
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
        return cls(private_key, key_id)

    @classmethod
    def from_pem_file(cls, path: str, key_id: str) -> "LocalRSASigner":
        data = Path(path).read_bytes()
        private_key = serialization.load_pem_private_key(data, password=None)
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise ValueError("Signing key must be an RSA private key")
        return cls(private_key, key_id)

    def sign(self, claims: dict[str, Any]) -> str:
        try:
            return jwt.encode(
                claims,
                self._private_pem.decode("ascii"),
                algorithm=SIGNING_ALGORITHM,
                headers={"kid": self.key_id},
            )
        except JOSEError as exc:
            logger.error("Access token signing failed: %s", exc)
            raise UpstreamUnavailableError("Failed to sign access token") from exc

    def get_public_key_set(self) -> dict[str, Any]:
        return {"keys": [dict(self._public_jwk)]}


class RemoteKeySetProvider:
    """
    Fetches a JWKS document from a key publisher.

    The fetch is an idempotent read, so transport errors are retried a
    bounded number of times before failing with UpstreamUnavailableError.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        retries: int = 2,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.url = url
        self.retries = max(0, retries)
        self._client = client or httpx.Client(timeout=timeout)

    def get_public_key_set(self) -> dict[str, Any]:
        last_error: Optional[Exception] = None
        for attempt in range(self.retries + 1):
            try:
                response = self._client.get(self.url)
                response.raise_for_status()
                document = response.json()
            except (httpx.HTTPError, ValueError) as exc:
                last_error = exc
                logger.warning(
                    "Key set fetch failed (attempt %d/%d): %s",
                    attempt + 1, self.retries + 1, exc.__class__.__name__,
                )
                if attempt < self.retries:
                    time.sleep(0.2 * (attempt + 1))
                continue
            if not isinstance(document, dict) or not isinstance(document.get("keys"), list):
                raise UpstreamUnavailableError("Key publisher returned an invalid key set")
            return document
        raise UpstreamUnavailableError("Key publisher unavailable") from last_error

    def close(self) -> None:
        self._client.close()
