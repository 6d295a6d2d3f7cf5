"""
Ecotrack - Service Errors

Exceptions raised by the auth services and mapped to HTTP responses.
Each class carries a status code and a stable error code; messages for
authentication failures are deliberately generic.
"""

from typing import Any, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses."""

    status_code: int = 400
    error_code: str = "bad_request"
    default_message: str = "Request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        detail: Any = None,
        headers: Optional[dict] = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        self.detail = detail
        self.headers = headers or {}


class ValidationError(ServiceError):
    """Malformed input. ``detail`` is a list of ``{"field", "message"}``."""
    status_code = 400
    error_code = "validation_error"
    default_message = "Invalid input data"

    def __init__(self, field_errors: list[dict], message: Optional[str] = None) -> None:
        super().__init__(message, detail=field_errors)
        self.field_errors = field_errors


class ConflictError(ServiceError):
    """Duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"
    default_message = "An account with this email already exists"


class InvalidCredentialsError(ServiceError):
    status_code = 401
    error_code = "invalid_credentials"
    default_message = "Invalid credentials"


class InvalidTokenError(ServiceError):
    """Access token failed validation."""
    status_code = 401
    error_code = "invalid_token"
    default_message = "Invalid or expired token"


class InvalidOrExpiredTokenError(ServiceError):
    """Refresh or email token is unknown, expired or already used."""
    status_code = 401
    error_code = "invalid_or_expired_token"
    default_message = "Invalid or expired token"


class InvalidChallengeError(ServiceError):
    status_code = 401
    error_code = "invalid_challenge"
    default_message = "Biometric authentication failed"


class NoCredentialError(ServiceError):
    status_code = 400
    error_code = "no_credential"
    default_message = "No active biometric credential found for this device"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"
    default_message = "Not found"


class WeakPasswordError(ServiceError):
    """Password policy violation. ``detail`` lists the unmet rules."""
    status_code = 400
    error_code = "weak_password"
    default_message = "Password does not meet requirements"

    def __init__(self, unmet_rules: list[str]) -> None:
        super().__init__(detail=unmet_rules)
        self.unmet_rules = unmet_rules


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"
    default_message = "Too many requests. Please wait before trying again."

    def __init__(self, retry_after: int, message: Optional[str] = None) -> None:
        retry_after = max(1, int(retry_after))
        super().__init__(
            message,
            detail={"retry_after": retry_after},
            headers={"Retry-After": str(retry_after)},
        )
        self.retry_after = retry_after


class UpstreamUnavailableError(ServiceError):
    """Signer, store or mail transport unreachable or timed out."""
    status_code = 503
    error_code = "upstream_unavailable"
    default_message = "A required service is temporarily unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "ConflictError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "InvalidOrExpiredTokenError",
    "InvalidChallengeError",
    "NoCredentialError",
    "NotFoundError",
    "WeakPasswordError",
    "RateLimitedError",
    "UpstreamUnavailableError",
]
