"""
Ecotrack - Security Dependencies

FastAPI dependencies for authentication.

Usage:
    @router.get("/protected")
    def protected_route(user: User = Depends(get_current_user)):
        ...

Security:
- Every protected request verifies the RS256 access token
- The user must still exist and be active
"""

from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ecotrack.auth.models import User
from ecotrack.auth.service import AuthService
from ecotrack.auth.tokens import DeviceInfo
from ecotrack.errors import InvalidTokenError


# HTTP Bearer scheme for JWT extraction
security = HTTPBearer(auto_error=False)


def get_client_ip(request: Request) -> str:
    """
    Extract client IP from request.

    X-Forwarded-For is read only when ``TRUST_PROXY_HEADERS`` is set.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded and getattr(request.app.state, "trust_proxy_headers", False):
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def get_auth_service(request: Request) -> AuthService:
    """Get the auth service from app state."""
    return request.app.state.auth_service


def get_device_info(request: Request) -> DeviceInfo:
    """Client metadata stored alongside issued tokens."""
    device_id = request.headers.get("X-Device-ID")
    return DeviceInfo(
        user_agent=request.headers.get("User-Agent", "unknown")[:512],
        ip_address=get_client_ip(request)[:45],
        device_id=device_id[:255] if device_id else None,
    )


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    service: AuthService = Depends(get_auth_service),
) -> User:
    """
    Validate the bearer token and return the current user.

    Raises:
        InvalidTokenError: Missing, invalid or expired token, or inactive user
    """
    if not credentials:
        raise InvalidTokenError(
            "Missing authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return service.authenticate(credentials.credentials)
    except InvalidTokenError as exc:
        exc.headers.setdefault("WWW-Authenticate", "Bearer")
        raise
