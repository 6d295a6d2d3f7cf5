"""
Ecotrack - Authentication Package

Authentication with:
- bcrypt password hashing
- RS256 access tokens verified against a published key set
- Rotating refresh tokens with reuse detection
- Single-use email verification and password reset tokens
- Biometric challenge/response sign-in
"""

from ecotrack.auth.models import User, RefreshToken, EmailToken
from ecotrack.auth.service import AuthService, AuthResult
from ecotrack.auth.dependencies import get_current_user

__all__ = [
    "User",
    "RefreshToken",
    "EmailToken",
    "AuthService",
    "AuthResult",
    "get_current_user",
]
