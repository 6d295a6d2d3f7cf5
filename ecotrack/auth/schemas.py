"""
Ecotrack - Authentication Request/Response Schemas

Pydantic models for API request validation and response serialization.
Separates API contracts from database models.

Password policy and email format are checked by the service so that
registration failures come back as one list of field errors.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from ecotrack.auth.models import NAME_MAX_LENGTH


# ============================================================================
# Shared
# ============================================================================

class MessageResponse(BaseModel):
    message: str


class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None


class TokenResponse(BaseModel):
    """Access/refresh token pair."""
    access_token: str = Field(..., description="RS256 JWT access token")
    refresh_token: str = Field(..., description="Opaque single-use refresh token")
    token_type: str = Field(default="bearer")
    expires_in: int = Field(..., description="Seconds until the access token expires")


class UserResponse(BaseModel):
    """Response body for GET /auth/me."""
    id: UUID
    email: str
    first_name: str
    last_name: str
    is_email_verified: bool
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class AuthResponse(BaseModel):
    """Response body for register, login and biometric verification."""
    user: UserResponse
    tokens: TokenResponse


# ============================================================================
# Registration, login, sessions
# ============================================================================

class RegisterRequest(BaseModel):
    """Request body for POST /auth/register."""
    email: str = Field(..., max_length=255)
    password: str = Field(..., max_length=128)
    first_name: str = Field(..., max_length=NAME_MAX_LENGTH)
    last_name: str = Field(..., max_length=NAME_MAX_LENGTH)
    device_id: Optional[str] = Field(default=None, max_length=255)


class LoginRequest(BaseModel):
    """Request body for POST /auth/login."""
    email: str = Field(..., max_length=255, description="User email address")
    password: str = Field(..., max_length=128, description="User password")
    device_id: Optional[str] = Field(default=None, max_length=255)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()


class RefreshRequest(BaseModel):
    """Request body for POST /auth/refresh."""
    refresh_token: str = Field(..., min_length=1, max_length=256, description="Refresh token")


class LogoutRequest(BaseModel):
    """Request body for POST /auth/logout."""
    refresh_token: Optional[str] = Field(default=None, max_length=256)
    all_devices: bool = Field(
        default=False,
        description="Revoke every session (logout everywhere)"
    )


class LogoutResponse(BaseModel):
    message: str = Field(default="Logged out successfully")
    sessions_revoked: int = Field(default=0)


# ============================================================================
# Email verification and password reset
# ============================================================================

class VerifyEmailRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    email: str = Field(..., max_length=255)


class PasswordResetRequest(BaseModel):
    email: str = Field(..., max_length=255)


class VerifyResetTokenRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    email: str = Field(..., max_length=255)


class VerifyResetTokenResponse(BaseModel):
    valid: bool = True
    message: str = "Reset token is valid"


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    email: str = Field(..., max_length=255)
    new_password: str = Field(..., max_length=128)


# ============================================================================
# Biometric
# ============================================================================

class BiometricDeviceInfo(BaseModel):
    device_name: Optional[str] = Field(default=None, max_length=100)
    platform: Optional[str] = Field(default=None, max_length=50)
    user_agent: Optional[str] = Field(default=None, max_length=512)


class BiometricRegisterRequest(BaseModel):
    """Request body for POST /auth/biometric/register."""
    device_id: str = Field(..., min_length=1, max_length=255)
    credential_id: str = Field(..., min_length=1, max_length=512)
    public_key: str = Field(..., min_length=1, max_length=4096, description="Base64 DER or PEM public key")
    device_info: Optional[BiometricDeviceInfo] = None


class BiometricRegisterResponse(BaseModel):
    message: str = "Biometric credential registered successfully"
    credential_id: str = Field(..., description="Server-side credential identifier")


class BiometricCredentialInfo(BaseModel):
    id: str
    device_id: str
    credential_id: str
    device_info: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    last_used_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class BiometricCredentialsResponse(BaseModel):
    credentials: list[BiometricCredentialInfo]
    total: int


class BiometricStatusResponse(BaseModel):
    """Response body for GET /auth/biometric/status/{device_id}."""
    enabled: bool
    device_id: str


class BiometricChallengeRequest(BaseModel):
    user_id: UUID
    device_id: str = Field(..., min_length=1, max_length=255)


class BiometricChallengeResponse(BaseModel):
    challenge: str
    expires_at: datetime


class BiometricVerifyRequest(BaseModel):
    challenge: str = Field(..., min_length=1, max_length=256)
    signature: str = Field(..., min_length=1, max_length=2048)
    device_id: str = Field(..., min_length=1, max_length=255)


class BiometricRevokeRequest(BaseModel):
    credential_id: str = Field(..., min_length=1, max_length=255)
