"""
Ecotrack - Authentication Routes

API endpoints for authentication:
- POST /auth/register                  - Create account and sign in
- POST /auth/login                     - Authenticate with email/password
- POST /auth/refresh                   - Rotate refresh token
- POST /auth/logout                    - Revoke one or all sessions
- GET  /auth/me                        - Current user info
- POST /auth/email/send-verification   - Email a verification link
- POST /auth/email/verify              - Confirm email address
- POST /auth/email/send-password-reset - Email a reset link
- POST /auth/email/verify-reset-token  - Check a reset token
- POST /auth/email/reset-password      - Set a new password
- POST /auth/biometric/register        - Register device key
- GET  /auth/biometric/credentials     - List device keys
- GET  /auth/biometric/status/{id}     - Whether a device has a key
- POST /auth/biometric/challenge       - Issue login challenge
- POST /auth/biometric/verify          - Exchange signed challenge for tokens
- POST /auth/biometric/revoke          - Revoke device key
- GET  /.well-known/jwks.json          - Public signing keys

Handlers are plain ``def`` functions; FastAPI runs them in its
threadpool since the service does blocking I/O (bcrypt, database, SMTP).
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from ecotrack.auth.dependencies import (
    get_auth_service,
    get_current_user,
    get_device_info,
)
from ecotrack.auth.models import User
from ecotrack.auth.schemas import (
    AuthResponse,
    BiometricChallengeRequest,
    BiometricChallengeResponse,
    BiometricCredentialInfo,
    BiometricCredentialsResponse,
    BiometricRegisterRequest,
    BiometricRegisterResponse,
    BiometricRevokeRequest,
    BiometricStatusResponse,
    BiometricVerifyRequest,
    ErrorResponse,
    LoginRequest,
    LogoutRequest,
    LogoutResponse,
    MessageResponse,
    PasswordResetRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenResponse,
    UserResponse,
    VerifyEmailRequest,
    VerifyResetTokenRequest,
    VerifyResetTokenResponse,
)
from ecotrack.auth.service import AuthResult, AuthService
from ecotrack.auth.tokens import DeviceInfo
from ecotrack.gateway.rate_limit import rate_limit


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["authentication"])
jwks_router = APIRouter(tags=["keys"])

UNAUTHORIZED = {401: {"model": ErrorResponse}}


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=UserResponse.model_validate(result.user),
        tokens=TokenResponse(**result.tokens.model_dump()),
    )


def _with_device_id(device: DeviceInfo, device_id: Optional[str]) -> DeviceInfo:
    if not device_id:
        return device
    return device.model_copy(update={"device_id": device_id})


# ============================================================================
# Registration, login, sessions
# ============================================================================

@router.post(
    "/register",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
    dependencies=[Depends(rate_limit("register"))],
    summary="Create an account",
)
def register(
    body: RegisterRequest,
    device: DeviceInfo = Depends(get_device_info),
    service: AuthService = Depends(get_auth_service),
):
    """
    Register a new user and return a token pair.

    Raises:
        400: Invalid email, missing names or weak password (field errors)
        409: Email already registered
    """
    result = service.register(
        body.email,
        body.password,
        body.first_name,
        body.last_name,
        _with_device_id(device, body.device_id),
    )
    return _auth_response(result)


@router.post(
    "/login",
    response_model=AuthResponse,
    responses={401: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
    dependencies=[Depends(rate_limit("login"))],
    summary="Authenticate with email and password",
)
def login(
    body: LoginRequest,
    device: DeviceInfo = Depends(get_device_info),
    service: AuthService = Depends(get_auth_service),
):
    result = service.login(body.email, body.password, _with_device_id(device, body.device_id))
    return _auth_response(result)


@router.post(
    "/refresh",
    response_model=TokenResponse,
    responses=UNAUTHORIZED,
    summary="Rotate refresh token",
)
def refresh(
    body: RefreshRequest,
    service: AuthService = Depends(get_auth_service),
):
    """
    Exchange a refresh token for a new pair.

    The presented token is revoked; presenting it again fails and
    revokes every session of the user.
    """
    tokens = service.refresh_session(body.refresh_token)
    return TokenResponse(**tokens.model_dump())


@router.post(
    "/logout",
    response_model=LogoutResponse,
    responses=UNAUTHORIZED,
    summary="Revoke one or all sessions",
)
def logout(
    body: LogoutRequest,
    user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
):
    revoked = service.logout(user.id, body.refresh_token, all_devices=body.all_devices)
    message = "Logged out from all devices" if body.all_devices else "Logged out successfully"
    return LogoutResponse(message=message, sessions_revoked=revoked)


@router.get(
    "/me",
    response_model=UserResponse,
    responses=UNAUTHORIZED,
    summary="Get current user info",
)
def get_me(user: User = Depends(get_current_user)):
    return UserResponse.model_validate(user)


# ============================================================================
# Email verification and password reset
# ============================================================================

@router.post(
    "/email/send-verification",
    response_model=MessageResponse,
    responses={400: {"model": ErrorResponse}, 429: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Send email verification link",
)
def send_verification(
    user: User = Depends(get_current_user),
    device: DeviceInfo = Depends(get_device_info),
    service: AuthService = Depends(get_auth_service),
):
    service.send_email_verification(user, device)
    return MessageResponse(message="Verification email sent successfully")


@router.post(
    "/email/verify",
    response_model=UserResponse,
    responses=UNAUTHORIZED,
    summary="Confirm email address",
)
def verify_email(
    body: VerifyEmailRequest,
    service: AuthService = Depends(get_auth_service),
):
    user = service.confirm_email_verification(body.token, body.email)
    return UserResponse.model_validate(user)


@router.post(
    "/email/send-password-reset",
    response_model=MessageResponse,
    responses={429: {"model": ErrorResponse}},
    dependencies=[Depends(rate_limit("password_reset"))],
    summary="Send password reset link",
)
def send_password_reset(
    body: PasswordResetRequest,
    device: DeviceInfo = Depends(get_device_info),
    service: AuthService = Depends(get_auth_service),
):
    """Always answers the same way, whether or not the email is registered."""
    return MessageResponse(message=service.request_password_reset(body.email, device))


@router.post(
    "/email/verify-reset-token",
    response_model=VerifyResetTokenResponse,
    responses=UNAUTHORIZED,
    summary="Check a password reset token",
)
def verify_reset_token(
    body: VerifyResetTokenRequest,
    service: AuthService = Depends(get_auth_service),
):
    service.check_password_reset_token(body.token, body.email)
    return VerifyResetTokenResponse()


@router.post(
    "/email/reset-password",
    response_model=MessageResponse,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
    summary="Set a new password",
)
def reset_password(
    body: ResetPasswordRequest,
    service: AuthService = Depends(get_auth_service),
):
    service.confirm_password_reset(body.token, body.email, body.new_password)
    return MessageResponse(message="Password has been reset. Please sign in again.")


# ============================================================================
# Biometric
# ============================================================================

@router.post(
    "/biometric/register",
    response_model=BiometricRegisterResponse,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
    summary="Register a biometric device key",
)
def register_biometric(
    body: BiometricRegisterRequest,
    user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
):
    device_info = body.device_info.model_dump(exclude_none=True) if body.device_info else None
    credential = service.register_biometric(
        user, body.device_id, body.credential_id, body.public_key, device_info
    )
    return BiometricRegisterResponse(credential_id=credential.id)


@router.get(
    "/biometric/credentials",
    response_model=BiometricCredentialsResponse,
    responses=UNAUTHORIZED,
    summary="List active biometric credentials",
)
def list_biometric_credentials(
    user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
):
    credentials = [
        BiometricCredentialInfo.model_validate(c)
        for c in service.list_biometric_credentials(user.id)
    ]
    return BiometricCredentialsResponse(credentials=credentials, total=len(credentials))


@router.get(
    "/biometric/status/{device_id}",
    response_model=BiometricStatusResponse,
    responses=UNAUTHORIZED,
    summary="Check whether biometric login is enabled on a device",
)
def biometric_status(
    device_id: str,
    user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
):
    enabled = service.biometric_status(user.id, device_id)
    return BiometricStatusResponse(enabled=enabled, device_id=device_id)


@router.post(
    "/biometric/challenge",
    response_model=BiometricChallengeResponse,
    responses={400: {"model": ErrorResponse}},
    summary="Issue a biometric login challenge",
)
def create_biometric_challenge(
    body: BiometricChallengeRequest,
    service: AuthService = Depends(get_auth_service),
):
    challenge = service.create_biometric_challenge(body.user_id, body.device_id)
    return BiometricChallengeResponse(challenge=challenge.challenge, expires_at=challenge.expires_at)


@router.post(
    "/biometric/verify",
    response_model=AuthResponse,
    responses=UNAUTHORIZED,
    summary="Sign in with a signed challenge",
)
def verify_biometric(
    body: BiometricVerifyRequest,
    device: DeviceInfo = Depends(get_device_info),
    service: AuthService = Depends(get_auth_service),
):
    result = service.verify_biometric_challenge(body.challenge, body.signature, body.device_id, device)
    return _auth_response(result)


@router.post(
    "/biometric/revoke",
    response_model=MessageResponse,
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Revoke a biometric credential",
)
def revoke_biometric(
    body: BiometricRevokeRequest,
    user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
):
    service.revoke_biometric_credential(user.id, body.credential_id)
    return MessageResponse(message="Biometric credential revoked successfully")


# ============================================================================
# Key publication
# ============================================================================

@jwks_router.get("/.well-known/jwks.json", summary="Public signing keys")
def jwks(request: Request):
    """Key set used to verify access tokens (cacheable for 15 minutes)."""
    key_set = request.app.state.key_provider.get_public_key_set()
    return JSONResponse(key_set, headers={"Cache-Control": "public, max-age=900"})
