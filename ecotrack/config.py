"""
Ecotrack - Configuration Management

Centralized configuration using Pydantic Settings.
All secrets and connection strings are loaded from environment variables.

Security: No secrets are hardcoded. Use .env for local development.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Attributes:
        DATABASE_URL: SQLAlchemy URL for users and token records
        JWT_ISSUER / JWT_AUDIENCE: Expected iss/aud claims on access tokens
        JWT_PRIVATE_KEY_PATH: PEM RSA key for the local signer (generated if unset)
        JWKS_URL: Remote key set to verify against instead of the local signer
        TOKEN_PEPPER: HMAC key for refresh/email token lookup fingerprints
        SMTP_HOST: Mail relay; when unset, outgoing mail is only logged
        ALLOWED_ORIGINS: CORS allowed origins
    """

    APP_NAME: str = "Ecotrack"
    APP_BASE_URL: str = "http://localhost:3000"
    LOG_LEVEL: str = "INFO"

    # Database (PostgreSQL for production, SQLite for development)
    DATABASE_URL: str = "sqlite:///./ecotrack.db"

    # Access tokens
    JWT_ISSUER: str = "ecotrack-api"
    JWT_AUDIENCE: str = "ecotrack-mobile"
    JWT_KEY_ID: str = "ecotrack-signing-key"
    JWT_PRIVATE_KEY_PATH: Optional[str] = None
    JWKS_URL: Optional[str] = None
    JWKS_CACHE_SECONDS: int = 15 * 60
    ACCESS_TOKEN_EXPIRE_SECONDS: int = 24 * 60 * 60

    # Refresh and email tokens
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7
    TOKEN_PEPPER: str = ""  # Must be set via environment
    EMAIL_VERIFICATION_TTL_HOURS: int = 24
    PASSWORD_RESET_TTL_MINUTES: int = 60
    EMAIL_VERIFICATION_COOLDOWN_SECONDS: int = 5 * 60
    EMAIL_VERIFICATION_DAILY_LIMIT: int = 5

    # Biometric
    BIOMETRIC_CHALLENGE_TTL_SECONDS: int = 5 * 60
    BIOMETRIC_SWEEP_INTERVAL_SECONDS: int = 5 * 60
    TOKEN_PURGE_INTERVAL_SECONDS: int = 6 * 60 * 60

    # Mail
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_USE_TLS: bool = True
    MAIL_FROM: str = "no-reply@ecotrack.local"

    # Client address: honour X-Forwarded-For only behind a trusted proxy
    TRUST_PROXY_HEADERS: bool = False

    # Rate limits (requests per window, per client)
    LOGIN_RATE_LIMIT: int = 10
    LOGIN_RATE_WINDOW_SECONDS: int = 15 * 60
    REGISTER_RATE_LIMIT: int = 3
    REGISTER_RATE_WINDOW_SECONDS: int = 60 * 60
    PASSWORD_RESET_RATE_LIMIT: int = 5
    PASSWORD_RESET_RATE_WINDOW_SECONDS: int = 60 * 60

    # Upstream calls (mail relay, remote key set, database pool)
    UPSTREAM_TIMEOUT_SECONDS: float = 10.0
    UPSTREAM_READ_RETRIES: int = 2

    # CORS
    ALLOWED_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:8081"]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


settings = Settings()
