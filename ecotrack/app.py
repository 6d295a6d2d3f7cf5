"""
Ecotrack - FastAPI Application Entrypoint

This module initializes the FastAPI application with:
- CORS and security middleware
- Authentication routes and the public key set
- Database lifecycle management
- Periodic cleanup of expired tokens and biometric challenges

Run locally:
    uvicorn ecotrack.app:app --reload
"""

import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from ecotrack import __version__
from ecotrack.auth.biometric import BiometricManager
from ecotrack.auth.clock import Clock, RandomSource, utcnow
from ecotrack.auth.database import SessionFactory, get_engine, get_session_factory, init_db
from ecotrack.auth.email_tokens import EmailTokenManager
from ecotrack.auth.mailer import AuthMailer, LoggingTransport, MailTransport, SMTPTransport
from ecotrack.auth.routes import jwks_router, router as auth_router
from ecotrack.auth.service import AuthService
from ecotrack.auth.signer import KeySetProvider, LocalRSASigner, RemoteKeySetProvider, Signer
from ecotrack.auth.store import TokenStore, UserStore
from ecotrack.auth.tokens import TokenIssuer
from ecotrack.auth.verifier import TokenVerifier
from ecotrack.config import Settings, settings
from ecotrack.errors import ServiceError
from ecotrack.gateway.middleware import SecurityMiddleware
from ecotrack.gateway.rate_limit import FixedWindowRateLimiter


logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for the process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ============================================================================
# Service wiring
# ============================================================================

def build_signer(app_settings: Settings) -> LocalRSASigner:
    if app_settings.JWT_PRIVATE_KEY_PATH:
        return LocalRSASigner.from_pem_file(app_settings.JWT_PRIVATE_KEY_PATH, app_settings.JWT_KEY_ID)
    logger.warning("JWT_PRIVATE_KEY_PATH not set; generating an ephemeral signing key")
    return LocalRSASigner.generate(app_settings.JWT_KEY_ID)


def build_key_provider(app_settings: Settings, signer: LocalRSASigner) -> KeySetProvider:
    if app_settings.JWKS_URL:
        return RemoteKeySetProvider(
            app_settings.JWKS_URL,
            timeout=app_settings.UPSTREAM_TIMEOUT_SECONDS,
            retries=app_settings.UPSTREAM_READ_RETRIES,
        )
    return signer


def build_transport(app_settings: Settings) -> MailTransport:
    if app_settings.SMTP_HOST:
        return SMTPTransport(
            app_settings.SMTP_HOST,
            app_settings.SMTP_PORT,
            username=app_settings.SMTP_USER,
            password=app_settings.SMTP_PASSWORD,
            use_tls=app_settings.SMTP_USE_TLS,
            from_email=app_settings.MAIL_FROM,
            from_name=app_settings.APP_NAME,
            timeout=app_settings.UPSTREAM_TIMEOUT_SECONDS,
        )
    logger.warning("SMTP_HOST not set; outgoing mail will only be logged")
    return LoggingTransport()


def build_auth_service(
    app_settings: Settings,
    session_factory: SessionFactory,
    *,
    signer: Signer,
    key_provider: KeySetProvider,
    transport: MailTransport,
    clock: Clock = utcnow,
    random: Optional[RandomSource] = None,
) -> AuthService:
    """Construct the auth service and its collaborators."""
    random = random or RandomSource()
    pepper = app_settings.TOKEN_PEPPER
    if not pepper:
        logger.warning(
            "TOKEN_PEPPER not set; using a per-process value, "
            "refresh and email tokens will not survive a restart"
        )
        pepper = secrets.token_hex(32)

    users = UserStore(session_factory, read_retries=app_settings.UPSTREAM_READ_RETRIES)
    store = TokenStore(session_factory, read_retries=app_settings.UPSTREAM_READ_RETRIES)

    issuer = TokenIssuer(
        store,
        users,
        signer,
        issuer=app_settings.JWT_ISSUER,
        audience=app_settings.JWT_AUDIENCE,
        pepper=pepper,
        access_ttl_seconds=app_settings.ACCESS_TOKEN_EXPIRE_SECONDS,
        refresh_ttl=timedelta(days=app_settings.REFRESH_TOKEN_EXPIRE_DAYS),
        clock=clock,
        random=random,
    )
    verifier = TokenVerifier(
        key_provider,
        issuer=app_settings.JWT_ISSUER,
        audience=app_settings.JWT_AUDIENCE,
        cache_seconds=app_settings.JWKS_CACHE_SECONDS,
        clock=clock,
    )
    email_tokens = EmailTokenManager(
        store,
        users,
        pepper=pepper,
        verification_ttl=timedelta(hours=app_settings.EMAIL_VERIFICATION_TTL_HOURS),
        reset_ttl=timedelta(minutes=app_settings.PASSWORD_RESET_TTL_MINUTES),
        resend_cooldown=timedelta(seconds=app_settings.EMAIL_VERIFICATION_COOLDOWN_SECONDS),
        daily_send_limit=app_settings.EMAIL_VERIFICATION_DAILY_LIMIT,
        clock=clock,
        random=random,
    )
    mailer = AuthMailer(
        transport,
        base_url=app_settings.APP_BASE_URL,
        app_name=app_settings.APP_NAME,
        verification_ttl_hours=app_settings.EMAIL_VERIFICATION_TTL_HOURS,
        reset_ttl_minutes=app_settings.PASSWORD_RESET_TTL_MINUTES,
    )
    biometric = BiometricManager(
        challenge_ttl=timedelta(seconds=app_settings.BIOMETRIC_CHALLENGE_TTL_SECONDS),
        clock=clock,
        random=random,
    )
    return AuthService(
        users=users,
        issuer=issuer,
        verifier=verifier,
        email_tokens=email_tokens,
        mailer=mailer,
        biometric=biometric,
        clock=clock,
    )


def build_rate_limiters(app_settings: Settings, clock: Clock = utcnow) -> dict[str, FixedWindowRateLimiter]:
    return {
        "login": FixedWindowRateLimiter(
            app_settings.LOGIN_RATE_LIMIT,
            timedelta(seconds=app_settings.LOGIN_RATE_WINDOW_SECONDS),
            message="Too many login attempts. Please wait before trying again.",
            clock=clock,
        ),
        "register": FixedWindowRateLimiter(
            app_settings.REGISTER_RATE_LIMIT,
            timedelta(seconds=app_settings.REGISTER_RATE_WINDOW_SECONDS),
            message="Too many registration attempts. Please wait before trying again.",
            clock=clock,
        ),
        "password_reset": FixedWindowRateLimiter(
            app_settings.PASSWORD_RESET_RATE_LIMIT,
            timedelta(seconds=app_settings.PASSWORD_RESET_RATE_WINDOW_SECONDS),
            message="Too many password reset requests. Please wait before trying again.",
            clock=clock,
        ),
    }


# ============================================================================
# Error handlers
# ============================================================================

async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.error_code, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error_code, "message": exc.message, "details": exc.detail},
        headers=exc.headers or None,
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    field_errors = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
            "message": error.get("msg", "Invalid value"),
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"error": "validation_error", "message": "Invalid input data", "details": field_errors},
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "internal_error", "message": "Internal server error", "details": None},
    )


# ============================================================================
# Application
# ============================================================================

def create_app(
    app_settings: Settings = settings,
    *,
    auth_service: Optional[AuthService] = None,
    key_provider: Optional[KeySetProvider] = None,
    rate_limiters: Optional[dict[str, FixedWindowRateLimiter]] = None,
    run_background_tasks: bool = True,
) -> FastAPI:
    """
    Build the FastAPI application.

    When ``auth_service`` is given (tests), the database and signer are
    not created at startup; ``key_provider`` must then be given too.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup:
            - Initialize SQLModel database (users, token records)
            - Load or generate the signing key
            - Build the auth service
            - Start cleanup loops

        Shutdown:
            - Cancel and await cleanup loops, dispose the engine
        """
        engine = None
        if getattr(app.state, "auth_service", None) is None:
            engine = get_engine(app_settings.DATABASE_URL)
            init_db(engine)
            signer = build_signer(app_settings)
            provider = build_key_provider(app_settings, signer)
            app.state.db_engine = engine
            app.state.key_provider = provider
            app.state.auth_service = build_auth_service(
                app_settings,
                get_session_factory(engine),
                signer=signer,
                key_provider=provider,
                transport=build_transport(app_settings),
            )
            logger.info("Auth service ready (key id %s)", signer.key_id)

        service: AuthService = app.state.auth_service
        tasks = []
        if run_background_tasks:
            tasks.append(asyncio.create_task(_biometric_sweep_loop(
                service, app_settings.BIOMETRIC_SWEEP_INTERVAL_SECONDS
            )))
            tasks.append(asyncio.create_task(_token_purge_loop(
                service, app.state.rate_limiters, app_settings.TOKEN_PURGE_INTERVAL_SECONDS
            )))

        yield

        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if isinstance(app.state.key_provider, RemoteKeySetProvider):
            app.state.key_provider.close()
        if engine is not None:
            engine.dispose()

    configure_logging(app_settings.LOG_LEVEL)

    app = FastAPI(
        title=app_settings.APP_NAME,
        description="Authentication service for the Ecotrack sustainability app",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.auth_service = auth_service
    app.state.key_provider = key_provider
    app.state.db_engine = None
    app.state.trust_proxy_headers = app_settings.TRUST_PROXY_HEADERS
    app.state.rate_limiters = rate_limiters if rate_limiters is not None else build_rate_limiters(app_settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "X-Device-ID", "X-Request-ID"],
    )
    app.add_middleware(SecurityMiddleware)

    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(auth_router, prefix="/api/v1")
    app.include_router(jwks_router)

    @app.get("/health")
    def health_check(request: Request):
        """Liveness plus a database round-trip when a database is attached."""
        database_ok = None
        engine = request.app.state.db_engine
        if engine is not None:
            try:
                with engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
                database_ok = True
            except Exception:
                logger.exception("Database health check failed")
                database_ok = False
        return {
            "status": "healthy" if database_ok is not False else "degraded",
            "version": __version__,
            "services": {"database": database_ok},
        }

    @app.get("/")
    def root():
        """Root endpoint with API information."""
        return {
            "name": app_settings.APP_NAME,
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
        }

    return app


async def _biometric_sweep_loop(service: AuthService, interval_seconds: int) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            service.biometric.sweep()
        except Exception:
            logger.exception("Biometric challenge sweep error")


async def _token_purge_loop(
    service: AuthService,
    rate_limiters: dict[str, FixedWindowRateLimiter],
    interval_seconds: int,
) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            counts = await asyncio.to_thread(service.purge_expired)
            for limiter in rate_limiters.values():
                limiter.cleanup()
            logger.info("Token purge: %s", counts)
        except Exception:
            logger.exception("Token purge error")


app = create_app()
