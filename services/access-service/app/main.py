"""FastAPI application wiring for the access service."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool

from .api.routes import router as v1_router
from .api.tenants import router as tenants_router
from .config import Settings, get_settings
from .domain.audit import AuditLogger, AuditTrail
from .domain.errors import AccessError, RateLimitedError
from .domain.identity import IdentityResolver
from .domain.invitations import InvitationService
from .domain.service import AccountService
from .domain.tenants import TenantService
from .notifications import InvitationNotifier, SmtpInvitationNotifier
from .repository import AccessRepository
from .security.gate import AuthenticationGate
from .security.oauth import build_providers, default_http_client
from .security.rate_limiter import RateLimiter, build_rate_limiter
from .security.tokens import TokenManager

logger = logging.getLogger(__name__)

settings = get_settings()


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def build_state(
    app: FastAPI,
    settings: Settings,
    repository,
    *,
    notifier: InvitationNotifier,
    audit_executor: ThreadPoolExecutor | None = None,
    http_client: httpx.Client | None = None,
    rate_limiter: RateLimiter | None = None,
) -> None:
    """Construct the services and attach them to ``app.state``."""
    audit = AuditLogger(repository, executor=audit_executor)
    tokens = TokenManager(settings)
    invitations = InvitationService(repository, notifier, audit, settings)
    resolver = IdentityResolver(repository, invitations, audit)

    app.state.settings = settings
    app.state.repository = repository
    app.state.tokens = tokens
    app.state.gate = AuthenticationGate(tokens, repository)
    app.state.invitation_service = invitations
    app.state.account_service = AccountService(repository, tokens, invitations, resolver, audit)
    app.state.tenant_service = TenantService(repository, audit)
    app.state.audit_trail = AuditTrail(repository)
    app.state.oauth_providers = build_providers(settings)
    app.state.http_client = http_client or default_http_client()
    app.state.rate_limiter = rate_limiter or build_rate_limiter(settings)


async def handle_access_error(request: Request, exc: AccessError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("access error on %s %s: %s", request.method, request.url.path, exc.message)
    headers = None
    if isinstance(exc, RateLimitedError) and exc.retry_after:
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=headers)


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = {
        ".".join(str(part) for part in error["loc"] if part != "body"): error["msg"]
        for error in exc.errors()
    }
    return JSONResponse(
        status_code=400,
        content={"detail": "validation failed", "code": "VALIDATION_ERROR", "fields": fields},
    )


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "internal server error", "code": "SERVER_ERROR"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AccessError, handle_access_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, audit workers, HTTP client) for the app lifecycle."""
    configure_logging(settings.log_level)
    pool = ConnectionPool(settings.database_url, open=False)
    pool.open()
    audit_executor = ThreadPoolExecutor(max_workers=settings.audit_workers, thread_name_prefix="audit")
    http_client = default_http_client()
    app.state.pool = pool
    build_state(
        app,
        settings,
        AccessRepository(pool),
        notifier=SmtpInvitationNotifier.from_settings(settings),
        audit_executor=audit_executor,
        http_client=http_client,
    )
    logger.info("%s %s started", settings.app_name, settings.version)
    try:
        yield
    finally:
        # drain queued audit writes before the pool goes away
        audit_executor.shutdown(wait=True)
        http_client.close()
        pool.close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600,
)

register_exception_handlers(app)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


@app.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(v1_router)
app.include_router(tenants_router)
