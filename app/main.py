"""FastAPI application entry point."""
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.core.config import settings
from app.core.encryption import is_encryption_configured
from app.db.session import engine
from app.services.channel_errors import ChannelError, ProviderError

# ============================================================================
# Sentry Integration (optional, for production error tracking)
# ============================================================================

if settings.SENTRY_DSN and settings.ENV != "dev":
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENV,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=0.1,  # 10% of requests for performance monitoring
        send_default_pii=False,  # Don't send PII to Sentry
    )
    logging.info("Sentry initialized for error tracking")

# ============================================================================
# Rate Limiting
# ============================================================================

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from app.core.rate_limit import limiter


# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Help Desk Channels API",
    description="Channel connection and synchronization for help-desk organizations",
    version=settings.VERSION,
    docs_url="/docs" if settings.ENV == "dev" else None,
    redoc_url="/redoc" if settings.ENV == "dev" else None,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(ChannelError)
async def channel_error_handler(request: Request, exc: ChannelError) -> JSONResponse:
    """Fallback for channel errors a router did not translate."""
    if isinstance(exc, ProviderError):
        logging.getLogger(__name__).warning(
            "Unhandled provider error on %s %s", request.method, request.url.path
        )
        return JSONResponse(status_code=502, content={"detail": str(exc)})
    return JSONResponse(status_code=400, content={"detail": str(exc)})


# CORS middleware - must be added before routers
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,  # Required for cookies
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
    expose_headers=["X-Request-ID"],
)

# ============================================================================
# Routers
# ============================================================================

from app.routers import channel_oauth, channels, integrations, internal, webhooks

# OAuth redirect/callback (browser navigations, no CSRF header)
app.include_router(channel_oauth.router)

# Channel lifecycle, configuration, sync control, connection logs
app.include_router(channels.router)

# Organization integrations (app credentials per provider family)
app.include_router(integrations.router)

# Provider webhooks (Instagram, Messenger, WhatsApp)
app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])

# Internal endpoints (scheduled/cron jobs - protected by INTERNAL_SECRET)
app.include_router(internal.router)


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
def health():
    """
    Health check endpoint.

    Verifies database connectivity and returns environment info.
    """
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return {
        "status": "ok",
        "env": settings.ENV,
        "version": settings.VERSION,
        "encryption_configured": is_encryption_configured(),
    }
