"""Subscription Reconciliation API - Main Application.

FastAPI application that keeps each user's subscription record consistent
across Firestore, the Realtime Database and Stripe.

Security: user endpoints require Firebase Auth; admin endpoints require the
admin secret; /api/health is open.

Usage:
    uvicorn api.main:app --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

import os
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .dependencies import get_firebase_app, get_firestore, get_realtime_db
from .routers import admin, health, subscriptions
from .middleware.rate_limit import setup_rate_limiting
from .subscriptions.errors import SubscriptionError

# =============================================================================
# CONFIGURATION
# =============================================================================

DEBUG_MODE = os.environ.get("DEBUG", "false").lower() == "true"
API_VERSION = "1.0.0"

# CORS - strict origin allowlist
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.environ.get(
        "ALLOWED_ORIGINS",
        "http://localhost:5173,http://localhost:3000",
    ).split(",")
    if origin.strip()
]

logging.basicConfig(
    level=logging.DEBUG if DEBUG_MODE else logging.INFO,
    format='%(asctime)s [%(name)s] %(levelname)s: %(message)s'
)
logger = logging.getLogger("api.main")


# =============================================================================
# LIFESPAN (Startup/Shutdown)
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown hooks."""
    logger.info(f"Starting Subscription Reconciliation API v{API_VERSION}")
    logger.info(f"Debug mode: {DEBUG_MODE}")

    try:
        get_firebase_app()
        logger.info("Firebase initialized")

        get_firestore()
        logger.info("Firestore connected")

        get_realtime_db()
        logger.info("Realtime Database configured")

    except Exception as e:
        logger.error(f"Startup failed: {e}")
        raise

    yield

    logger.info("Shutting down Subscription Reconciliation API")


# =============================================================================
# APPLICATION
# =============================================================================

# Docs endpoints are only served in debug mode
_docs_disabled = {} if DEBUG_MODE else {"docs_url": None, "redoc_url": None, "openapi_url": None}

app = FastAPI(
    title="Subscription Reconciliation API",
    version=API_VERSION,
    lifespan=lifespan,
    **_docs_disabled,
)


# =============================================================================
# MIDDLEWARE
# =============================================================================

setup_rate_limiting(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type", "X-Admin-Secret", "X-Correlation-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)

    # Remove headers that reveal implementation
    if "server" in response.headers:
        del response.headers["server"]
    if "x-powered-by" in response.headers:
        del response.headers["x-powered-by"]

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Cache-Control"] = "no-store"

    return response


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log method, path, status and duration. Headers are never logged."""
    started = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - started) * 1000

    logger.debug("%s %s -> %s (%.0fms)", request.method, request.url.path, response.status_code, duration_ms)

    return response


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================

@app.exception_handler(SubscriptionError)
async def subscription_exception_handler(request: Request, exc: SubscriptionError):
    """Serialize engine and auth errors raised outside a router's own handling."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Request body/query validation failures in the shared error shape."""
    fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
    return JSONResponse(
        status_code=422,
        content={
            "error": "Invalid request",
            "code": "VALIDATION_ERROR",
            "details": {"fields": fields},
        },
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions with generic error response."""
    logger.exception(f"Unhandled exception on {request.url.path}")

    # No stack traces to clients
    if DEBUG_MODE:
        return JSONResponse(
            status_code=500,
            content={
                "error": str(exc),
                "code": "INTERNAL_ERROR",
                "details": {"type": type(exc).__name__}
            }
        )
    else:
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "code": "INTERNAL_ERROR"
            }
        )


# =============================================================================
# ROUTERS
# =============================================================================

app.include_router(health.router, prefix="/api", tags=["Health"])
app.include_router(subscriptions.router, prefix="/api", tags=["Subscriptions"])
app.include_router(admin.router, prefix="/api", tags=["Admin"])


# =============================================================================
# ROOT ENDPOINT
# =============================================================================

@app.get("/")
async def root():
    """Root endpoint - API info."""
    return {
        "name": "Subscription Reconciliation API",
        "version": API_VERSION,
        "status": "running"
    }


@app.get("/api")
async def api_root():
    """API root - available endpoints."""
    return {
        "endpoints": {
            "health": "/api/health",
            "cleanup": "/api/subscriptions/cleanup",
            "status": "/api/subscriptions/status",
            "fix": "/api/admin/subscriptions/fix",
            "diagnose": "/api/admin/subscriptions/diagnose",
            "ttlValidate": "/api/admin/ttl/validate",
            "cron": "/api/cron/subscriptions/reconcile",
        }
    }
