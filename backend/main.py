# main.py — Rocks Tracker API Gateway
# Features:
# - Request correlation IDs + timing (feeds audit duration)
# - Security headers
# - Uniform error bodies: {"error": code, "message": ..., "request_id": ...}
# - Health check with DB verification
# - Global feature-flag bootstrap on startup

import os
import json
import uuid
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

from database import init_db, close_db, get_db_session, get_db_context
from errors import APIError, integrity_field
from feature_flags import ensure_global_feature_flags
from telemetry import setup_telemetry

VERSION = "1.4.0"
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")

# Logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("rocks")


def _check_startup_config():
    """Validate critical configuration on startup."""
    warnings = []

    jwt_key = os.getenv("JWT_SECRET_KEY", "")
    if not jwt_key or len(jwt_key) < 32:
        warnings.append("JWT_SECRET_KEY is not set or shorter than 32 characters")

    if not os.getenv("SUPER_ADMIN_EMAILS"):
        warnings.append("SUPER_ADMIN_EMAILS is empty; only the super_admin_emails table grants platform access")

    if ENVIRONMENT == "development":
        logger.info("Development mode: internal error details are returned to clients")

    for w in warnings:
        logger.warning(w)

    return len(warnings) == 0


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting Rocks Tracker v{VERSION}...")
    await init_db()
    async with get_db_context() as db:
        await ensure_global_feature_flags(db)
    _check_startup_config()
    # Initialise OpenTelemetry (no-op if OTEL_EXPORTER_OTLP_ENDPOINT not set)
    setup_telemetry(app)
    yield
    logger.info("Shutting down Rocks Tracker...")
    await close_db()


app = FastAPI(
    title="Rocks Tracker",
    description="Multi-tenant OKR / Rocks / Sprints tracking API",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ============================================================
# CORS
# ============================================================

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS",
        "http://localhost:3000,http://localhost:5173"
    ).split(",")
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Organization-Id"],
    expose_headers=["X-Request-ID"],
)


# ============================================================
# MIDDLEWARE: Correlation IDs + Timing
# ============================================================

@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    request.state.started_at = time.perf_counter()

    response = await call_next(request)
    duration = time.perf_counter() - request.state.started_at

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Response-Time"] = f"{duration:.4f}s"

    logger.info(
        f"{request.method} {request.url.path} → {response.status_code} "
        f"({duration:.3f}s) [rid={request_id[:8]}]"
    )
    return response


# ============================================================
# MIDDLEWARE: Security Headers
# ============================================================

@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

def _error_response(request: Request, status_code: int, body: dict, headers=None) -> JSONResponse:
    body["request_id"] = getattr(request.state, "request_id", None)
    return JSONResponse(status_code=status_code, content=body, headers=headers)


@app.exception_handler(APIError)
async def api_error_handler(request: Request, exc: APIError):
    return _error_response(request, exc.status_code, exc.to_dict(), getattr(exc, "headers", None))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    codes = {401: "Unauthorized", 403: "Forbidden", 404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED"}
    return _error_response(
        request,
        exc.status_code,
        {"error": codes.get(exc.status_code, "HTTP_ERROR"), "message": str(exc.detail)},
        getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Sanitise errors to ensure JSON serialisability
    errors = []
    for err in exc.errors():
        clean_err = {
            "type": str(err.get("type", "unknown")),
            "loc": list(err.get("loc", [])),
            "msg": str(err.get("msg", "")),
        }
        if "input" in err:
            try:
                json.dumps(err["input"])
                clean_err["input"] = err["input"]
            except (TypeError, ValueError):
                clean_err["input"] = str(err["input"])
        errors.append(clean_err)

    return _error_response(request, 422, {
        "error": "VALIDATION_ERROR",
        "message": "נתונים לא תקינים",
        "details": errors,
    })


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError):
    logger.warning(f"Integrity error on {request.method} {request.url.path}: {exc.orig}")
    body = {"error": "DUPLICATE_ERROR", "message": "רשומה עם ערך זה כבר קיימת"}
    field = integrity_field(exc)
    if field:
        body["field"] = field
    return _error_response(request, 409, body)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    body = {"error": "INTERNAL_ERROR", "message": "שגיאת שרת פנימית"}
    if ENVIRONMENT == "development":
        body["detail"] = str(exc)
        body["type"] = type(exc).__name__
    return _error_response(request, 500, body)


# ============================================================
# ROUTERS
# ============================================================

from routers import (
    auth, organizations, teams, feature_flags, audit, notifications,
    objectives, rocks, sprints, stories, tasks, labels, dashboard, super_admin,
)

app.include_router(auth.router)
app.include_router(organizations.router)
app.include_router(teams.router)
app.include_router(feature_flags.router)
app.include_router(audit.router)
app.include_router(notifications.router)
app.include_router(super_admin.router)

# Planning entities
app.include_router(objectives.router)
app.include_router(rocks.router)
app.include_router(sprints.router)
app.include_router(stories.router)
app.include_router(tasks.router)
app.include_router(labels.router)
app.include_router(dashboard.router)


# ============================================================
# HEALTH & ROOT
# ============================================================

@app.get("/health")
async def health_check():
    """Health check with database connectivity verification"""
    db_status = "unknown"
    try:
        async for db in get_db_session():
            from sqlalchemy import text
            await db.execute(text("SELECT 1"))
            db_status = "connected"
            break
    except Exception as e:
        db_status = f"error: {str(e)[:100]}"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": VERSION,
        "environment": ENVIRONMENT,
        "database": db_status,
    }


@app.get("/")
async def root():
    return {
        "name": "Rocks Tracker",
        "version": VERSION,
        "docs": "/docs",
        "health": "/health",
        "status": "operational",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=os.getenv("ENVIRONMENT") != "production",
        workers=int(os.getenv("WORKERS", 1)),
    )
