"""
main.py — MatchLens FastAPI application entry point.

Start with: uvicorn matchlens.main:app --reload --port 8000
(run from the project root)
"""
import logging
import os
import subprocess
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from matchlens.config import settings
from matchlens.errors import DuplicateOrderError, IntakeError, StorageError
from matchlens.intake.schemas import ErrorBody, ErrorResponse

# ---------------------------------------------------------------------------
# Logging: configured before anything else
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan: startup & shutdown hooks
# ---------------------------------------------------------------------------
def _run_migrations() -> None:
    package_dir = os.path.dirname(os.path.abspath(__file__))
    result = subprocess.run(
        [sys.executable, "-m", "alembic", "upgrade", "head"],
        capture_output=True,
        text=True,
        cwd=package_dir,
    )
    if result.returncode != 0:
        logger.error("Alembic migration failed:\n%s", result.stderr)
        raise RuntimeError(f"Alembic migration failed: {result.stderr}")
    msg = result.stdout.strip() or "No pending migrations"
    logger.info("Alembic: %s", msg)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
      1. Run Alembic migrations (when RUN_MIGRATIONS=true)
      2. Database engine + session factory
      3. Redis pool (PayPal token cache; optional)
      4. httpx clients, PayPal + Cloudinary clients
      5. AssetUploader, PaymentVerifier, IntakeOrchestrator
    Shutdown: close everything opened above, in reverse order.
    """
    from matchlens.assets.cloudinary_client import CloudinaryClient
    from matchlens.assets.uploader import AssetUploader
    from matchlens.cache import create_redis_pool
    from matchlens.database import create_engine, create_sessionmaker
    from matchlens.intake.orchestrator import IntakeOrchestrator
    from matchlens.payments.paypal_client import PayPalClient
    from matchlens.payments.verifier import PaymentVerifier

    # --- 1. Database: run Alembic migrations ---
    if settings.run_migrations:
        _run_migrations()

    # --- 2. Engine: pool limits from settings ---
    app.state.engine = create_engine(settings)
    app.state.sessionmaker = create_sessionmaker(app.state.engine)

    # --- 3. Redis: a missing cache only costs an extra PayPal token call ---
    try:
        app.state.redis = await create_redis_pool()
    except (RedisError, OSError) as exc:
        logger.warning("Redis unavailable, PayPal tokens cached in-process: %s", exc)
        app.state.redis = None

    # --- 4. Outbound HTTP: one client per upstream for connection reuse ---
    app.state.paypal_http = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.paypal_timeout, connect=5.0)
    )
    app.state.cloudinary_http = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.cloudinary_timeout, connect=5.0)
    )
    paypal = PayPalClient(
        app.state.paypal_http,
        base_url=settings.paypal_base_url,
        client_id=settings.paypal_client_id,
        client_secret=settings.paypal_client_secret,
        redis=app.state.redis,
        merchant_email=settings.paypal_merchant_email,
        frontend_url=settings.frontend_url,
    )
    if not paypal.configured:
        logger.warning("PayPal credentials missing, verification and /api/paypal will return 503")
    cloudinary = CloudinaryClient(
        app.state.cloudinary_http,
        cloud_name=settings.cloudinary_cloud_name,
        api_key=settings.cloudinary_api_key,
        api_secret=settings.cloudinary_api_secret,
    )
    if not cloudinary.configured:
        logger.warning("Cloudinary credentials missing, submissions will be stored without photos")

    # --- 5. Services: Semaphore MUST be created inside the running loop ---
    app.state.uploader = AssetUploader(cloudinary, concurrency=settings.upload_concurrency)
    app.state.verifier = PaymentVerifier(paypal)
    app.state.orchestrator = IntakeOrchestrator(
        app.state.sessionmaker,
        app.state.uploader,
        verifier=app.state.verifier,
        verify_payments=settings.verify_payments,
        original_photos_folder=settings.original_photos_folder,
        screenshot_photos_folder=settings.screenshot_photos_folder,
    )
    logger.info(
        "MatchLens v%s starting up (paypal=%s verify_payments=%s)",
        settings.app_version,
        "live" if settings.paypal_is_live else "sandbox",
        settings.verify_payments,
    )
    yield

    # --- Shutdown ---
    await app.state.cloudinary_http.aclose()
    await app.state.paypal_http.aclose()
    if app.state.redis is not None:
        await app.state.redis.aclose()
        logger.info("Redis connection pool closed")
    await app.state.engine.dispose()
    logger.info("MatchLens shutting down")


# ---------------------------------------------------------------------------
# FastAPI application instance
# ---------------------------------------------------------------------------
app = FastAPI(
    title="MatchLens API",
    version=settings.app_version,
    description=(
        "Payment-gated onboarding intake: verifies a PayPal capture, stores the "
        "dating-profile questionnaire and its photos, and returns a receipt."
    ),
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# ---------------------------------------------------------------------------
# CORS middleware: restricted to frontend origins from settings
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """One line per request: method, path, status, elapsed ms. No bodies."""
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info(
        "%s %s %d %.1fms", request.method, request.url.path, response.status_code, elapsed_ms
    )
    return response


# ---------------------------------------------------------------------------
# Error response helper
# ---------------------------------------------------------------------------
def _make_error_response(
    code: str,
    message: str,
    details: list[dict[str, Any]] | None = None,
    status_code: int = 500,
    **extra: Any,
) -> JSONResponse:
    """Build a standard {success: false, error: {code, message, details}} response."""
    body = ErrorResponse(
        error=ErrorBody(code=code, message=message, details=details or [], **extra)
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Request size guard: outermost, so oversized bodies are never buffered
# ---------------------------------------------------------------------------
class BodySizeLimitMiddleware:
    """
    413 PAYLOAD_TOO_LARGE for bodies over settings.max_request_bytes.

    A declared Content-Length is checked before the app runs. Chunked bodies
    are counted as they are received; crossing the limit raises a 413
    HTTPException from receive(), which the handlers below render.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        max_bytes = settings.max_request_bytes
        declared = dict(scope["headers"]).get(b"content-length")
        if declared is not None and declared.isdigit() and int(declared) > max_bytes:
            logger.warning(
                "Request body rejected %s %s content_length=%s", scope["method"], scope["path"], declared.decode()
            )
            response = _make_error_response(
                code="PAYLOAD_TOO_LARGE",
                message=_too_large_message(max_bytes),
                status_code=413,
            )
            await response(scope, receive, send)
            return

        received = 0

        async def limited_receive():
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > max_bytes:
                    raise HTTPException(status_code=413, detail=_too_large_message(max_bytes))
            return message

        await self.app(scope, limited_receive, send)


def _too_large_message(max_bytes: int) -> str:
    return f"Request body exceeds {max_bytes} bytes"


app.add_middleware(BodySizeLimitMiddleware)


# ---------------------------------------------------------------------------
# Global exception handlers: registered BEFORE routers
# ---------------------------------------------------------------------------
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Typed bodies (PayPal order create, status update): every violation in one envelope."""
    details = []
    for error in exc.errors():
        # "body" prefixes every loc; the client only knows its own field names
        field = ".".join(str(loc) for loc in error["loc"] if loc != "body")
        details.append({"field": field or None, "issue": error["msg"]})
    return _make_error_response(
        code="VALIDATION_ERROR",
        message="Request validation failed",
        details=details,
        status_code=422,
    )


@app.exception_handler(IntakeError)
async def intake_exception_handler(request: Request, exc: IntakeError) -> JSONResponse:
    """
    Renders every MatchLens domain error with its own code and HTTP status.
    A duplicate order carries the receipt of the submission already stored.
    """
    extra: dict[str, Any] = {"retryable": exc.retryable}
    if isinstance(exc, DuplicateOrderError) and exc.receipt is not None:
        extra["receipt"] = exc.receipt
    if exc.status_code >= 500:
        logger.warning(
            "%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message
        )
    return _make_error_response(
        code=exc.code,
        message=exc.message,
        details=exc.details,
        status_code=exc.status_code,
        **extra,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    """Router-level failures (unknown path, wrong method, oversized body) with a semantic code."""
    code_map = {
        400: "BAD_REQUEST",
        401: "UNAUTHORIZED",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
        409: "CONFLICT",
        413: "PAYLOAD_TOO_LARGE",
        422: "VALIDATION_ERROR",
        429: "RATE_LIMITED",
    }
    code = code_map.get(exc.status_code, f"HTTP_{exc.status_code}")
    return _make_error_response(
        code=code,
        message=str(exc.detail),
        status_code=exc.status_code,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """Anything that escaped the intake taxonomy: 500, traceback in the log, type only in debug."""
    logger.error(
        "Unhandled exception on %s %s",
        request.method,
        request.url.path,
        exc_info=True,
    )
    if settings.debug:
        details = [{"issue": f"{type(exc).__name__}: {exc}"}]
        message = "An unexpected error occurred (debug details included)"
    else:
        details = []
        message = "An unexpected error occurred"
    return _make_error_response(
        code="INTERNAL_ERROR",
        message=message,
        details=details,
        status_code=500,
    )


# ---------------------------------------------------------------------------
# Health endpoints (no auth required)
# ---------------------------------------------------------------------------
@app.get("/health", tags=["System"])
@app.get("/api/health", tags=["System"])
async def health_check() -> dict:
    """Liveness only; never touches the database or upstreams."""
    return {
        "success": True,
        "status": "ok",
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/api/ping-db", tags=["System"])
async def ping_db(request: Request) -> dict:
    """Readiness: SELECT 1 against the pooled engine."""
    from matchlens.database import ping

    try:
        await ping(request.app.state.engine)
    except (SQLAlchemyError, OSError) as exc:
        logger.error("Database ping failed: %s", exc)
        raise StorageError("Database unreachable") from exc
    return {
        "success": True,
        "database": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
from matchlens.intake.routes import router as intake_router  # noqa: E402
from matchlens.payments.routes import router as paypal_router  # noqa: E402

app.include_router(intake_router)
app.include_router(paypal_router)
