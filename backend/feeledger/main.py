# ============================================================
# feeledger/main.py
#
# The entry point for the fee ledger service.
#
# What this file does:
# - Creates the FastAPI app instance (create_app)
# - Builds the service graph on startup (or takes one from tests)
# - Adds CORS and request-timing middleware
# - Registers all routes under /api/v1
# - Maps domain errors (FeeLedgerError) to the standard
#   {"success": false, "message": ..., "detail": ...} shape
# - Adds a /health endpoint for Docker healthchecks
#
# Run locally:
#   uvicorn feeledger.main:app --reload --app-dir backend
# ============================================================

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from contextlib import asynccontextmanager
from typing import Optional
import logging
import time

from feeledger.core.config import settings
from feeledger.core.errors import FeeLedgerError
from feeledger.api.v1.router import api_router
from feeledger.services.container import Services, build_services

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.is_production else logging.DEBUG,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)

# Never leak auth headers / gateway keys from low-level HTTP debug logs.
# In production we force these noisy client loggers down to WARNING.
if settings.is_production and not settings.HTTP_CLIENT_DEBUG_LOGS:
    for noisy_logger in ("httpx", "httpcore", "hpack"):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    LEARNING NOTE: tests pass a Services built around the in-memory
    store and fake gateway; in production it is built on startup
    from settings, so importing this module never touches the DB.
    """

    # ── Startup / Shutdown ───────────────────────────────────
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
        logger.info(f"Environment: {settings.ENVIRONMENT} (storage: {settings.STORAGE_BACKEND})")

        if getattr(app.state, "services", None) is None:
            app.state.services = build_services()

        if app.state.services.db.ping():
            logger.info("✅ Database connection OK")
        else:
            logger.error("❌ Database connection FAILED: check SUPABASE_URL and keys")

        yield

        logger.info(f"Shutting down {settings.APP_NAME}")

    # ── Create App ───────────────────────────────────────────
    app = FastAPI(
        title=settings.APP_NAME,
        debug=settings.DEBUG,
        version=settings.APP_VERSION,
        description=(
            "FeeLedger: student fee ledgers, payment reconciliation, "
            "Razorpay installment plans and semester upgrades."
        ),
        docs_url="/docs" if not settings.is_production else None,   # Hide Swagger in prod
        redoc_url="/redoc" if not settings.is_production else None,
        lifespan=lifespan,
    )
    app.state.services = services

    # ── CORS Middleware ──────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Request timing middleware ────────────────────────────
    @app.middleware("http")
    async def add_request_timing(request: Request, call_next):
        """Logs how long each request takes. Useful for finding slow endpoints."""
        start = time.time()
        response = await call_next(request)
        duration = (time.time() - start) * 1000
        logger.info(f"{request.method} {request.url.path} → {response.status_code} ({duration:.1f}ms)")
        return response

    # ── Error handlers ───────────────────────────────────────
    @app.exception_handler(FeeLedgerError)
    async def fee_ledger_error_handler(request: Request, exc: FeeLedgerError):
        """
        Domain errors raised on purpose by the services. The class
        decides the status (404 not found, 409 conflict, 502 gateway...).
        """
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path}: {exc.message}")
        else:
            logger.info(f"{request.method} {request.url.path} refused: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "message": exc.message,
                "detail": exc.detail,
            },
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        """
        When Pydantic validation fails (e.g. missing required field),
        return a clean JSON error instead of the default response.
        """
        errors = []
        for error in exc.errors():
            field = " → ".join(str(e) for e in error["loc"])
            errors.append(f"{field}: {error['msg']}")

        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "success": False,
                "message": "Validation error",
                "detail": errors,
            },
        )

    @app.exception_handler(Exception)
    async def global_error_handler(request: Request, exc: Exception):
        """Catch-all for unexpected errors. Never expose stack traces."""
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "message": "An unexpected error occurred. Please try again.",
            },
        )

    # ── Routes ───────────────────────────────────────────────
    app.include_router(api_router, prefix=settings.API_PREFIX)

    # ── Health check ─────────────────────────────────────────
    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        """
        200 when the API and store are reachable, 503 otherwise.
        """
        services: Optional[Services] = request.app.state.services
        if services is not None and services.db.ping():
            return {"status": "healthy", "version": settings.APP_VERSION}
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "reason": "database_unreachable"},
        )

    @app.get("/", tags=["Health"])
    async def root():
        return {
            "app": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
        }

    return app


app = create_app()
