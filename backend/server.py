from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import asyncio
import logging
import time
import uuid
from pathlib import Path
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from typing import Optional
import traceback

from sqlalchemy import text

# Load environment variables first
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Import configuration
from config import Settings, get_settings, get_cors_config, validate_environment

# Import logging and error tracking
from logging_config import setup_logging, get_logger, set_request_context, clear_request_context
from sentry_integration import init_sentry, capture_exception

# Import context, errors and routers
from core.context import AppContext, build_context
from core.errors import (
    ReconciliationError,
    InvalidInputError,
    NotFoundError,
    DuplicateKeyError,
    SettlementInProgressError,
    SettlementFailedError,
    SettlementTimeoutError,
    UpstreamUnavailableError,
)
from reconciliation.endpoints.reconciliation_api import router as reconciliation_router
from routers import ledger_router
from utils.validation_errors import validation_error_response, invalid_input_response

logger = get_logger(__name__)

# Most specific first
ERROR_STATUS_CODES = [
    (SettlementInProgressError, 409),
    (NotFoundError, 404),
    (DuplicateKeyError, 409),
    (SettlementTimeoutError, 504),
    (SettlementFailedError, 500),
    (UpstreamUnavailableError, 503),
]


def error_status_code(exc: ReconciliationError) -> int:
    for error_class, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_class):
            return status_code
    return 500


async def _run_recovery(context: AppContext, pending: list):
    """Background restart recovery; failures are reported, never raised."""
    try:
        await context.service.resume_pending_settlements(pending)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(f"Settlement recovery pass aborted: {e}")
        capture_exception(e, component="settlement_recovery")


def create_app(settings: Optional[Settings] = None, context: Optional[AppContext] = None) -> FastAPI:
    """
    Build the API application.

    When ``context`` is given it is used as-is and owned by the caller;
    otherwise the lifespan builds it from settings and closes it on shutdown.
    """
    settings = settings or (context.settings if context else get_settings())

    # Configure structured logging
    # Use JSON format in production, plain text in development
    setup_logging(
        level=settings.LOG_LEVEL,
        json_format=settings.is_production,
        service_name="rampbridge-core"
    )

    # Initialize Sentry error tracking
    if settings.SENTRY_DSN:
        init_sentry(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT,
            release=settings.API_VERSION,
            traces_sample_rate=0.1 if settings.is_production else 0.0,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler"""
        # Startup
        logger.info("=" * 60)
        logger.info("Starting RampBridge Core API...")
        logger.info(f"Environment: {settings.ENVIRONMENT}")
        logger.info(f"Debug Mode: {settings.debug_enabled}")
        logger.info("=" * 60)

        env_status = validate_environment(settings)
        for warning in env_status.get("warnings", []):
            logger.warning(f"Configuration Warning: {warning}")

        owns_context = app.state.context is None
        if owns_context:
            try:
                app.state.context = await build_context(settings)
            except Exception as e:
                logger.error(f"Failed to build application context: {e}")
                raise

        ctx: AppContext = app.state.context
        tasks = []

        # Snapshot before serving so request-driven settlements are not resumed twice
        pending = await ctx.service.pending_settlements()
        if pending:
            tasks.append(asyncio.create_task(_run_recovery(ctx, pending)))

        if settings.OBSERVER_ENABLED:
            tasks.append(asyncio.create_task(ctx.observer.run()))
        else:
            logger.warning("Chain observer disabled; withdrawals and bridges will not be ingested")

        logger.info("RampBridge Core API started successfully")

        yield

        # Shutdown
        logger.info("Shutting down RampBridge Core API...")
        ctx.observer.stop()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task

        if owns_context:
            await ctx.close()
            app.state.context = None

    app = FastAPI(
        title=settings.API_TITLE,
        description="""
        Reconciliation core bridging fiat banking rails and an on-chain token.

        ## Features

        ### Onramp
        - POST /onramp/initiate - Issue an onramp id and virtual account
        - POST /webhook/deposit - Record a fiat deposit and settle on-chain
        - GET /onramp/{onrampId} - Lifecycle status

        ### Settlement
        - GET /deposits/{depositId}/settlement - Settlement progress
        - POST /deposits/{depositId}/retry - Manual resubmission

        ### Offramp
        - POST /register/offramp - Register a payout bank account

        ### Ledger
        - GET /deposits, /onramp_requests, /offramps, /withdrawals, /bridges
        - POST /withdrawals/{id}/processed, /bridges/{id}/processed (internal)
        """,
        version=settings.API_VERSION,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug_enabled else None,
        redoc_url="/redoc" if settings.debug_enabled else None,
    )
    app.state.settings = settings
    app.state.context = context

    # ==================== HEALTH CHECK ENDPOINTS ====================

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        """
        Detailed health check for load balancers and uptime monitors.

        Returns:
        - 200: All systems operational
        - 503: Database or chain node unavailable
        """
        health_status = {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": settings.API_VERSION,
            "environment": settings.ENVIRONMENT,
            "checks": {}
        }
        ctx: Optional[AppContext] = request.app.state.context

        if ctx is None:
            raise HTTPException(status_code=503, detail={"status": "starting"})

        try:
            async with ctx.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            health_status["checks"]["database"] = {
                "status": "connected",
                "type": ctx.engine.dialect.name
            }
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            health_status["status"] = "unhealthy"
            health_status["checks"]["database"] = {"status": "disconnected", "error": str(e)}

        try:
            block = await ctx.chain.block_number()
            health_status["checks"]["chain"] = {"status": "connected", "block": block}
        except Exception as e:
            logger.error(f"Chain node health check failed: {e}")
            health_status["status"] = "unhealthy"
            health_status["checks"]["chain"] = {"status": "disconnected", "error": str(e)}

        env_status = validate_environment(settings)
        health_status["checks"]["configuration"] = {
            "status": "valid" if env_status["valid"] else "invalid",
            "warnings": len(env_status.get("warnings", [])),
            "errors": len(env_status.get("errors", []))
        }

        if health_status["status"] == "unhealthy":
            raise HTTPException(status_code=503, detail=health_status)

        return health_status

    @app.get("/health/ready", tags=["Health"])
    async def readiness_check(request: Request):
        """
        Readiness probe.
        Returns 200 only when the service can accept traffic.
        """
        ctx: Optional[AppContext] = request.app.state.context
        if ctx is None:
            raise HTTPException(status_code=503, detail={"status": "not_ready", "error": "starting"})
        try:
            async with ctx.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception as e:
            raise HTTPException(status_code=503, detail={"status": "not_ready", "error": str(e)})
        return {"status": "ready", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/health/live", tags=["Health"])
    async def liveness_check():
        """Liveness probe. Doesn't check dependencies."""
        return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}

    # Include all routers
    app.include_router(reconciliation_router)
    app.include_router(ledger_router)

    # ==================== MIDDLEWARE ====================

    # CORS middleware with production-safe configuration
    app.add_middleware(CORSMiddleware, **get_cors_config(settings))

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests with timing information"""
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID") or f"req-{uuid.uuid4().hex[:12]}"
        set_request_context(request_id=request_id)

        if settings.debug_enabled:
            logger.debug(f"{request.method} {request.url.path}")

        try:
            response = await call_next(request)

            process_time = time.time() - start_time
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))

            if settings.debug_enabled or response.status_code >= 400:
                logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({process_time:.3f}s)")

            return response
        except Exception as e:
            logger.error(f"Request failed: {str(e)}")
            raise
        finally:
            clear_request_context()

    # ==================== EXCEPTION HANDLERS ====================

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return validation_error_response(exc)

    @app.exception_handler(ReconciliationError)
    async def reconciliation_error_handler(request: Request, exc: ReconciliationError):
        if isinstance(exc, InvalidInputError):
            return invalid_input_response(exc)

        status_code = error_status_code(exc)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status_code, content={"success": False, **exc.to_dict()})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle uncaught exceptions"""
        logger.error(f"Unhandled exception: {exc}")
        if settings.debug_enabled:
            logger.error(traceback.format_exc())
        capture_exception(exc, path=request.url.path)

        # Don't expose internal errors in production
        if settings.is_production:
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal server error"}
            )
        return JSONResponse(
            status_code=500,
            content={
                "detail": str(exc),
                "type": type(exc).__name__,
                "traceback": traceback.format_exc() if settings.debug_enabled else None
            }
        )

    return app


app = create_app()
