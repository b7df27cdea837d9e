"""Main FastAPI application"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
import logging
import traceback
import time
import uuid

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from authgate.api.v1 import auth, users
from authgate.config import Settings, get_settings
from authgate.core.database import SessionLocal, init_db
from authgate.core.exceptions import BaseAPIException
from authgate.services.registry import Services, build_services

logger = logging.getLogger(__name__)

REQUEST_COUNT = Counter(
    "authgate_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "authgate_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)
AUTH_FAILURES = Counter(
    "authgate_auth_failures_total",
    "Requests rejected with a credential or token error",
    ["code"],
)
SWEEPER_UP_GAUGE = Gauge("authgate_sweeper_up", "Sweeper liveness (1 running, 0 stopped)")


def configure_logging(config: Settings) -> None:
    """Console plus file logging; the log directory is created if missing"""
    log_file = config.get_log_file()
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _error_body(request: Request, error: str, code: str, details=None) -> dict:
    return {
        "success": False,
        "error": error,
        "code": code,
        "details": details,
        "path": request.url.path,
        "timestamp": _now_iso(),
    }


def create_app(config: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Build the application

    Args:
        config: Settings, defaults to the cached environment settings
        services: Prebuilt service graph, built from config when omitted
    """
    config = config or get_settings()
    configure_logging(config)
    services = services or build_services(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        config.validate_security_settings()
        logger.info(f"Starting {config.APP_NAME} v{config.APP_VERSION}")
        logger.info(f"Environment: {config.ENVIRONMENT}, OTP delivery mode: {config.OTP_DELIVERY_MODE.value}")

        try:
            init_db()
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

        if config.RUN_EMBEDDED_SWEEPER:
            services.sweeper.start()
            SWEEPER_UP_GAUGE.set(1)

        yield

        if services.sweeper.is_running():
            services.sweeper.stop()
        SWEEPER_UP_GAUGE.set(0)
        logger.info(f"Shutting down {config.APP_NAME}")

    app = FastAPI(
        title=config.APP_NAME,
        version=config.APP_VERSION,
        debug=config.DEBUG,
        docs_url="/api/docs" if config.DEBUG else None,
        redoc_url="/api/redoc" if config.DEBUG else None,
        lifespan=lifespan,
    )
    app.state.settings = config
    app.state.services = services

    # GZip compression for large responses
    app.add_middleware(GZipMiddleware, minimum_size=500)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_headers_and_timing(request: Request, call_next):
        """Add security headers, record metrics and log slow requests"""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        start = time.time()
        response = await call_next(request)
        duration = time.time() - start

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"
        response.headers["X-Request-ID"] = request_id

        route = request.scope.get("route")
        path = getattr(route, "path", request.url.path)
        REQUEST_COUNT.labels(request.method, path, str(response.status_code)).inc()
        REQUEST_LATENCY.labels(request.method, path).observe(duration)

        if duration > 1.0:
            logger.warning(
                "Slow request: %s %s took %.2fs request_id=%s",
                request.method,
                request.url.path,
                duration,
                request_id,
            )

        return response

    @app.exception_handler(BaseAPIException)
    async def api_exception_handler(request: Request, exc: BaseAPIException):
        """Handle custom API exceptions"""
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            f"API Exception: {exc.code}: {exc.message}",
            extra={
                "status_code": exc.status_code,
                "path": request.url.path,
                "method": request.method
            }
        )
        if exc.status_code in (401, 403):
            AUTH_FAILURES.labels(exc.code).inc()

        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(request, exc.message, exc.code, exc.details or None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle Pydantic validation errors"""
        errors = []
        for error in exc.errors():
            errors.append({
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"]
            })

        logger.warning(
            f"Validation error: {errors}",
            extra={"path": request.url.path, "method": request.method}
        )

        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=_error_body(request, "Validation failed", "validation_error", errors),
        )

    @app.exception_handler(SQLAlchemyError)
    async def database_exception_handler(request: Request, exc: SQLAlchemyError):
        """Handle database errors"""
        logger.error(
            f"Database error: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "traceback": traceback.format_exc()
            }
        )
        message = "A database error occurred. Please try again later."
        if not config.is_production:
            message = f"{message} ({exc})"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body(request, message, "database_error"),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle all other exceptions"""
        logger.critical(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "traceback": traceback.format_exc()
            }
        )
        message = "An unexpected error occurred."
        if not config.is_production:
            message = f"{message} ({type(exc).__name__}: {exc})"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body(request, message, "internal_error"),
        )

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        db_ok = True
        db_error = None
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        except Exception as exc:
            db_ok = False
            db_error = str(exc) if not config.is_production else "unavailable"
        finally:
            db.close()

        sweeper_status = services.sweeper.status()
        SWEEPER_UP_GAUGE.set(1 if sweeper_status["running"] else 0)

        return {
            "status": "healthy" if db_ok else "degraded",
            "version": config.APP_VERSION,
            "timestamp": _now_iso(),
            "readiness": {
                "database": {"ok": db_ok, "error": db_error},
                "sweeper": sweeper_status,
                "otp_delivery_mode": config.OTP_DELIVERY_MODE.value,
            },
        }

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "name": config.APP_NAME,
            "version": config.APP_VERSION,
            "status": "running",
            "docs": "/api/docs" if config.DEBUG else "disabled"
        }

    app.include_router(auth.router, prefix="/api/v1/auth", tags=["Authentication"])
    app.include_router(users.router, prefix="/api/v1/users", tags=["Users"])

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    config = get_settings()
    uvicorn.run(
        "authgate.main:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        workers=1 if config.DEBUG else config.WORKERS
    )
