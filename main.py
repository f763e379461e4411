"""FastAPI application entrypoint for the TimeOut backend.

The process owns exactly one document store and one settings object; both
are built here (or handed in by tests) and passed to the managers.
"""
import sys
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

# Ensure UTF-8 encoding
if sys.stdout:
    sys.stdout.reconfigure(encoding='utf-8')

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from timeout_app.api.routes import router
from timeout_app.core.auth import check_secret_strength
from timeout_app.core.config import Settings, load_settings
from timeout_app.core.errors import EngineError, InvalidArgument, OperationResult
from timeout_app.core.logging import get_logger, setup_logging
from timeout_app.infrastructure.redis import RedisDocumentStore
from timeout_app.infrastructure.store import DocumentStore, InMemoryDocumentStore
from timeout_app.services.classrooms import ClassroomManager
from timeout_app.services.profiles import ProfileService
from timeout_app.services.rooms import RoomManager

logger = get_logger(__name__)

# Application metadata
APP_VERSION = "1.0.0"
APP_NAME = "TimeOut Study Backend"


def build_store(settings: Settings) -> DocumentStore:
    """Construct the configured store adapter (STORE_BACKEND)."""
    if settings.store_backend == "memory":
        logger.warning("Using in-memory document store; data is lost on restart")
        return InMemoryDocumentStore(
            max_attempts=settings.transaction_max_attempts,
            backoff_seconds=settings.transaction_backoff_seconds,
        )
    return RedisDocumentStore.from_settings(settings)


def attach_services(app: FastAPI, store: DocumentStore, settings: Settings):
    app.state.store = store
    app.state.profiles = ProfileService(store, settings)
    app.state.rooms = RoomManager(store, settings)
    app.state.classrooms = ClassroomManager(store, settings)


def create_app(store: Optional[DocumentStore] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Build the application.

    Args:
        store: Store adapter to use; built from settings on startup if omitted
        settings: Settings instance; loaded from the environment if omitted
    """
    settings = settings or load_settings()
    check_secret_strength(settings)

    # Initialize structured logging
    setup_logging(level=settings.log_level, json_format=settings.environment == "production")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Application starting up", extra={"version": APP_VERSION})
        owns_store = store is None
        if owns_store:
            attach_services(app, build_store(settings), settings)

        yield

        logger.info("Application shutting down")
        if owns_store and isinstance(app.state.store, RedisDocumentStore):
            app.state.store.redis.close()

    app = FastAPI(
        title=APP_NAME,
        description="Study rooms, classrooms and live sessions",
        version=APP_VERSION,
        docs_url="/docs" if settings.environment != "production" else None,  # Disable in prod
        redoc_url="/redoc" if settings.environment != "production" else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    if store is not None:
        attach_services(app, store, settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log every request with timing and status code."""
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        request_log = get_logger(__name__, context={
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
        })

        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.time() - start_time) * 1000
            request_log.error(
                f"Request failed: {request.method} {request.url.path}",
                extra={"duration_ms": round(duration_ms, 2)},
                exc_info=True
            )
            return JSONResponse(
                status_code=500,
                content={"success": False, "errorCode": "internal", "errorMessage": "Internal server error"}
            )

        duration_ms = (time.time() - start_time) * 1000
        request_log.info(
            f"Request completed: {request.method} {request.url.path}",
            extra={
                "status_code": response.status_code,
                "duration_ms": round(duration_ms, 2),
            }
        )

        # Add request ID to response headers
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError):
        """Errors raised outside manager operations (e.g. authentication)."""
        result = OperationResult.fail(exc)
        return JSONResponse(status_code=result.status_code, content=result.to_response())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        problems = ", ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        result = OperationResult.fail(InvalidArgument(problems))
        return JSONResponse(status_code=result.status_code, content=result.to_response())

    app.include_router(router, prefix=settings.api_prefix)

    @app.get("/")
    def root():
        """Root endpoint with basic service info."""
        return {
            "service": APP_NAME,
            "version": APP_VERSION,
            "status": "running",
            "environment": settings.environment
        }

    @app.get("/health")
    def health_check():
        """Liveness probe. Returns 200 while the process is up."""
        return {
            "status": "healthy",
            "version": APP_VERSION,
            "checks": {"api": "ok"}
        }

    @app.get("/ready")
    def readiness_check(request: Request):
        """Readiness probe: the document store must answer a ping."""
        store_ok = hasattr(request.app.state, "store") and request.app.state.store.ping()
        checks = {
            "store": "ok" if store_ok else "error",
            "backend": settings.store_backend,
        }
        return JSONResponse(
            status_code=200 if store_ok else 503,
            content={"status": "ready" if store_ok else "degraded", "checks": checks}
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000)
