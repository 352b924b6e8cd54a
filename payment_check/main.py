"""
FastAPI application main module.
Wires the payment status check engine (run manager, queue, worker) behind a small REST surface.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import time
import uuid
import os
from contextlib import asynccontextmanager
from sqlalchemy import text
from payment_check.api.v1 import api_router
from payment_check.utils import setup_logging, get_logger
from payment_check.jobs.worker import PaymentCheckWorker, create_queue
from payment_check.database import engine, Base, SessionLocal
from payment_check.config import QUEUE_SETTINGS, USE_SIMULATED_GATEWAYS
from payment_check.exceptions import ConfigurationError, InvalidRequestError, RunNotFoundError
from payment_check.integrations import build_collaborators
from payment_check.services.run_config import default_run_config
from payment_check.services.run_manager import RunManager
import payment_check.models.db  # noqa: F401  (registers tables on Base.metadata)

# Setup logging before creating the app
setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE", "logs/payment_check.log"),
    enable_console=True
)

logger = get_logger(__name__)

SERVICE_NAME = "payment-status-check"
SERVICE_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    logger.info("Application startup initiated")

    worker: PaymentCheckWorker | None = None
    queue = None
    try:
        # Malformed settings abort startup before any run is accepted
        default_config = default_run_config()
        logger.info("Run configuration validated", **default_config.to_dict())

        logger.info("Creating database tables")
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created successfully")

        queue = create_queue()
        run_manager = RunManager(
            queue,
            session_factory=SessionLocal,
            collaborators=build_collaborators(),
            default_config=default_config,
        )
        app.state.queue = queue  # type: ignore[attr-defined]
        app.state.run_manager = run_manager  # type: ignore[attr-defined]

        worker = PaymentCheckWorker(queue, run_manager)
        app.state.worker = worker  # type: ignore[attr-defined]
        worker.start()
        resumed = run_manager.resume_incomplete()
        logger.info(
            "Application startup completed successfully",
            simulated_gateways=USE_SIMULATED_GATEWAYS,
            resumed_runs=resumed,
        )
        yield
    except ConfigurationError as e:
        logger.error("Invalid configuration, aborting startup", error=str(e))
        raise
    except Exception as e:  # pragma: no cover
        logger.error("Application startup failed", error=str(e), exc_info=True)
        raise
    finally:
        logger.info("Application shutdown initiated")
        if worker:
            worker.stop()
            logger.info("Payment check worker stop signal sent")
        if queue is not None:
            queue.shutdown()
        logger.info("Application shutdown completed")


app = FastAPI(
    title="Payment Status Check Service",
    description="""
    Fan-out / fan-in orchestration of payment status checks.

    ## Flow
    * **Gateway lookup** - each payment id is resolved to its gateway with bounded concurrency
    * **Chunking** - payments are grouped per gateway into fixed-size chunks
    * **Gateway branches** - one branch per gateway, chunks processed strictly in order
    * **Aggregation** - every requested payment is reported exactly once

    Runs are asynchronous: `POST /api/v1/payments/check-status` returns a run id,
    then poll `GET /api/v1/payments/check-status/{run_id}`.
    """,
    version=SERVICE_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(GZipMiddleware, minimum_size=1000)


# Request ID and request/response logging middleware
@app.middleware("http")
async def add_request_context_and_logging(request: Request, call_next):
    """
    Add request ID, timing, and request/response logging.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    request.state.start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        user_agent=request.headers.get("User-Agent"),
        remote_addr=request.client.host if request.client else "unknown",
        request_id=request_id
    )

    response = await call_next(request)

    process_time = time.time() - request.state.start_time
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))
    response.headers["X-Content-Type-Options"] = "nosniff"

    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time_ms=round(process_time * 1000, 2),
        request_id=request_id
    )

    return response


def _error_response(request: Request, status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "message": message,
            **extra,
            "request_id": getattr(request.state, "request_id", "unknown"),
        }
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors."""
    logger.warning(
        "Request validation failed",
        errors=exc.errors(),
        request_id=getattr(request.state, "request_id", "unknown"),
        url=str(request.url),
        method=request.method
    )
    return _error_response(request, 422, "Request validation failed", details=jsonable_errors(exc))


def jsonable_errors(exc: RequestValidationError) -> list:
    # Pydantic error contexts may hold exception instances
    return [{k: (str(v) if k == "ctx" else v) for k, v in err.items()} for err in exc.errors()]


@app.exception_handler(RunNotFoundError)
async def run_not_found_handler(request: Request, exc: RunNotFoundError):
    logger.warning("Run not found", run_id=exc.run_id, request_id=getattr(request.state, "request_id", "unknown"))
    return _error_response(request, 404, str(exc))


@app.exception_handler(InvalidRequestError)
@app.exception_handler(ConfigurationError)
async def bad_request_handler(request: Request, exc: Exception):
    logger.warning(
        "Rejected payment check request",
        error=str(exc),
        error_type=type(exc).__name__,
        request_id=getattr(request.state, "request_id", "unknown")
    )
    return _error_response(request, 400, str(exc))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=getattr(request.state, "request_id", "unknown"),
        url=str(request.url),
        method=request.method
    )
    return _error_response(request, exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        request_id=getattr(request.state, "request_id", "unknown"),
        url=str(request.url),
        method=request.method,
        exc_info=True
    )
    return _error_response(request, 500, "Internal server error")


@app.get("/health", tags=["health"], summary="Basic health check")
async def health_check():
    """Basic health check endpoint for load balancers."""
    use_redis = bool(QUEUE_SETTINGS.get("use_redis", False))  # type: ignore[arg-type]
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
        "queue_backend": "redis" if use_redis else "memory",
    }


@app.get("/health/detailed", tags=["health"], summary="Detailed health check")
async def detailed_health_check():
    """Detailed health check with database, queue and worker status."""
    health_status = {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
        "checks": {}
    }

    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
        health_status["checks"]["database"] = "healthy"
    except Exception as e:
        health_status["checks"]["database"] = f"unhealthy: {str(e)}"
        health_status["status"] = "degraded"

    queue = getattr(app.state, "queue", None)
    if queue is not None:
        snap = queue.snapshot()
        health_status["checks"]["queue"] = {
            k: v for k, v in snap.items() if k in {"depth", "ready", "scheduled", "redis_active"}
        }
        if snap.get("redis_active") is False and bool(QUEUE_SETTINGS.get("use_redis", False)):
            health_status["status"] = "degraded"

    worker = getattr(app.state, "worker", None)
    if worker is not None:
        health_status["checks"]["worker"] = "running" if worker.is_alive else "stopped"
        if not worker.is_alive:
            health_status["status"] = "degraded"

    return health_status


@app.get("/", tags=["root"])
async def root():
    """API root endpoint with basic information."""
    return {
        "message": "Payment Status Check API",
        "version": SERVICE_VERSION,
        "documentation": "/docs",
        "health_check": "/health",
        "api_base": "/api/v1"
    }


app.include_router(api_router, prefix="/api/v1")

# Development server configuration
if __name__ == "__main__":
    import uvicorn

    logger.info("Starting development server")

    uvicorn.run(
        "payment_check.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        reload_dirs=["payment_check"],
        log_level="info",
        access_log=True
    )
