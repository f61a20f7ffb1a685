"""
FastAPI application main module.
Middleware, error handling, health checks and the ingest queue + worker lifecycle.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy import text
import time
import uuid
import os
from contextlib import asynccontextmanager
from ops_bridge.api.v1 import api_router
from ops_bridge.utils import setup_logging, get_logger
from ops_bridge.jobs.redis_queue import RedisQueue
from ops_bridge.jobs.worker_ingest import IngestWorker, create_queue, create_worker, ingest_runtime_metrics
from ops_bridge.database import engine, Base, SessionLocal
from ops_bridge.config import FEATURE_FLAGS, QUEUE_SETTINGS
from ops_bridge.errors import OpsBridgeError

# Setup logging before creating the app
setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE", "logs/app.log"),
    enable_console=True
)

logger = get_logger(__name__)

SERVICE_NAME = "ops-bridge"
SERVICE_VERSION = "1.0.0"

_worker: IngestWorker | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Creates tables, then starts the ingest queue and worker when the queue flag is on.
    """
    logger.info("Application startup initiated")

    global _worker
    try:
        logger.info("Creating database tables")
        Base.metadata.create_all(bind=engine)

        if FEATURE_FLAGS["queue_enabled"]:
            queue = create_queue()
            # endpoints read the queue from app state
            app.state.ingest_queue = queue
            _worker = create_worker(queue)
            _worker.start()
            logger.info("Ingest queue + worker started", backend="redis" if isinstance(queue, RedisQueue) else "memory")
        else:
            app.state.ingest_queue = None
            logger.info("Ingest queue disabled; events are recorded without processing")
        logger.info("Application startup completed successfully")
        yield
    except Exception as e:
        logger.error("Application startup failed", error=str(e), exc_info=True)
        raise
    finally:
        logger.info("Application shutdown initiated")
        if _worker:
            _worker.stop()
            _worker = None
        queue = getattr(app.state, "ingest_queue", None)
        if queue is not None:
            queue.shutdown()
        logger.info("Application shutdown completed")


app = FastAPI(
    title="Ops Bridge",
    description="""
    Booking, catalog and payment reconciliation between the web booking system and the
    operations system, plus a signed, exactly-once ingest pipeline.

    ## Ingest authentication
    Every ingest request carries:
    ```
    Authorization: Bearer <service token>
    x-signature: hex HMAC-SHA256 of METHOD\\npath\\ntimestamp\\nnonce\\nidempotencyKey\\nsha256(body)
    x-signature-algorithm: HMAC-SHA256
    x-timestamp, x-nonce, x-idempotency-key
    ```
    """,
    version=SERVICE_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(GZipMiddleware, minimum_size=1000)


# Request ID and request/response logging middleware
@app.middleware("http")
async def add_request_context_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    request.state.start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
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


@app.exception_handler(OpsBridgeError)
async def ops_bridge_exception_handler(request: Request, exc: OpsBridgeError):
    """Render domain errors with their stable reason code."""
    request_id = getattr(request.state, "request_id", "unknown")
    logger.warning(
        "Request rejected",
        code=exc.code,
        category=exc.category.value,
        status_code=exc.status_code,
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "code": exc.code,
            "message": exc.message,
            "request_id": request_id
        }
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = getattr(request.state, "request_id", "unknown")
    logger.warning(
        "Request validation failed",
        errors=exc.errors(),
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "message": "Request validation failed",
            "details": exc.errors(),
            "request_id": request_id
        }
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    request_id = getattr(request.state, "request_id", "unknown")
    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "message": exc.detail,
            "request_id": request_id
        }
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    request_id = getattr(request.state, "request_id", "unknown")
    logger.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        request_id=request_id,
        url=str(request.url),
        method=request.method,
        exc_info=True
    )
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "Internal server error",
            "request_id": request_id
        }
    )


@app.get("/health", tags=["health"], summary="Basic health check")
async def health_check():
    """Basic health check endpoint for load balancers."""
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
        "queue_backend": "redis" if QUEUE_SETTINGS.get("use_redis", False) else "memory",
    }


@app.get("/health/detailed", tags=["health"], summary="Detailed health check")
async def detailed_health_check():
    """Database reachability, queue state and feature flags."""
    health_status = {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
        "featureFlags": dict(FEATURE_FLAGS),
        "checks": {}
    }

    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        health_status["checks"]["database"] = "healthy"
    except Exception as e:
        health_status["checks"]["database"] = f"unhealthy: {str(e)}"
        health_status["status"] = "degraded"
    finally:
        db.close()

    queue = getattr(app.state, "ingest_queue", None)
    metrics = ingest_runtime_metrics(queue)
    health_status["checks"]["queue"] = metrics
    if metrics["enabled"] and not metrics["connected"]:
        health_status["status"] = "degraded"
    return health_status


@app.get("/", tags=["root"])
async def root():
    return {
        "message": "Ops Bridge API",
        "version": SERVICE_VERSION,
        "documentation": "/docs",
        "health_check": "/health",
        "api_base": "/api/v1"
    }


app.include_router(api_router, prefix="/api/v1")

if __name__ == "__main__":
    import uvicorn

    logger.info("Starting development server")
    uvicorn.run(
        "ops_bridge.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        reload_dirs=["ops_bridge"],
        log_level="info",
        access_log=True
    )
