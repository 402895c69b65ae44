"""
FastAPI application for the member import service.

Wires logging, the import run registry (``app.state.import_manager``),
request tracing, JSON error envelopes and health probes around the v1 API.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy import text
import time
import uuid
import os
from contextlib import asynccontextmanager
import app.database as database
from app.api.v1 import api_router
from app.utils import setup_logging, get_logger
from app.config import ENRICHMENT_SETTINGS
from app.services.import_service import ImportManager
from app.utils.circuit_breaker import GLOBAL_CIRCUIT_BREAKER
import app.models.db  # noqa: F401  (register tables on Base.metadata)

setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE", "logs/imports.log"),
    enable_console=True
)

logger = get_logger(__name__)

SERVICE_NAME = "member-import-service"
SERVICE_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and the run registry; cancel in-flight imports on shutdown."""
    logger.info("Starting import service", version=SERVICE_VERSION)
    try:
        database.Base.metadata.create_all(bind=database.engine)
        app.state.import_manager = ImportManager()  # type: ignore[attr-defined]
        logger.info(
            "Import manager ready",
            enrichment_enabled=bool(ENRICHMENT_SETTINGS["enabled"]),
            enrichment_url=ENRICHMENT_SETTINGS["url"]
        )
        yield
    except Exception as e:  # pragma: no cover
        logger.error("Import service failed to start", error=str(e), exc_info=True)
        raise
    finally:
        manager = getattr(app.state, "import_manager", None)
        if manager is not None:
            pending = [run.task for run in manager.runs.values() if run.task is not None and not run.task.done()]
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("In-flight imports cancelled by shutdown", count=len(pending))
        logger.info("Import service stopped")


app = FastAPI(
    title="Member Import Service",
    description="""
    Bulk import of union members and their employers from extracted document rows.

    * **Reconciliation** - every row becomes a create, update, skip or reject
    * **Chunked execution** - ordered chunks with retry, cancellation and resume
    * **Registry enrichment** - best-effort CNPJ lookup for new employers
    * **Audit trail** - run lifecycle entries and a downloadable error report
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


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _error_body(request: Request, message, **extra) -> dict:
    return {"success": False, "message": message, **extra, "request_id": _request_id(request)}


@app.middleware("http")
async def trace_requests(request: Request, call_next):
    """Tag each request with an id and report how long it took."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    started = time.perf_counter()
    logger.debug(
        "Request received",
        method=request.method,
        path=request.url.path,
        client=request.client.host if request.client else "unknown",
        request_id=request_id
    )

    response = await call_next(request)

    elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = str(elapsed_ms)
    logger.info(
        "Request handled",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=elapsed_ms,
        request_id=request_id
    )
    return response


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may carry exception instances that json cannot encode
    return [{k: v for k, v in err.items() if k != "ctx"} for err in exc.errors()]


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = jsonable_errors(exc)
    logger.warning("Request validation failed", path=request.url.path, errors=details, request_id=_request_id(request))
    return JSONResponse(status_code=422, content=_error_body(request, "Request validation failed", details=details))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(
        "HTTP error response",
        path=request.url.path,
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=_request_id(request)
    )
    return JSONResponse(status_code=exc.status_code, content=_error_body(request, exc.detail))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
        request_id=_request_id(request),
        exc_info=True
    )
    return JSONResponse(status_code=500, content=_error_body(request, "Internal server error"))


@app.get("/health", tags=["health"], summary="Liveness probe")
async def health_check():
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
    }


@app.get("/health/detailed", tags=["health"], summary="Database, registry breaker and run states")
async def detailed_health_check():
    checks: dict = {}
    status = "healthy"

    try:
        with database.SessionLocal() as db:
            db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except Exception as e:
        checks["database"] = f"unhealthy: {e}"
        status = "degraded"

    checks["circuit_breakers"] = GLOBAL_CIRCUIT_BREAKER.snapshot()

    manager = getattr(app.state, "import_manager", None)
    if manager is not None:
        runs: dict[str, int] = {}
        for run in manager.runs.values():
            runs[run.state.value] = runs.get(run.state.value, 0) + 1
        checks["import_runs"] = runs

    return {
        "status": status,
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
        "checks": checks,
    }


@app.get("/", tags=["root"])
async def root():
    return {
        "message": "Member Import Service API",
        "version": SERVICE_VERSION,
        "documentation": "/docs",
        "health_check": "/health",
        "api_base": "/api/v1"
    }


app.include_router(api_router, prefix="/api/v1")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=True,
        reload_dirs=["app"],
        log_level="info",
        access_log=True
    )
