# data_gateway/app/main.py
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging
import platform
import time

import psutil
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from data_gateway.app.routers import gateway as gateway_router
from data_gateway.core.config import settings
from data_gateway.core.exceptions import ConfigurationError, GatewayError
from data_gateway.gateway.handlers import JsonFileMappingSource, validate_mappings
from data_gateway.utils.logger import setup_logging
from data_gateway.utils.stats import gateway_stats

# Setup logging
setup_logging()
logger = logging.getLogger(settings.APP_NAME)


async def validate_handler_configuration() -> None:
    """
    Validates the file-based handler mapping table at startup. Problems are
    logged; with HANDLER_VALIDATION_STRICT they stop the application.
    Metadata-based mappings are validated when first loaded by a request.
    """
    if settings.HANDLER_MAPPINGS_SOURCE != "file":
        logger.info(f"Handler mappings are read from {settings.HANDLER_MAPPING_OBJECT}; skipping startup validation.")
        return

    try:
        mappings = await JsonFileMappingSource(settings.HANDLER_MAPPINGS_FILE).load()
        problems = validate_mappings(mappings)
    except ConfigurationError as e:
        mappings, problems = [], [e.message]

    for problem in problems:
        logger.error(f"Handler configuration problem: {problem}")
    if problems and settings.HANDLER_VALIDATION_STRICT:
        raise ConfigurationError(f"{len(problems)} handler configuration problem(s) found at startup.")
    logger.info(f"Validated {len(mappings)} handler mappings ({len(problems)} problem(s)).")


@asynccontextmanager
async def lifespan(app: FastAPI):
    await validate_handler_configuration()
    gateway_router.get_record_schemas()
    yield


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Generic Salesforce data-ingestion gateway: bulk upsert of parent records with child collections.",
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    lifespan=lifespan,
)

# CORS Middleware
if settings.BACKEND_CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[str(origin) for origin in settings.BACKEND_CORS_ORIGINS],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# Middleware to add process time header
@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    start_time = time.perf_counter()
    response = await call_next(request)
    process_time = time.perf_counter() - start_time
    response.headers["X-Process-Time"] = f"{process_time:.4f}"
    logger.info(
        f"Request: {request.method} {request.url.path} - Status: {response.status_code} - Process Time: {process_time:.4f}s"
    )
    return response

# Exception handlers
@app.exception_handler(GatewayError)
async def gateway_exception_handler(request: Request, exc: GatewayError):
    logger.error(f"{exc.error_type}: {exc.message} for request: {request.method} {request.url.path}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error_type": exc.error_type},
    )

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.error(f"HTTPException: {exc.status_code} {exc.detail} for request: {request.method} {request.url.path}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error_type": "HTTPException"},
        headers=exc.headers,
    )

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.error(f"Validation error: {exc.errors()} for request: {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": jsonable_errors(exc), "error_type": "RequestValidationError"},
    )

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc} for request: {request.method} {request.url.path}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "An unexpected error occurred. Please try again later.", "error_type": exc.__class__.__name__},
    )


def jsonable_errors(exc: RequestValidationError):
    # ctx may carry exception objects that are not JSON serializable
    return [{k: v for k, v in error.items() if k != "ctx"} for error in exc.errors()]


# Include routers
app.include_router(gateway_router.router, prefix=settings.API_V1_STR, tags=["Data Gateway"])

@app.get("/health", tags=["Health"])
async def health_check():
    return {
        "status": "healthy",
        "application": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

@app.get("/metrics", tags=["Metrics"], summary="Get gateway and process metrics")
async def get_metrics():
    """
    Returns gateway counters (batches, records, failures) and metrics of the
    running process.
    """
    process = psutil.Process()
    memory = process.memory_info()
    return {
        "application_name": settings.APP_NAME,
        "application_version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "gateway": gateway_stats.snapshot(),
        "process": {
            "cpu_percent": process.cpu_percent(interval=None),
            "memory_rss": memory.rss,
            "memory_vms": memory.vms,
            "num_threads": process.num_threads(),
        },
        "system_memory_percent": psutil.virtual_memory().percent,
        "operating_system": platform.platform(),
        "python_version": platform.python_version(),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000, reload=settings.DEBUG_MODE)
