"""
BQ Cost Engine API
FastAPI backend pricing construction library items from material, labour and
equipment factors, with async PostgreSQL and Redis/Celery background jobs.
"""
import os
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from bqcost.services.errors import (
    CostingError,
    InputValidationError,
    ItemNotFoundError,
    MissingReferenceError,
    UpstreamLookupError,
)
from bqcost.services.logging_config import setup_logging
from bqcost.services.middleware import RequestTimingMiddleware

# Load .env file automatically in dev (no-op if python-dotenv not installed or file missing)
try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass

_log_level = os.getenv("LOG_LEVEL", "INFO")
_json_logs = os.getenv("LOG_FORMAT", "json").lower() != "text"
setup_logging(level=_log_level, json_output=_json_logs)
logger = logging.getLogger("bqcost-api")

for var in ["DATABASE_URL", "CELERY_BROKER_URL"]:
    if not os.getenv(var):
        logger.warning(f"MISSING env var: {var}, running in dev mode")


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        from bqcost.db import init_db
        await init_db()
    except Exception as e:
        logger.warning(f"Table init warning: {e}")
    yield


app = FastAPI(
    title="BQ Cost Engine API",
    version="1.0.0",
    description="Cost-factor calculation for construction bill-of-quantities library items",
    lifespan=lifespan,
)

_cors_default = "http://localhost:3000,http://localhost:8000"
cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", _cors_default).split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Requested-With"],
)
# Request timing + X-Request-ID must be outermost so it wraps all other middleware
app.add_middleware(RequestTimingMiddleware)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------
_STATUS_BY_ERROR = (
    (InputValidationError, 422),
    (ItemNotFoundError, 404),
    (MissingReferenceError, 409),
    (UpstreamLookupError, 503),
)


@app.exception_handler(CostingError)
async def costing_error_handler(request: Request, exc: CostingError):
    status_code = next((code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 500)
    log = logger.warning if status_code < 500 else logger.error
    log(
        f"{exc.__class__.__name__} on {request.url.path}: {exc.message}",
        extra={"http_path": request.url.path, "http_status": status_code},
    )
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "error": exc.__class__.__name__, "context": exc.details},
    )


# Routers
from bqcost.api.costing_routes import router as costing_router
from bqcost.api.jobs_routes import router as jobs_router

app.include_router(costing_router)
app.include_router(jobs_router)


@app.get("/health")
async def health_check():
    return {
        "status": "active",
        "version": "1.0.0",
        "db_configured": bool(os.getenv("DATABASE_URL")),
        "broker_configured": bool(os.getenv("CELERY_BROKER_URL")),
    }
