"""
RebarFlow Pipeline API v1.0
FastAPI backend for the extraction-to-production pipeline: async PostgreSQL,
JWT auth, Redis/Celery background extraction, litellm extraction models.
"""
import os
import time
import logging
from contextlib import asynccontextmanager
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
from sqlalchemy import text

# Load .env file automatically in dev (no-op when the file is missing)
load_dotenv()

from rebarflow.db import engine, init_db
from rebarflow.services.errors import PipelineError
from rebarflow.services.logging_config import setup_logging
from rebarflow.services.middleware import RequestTimingMiddleware
from rebarflow.services.perf_monitor import tracker as perf_tracker

_log_level = os.getenv("LOG_LEVEL", "INFO")
_json_logs = os.getenv("LOG_FORMAT", "json").lower() != "text"
setup_logging(level=_log_level, json_output=_json_logs)
logger = logging.getLogger("rebarflow-api")

VERSION = "1.0.0"

# Record process start time for uptime calculation
_PROCESS_START = time.monotonic()

# Startup validation
for var in ["DATABASE_URL", "JWT_SECRET_KEY"]:
    if not os.getenv(var):
        logger.warning(f"MISSING env var: {var} — running in dev mode")
for var in ["CELERY_BROKER_URL", "EXTRACT_PRIMARY_MODEL"]:
    if not os.getenv(var):
        logger.info(f"Optional env var not set: {var}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield
    await engine.dispose()


app = FastAPI(
    title="RebarFlow Pipeline API",
    version=VERSION,
    description="Rebar bar-list extraction, validation, approval and shop-floor dispatch",
    lifespan=lifespan,
)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ---------------------------------------------------------------------------
# Security Headers Middleware
# ---------------------------------------------------------------------------
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds standard security headers to every response."""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


_cors_default = "http://localhost:3000,http://localhost:8000"
cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", _cors_default).split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Requested-With", "X-Request-ID"],
)
app.add_middleware(SecurityHeadersMiddleware)
# Request timing + X-Request-ID must be outermost so it wraps all other middleware
app.add_middleware(RequestTimingMiddleware)

# Routers
from rebarflow.api.extract_routes import router as extract_router
from rebarflow.api.dispatch_routes import router as dispatch_router
from rebarflow.api.mapping_routes import router as mapping_router

app.include_router(extract_router)
app.include_router(dispatch_router)
app.include_router(mapping_router)


@app.get("/health")
async def health_check():
    db_connected = False
    if os.getenv("DATABASE_URL"):
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            db_connected = True
        except Exception as e:
            logger.warning(f"Health check DB probe failed: {e}")
    return {
        "status": "active",
        "version": VERSION,
        "db_connected": db_connected,
        "extract_model": os.getenv("EXTRACT_PRIMARY_MODEL", "gemini/gemini-2.5-pro"),
        "celery_configured": bool(os.getenv("CELERY_BROKER_URL")),
    }


@app.get("/metrics")
async def metrics():
    """
    Pipeline metrics: per-stage run counts and average durations, error
    counts by stage and dispatch outcomes. Sourced from the in-process
    PipelineTracker singleton.
    """
    snapshot = perf_tracker.get_metrics()
    return {
        "uptime_seconds": round(time.monotonic() - _PROCESS_START, 1),
        **snapshot,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("rebarflow.main:app", host="0.0.0.0", port=8000, reload=True)
