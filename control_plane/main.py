"""
Application Control Plane — REST API

Main entrypoint. Sets up FastAPI with:
  - CORS
  - Rate limiting (slowapi)
  - Prometheus metrics (/metrics)
  - Health check (/health) with Redis status
  - Service binding routes (/api/v1/namespaces/...)
  - Maintenance routes (/api/v1/maintenance/...)
  - Domain error → HTTP status mapping
"""

import logging
import uvicorn
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from control_plane import telemetry
from control_plane.config import settings
from control_plane.errors import ControlPlaneError
from control_plane.resources import format_timestamp, utcnow
from control_plane.routers import limiter
from control_plane.routers.audit import router as audit_router
from control_plane.routers.maintenance import router as maintenance_router
from control_plane.routers.services import router as services_router

VERSION = "1.0.0"
API_PREFIX = "/api/v1"

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("control-plane-api")


# --- Lifespan ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Control Plane API starting...")
    yield
    logger.info("Control Plane API shutting down...")


# --- FastAPI app ---
app = FastAPI(
    title="Application Control Plane API",
    description="Service bindings and build-cache maintenance for applications on Kubernetes",
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",")],
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=True,
)

# --- Rate Limiting ---
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# --- Routers ---
app.include_router(services_router, prefix=API_PREFIX)
app.include_router(maintenance_router, prefix=API_PREFIX)
app.include_router(audit_router, prefix=API_PREFIX)


# --- Health check ---
@app.get("/health")
async def health():
    """Health check with Redis connectivity status."""
    return {
        "status": "healthy",
        "timestamp": format_timestamp(utcnow()),
        "redis": telemetry.redis_status(),
        "version": VERSION,
    }


# --- Prometheus metrics endpoint ---
@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    """Expose Prometheus metrics."""
    return PlainTextResponse(
        content=generate_latest().decode("utf-8"),
        media_type=CONTENT_TYPE_LATEST,
    )


# --- Error handlers ---
@app.exception_handler(ControlPlaneError)
async def control_plane_error_handler(request: Request, exc: ControlPlaneError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()]
    return JSONResponse(
        status_code=400,
        content={"detail": f"invalid request: {', '.join(fields)}", "code": "INVALID_ARGUMENT"},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "code": "INTERNAL_ERROR"},
    )


# --- Entry point ---
def run():
    uvicorn.run(
        "control_plane.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level="info",
        reload=False,
    )


if __name__ == "__main__":
    run()
