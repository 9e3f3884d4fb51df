"""
Proxy TLS Manager API

Manages the TLS certificate of a self-hosted application stack: decides
how the certificate is obtained (preserve, self-signed, Let's Encrypt,
import), rotates it with backups, and injects it into the running
reverse-proxy container.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime

import uvicorn
from fastapi import FastAPI
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from config import ensure_directories, settings
from core.request_logger import RequestLoggerMiddleware
from endpoints import ssl

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Proxy TLS Manager API starting up...")

    ensure_directories()
    logger.info(f"Certificate store at {settings.ssl_root}")

    yield

    logger.info("Proxy TLS Manager API shutting down...")


app = FastAPI(
    title="Proxy TLS Manager API",
    description="""
    ## Purpose

    Lifecycle management for the TLS certificate served by the stack's
    reverse proxy.

    ## Safety Features

    - Existing certificates are backed up before every replacement
    - Certificate and key are swapped atomically
    - Let's Encrypt failures fall back to self-signed, and every fallback is reported
    - The proxy is always restarted after a port-80 challenge, even on failure
    - Injected certificates are re-validated inside the container
    """,
    version="0.1.0",
    license_info={
        "name": "MIT",
    },
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.include_router(ssl.router)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Cache-Control"] = "no-store"
        return response


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestLoggerMiddleware)


@app.get(
    "/",
    summary="API Information",
    description="Basic endpoint to verify the API is running.",
    tags=["Health"],
)
async def root():
    return {
        "message": "Proxy TLS Manager API is running",
        "version": "0.1.0",
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "docs_url": "/docs",
    }


@app.get(
    "/health",
    summary="Detailed Health Check",
    description="API health plus certificate expiry state and proxy container state.",
    tags=["Health"],
)
async def health_check():
    """
    Detailed health check.

    Reports the live certificate's expiry classification and whether the
    proxy container is running. The API itself is healthy whenever it
    answers; certificate problems are reported, not raised.
    """
    from core.ssl_manager import get_ssl_manager

    status = await get_ssl_manager().status()
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "certificate": {
            "present": status.present,
            "expiry_status": status.validation.expiry_status.value,
            "days_until_expiry": status.validation.days_until_expiry,
            "mode": status.metadata.mode.value if status.metadata else None,
        },
        "proxy": {
            "container": status.container,
            "running": status.container_running,
        },
    }


if __name__ == "__main__":
    uvicorn.run("main:app", host=settings.api_host, port=settings.api_port, reload=settings.api_debug)
