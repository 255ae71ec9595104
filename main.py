"""
FastAPI backend for the ExpTrack experiment dashboard.

This module provides the web API used by the dashboard frontend: experiment
CRUD, dashboard statistics and trends, the anomaly scan and the AI-powered
insight, query, suggestion and comparison endpoints.
"""

import os

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, ORJSONResponse

load_dotenv()

from api.app_config import get_settings
from api.shared.logger import get_logger, setup_logging

settings = get_settings()
setup_logging(settings.log_level)
logger = get_logger(__name__)

from api.analytics import router as analytics_router
from api.assistant import router as assistant_router
from api.experiments import router as experiments_router
from api.system import log_error
from api.system import router as system_router

# Create FastAPI app
app = FastAPI(
    title="ExpTrack API",
    description="API for tracking, analyzing and summarizing machine-learning experiments",
    version="1.0.0",
    default_response_class=ORJSONResponse,
)


# ============= Exception Handlers for Error Logging =============


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Log server-side HTTP exceptions and return a JSON response."""
    if exc.status_code >= 500:
        log_error(
            endpoint=str(request.url.path),
            message=str(exc.detail),
            level="error",
            details=f"Status code: {exc.status_code}",
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "detail": exc.detail},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Log unexpected exceptions and return a JSON response."""
    log_error(
        endpoint=str(request.url.path),
        message=str(exc),
        level="critical",
        details=f"Unhandled exception: {type(exc).__name__}",
        exc=exc,
    )
    return JSONResponse(
        status_code=500,
        content={"success": False, "detail": "Internal server error"},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Include API routes
app.include_router(experiments_router, prefix="/api", tags=["experiments"])
app.include_router(analytics_router, prefix="/api", tags=["analytics"])
app.include_router(assistant_router, prefix="/api", tags=["assistant"])
app.include_router(system_router, prefix="/api", tags=["system"])


# ============= Startup Events =============


@app.on_event("startup")
async def startup_event():
    """Log the effective configuration on startup."""
    logger.info("ExpTrack backend starting...")
    logger.info("Data directory: %s", settings.data_dir)
    logger.info("AI features: %s", "ENABLED" if settings.ai_enabled else "DISABLED")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="ExpTrack backend server")
    parser.add_argument(
        "--port",
        type=int,
        default=settings.port,
        help="Port to run the server on (default: 5000 or EXPTRACK_PORT env var)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=os.environ.get("EXPTRACK_HOST", "127.0.0.1"),
        help="Host to bind to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--reload",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Enable auto-reload (default: off)",
    )
    args = parser.parse_args()

    uvicorn.run(
        "main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=settings.log_level.lower(),
    )
