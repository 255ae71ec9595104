"""
System API routes for the ExpTrack backend.

Health check and runtime information.
"""

import platform
import sys
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter

from .app_config import get_settings
from .shared.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["system"])


def _get_package_versions() -> Dict[str, str]:
    """Get versions of key packages."""
    packages = {}
    for name in ["fastapi", "pydantic", "numpy", "httpx", "uvicorn"]:
        try:
            module = __import__(name)
            packages[name] = getattr(module, "__version__", "unknown")
        except ImportError:
            pass
    return packages


def log_error(endpoint: str, message: str, level: str = "error", details: str = "", exc: Exception = None) -> None:
    """Log an error raised while serving ``endpoint``."""
    log = logger.critical if level == "critical" else logger.error
    log("%s: %s (%s)", endpoint, message, details, exc_info=exc)


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    """Health check endpoint."""
    return {
        "success": True,
        "message": "Server is running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "ai_enabled": get_settings().ai_enabled,
    }


@router.get("/system/info")
async def system_info() -> Dict[str, Any]:
    """Get runtime and configuration information."""
    settings = get_settings()
    return {
        "python": {
            "version": sys.version,
            "platform": sys.platform,
        },
        "system": {
            "os": platform.system(),
            "release": platform.release(),
            "machine": platform.machine(),
        },
        "packages": _get_package_versions(),
        "settings": settings.to_dict(),
    }
