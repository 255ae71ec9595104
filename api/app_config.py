"""
Application settings for the ExpTrack backend.

Settings are resolved from three sources, later ones winning:
1. Built-in defaults
2. ``settings.json`` in the data directory
3. Environment variables (optionally loaded from a ``.env`` file at startup)

Recognised environment variables:
- EXPTRACK_DATA_DIR: where the experiment collection is stored
- GEMINI_API_KEY: enables AI features when set
- GEMINI_MODEL: generative model name (default: gemini-2.5-flash)
- EXPTRACK_AI_TIMEOUT: timeout in seconds for AI calls (default: none)
- EXPTRACK_LOG_LEVEL: logging level (default: INFO)
- FRONTEND_URL: allowed CORS origin (default: http://localhost:5173)
- EXPTRACK_PORT: port used by ``python main.py`` (default: 5000)
"""

import json
import os
from dataclasses import asdict, dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import platformdirs

from .shared.logger import get_logger

logger = get_logger(__name__)

# App identification for platformdirs
APP_NAME = "exptrack-webapp"
APP_AUTHOR = "exptrack"

SETTINGS_FILE = "settings.json"
DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"
DEFAULT_FRONTEND_URL = "http://localhost:5173"


@dataclass
class AppSettings:
    """Resolved backend settings."""
    data_dir: str
    gemini_api_key: Optional[str] = None
    gemini_model: str = DEFAULT_GEMINI_MODEL
    ai_timeout: Optional[float] = None
    log_level: str = "INFO"
    frontend_url: str = DEFAULT_FRONTEND_URL
    port: int = 5000
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def ai_enabled(self) -> bool:
        """True when an AI backend key is configured."""
        return bool(self.gemini_api_key)

    @property
    def store_path(self) -> Path:
        """Path of the experiment collection file."""
        return Path(self.data_dir) / "experiments.json"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        # Never echo the key back
        data["gemini_api_key"] = "***" if self.gemini_api_key else None
        return data


def _default_data_dir() -> Path:
    return Path(platformdirs.user_data_dir(APP_NAME, APP_AUTHOR))


def _load_settings_file(data_dir: Path) -> Dict[str, Any]:
    """Read ``settings.json`` from the data directory, if any."""
    settings_path = data_dir / SETTINGS_FILE
    if not settings_path.exists():
        return {}
    try:
        with open(settings_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Ignoring unreadable settings file %s: %s", settings_path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring settings file %s: expected a JSON object", settings_path)
        return {}
    return data


def _parse_timeout(raw: Any) -> Optional[float]:
    if raw is None or raw == "":
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid AI timeout %r, using no timeout", raw)
        return None
    return value if value > 0 else None


def load_settings() -> AppSettings:
    """Build settings from defaults, the settings file and the environment."""
    data_dir = Path(os.environ.get("EXPTRACK_DATA_DIR") or _default_data_dir())
    file_values = _load_settings_file(data_dir)

    known = {"gemini_api_key", "gemini_model", "ai_timeout", "log_level", "frontend_url", "port"}
    extra = {k: v for k, v in file_values.items() if k not in known}

    port_raw = os.environ.get("EXPTRACK_PORT", file_values.get("port", 5000))
    try:
        port = int(port_raw)
    except (TypeError, ValueError):
        logger.warning("Invalid port %r, using 5000", port_raw)
        port = 5000

    return AppSettings(
        data_dir=str(data_dir),
        gemini_api_key=os.environ.get("GEMINI_API_KEY") or file_values.get("gemini_api_key"),
        gemini_model=os.environ.get("GEMINI_MODEL") or file_values.get("gemini_model", DEFAULT_GEMINI_MODEL),
        ai_timeout=_parse_timeout(os.environ.get("EXPTRACK_AI_TIMEOUT", file_values.get("ai_timeout"))),
        log_level=os.environ.get("EXPTRACK_LOG_LEVEL") or file_values.get("log_level", "INFO"),
        frontend_url=os.environ.get("FRONTEND_URL") or file_values.get("frontend_url", DEFAULT_FRONTEND_URL),
        port=port,
        extra=extra,
    )


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Return the process-wide settings (call ``get_settings.cache_clear()`` to reload)."""
    return load_settings()
