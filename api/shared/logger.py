"""
Logging setup for the ExpTrack backend.

Modules call ``get_logger(__name__)``; ``main.py`` calls ``setup_logging``
once with the configured ``log_level``.
"""

import logging
import sys
from typing import Union

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Third-party loggers that log every Gemini request at INFO
NOISY_LOGGERS = ("httpx", "httpcore")

_configured = False


def resolve_level(level: Union[str, int]) -> int:
    """Map ``EXPTRACK_LOG_LEVEL`` (name or number) to a logging level, INFO if unknown."""
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).strip().upper())
    return value if isinstance(value, int) else logging.INFO


def setup_logging(level: Union[str, int] = "INFO") -> None:
    global _configured
    if _configured:
        return
    logging.basicConfig(level=resolve_level(level), format=LOG_FORMAT, datefmt="%H:%M:%S", stream=sys.stdout, force=True)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
