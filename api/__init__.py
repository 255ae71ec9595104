"""
API package for the ExpTrack FastAPI backend.

This package provides the REST API endpoints for:
- Experiment CRUD and insight generation (experiments.py)
- Dashboard statistics, trends and anomaly scan (analytics.py)
- Natural-language queries, hyperparameter suggestions and reports (assistant.py)
- Health and runtime information (system.py)

Supporting modules:
- Experiment models (schemas.py)
- JSON-file experiment store (store.py)
- Generative AI client and prompt handling (ai_service.py)
- Settings (app_config.py)
"""

from .ai_service import AIService, get_ai_service
from .store import ExperimentStore, get_experiment_store

__all__ = [
    "AIService",
    "ExperimentStore",
    "get_ai_service",
    "get_experiment_store",
]
