"""
Root conftest.py for ExpTrack backend tests.

This file contains shared fixtures and pytest configuration
that applies to all test modules.
"""

import os
import sys
import tempfile
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

# Ensure the backend root is in the path
backend_root = Path(__file__).parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

# Tests never talk to a real AI backend or the user's data directory.
# An empty key also keeps python-dotenv from loading one from a .env file.
os.environ["GEMINI_API_KEY"] = ""
os.environ["EXPTRACK_DATA_DIR"] = tempfile.mkdtemp(prefix="exptrack-tests-")

from api.ai_service import AIService, set_ai_service
from api.app_config import get_settings
from api.schemas import Experiment
from api.store import ExperimentStore, set_experiment_store

get_settings.cache_clear()


# ============================================================================
# Pytest Hooks
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "api: mark test as going through the FastAPI app",
    )


def pytest_collection_modifyitems(config, items):
    """Mark tests from test_*_api.py modules with 'api'."""
    for item in items:
        if str(item.fspath).endswith("_api.py"):
            item.add_marker(pytest.mark.api)


# ============================================================================
# Shared Fixtures
# ============================================================================


NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    """Fixed reference time for window-based computations."""
    return NOW


@pytest.fixture
def make_experiment():
    """Factory building in-memory Experiment records."""

    def _make(
        name: str = "Experiment",
        status: str = "completed",
        model_type: str = "classification",
        metrics: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
        days_ago: float = 1,
        learning_rate: Optional[float] = None,
        duration: Optional[float] = None,
        hyperparameters: Optional[Dict[str, Any]] = None,
        epoch_metrics: Optional[List[Dict[str, Any]]] = None,
        exp_id: Optional[str] = None,
        **extra: Any,
    ) -> Experiment:
        created = created_at or NOW - timedelta(days=days_ago)
        return Experiment(
            id=exp_id or uuid.uuid4().hex,
            name=name,
            status=status,
            model={"name": f"{name} model", "type": model_type},
            dataset={"name": "Dataset", "size": 1000, "features": ["a", "b"]},
            hyperparameters=hyperparameters or {},
            training_config={"learning_rate": learning_rate, "duration": duration},
            metrics=metrics or {},
            epoch_metrics=epoch_metrics or [],
            created_at=created,
            last_modified=created,
            **extra,
        )

    return _make


@pytest.fixture
def experiment_payload():
    """Factory building JSON bodies for POST /api/experiments."""

    def _payload(name: str = "ResNet baseline", **overrides: Any) -> Dict[str, Any]:
        body = {
            "name": name,
            "description": "Baseline run",
            "status": "completed",
            "model": {"name": "ResNet50", "type": "computer-vision", "framework": "pytorch"},
            "dataset": {"name": "CIFAR-10", "size": 50000, "train_size": 40000, "test_size": 10000},
            "hyperparameters": {"learning_rate": 0.001, "dropout": 0.5, "scheduler": "cosine"},
            "training_config": {"epochs": 100, "batch_size": 128, "optimizer": "adam", "learning_rate": 0.001, "duration": 3600},
            "metrics": {"accuracy": 0.92, "loss": 0.23, "validation_loss": 0.26, "f1_score": 0.91},
            "tags": ["resnet", "cifar10"],
        }
        body.update(overrides)
        return body

    return _payload


@pytest.fixture
def store(tmp_path):
    """Empty experiment store installed as the process-wide store."""
    experiment_store = ExperimentStore(tmp_path / "experiments.json")
    set_experiment_store(experiment_store)
    yield experiment_store
    set_experiment_store(None)


@pytest.fixture
def fake_generator():
    """Stand-in for the Gemini client; set ``generate.return_value`` or ``side_effect``."""
    generator = AsyncMock()
    generator.generate = AsyncMock(return_value="{}")
    return generator


@pytest.fixture
def ai_service(fake_generator):
    """AIService backed by the fake generator, installed process-wide."""
    service = AIService(fake_generator)
    set_ai_service(service)
    yield service
    set_ai_service(None)


@pytest.fixture
def client(store, ai_service):
    """TestClient over the app with an isolated store and fake AI backend."""
    from fastapi.testclient import TestClient

    from main import app

    with TestClient(app) as test_client:
        yield test_client
