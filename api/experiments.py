"""
Experiment API endpoints for the ExpTrack backend.

This module provides endpoints for managing logged experiments:
- List experiments with filtering, search and sorting
- Get, create, update and delete a single experiment
- Generate AI insights for an experiment (stored on the record)
- Compare an experiment's metrics with a previous one
"""

from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, HTTPException, Query

from .ai_service import get_ai_service, refresh_derived_flags
from .app_config import get_settings
from .schemas import (
    Experiment,
    ExperimentCreate,
    ExperimentStatus,
    ExperimentUpdate,
    ModelType,
)
from .shared.logger import get_logger
from .shared.metrics_aggregator import calculate_improvement
from .store import ExperimentFilter, get_experiment_store, is_valid_experiment_id

logger = get_logger(__name__)

router = APIRouter(prefix="/experiments", tags=["experiments"])


# ============================================================================
# Helper Functions
# ============================================================================


def _require_valid_id(experiment_id: str) -> None:
    if not is_valid_experiment_id(experiment_id):
        raise HTTPException(status_code=400, detail=f"Invalid experiment id: '{experiment_id}'")


def _get_or_404(experiment_id: str) -> Experiment:
    _require_valid_id(experiment_id)
    experiment = get_experiment_store().get(experiment_id)
    if experiment is None:
        raise HTTPException(status_code=404, detail="Experiment not found")
    return experiment


async def _regenerate_insights(experiment: Experiment) -> Experiment:
    """Generate insights, recompute the derived flags and persist the record."""
    store = get_experiment_store()
    peers = store.find(ExperimentFilter(model_type=experiment.model.type), sort_by="created_at", descending=True)
    insights = await get_ai_service().generate_insights(experiment, peers)
    updated = refresh_derived_flags(experiment, insights, peers)
    return store.save(updated)


# ============================================================================
# Routes
# ============================================================================


@router.get("")
async def list_experiments(
    status: Optional[ExperimentStatus] = None,
    model_type: Optional[ModelType] = None,
    search: Optional[str] = Query(None, max_length=200),
    sort_by: str = Query("created_at", pattern=r"^[A-Za-z_][A-Za-z0-9_.]*$"),
    order: Literal["asc", "desc"] = "desc",
    limit: int = Query(100, ge=1, le=1000),
) -> Dict[str, Any]:
    """
    List experiments.

    Args:
        status: Only experiments with this status.
        model_type: Only experiments with this ``model.type``.
        search: Case-insensitive text matched against name, description and tags.
        sort_by: Field to sort on; dotted paths like ``metrics.accuracy`` work.
        order: ``asc`` or ``desc``.
        limit: Maximum number of experiments.
    """
    query = ExperimentFilter(status=status, model_type=model_type, search=search)
    experiments = get_experiment_store().find(
        query, sort_by=sort_by, descending=order == "desc", limit=limit
    )
    return {"success": True, "count": len(experiments), "data": experiments}


@router.get("/{experiment_id}")
async def get_experiment(experiment_id: str) -> Dict[str, Any]:
    """Get a single experiment."""
    return {"success": True, "data": _get_or_404(experiment_id)}


@router.post("", status_code=201)
async def create_experiment(payload: ExperimentCreate) -> Dict[str, Any]:
    """Log a new experiment.

    When the AI backend is configured, insights are generated right away and
    stored on the new record.
    """
    experiment = get_experiment_store().insert(payload)

    if get_settings().ai_enabled:
        experiment = await _regenerate_insights(experiment)

    return {"success": True, "data": experiment, "message": "Experiment created successfully"}


@router.put("/{experiment_id}")
async def update_experiment(experiment_id: str, changes: ExperimentUpdate) -> Dict[str, Any]:
    """Update fields of an experiment. Only the fields sent are changed."""
    _require_valid_id(experiment_id)
    experiment = get_experiment_store().update(experiment_id, changes)
    if experiment is None:
        raise HTTPException(status_code=404, detail="Experiment not found")
    return {"success": True, "data": experiment, "message": "Experiment updated successfully"}


@router.delete("/{experiment_id}")
async def delete_experiment(experiment_id: str) -> Dict[str, Any]:
    """Delete an experiment permanently."""
    _require_valid_id(experiment_id)
    if not get_experiment_store().delete(experiment_id):
        raise HTTPException(status_code=404, detail="Experiment not found")
    return {"success": True, "message": "Experiment deleted successfully"}


@router.post("/{experiment_id}/insights")
async def generate_insights(experiment_id: str) -> Dict[str, Any]:
    """(Re)generate AI insights for an experiment.

    Replaces the stored ``ai_insights`` and recomputes ``has_anomalies`` and
    ``is_best_performing``. Falls back to rule-based insights when the AI
    backend is unavailable.
    """
    experiment = _get_or_404(experiment_id)
    updated = await _regenerate_insights(experiment)
    logger.info("Insights for %s generated (source=%s)", experiment_id, updated.ai_insights.source)
    return {"success": True, "data": updated.ai_insights}


@router.get("/{experiment_id}/improvement")
async def get_improvement(experiment_id: str, previous_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Percentage change of each metric relative to a previous experiment.

    Args:
        previous_id: Experiment to compare with. Defaults to the most recent
            completed experiment of the same model type created before this one.
    """
    experiment = _get_or_404(experiment_id)

    if previous_id is not None:
        previous = _get_or_404(previous_id)
    else:
        candidates = get_experiment_store().find(
            ExperimentFilter(status="completed", model_type=experiment.model.type),
            sort_by="created_at",
            descending=True,
        )
        previous = next(
            (c for c in candidates if c.id != experiment.id and c.created_at < experiment.created_at),
            None,
        )

    return {
        "success": True,
        "data": {
            "experiment_id": experiment.id,
            "previous_id": previous.id if previous else None,
            "improvements": calculate_improvement(experiment, previous),
        },
    }
