"""
Analytics API routes for the ExpTrack backend.

Dashboard statistics, metric trends over time and the rule-based anomaly
scan. Everything is computed on read from the experiment store.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query

from .schemas import ExperimentStatus, ModelType
from .shared.anomaly_detector import detect_anomalies
from .shared.logger import get_logger
from .shared.metrics_aggregator import compute_stats
from .shared.trend_analyzer import TREND_METRICS, analyze_trends
from .store import ExperimentFilter, created_within, get_experiment_store

logger = get_logger(__name__)

router = APIRouter(tags=["analytics"])


@router.get("/stats")
async def get_stats(
    metric: str = "accuracy",
    model_type: Optional[ModelType] = None,
    status: Optional[ExperimentStatus] = None,
    days: Optional[int] = Query(None, ge=1, le=3650),
) -> Dict[str, Any]:
    """
    Dashboard statistics.

    Args:
        metric: Metric used to pick the best experiment (loss-like metrics pick the lowest).
        model_type: Restrict to one model type.
        status: Restrict to one status.
        days: Restrict to experiments created in the last ``days`` days.

    Returns:
        Counts by status and model type, best experiment and average metrics.
    """
    query = ExperimentFilter(
        status=status,
        model_type=model_type,
        created_after=created_within(days) if days else None,
    )
    experiments = get_experiment_store().find(query, sort_by="created_at", descending=False)
    return {"success": True, "data": compute_stats(experiments, metric=metric)}


@router.get("/trends")
async def get_trends(
    metric: str = "accuracy",
    days: int = Query(30, ge=1, le=3650),
    model_type: Optional[ModelType] = None,
) -> Dict[str, Any]:
    """
    Trend of one metric over the last ``days`` days of completed experiments.

    Returns the chronological time series, average and best value, the
    first-half vs. second-half improvement rate and the learning-rate scatter
    series.
    """
    if metric not in TREND_METRICS:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported metric '{metric}'. Choose from: {', '.join(TREND_METRICS)}",
        )

    experiments = get_experiment_store().find(
        ExperimentFilter(status="completed", model_type=model_type),
        sort_by="created_at",
        descending=False,
    )
    result = analyze_trends(experiments, metric=metric, window_days=days, model_type=model_type)
    return {"success": True, "data": result.to_dict()}


@router.get("/anomalies")
async def get_anomalies(
    flagged_only: bool = False,
    limit: int = Query(100, ge=1, le=1000),
) -> Dict[str, Any]:
    """
    Rule-based anomaly scan over the most recent experiments.

    Args:
        flagged_only: Only scan experiments whose insights reported anomalies.
        limit: Number of most recent experiments to scan.
    """
    query = ExperimentFilter(has_anomalies=True) if flagged_only else None
    experiments = get_experiment_store().find(query, sort_by="created_at", descending=True, limit=limit)
    findings = detect_anomalies(experiments)
    logger.debug("Anomaly scan: %d findings over %d experiments", len(findings), len(experiments))
    return {"success": True, "count": len(findings), "data": findings}
