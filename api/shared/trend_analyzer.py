"""
Metric trends over time for completed experiments.

The analysis works on a time window ending now:

1. Keep completed experiments (optionally of one model type) created
   inside the window.
2. Sort them by creation time, oldest first. This order defines the
   "first half" and "second half" used for the trend and the x axis of the
   time series.
3. Drop experiments missing the selected metric.
4. Compute the average, the best value and the improvement rate between the
   two halves, plus a learning-rate vs. metric scatter series.

For ``loss`` the best value is the minimum and an improving trend shows up
as a negative rate; ``TrendResult.is_improving`` applies that inversion.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from ..schemas import Experiment
from .logger import get_logger

logger = get_logger(__name__)

TREND_METRICS = ("accuracy", "loss", "f1_score", "precision", "recall")

# Only loss is minimized among the trend metrics
MINIMIZED_TREND_METRICS = frozenset({"loss"})


@dataclass
class TimeSeriesPoint:
    experiment_id: str
    name: str
    created_at: str
    value: float


@dataclass
class ScatterPoint:
    """Learning rate vs. metric value for one experiment (no fitted curve)."""
    x: float
    y: float
    experiment_id: str
    name: str


@dataclass
class TrendResult:
    metric: str
    window_days: int
    model_type: Optional[str]
    count: int
    average_value: Optional[float]
    best_value: Optional[float]
    improvement_rate: float
    is_improving: bool
    time_series: List[TimeSeriesPoint] = field(default_factory=list)
    scatter_series: List[ScatterPoint] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _as_utc(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def improvement_rate(values: Sequence[float]) -> float:
    """Percent change between the means of the two halves of ``values``.

    ``values`` must already be in chronological order. The split point is
    ``len(values) // 2`` so an odd-sized series puts the extra element in the
    second half. Returns 0.0 when there are fewer than two values or the first
    half averages to exactly zero.
    """
    if len(values) < 2:
        return 0.0
    mid = len(values) // 2
    first_mean = float(np.mean(values[:mid]))
    second_mean = float(np.mean(values[mid:]))
    if first_mean == 0:
        return 0.0
    return (second_mean - first_mean) / first_mean * 100


def is_improving(metric: str, rate: float) -> bool:
    """Direction of a trend, with the sign inverted for minimized metrics."""
    if metric in MINIMIZED_TREND_METRICS:
        return rate < 0
    return rate > 0


def analyze_trends(
    experiments: Sequence[Experiment],
    metric: str = "accuracy",
    window_days: int = 30,
    model_type: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TrendResult:
    """Compute the trend view for one metric.

    Args:
        experiments: Candidate experiments (any status, any date).
        metric: One of ``TREND_METRICS``.
        window_days: Length of the window ending at ``now``.
        model_type: Optional ``model.type`` filter.
        now: End of the window, defaults to the current UTC time.

    Returns:
        TrendResult with the aggregates and both chart series.

    Raises:
        ValueError: If ``metric`` is not a trend metric or the window is negative.
    """
    if metric not in TREND_METRICS:
        raise ValueError(f"Unsupported trend metric '{metric}'. Choose from: {', '.join(TREND_METRICS)}")
    if window_days < 0:
        raise ValueError("window_days must be non-negative")

    end = _as_utc(now or datetime.now(timezone.utc))
    start = end - timedelta(days=window_days)

    in_window = [
        exp for exp in experiments
        if exp.status == "completed"
        and (model_type is None or exp.model.type == model_type)
        and start <= _as_utc(exp.created_at) <= end
    ]
    in_window.sort(key=lambda exp: _as_utc(exp.created_at))

    qualifying = [exp for exp in in_window if exp.metrics.get(metric) is not None]
    values = [exp.metrics.get(metric) for exp in qualifying]

    if values:
        average = float(np.mean(values))
        best = float(min(values) if metric in MINIMIZED_TREND_METRICS else max(values))
    else:
        average = None
        best = None

    rate = improvement_rate(values)

    time_series = [
        TimeSeriesPoint(
            experiment_id=exp.id,
            name=exp.name,
            created_at=_as_utc(exp.created_at).isoformat(),
            value=value,
        )
        for exp, value in zip(qualifying, values)
    ]
    scatter_series = [
        ScatterPoint(
            x=exp.training_config.learning_rate,
            y=value,
            experiment_id=exp.id,
            name=exp.name,
        )
        for exp, value in zip(qualifying, values)
        if exp.training_config.learning_rate
    ]

    logger.debug(
        "Trend %s over %d days: %d of %d experiments qualify",
        metric, window_days, len(qualifying), len(experiments),
    )

    return TrendResult(
        metric=metric,
        window_days=window_days,
        model_type=model_type,
        count=len(qualifying),
        average_value=average,
        best_value=best,
        improvement_rate=rate,
        is_improving=is_improving(metric, rate),
        time_series=time_series,
        scatter_series=scatter_series,
    )
