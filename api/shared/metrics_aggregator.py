"""
Summary statistics over a set of experiments.

Used by the dashboard stats endpoint. All functions are pure: they read the
experiments they are given and never modify them.

Missing metrics are excluded from every computation (a mean is taken over
present values only, never zero-filled).
"""

from typing import Any, Dict, Iterable, Optional, Sequence

import numpy as np

from ..schemas import STATUSES, Experiment

# Metrics where a smaller value is better
LOWER_IS_BETTER = frozenset({"loss", "validation_loss", "mse", "rmse", "mae"})

# Metrics averaged on the dashboard
AVERAGED_METRICS = ("accuracy", "loss", "f1_score")


def is_lower_better(metric: str) -> bool:
    """Whether ``metric`` is minimized (loss-like) rather than maximized."""
    return metric in LOWER_IS_BETTER


def mean_of_present(values: Iterable[Optional[float]]) -> Optional[float]:
    """Arithmetic mean of the non-missing values, ``None`` if there are none."""
    present = [v for v in values if v is not None]
    if not present:
        return None
    return float(np.mean(present))


def count_by_status(experiments: Sequence[Experiment]) -> Dict[str, int]:
    counts = {status: 0 for status in STATUSES}
    for exp in experiments:
        counts[exp.status] = counts.get(exp.status, 0) + 1
    return counts


def count_by_model_type(experiments: Sequence[Experiment]) -> Dict[str, int]:
    """Number of experiments per ``model.type``, most frequent first."""
    counts: Dict[str, int] = {}
    for exp in experiments:
        counts[exp.model.type] = counts.get(exp.model.type, 0) + 1
    return dict(sorted(counts.items(), key=lambda item: item[1], reverse=True))


def best_experiment(experiments: Sequence[Experiment], metric: str = "accuracy") -> Optional[Experiment]:
    """Return the completed experiment with the best value of ``metric``.

    Best means highest, except for loss-like metrics where it means lowest.
    Experiments without the metric are skipped. On ties the first one in
    input order wins.
    """
    lower_better = is_lower_better(metric)
    best: Optional[Experiment] = None
    best_value: Optional[float] = None
    for exp in experiments:
        if exp.status != "completed":
            continue
        value = exp.metrics.get(metric)
        if value is None:
            continue
        if best_value is None or (value < best_value if lower_better else value > best_value):
            best, best_value = exp, value
    return best


def average_metrics(
    experiments: Sequence[Experiment],
    metrics: Sequence[str] = AVERAGED_METRICS,
) -> Dict[str, Optional[float]]:
    """Mean of each metric across completed experiments."""
    completed = [exp for exp in experiments if exp.status == "completed"]
    return {
        metric: mean_of_present(exp.metrics.get(metric) for exp in completed)
        for metric in metrics
    }


def compute_stats(experiments: Sequence[Experiment], metric: str = "accuracy") -> Dict[str, Any]:
    """Dashboard statistics for a result set.

    Args:
        experiments: Experiments to summarize (already filtered by the caller).
        metric: Metric used to pick the best experiment.

    Returns:
        Dict with ``total_count``, per-status counts, ``best_experiment``,
        ``counts_by_model_type`` and ``average_metrics``.
    """
    by_status = count_by_status(experiments)
    return {
        "total_count": len(experiments),
        "completed_count": by_status["completed"],
        "failed_count": by_status["failed"],
        "running_count": by_status["running"],
        "pending_count": by_status["pending"],
        "best_metric": metric,
        "best_experiment": best_experiment(experiments, metric),
        "counts_by_model_type": count_by_model_type(experiments),
        "average_metrics": average_metrics(experiments),
    }


def calculate_improvement(current: Experiment, previous: Optional[Experiment]) -> Optional[Dict[str, float]]:
    """Percentage change of every metric shared with a previous experiment.

    Metrics missing on either side, or zero on the previous one, are left out.
    Returns ``None`` when there is no previous experiment.
    """
    if previous is None:
        return None

    improvements: Dict[str, float] = {}
    previous_metrics = previous.metrics.populated()
    for name, value in current.metrics.populated().items():
        prev_value = previous_metrics.get(name)
        if not prev_value:
            continue
        improvements[name] = round((value - prev_value) / prev_value * 100, 2)
    return improvements
