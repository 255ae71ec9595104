"""
Shared computations for the ExpTrack API.

Pure analytics over lists of experiments, used by the API routes.
"""
from .anomaly_detector import detect_anomalies
from .metrics_aggregator import calculate_improvement, compute_stats
from .trend_analyzer import TREND_METRICS, analyze_trends

__all__ = [
    "analyze_trends",
    "calculate_improvement",
    "compute_stats",
    "detect_anomalies",
    "TREND_METRICS",
]
