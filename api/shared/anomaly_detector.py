"""
Rule-based anomaly scan over experiments.

Each rule is evaluated independently for every experiment, in the order of
``RULES``; an experiment can produce several findings and no rule suppresses
another. Rules whose inputs are missing simply do not fire.

The overfitting ratio here (2.0) is stricter than the one used by the
fallback insights in ``api.ai_service`` (1.5).
"""

from typing import Callable, List, Optional, Sequence, Tuple

from ..schemas import AnomalyFinding, Experiment

SEVERE_OVERFITTING_RATIO = 2.0
POOR_ACCURACY_THRESHOLD = 0.5
LONG_TRAINING_SECONDS = 36000  # 10 hours


def _severe_overfitting(exp: Experiment) -> Optional[str]:
    loss = exp.metrics.loss
    val_loss = exp.metrics.validation_loss
    if loss is None or val_loss is None:
        return None
    if val_loss > SEVERE_OVERFITTING_RATIO * loss:
        return f"Validation loss is more than {SEVERE_OVERFITTING_RATIO:g}x training loss"
    return None


def _poor_performance(exp: Experiment) -> Optional[str]:
    accuracy = exp.metrics.accuracy
    if exp.model.type != "classification" or accuracy is None:
        return None
    if accuracy < POOR_ACCURACY_THRESHOLD:
        return f"Accuracy below {POOR_ACCURACY_THRESHOLD:.0%} for classification task"
    return None


def _long_training(exp: Experiment) -> Optional[str]:
    duration = exp.training_config.duration
    if duration is not None and duration > LONG_TRAINING_SECONDS:
        return f"Training took more than {LONG_TRAINING_SECONDS // 3600} hours"
    return None


# (type, severity, check) in evaluation order
RULES: Tuple[Tuple[str, str, Callable[[Experiment], Optional[str]]], ...] = (
    ("severe_overfitting", "high", _severe_overfitting),
    ("poor_performance", "medium", _poor_performance),
    ("long_training", "low", _long_training),
)


def scan_experiment(exp: Experiment) -> List[AnomalyFinding]:
    """Apply every rule to one experiment."""
    findings = []
    for anomaly_type, severity, check in RULES:
        description = check(exp)
        if description is None:
            continue
        findings.append(AnomalyFinding(
            experiment_id=exp.id,
            experiment_name=exp.name,
            type=anomaly_type,
            severity=severity,
            description=description,
        ))
    return findings


def detect_anomalies(experiments: Sequence[Experiment]) -> List[AnomalyFinding]:
    """Scan experiments and return all findings, grouped by experiment in input order."""
    findings: List[AnomalyFinding] = []
    for exp in experiments:
        findings.extend(scan_experiment(exp))
    return findings
