"""
Tests for the rule-based anomaly scan.
"""

from api.ai_service import fallback_insights
from api.shared.anomaly_detector import detect_anomalies, scan_experiment


class TestOverfittingRule:

    def test_flagged_above_ratio(self, make_experiment):
        exp = make_experiment(metrics={"loss": 0.2, "validation_loss": 0.5})
        findings = scan_experiment(exp)
        assert [f.type for f in findings] == ["severe_overfitting"]
        assert findings[0].severity == "high"
        assert findings[0].experiment_id == exp.id

    def test_exact_ratio_not_flagged(self, make_experiment):
        exp = make_experiment(metrics={"loss": 0.25, "validation_loss": 0.5})
        assert scan_experiment(exp) == []

    def test_missing_validation_loss(self, make_experiment):
        assert scan_experiment(make_experiment(metrics={"loss": 0.2})) == []

    def test_fallback_threshold_is_looser(self, make_experiment):
        # 1.8x: fallback insights flag it, the scan does not
        exp = make_experiment(metrics={"loss": 0.5, "validation_loss": 0.9})
        assert scan_experiment(exp) == []
        assert fallback_insights(exp).anomalies


class TestPerformanceRule:

    def test_low_accuracy_classification(self, make_experiment):
        exp = make_experiment(model_type="classification", metrics={"accuracy": 0.45})
        findings = scan_experiment(exp)
        assert [(f.type, f.severity) for f in findings] == [("poor_performance", "medium")]

    def test_other_model_types_ignored(self, make_experiment):
        exp = make_experiment(model_type="regression", metrics={"accuracy": 0.45})
        assert scan_experiment(exp) == []

    def test_threshold_is_strict(self, make_experiment):
        exp = make_experiment(model_type="classification", metrics={"accuracy": 0.5})
        assert scan_experiment(exp) == []


class TestLongTrainingRule:

    def test_over_ten_hours(self, make_experiment):
        findings = scan_experiment(make_experiment(duration=36001))
        assert [(f.type, f.severity) for f in findings] == [("long_training", "low")]

    def test_exactly_ten_hours(self, make_experiment):
        assert scan_experiment(make_experiment(duration=36000)) == []


class TestDetectAnomalies:

    def test_all_rules_fire_in_order(self, make_experiment):
        exp = make_experiment(
            model_type="classification",
            metrics={"accuracy": 0.3, "loss": 0.1, "validation_loss": 0.9},
            duration=50000,
        )
        findings = detect_anomalies([exp])
        assert [f.type for f in findings] == ["severe_overfitting", "poor_performance", "long_training"]

    def test_grouped_by_experiment_in_input_order(self, make_experiment):
        first = make_experiment("first", duration=40000)
        clean = make_experiment("clean", metrics={"accuracy": 0.9})
        second = make_experiment("second", metrics={"loss": 0.1, "validation_loss": 0.3})
        findings = detect_anomalies([first, clean, second])
        assert [f.experiment_name for f in findings] == ["first", "second"]

    def test_empty(self):
        assert detect_anomalies([]) == []
