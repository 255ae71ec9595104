"""
Tests for the experiment endpoints (/api/experiments).

Verifies that:
- Create validates the payload and returns the stored record (201)
- AI insights are generated on create only when the backend is configured
- List supports status/type filters, search, sorting and limit
- Malformed ids are rejected with 400 and unknown ids with 404
- Partial updates and deletes behave as documented
- Insight regeneration persists insights and the derived flags
- Improvement defaults to the previous completed run of the same model type
"""

import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from api.ai_service import FALLBACK_SUMMARY, GenerationError
from api.schemas import ExperimentCreate

UNKNOWN_ID = "f" * 32


def _seed(store, experiment_payload, *bodies):
    """Insert payload bodies one day apart, oldest first."""
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    payloads = [ExperimentCreate.model_validate(experiment_payload(**body)) for body in bodies]
    return store.insert_many(payloads, created_at=[base + timedelta(days=i) for i in range(len(payloads))])


class TestCreateExperiment:

    def test_create(self, client, experiment_payload, fake_generator):
        response = client.post("/api/experiments", json=experiment_payload())

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        data = body["data"]
        assert len(data["id"]) == 32
        assert data["name"] == "ResNet baseline"
        assert data["duration_minutes"] == 60
        assert data["ai_insights"] is None
        assert data["hyperparameters"] == {"learning_rate": 0.001, "dropout": 0.5, "scheduler": "cosine"}
        # No API key configured in tests
        fake_generator.generate.assert_not_awaited()

    def test_create_generates_insights_when_ai_enabled(self, client, experiment_payload, fake_generator, monkeypatch):
        monkeypatch.setattr("api.experiments.get_settings", lambda: SimpleNamespace(ai_enabled=True))
        fake_generator.generate.return_value = '{"summary": "Great", "anomalies": ["Val loss spikes"]}'

        response = client.post("/api/experiments", json=experiment_payload())

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["ai_insights"]["summary"] == "Great"
        assert data["has_anomalies"] is True
        assert data["is_best_performing"] is True

    def test_name_is_trimmed(self, client, experiment_payload):
        response = client.post("/api/experiments", json=experiment_payload(name="  Padded  "))
        assert response.json()["data"]["name"] == "Padded"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"name": "   "},
            {"status": "archived"},
            {"model": {"name": "X", "type": "quantum"}},
            {"dataset": {"name": "D", "size": -1}},
            {"model": None},
        ],
    )
    def test_invalid_payload(self, client, experiment_payload, overrides):
        response = client.post("/api/experiments", json=experiment_payload(**overrides))
        assert response.status_code == 422


class TestListExperiments:

    @pytest.fixture
    def seeded(self, store, experiment_payload):
        return _seed(
            store,
            experiment_payload,
            {"name": "ResNet baseline"},
            {"name": "BERT sentiment", "model": {"name": "BERT", "type": "nlp"}, "metrics": {"accuracy": 0.95}, "tags": ["transformers"]},
            {"name": "GPT-2 fine-tune", "status": "failed", "model": {"name": "GPT-2", "type": "nlp"}, "metrics": {"loss": 3.4}},
        )

    def test_list_newest_first(self, client, seeded):
        body = client.get("/api/experiments").json()
        assert body["count"] == 3
        assert [e["name"] for e in body["data"]] == ["GPT-2 fine-tune", "BERT sentiment", "ResNet baseline"]

    def test_filters(self, client, seeded):
        data = client.get("/api/experiments", params={"model_type": "nlp", "status": "completed"}).json()["data"]
        assert [e["name"] for e in data] == ["BERT sentiment"]

    def test_search(self, client, seeded):
        data = client.get("/api/experiments", params={"search": "TRANSFORMERS"}).json()["data"]
        assert [e["name"] for e in data] == ["BERT sentiment"]

    def test_sort_by_metric(self, client, seeded):
        data = client.get("/api/experiments", params={"sort_by": "metrics.accuracy", "order": "desc", "limit": 1}).json()["data"]
        assert [e["name"] for e in data] == ["BERT sentiment"]

    def test_invalid_filter_value(self, client, seeded):
        assert client.get("/api/experiments", params={"status": "archived"}).status_code == 422
        assert client.get("/api/experiments", params={"limit": 0}).status_code == 422

    def test_corrupt_store_is_server_error(self, store, ai_service):
        from fastapi.testclient import TestClient

        from main import app

        store.path.write_text("{not json", encoding="utf-8")
        with TestClient(app, raise_server_exceptions=False) as raw_client:
            response = raw_client.get("/api/experiments")
        assert response.status_code == 500
        assert response.json() == {"success": False, "detail": "Internal server error"}


class TestSingleExperiment:

    def test_get(self, client, store, experiment_payload):
        exp = _seed(store, experiment_payload, {})[0]
        response = client.get(f"/api/experiments/{exp.id}")
        assert response.status_code == 200
        assert response.json()["data"]["id"] == exp.id

    def test_invalid_id(self, client):
        response = client.get("/api/experiments/not-an-id")
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_unknown_id(self, client):
        response = client.get(f"/api/experiments/{UNKNOWN_ID}")
        assert response.status_code == 404
        assert response.json()["detail"] == "Experiment not found"

    def test_invalid_stored_document_is_not_found(self, client, store):
        broken_id = "b" * 32
        store.path.write_text(json.dumps([{"id": broken_id, "name": "Missing model"}]), encoding="utf-8")

        assert client.get(f"/api/experiments/{broken_id}").status_code == 404
        assert client.put(f"/api/experiments/{broken_id}", json={"notes": "x"}).status_code == 404

    def test_update(self, client, store, experiment_payload):
        exp = _seed(store, experiment_payload, {})[0]
        response = client.put(
            f"/api/experiments/{exp.id}",
            json={"status": "failed", "notes": "OOM at epoch 3"},
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "failed"
        assert data["notes"] == "OOM at epoch 3"
        assert data["name"] == exp.name
        assert store.get(exp.id).status == "failed"

    def test_update_unknown(self, client):
        assert client.put(f"/api/experiments/{UNKNOWN_ID}", json={"notes": "x"}).status_code == 404

    def test_update_invalid_value(self, client, store, experiment_payload):
        exp = _seed(store, experiment_payload, {})[0]
        assert client.put(f"/api/experiments/{exp.id}", json={"status": "archived"}).status_code == 422

    def test_delete(self, client, store, experiment_payload):
        exp = _seed(store, experiment_payload, {})[0]
        assert client.delete(f"/api/experiments/{exp.id}").status_code == 200
        assert client.get(f"/api/experiments/{exp.id}").status_code == 404
        assert client.delete(f"/api/experiments/{exp.id}").status_code == 404


class TestInsightsEndpoint:

    def test_regenerate_persists_insights(self, client, store, experiment_payload, fake_generator):
        older, exp = _seed(
            store,
            experiment_payload,
            {"name": "Older", "metrics": {"accuracy": 0.97}},
            {"name": "Current", "metrics": {"accuracy": 0.9}},
        )
        fake_generator.generate.return_value = '```json\n{"summary": "Fine", "recommendations": ["More data"]}\n```'

        response = client.post(f"/api/experiments/{exp.id}/insights")

        assert response.status_code == 200
        assert response.json()["data"]["summary"] == "Fine"
        stored = store.get(exp.id)
        assert stored.ai_insights.recommendations == ["More data"]
        assert stored.has_anomalies is False
        assert stored.is_best_performing is False
        prompt = fake_generator.generate.await_args.args[0]
        assert "Older" in prompt

    def test_backend_failure_uses_fallback(self, client, store, experiment_payload, fake_generator):
        exp = _seed(store, experiment_payload, {"metrics": {"accuracy": 0.5, "loss": 0.2, "validation_loss": 0.5}})[0]
        fake_generator.generate.side_effect = GenerationError("timeout")

        response = client.post(f"/api/experiments/{exp.id}/insights")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["summary"] == FALLBACK_SUMMARY
        assert data["source"] == "fallback"
        assert store.get(exp.id).has_anomalies is True

    def test_numeric_summary_is_stored(self, client, store, experiment_payload, fake_generator):
        exp = _seed(store, experiment_payload, {})[0]
        fake_generator.generate.return_value = '{"summary": 42, "anomalies": ["Loss plateau"]}'

        response = client.post(f"/api/experiments/{exp.id}/insights")

        assert response.status_code == 200
        assert response.json()["data"]["summary"] == "Analysis completed"
        assert store.get(exp.id).has_anomalies is True

    def test_unknown(self, client):
        assert client.post(f"/api/experiments/{UNKNOWN_ID}/insights").status_code == 404


class TestImprovement:

    def test_defaults_to_previous_completed_same_type(self, client, store, experiment_payload):
        previous, _failed, _other, current = _seed(
            store,
            experiment_payload,
            {"name": "Previous", "metrics": {"accuracy": 0.8, "loss": 0.5}},
            {"name": "Failed", "status": "failed", "metrics": {"accuracy": 0.1}},
            {"name": "Other type", "model": {"name": "BERT", "type": "nlp"}, "metrics": {"accuracy": 0.2}},
            {"name": "Current", "metrics": {"accuracy": 0.88, "loss": 0.4}},
        )
        data = client.get(f"/api/experiments/{current.id}/improvement").json()["data"]
        assert data["previous_id"] == previous.id
        assert data["improvements"] == {"accuracy": 10.0, "loss": -20.0}

    def test_explicit_previous(self, client, store, experiment_payload):
        first, second = _seed(
            store,
            experiment_payload,
            {"metrics": {"accuracy": 0.5}},
            {"metrics": {"accuracy": 0.75}},
        )
        data = client.get(f"/api/experiments/{first.id}/improvement", params={"previous_id": second.id}).json()["data"]
        assert data["improvements"] == {"accuracy": -33.33}

    def test_first_experiment_has_no_baseline(self, client, store, experiment_payload):
        exp = _seed(store, experiment_payload, {})[0]
        data = client.get(f"/api/experiments/{exp.id}/improvement").json()["data"]
        assert data["previous_id"] is None
        assert data["improvements"] is None
