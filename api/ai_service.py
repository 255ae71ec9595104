"""
AI-powered experiment analysis.

Builds prompts from experiment records, sends them to a generative text
backend (Google Gemini through its REST API) and turns the answers into
structured results.

Failure policy differs per operation:
- generate_insights never raises: unparsable answers give a partial result,
  transport failures give rule-based fallback insights.
- suggest_hyperparameters returns ``None`` on any failure, including when
  there is no history for the model type.
- answer_query / generate_comparative_report return a fixed apology string.
"""

from __future__ import annotations

import json
import re
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx
from pydantic import ValidationError

from .schemas import (
    DatasetDescriptor,
    EpochMetric,
    Experiment,
    HyperparameterSuggestion,
    InsightResult,
)
from .shared.logger import get_logger

logger = get_logger(__name__)

GEMINI_API_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

# Fallback insight thresholds. The anomaly scan uses a stricter 2.0 ratio
# (api.shared.anomaly_detector.SEVERE_OVERFITTING_RATIO).
FALLBACK_OVERFITTING_RATIO = 1.5
FALLBACK_LOW_ACCURACY = 0.6

MAX_PEERS_IN_PROMPT = 5
MAX_SUGGESTION_HISTORY = 10
PARTIAL_SUMMARY_CHARS = 200

FALLBACK_SUMMARY = "Experiment completed. Manual analysis recommended."
QUERY_FAILED_MESSAGE = "Sorry, I could not process your query. Please try rephrasing."
REPORT_FAILED_MESSAGE = "Report generation failed. Please try again."

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?")


class GenerationError(RuntimeError):
    """The generative backend could not produce an answer."""


class TextGenerator(Protocol):
    async def generate(self, prompt: str) -> str: ...


class GeminiClient:
    """Minimal async client for the Gemini ``generateContent`` endpoint.

    Args:
        api_key: Gemini API key.
        model: Model name, e.g. ``gemini-2.5-flash``.
        timeout: Request timeout in seconds; ``None`` waits indefinitely.
    """

    def __init__(self, api_key: str, model: str, timeout: Optional[float] = None):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    async def generate(self, prompt: str) -> str:
        payload = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
        url = GEMINI_API_URL.format(model=self.model)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload, headers={"x-goog-api-key": self.api_key})
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            raise GenerationError(f"Gemini request failed: {e}") from e
        except ValueError as e:
            raise GenerationError(f"Gemini returned invalid JSON: {e}") from e

        try:
            parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError) as e:
            reason = data.get("promptFeedback", {}).get("blockReason") if isinstance(data, dict) else None
            raise GenerationError(f"Gemini returned no candidates (block reason: {reason})") from e

        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
        if not text.strip():
            raise GenerationError("Gemini returned an empty answer")
        return text


# ============= Prompt helpers =============


def _fmt(value: Any) -> str:
    return "n/a" if value is None or value == "" else str(value)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def format_hyperparameters(hyperparameters: Dict[str, Any]) -> str:
    """Flatten hyperparameters to ``key: value`` lines, in insertion order."""
    if not hyperparameters:
        return "None"
    return "\n".join(f"- {key}: {value}" for key, value in hyperparameters.items())


def format_epoch_trends(epoch_metrics: Sequence[EpochMetric]) -> str:
    """Digest of the epoch history: first, middle and last snapshot only."""
    if not epoch_metrics:
        return "Not available"

    snapshots = [
        ("Early", epoch_metrics[0]),
        ("Mid", epoch_metrics[len(epoch_metrics) // 2]),
        ("Final", epoch_metrics[-1]),
    ]
    lines = []
    for label, snap in snapshots:
        line = f"- {label} (Epoch {snap.epoch}): Train Loss={_fmt(snap.train_loss)}, Val Loss={_fmt(snap.val_loss)}"
        if snap.train_accuracy is not None or snap.val_accuracy is not None:
            line += f", Train Acc={_fmt(snap.train_accuracy)}, Val Acc={_fmt(snap.val_accuracy)}"
        lines.append(line)
    return "\n".join(lines)


def select_peers(experiment: Experiment, peers: Sequence[Experiment], limit: int = MAX_PEERS_IN_PROMPT) -> List[Experiment]:
    """Most recent experiments of the same model type, excluding ``experiment``."""
    same_type = [
        peer for peer in peers
        if peer.model.type == experiment.model.type and peer.id != experiment.id
    ]
    same_type.sort(key=lambda peer: peer.created_at, reverse=True)
    return same_type[:limit]


def build_insight_prompt(experiment: Experiment, peers: Sequence[Experiment]) -> str:
    """Prompt asking for a JSON analysis of one experiment."""
    model = experiment.model
    dataset = experiment.dataset
    config = experiment.training_config

    metrics = experiment.metrics.populated()
    metrics_text = "\n".join(f"- {name}: {value}" for name, value in metrics.items()) or "None recorded"

    recent = [
        {
            "name": peer.name,
            "accuracy": peer.metrics.accuracy,
            "loss": peer.metrics.loss,
            "hyperparameters": peer.hyperparameters,
        }
        for peer in select_peers(experiment, peers)
    ]

    notes = experiment.notes.strip() or "None"
    if experiment.observations.strip():
        notes += f"\nObservations: {experiment.observations.strip()}"

    return f"""You are an expert ML engineer analyzing experiment results. Provide detailed, actionable insights.

CURRENT EXPERIMENT:
- Name: {experiment.name}
- Description: {experiment.description or 'None'}
- Status: {experiment.status}
- Model: {model.name} ({model.type})
- Framework: {_fmt(model.framework)}
- Dataset: {dataset.name} ({_fmt(dataset.size)} samples, {len(dataset.features)} features)

HYPERPARAMETERS:
{format_hyperparameters(experiment.hyperparameters)}

TRAINING CONFIG:
- Epochs: {_fmt(config.epochs)}
- Batch Size: {_fmt(config.batch_size)}
- Optimizer: {_fmt(config.optimizer)}
- Learning Rate: {_fmt(config.learning_rate)}
- Early Stopping: {_fmt(config.early_stopping)}
- Duration (s): {_fmt(config.duration)}

METRICS:
{metrics_text}

EPOCH-WISE TRENDS:
{format_epoch_trends(experiment.epoch_metrics)}

RECENT SIMILAR EXPERIMENTS:
{json.dumps(recent, indent=2)}

NOTES FROM RESEARCHER:
{notes}

Please provide a JSON response with the following structure:
{{
  "summary": "2-3 sentence overall assessment of the experiment",
  "recommendations": ["specific actionable recommendation 1", "recommendation 2", "recommendation 3"],
  "anomalies": ["any unusual patterns or red flags"],
  "comparisonWithPrevious": "how this compares to recent experiments",
  "hyperparameterSuggestions": {{
    "parameterName": "suggested value and reasoning"
  }}
}}

Focus on:
1. Overfitting/underfitting detection
2. Learning rate optimization
3. Batch size impacts
4. Convergence patterns
5. Metric trade-offs
6. Next steps for improvement"""


def build_query_prompt(question: str, experiments: Sequence[Experiment]) -> str:
    listing = [
        {
            "id": exp.id,
            "name": exp.name,
            "model": exp.model.name,
            "type": exp.model.type,
            "accuracy": exp.metrics.accuracy,
            "loss": exp.metrics.loss,
            "date": exp.created_at.isoformat(),
            "status": exp.status,
            "hyperparameters": exp.hyperparameters,
        }
        for exp in experiments
    ]
    return f"""You are an ML experiment database assistant. Answer the following question based on the experiment data provided.

QUESTION: {question}

AVAILABLE EXPERIMENTS:
{json.dumps(listing, indent=2)}

Provide a clear, concise answer. If asked for specific experiments, return their IDs or names. If asked for comparisons, provide detailed analysis."""


def rank_history(model_type: str, history: Sequence[Experiment], limit: int = MAX_SUGGESTION_HISTORY) -> List[Experiment]:
    """Experiments of ``model_type`` by descending accuracy (missing counts as 0)."""
    relevant = [exp for exp in history if exp.model.type == model_type]
    relevant.sort(key=lambda exp: exp.metrics.accuracy or 0, reverse=True)
    return relevant[:limit]


def build_suggestion_prompt(model_type: str, dataset: DatasetDescriptor, ranked: Sequence[Experiment]) -> str:
    examples = [
        {
            "accuracy": exp.metrics.accuracy,
            "hyperparameters": exp.hyperparameters,
            "training_config": exp.training_config.model_dump(exclude_none=True),
        }
        for exp in ranked
    ]
    return f"""As an ML optimization expert, suggest optimal hyperparameters for a new experiment.

MODEL TYPE: {model_type}
DATASET: {dataset.name} ({_fmt(dataset.size)} samples, {len(dataset.features)} features)

TOP PERFORMING PAST EXPERIMENTS:
{json.dumps(examples, indent=2)}

Based on these successful experiments, suggest optimal hyperparameters as a JSON object:
{{
  "learning_rate": 0.001,
  "batch_size": 32,
  "epochs": 50,
  "optimizer": "adam",
  "reasoning": "Explanation for these choices"
}}"""


def build_report_prompt(experiments: Sequence[Experiment]) -> str:
    rows = [
        {
            "name": exp.name,
            "model": exp.model.name,
            "metrics": exp.metrics.populated(),
            "hyperparameters": exp.hyperparameters,
            "date": exp.created_at.isoformat(),
        }
        for exp in experiments
    ]
    return f"""Generate a comparative analysis report for these ML experiments:

{json.dumps(rows, indent=2)}

Provide:
1. Performance comparison
2. Best performing configuration
3. Key differences and their impacts
4. Recommendations for future experiments

Format as markdown."""


# ============= Response parsing =============


def strip_code_fences(text: str) -> str:
    """Remove markdown code fences (```json ... ```) around a payload."""
    return _FENCE_RE.sub("", text).replace("```", "").strip()


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item if isinstance(item, str) else json.dumps(item) for item in value]


def parse_insights(text: str) -> InsightResult:
    """Turn a model answer into an InsightResult.

    Accepts both camelCase and snake_case keys. Answers that are not a JSON
    object degrade to a partial result holding the first 200 characters of
    the raw text as summary.
    """
    try:
        parsed = json.loads(strip_code_fences(text))
        if not isinstance(parsed, dict):
            raise ValueError("expected a JSON object")
    except ValueError as e:
        logger.warning("Could not parse AI insights as JSON: %s", e)
        return InsightResult(
            summary=text[:PARTIAL_SUMMARY_CHARS],
            generated_at=_now(),
            source="partial",
        )

    summary = parsed.get("summary")
    suggestions = parsed.get("hyperparameterSuggestions", parsed.get("hyperparameter_suggestions"))
    comparison = parsed.get("comparisonWithPrevious", parsed.get("comparison_with_previous"))
    return InsightResult(
        summary=summary if isinstance(summary, str) and summary.strip() else "Analysis completed",
        recommendations=_string_list(parsed.get("recommendations")),
        anomalies=_string_list(parsed.get("anomalies")),
        comparison_with_previous=comparison if isinstance(comparison, str) else "",
        hyperparameter_suggestions=suggestions if isinstance(suggestions, dict) else {},
        generated_at=_now(),
        source="ai",
    )


def fallback_insights(experiment: Experiment) -> InsightResult:
    """Rule-based insights used when the AI backend cannot be reached."""
    recommendations: List[str] = []
    anomalies: List[str] = []
    metrics = experiment.metrics

    if metrics.accuracy is not None and metrics.accuracy < FALLBACK_LOW_ACCURACY:
        recommendations.append(
            "Low accuracy detected. Consider increasing model complexity or feature engineering."
        )

    if (
        metrics.loss is not None
        and metrics.validation_loss is not None
        and metrics.validation_loss > metrics.loss * FALLBACK_OVERFITTING_RATIO
    ):
        anomalies.append("Potential overfitting: Validation loss significantly higher than training loss.")
        recommendations.append("Apply regularization techniques (L1/L2, dropout) to reduce overfitting.")

    return InsightResult(
        summary=FALLBACK_SUMMARY,
        recommendations=recommendations,
        anomalies=anomalies,
        generated_at=_now(),
        source="fallback",
    )


def parse_suggestion(text: str) -> Optional[HyperparameterSuggestion]:
    """Parse a suggestion answer, ``None`` if it is not a usable suggestion."""
    try:
        parsed = json.loads(strip_code_fences(text))
    except ValueError as e:
        logger.warning("Could not parse hyperparameter suggestion: %s", e)
        return None
    if not isinstance(parsed, dict):
        return None

    camel_keys = {"learningRate": "learning_rate", "batchSize": "batch_size"}
    normalized = {camel_keys.get(key, key): value for key, value in parsed.items()}
    try:
        suggestion = HyperparameterSuggestion.model_validate(normalized)
    except ValidationError as e:
        logger.warning("Invalid hyperparameter suggestion: %s", e)
        return None

    if all(
        getattr(suggestion, name) is None
        for name in ("epochs", "batch_size", "optimizer", "learning_rate")
    ):
        return None
    return suggestion


# ============= Derived flags =============


def refresh_derived_flags(
    experiment: Experiment,
    insights: InsightResult,
    peers: Sequence[Experiment],
) -> Experiment:
    """Recompute the cached flags after new insights.

    ``has_anomalies`` mirrors the insight anomalies. ``is_best_performing`` is
    true for a completed experiment whose accuracy is at least that of every
    other completed experiment of the same model type.
    """
    accuracy = experiment.metrics.accuracy
    is_best = False
    if experiment.status == "completed" and accuracy is not None:
        rivals = [
            peer.metrics.accuracy for peer in peers
            if peer.id != experiment.id
            and peer.status == "completed"
            and peer.model.type == experiment.model.type
            and peer.metrics.accuracy is not None
        ]
        is_best = all(accuracy >= rival for rival in rivals)

    return experiment.model_copy(update={
        "ai_insights": insights,
        "has_anomalies": bool(insights.anomalies),
        "is_best_performing": is_best,
    })


# ============= Service =============


class AIService:
    """Experiment analysis on top of a generative text backend.

    Args:
        client: Backend used for text generation. ``None`` means AI features
            are disabled; every call then takes its failure path.
    """

    def __init__(self, client: Optional[TextGenerator] = None):
        self.client = client

    @property
    def enabled(self) -> bool:
        return self.client is not None

    async def _generate(self, prompt: str) -> str:
        if self.client is None:
            raise GenerationError("AI backend is not configured (set GEMINI_API_KEY)")
        return await self.client.generate(prompt)

    async def generate_insights(self, experiment: Experiment, peers: Sequence[Experiment] = ()) -> InsightResult:
        """Analyze one experiment. Always returns a well-formed result."""
        prompt = build_insight_prompt(experiment, peers)
        try:
            text = await self._generate(prompt)
        except Exception as e:
            logger.error("AI insight generation failed for %s: %s", experiment.id, e)
            return fallback_insights(experiment)
        return parse_insights(text)

    async def answer_query(self, question: str, experiments: Sequence[Experiment]) -> str:
        """Free-form question over a sample of experiments."""
        try:
            return await self._generate(build_query_prompt(question, experiments))
        except Exception as e:
            logger.error("Natural language query failed: %s", e)
            return QUERY_FAILED_MESSAGE

    async def suggest_hyperparameters(
        self,
        model_type: str,
        dataset: DatasetDescriptor,
        history: Sequence[Experiment],
    ) -> Optional[HyperparameterSuggestion]:
        """Suggest a training configuration, or ``None`` if none is available."""
        ranked = rank_history(model_type, history)
        if not ranked:
            logger.info("No %s experiments to base a suggestion on", model_type)
            return None
        try:
            text = await self._generate(build_suggestion_prompt(model_type, dataset, ranked))
        except Exception as e:
            logger.error("Hyperparameter suggestion failed: %s", e)
            return None
        return parse_suggestion(text)

    async def generate_comparative_report(self, experiments: Sequence[Experiment]) -> str:
        """Markdown report comparing several experiments."""
        try:
            return await self._generate(build_report_prompt(experiments))
        except Exception as e:
            logger.error("Comparative report generation failed: %s", e)
            return REPORT_FAILED_MESSAGE


# ============= Service singleton =============

_service: Optional[AIService] = None
_service_lock = threading.Lock()


def get_ai_service() -> AIService:
    """Return the process-wide service, built from settings on first use."""
    global _service
    with _service_lock:
        if _service is None:
            from .app_config import get_settings
            settings = get_settings()
            client = None
            if settings.ai_enabled:
                client = GeminiClient(settings.gemini_api_key, settings.gemini_model, settings.ai_timeout)
            _service = AIService(client)
            logger.info("AI features: %s", "ENABLED" if client else "DISABLED")
        return _service


def set_ai_service(service: Optional[AIService]) -> None:
    """Replace the process-wide service (``None`` resets to the configured one)."""
    global _service
    with _service_lock:
        _service = service
