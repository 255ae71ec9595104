"""
Pydantic models for experiment records.

An Experiment is the only persisted entity. The same models are used for the
stored documents and the API payloads; the write payloads
(``ExperimentCreate`` / ``ExperimentUpdate``) leave out every field the
backend owns (id, timestamps, AI insights and the derived flags).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, computed_field, field_validator

ExperimentStatus = Literal["pending", "running", "completed", "failed"]
ModelType = Literal[
    "classification",
    "regression",
    "clustering",
    "deep-learning",
    "nlp",
    "computer-vision",
    "other",
]
Framework = Literal["tensorflow", "pytorch", "scikit-learn", "keras", "xgboost", "other"]
InsightSource = Literal["ai", "partial", "fallback"]

# Hyperparameter values are scalars; dict insertion order is kept for prompts.
HyperparameterValue = Union[int, float, str]

STATUSES = ("pending", "running", "completed", "failed")
MODEL_TYPES = (
    "classification",
    "regression",
    "clustering",
    "deep-learning",
    "nlp",
    "computer-vision",
    "other",
)

# Derived cache fields, only written by refresh_derived_flags()
DERIVED_FIELDS = ("is_best_performing", "has_anomalies")


class ModelInfo(BaseModel):
    """Model configuration of an experiment."""
    name: str = Field(..., min_length=1)
    type: ModelType
    framework: Optional[Framework] = None
    version: Optional[str] = None


class DatasetInfo(BaseModel):
    """Dataset the experiment was trained and evaluated on."""
    name: str = Field(..., min_length=1)
    size: Optional[int] = Field(None, ge=0)
    train_size: Optional[int] = Field(None, ge=0)
    test_size: Optional[int] = Field(None, ge=0)
    validation_size: Optional[int] = Field(None, ge=0)
    features: List[str] = Field(default_factory=list)
    target_variable: Optional[str] = None
    data_source: Optional[str] = None


class TrainingConfig(BaseModel):
    epochs: Optional[int] = None
    batch_size: Optional[int] = None
    optimizer: Optional[str] = None
    learning_rate: Optional[float] = None
    early_stopping: Optional[bool] = None
    duration: Optional[float] = None  # seconds


class Metrics(BaseModel):
    """Evaluation metrics.

    Every field is optional since task types populate different subsets
    (classification reports accuracy/f1, regression reports mse/r2).
    Values are not range-checked.
    """
    accuracy: Optional[float] = None
    precision: Optional[float] = None
    recall: Optional[float] = None
    f1_score: Optional[float] = None
    loss: Optional[float] = None
    validation_loss: Optional[float] = None
    mse: Optional[float] = None
    rmse: Optional[float] = None
    mae: Optional[float] = None
    r2_score: Optional[float] = None
    auc: Optional[float] = None
    custom_metrics: Dict[str, float] = Field(default_factory=dict)

    def get(self, name: str) -> Optional[float]:
        """Return a standard or custom metric by name, ``None`` if absent."""
        if name in METRIC_FIELDS:
            return getattr(self, name)
        return self.custom_metrics.get(name)

    def populated(self) -> Dict[str, float]:
        """All metrics that carry a value, standard ones first."""
        values = {name: getattr(self, name) for name in METRIC_FIELDS if getattr(self, name) is not None}
        values.update(self.custom_metrics)
        return values


METRIC_FIELDS = (
    "accuracy",
    "precision",
    "recall",
    "f1_score",
    "loss",
    "validation_loss",
    "mse",
    "rmse",
    "mae",
    "r2_score",
    "auc",
)


class EpochMetric(BaseModel):
    """Snapshot of one training epoch."""
    epoch: int
    train_loss: Optional[float] = None
    val_loss: Optional[float] = None
    train_accuracy: Optional[float] = None
    val_accuracy: Optional[float] = None
    learning_rate: Optional[float] = None


class EnvironmentInfo(BaseModel):
    python_version: Optional[str] = None
    cuda_version: Optional[str] = None
    packages: Dict[str, str] = Field(default_factory=dict)


class Artifacts(BaseModel):
    model_path: Optional[str] = None
    checkpoint_path: Optional[str] = None
    logs_path: Optional[str] = None
    config_file: Optional[str] = None


class InsightResult(BaseModel):
    """AI-generated (or fallback) analysis of an experiment."""
    summary: str
    recommendations: List[str] = Field(default_factory=list)
    anomalies: List[str] = Field(default_factory=list)
    comparison_with_previous: str = ""
    hyperparameter_suggestions: Dict[str, Any] = Field(default_factory=dict)
    generated_at: datetime
    source: InsightSource = "ai"


class ExperimentBase(BaseModel):
    """Fields a researcher provides when logging an experiment."""
    name: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    status: ExperimentStatus = "pending"
    model: ModelInfo
    dataset: DatasetInfo
    hyperparameters: Dict[str, HyperparameterValue] = Field(default_factory=dict)
    training_config: TrainingConfig = Field(default_factory=TrainingConfig)
    metrics: Metrics = Field(default_factory=Metrics)
    epoch_metrics: List[EpochMetric] = Field(default_factory=list)
    notes: str = ""
    observations: str = ""
    tags: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    random_seed: Optional[int] = None
    environment_info: Optional[EnvironmentInfo] = None
    artifacts: Optional[Artifacts] = None
    created_by: str = "default-user"
    completed_at: Optional[datetime] = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value


class ExperimentCreate(ExperimentBase):
    """Request body for ``POST /experiments``."""


class ExperimentUpdate(BaseModel):
    """Partial update; only the fields sent are applied."""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    status: Optional[ExperimentStatus] = None
    model: Optional[ModelInfo] = None
    dataset: Optional[DatasetInfo] = None
    hyperparameters: Optional[Dict[str, HyperparameterValue]] = None
    training_config: Optional[TrainingConfig] = None
    metrics: Optional[Metrics] = None
    epoch_metrics: Optional[List[EpochMetric]] = None
    notes: Optional[str] = None
    observations: Optional[str] = None
    tags: Optional[List[str]] = None
    category: Optional[str] = None
    random_seed: Optional[int] = None
    environment_info: Optional[EnvironmentInfo] = None
    artifacts: Optional[Artifacts] = None
    completed_at: Optional[datetime] = None


class Experiment(ExperimentBase):
    """A stored experiment document."""
    id: str
    created_at: datetime
    last_modified: datetime
    ai_insights: Optional[InsightResult] = None
    is_best_performing: bool = False
    has_anomalies: bool = False

    @computed_field  # type: ignore[prop-decorator]
    @property
    def duration_minutes(self) -> Optional[int]:
        """Training duration rounded to whole minutes."""
        duration = self.training_config.duration
        if not duration:
            return None
        return round(duration / 60)

    def to_document(self) -> Dict[str, Any]:
        """Serialize for the record store (computed fields are not stored)."""
        return self.model_dump(mode="json", exclude={"duration_minutes"})


class AnomalyFinding(BaseModel):
    """One rule hit from the anomaly scan."""
    experiment_id: str
    experiment_name: str
    type: Literal["severe_overfitting", "poor_performance", "long_training"]
    severity: Literal["high", "medium", "low"]
    description: str


class DatasetDescriptor(BaseModel):
    """Dataset summary sent with a hyperparameter suggestion request."""
    name: str = Field(..., min_length=1)
    size: Optional[int] = Field(None, ge=0)
    features: List[str] = Field(default_factory=list)


class HyperparameterSuggestion(BaseModel):
    """Training configuration proposed by the AI backend."""
    epochs: Optional[int] = None
    batch_size: Optional[int] = None
    optimizer: Optional[str] = None
    learning_rate: Optional[float] = None
    reasoning: str = ""
