"""
AI assistant routes for the ExpTrack backend.

- Natural-language questions over recent experiments
- Hyperparameter suggestions from the best past experiments of a model type
- Comparative markdown reports for several experiments

The responses of these endpoints are free text (or ``null`` for a missing
suggestion); the AI service never lets a backend failure through.
"""

from typing import Any, Dict, List

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from .ai_service import get_ai_service
from .schemas import DatasetDescriptor, ModelType
from .shared.logger import get_logger
from .store import ExperimentFilter, get_experiment_store, is_valid_experiment_id

logger = get_logger(__name__)

router = APIRouter(tags=["assistant"])

QUERY_SAMPLE_SIZE = 50


class QueryRequest(BaseModel):
    query: str = ""


class SuggestionRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_type: ModelType
    dataset: DatasetDescriptor


class CompareRequest(BaseModel):
    experiment_ids: List[str] = Field(default_factory=list)


@router.post("/query")
async def answer_query(request: QueryRequest) -> Dict[str, Any]:
    """Answer a natural-language question using the 50 most recent experiments."""
    question = request.query.strip()
    if not question:
        raise HTTPException(status_code=400, detail="Query is required")

    sample = get_experiment_store().find(sort_by="created_at", descending=True, limit=QUERY_SAMPLE_SIZE)
    answer = await get_ai_service().answer_query(question, sample)
    return {"success": True, "data": {"query": question, "answer": answer}}


@router.post("/suggest-hyperparameters")
async def suggest_hyperparameters(request: SuggestionRequest) -> Dict[str, Any]:
    """
    Suggest epochs, batch size, optimizer and learning rate for a new experiment.

    ``data`` is ``null`` when no suggestion is available (no history for the
    model type, or the AI backend failed).
    """
    history = get_experiment_store().find(ExperimentFilter(model_type=request.model_type))
    suggestion = await get_ai_service().suggest_hyperparameters(request.model_type, request.dataset, history)
    return {"success": True, "data": suggestion}


@router.post("/compare")
async def compare_experiments(request: CompareRequest) -> Dict[str, Any]:
    """Generate a markdown report comparing two or more experiments."""
    ids = list(dict.fromkeys(request.experiment_ids))
    if len(ids) < 2:
        raise HTTPException(status_code=400, detail="At least 2 experiment IDs required")

    invalid = [exp_id for exp_id in ids if not is_valid_experiment_id(exp_id)]
    if invalid:
        raise HTTPException(status_code=400, detail=f"Invalid experiment ids: {', '.join(invalid)}")

    store = get_experiment_store()
    experiments = []
    missing = []
    for exp_id in ids:
        experiment = store.get(exp_id)
        if experiment is None:
            missing.append(exp_id)
        else:
            experiments.append(experiment)
    if missing:
        raise HTTPException(status_code=404, detail=f"Experiments not found: {', '.join(missing)}")

    report = await get_ai_service().generate_comparative_report(experiments)
    return {"success": True, "data": report}
