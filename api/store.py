"""
JSON-file document store for experiment records.

Holds the single ``experiments`` collection as a list of JSON documents in
``<data_dir>/experiments.json``. The store offers the primitives the API
needs (insert, get, update, delete, filtered find with sort and limit) and
nothing else; aggregation happens in ``api.shared`` on the returned
documents. Documents that no longer validate are logged and skipped.

File access is serialized with a lock and writes go through a temporary file
so a crash never leaves a half-written collection behind.
"""

from __future__ import annotations

import json
import os
import re
import threading
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from .schemas import Experiment, ExperimentCreate, ExperimentUpdate
from .shared.logger import get_logger

logger = get_logger(__name__)

EXPERIMENT_ID_RE = re.compile(r"^[0-9a-f]{32}$")

NULLABLE_UPDATE_FIELDS = {"category", "random_seed", "environment_info", "artifacts", "completed_at"}


class StoreError(RuntimeError):
    """Raised when the collection file cannot be read or written."""


def is_valid_experiment_id(experiment_id: str) -> bool:
    """Check the id shape before hitting the store."""
    return bool(EXPERIMENT_ID_RE.match(experiment_id or ""))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _get_path(document: Dict[str, Any], path: str) -> Any:
    """Resolve a dotted path (``metrics.accuracy``) inside a document."""
    value: Any = document
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _sort_key(value: Any) -> tuple:
    # Missing values order lowest, like the usual document-database semantics;
    # numbers sort before strings when a field is mixed.
    if value is None:
        return (0, 0, "")
    if isinstance(value, bool):
        return (1, int(value), "")
    if isinstance(value, (int, float)):
        return (1, value, "")
    return (2, 0, str(value))


def _document_sort_key(document: Dict[str, Any], path: str) -> tuple:
    value = _get_path(document, path)
    if path.endswith("_at") or path == "last_modified":
        dt = _parse_datetime(value)
        value = dt.timestamp() if dt is not None else None
    return _sort_key(value)


class ExperimentFilter:
    """Query predicate over experiment documents.

    Args:
        status: Exact status match.
        model_type: Exact ``model.type`` match.
        search: Case-insensitive substring over name, description and tags.
        has_anomalies: Match the cached anomaly flag.
        created_after: Keep documents created at or after this instant.
    """

    def __init__(
        self,
        status: Optional[str] = None,
        model_type: Optional[str] = None,
        search: Optional[str] = None,
        has_anomalies: Optional[bool] = None,
        created_after: Optional[datetime] = None,
    ):
        self.status = status
        self.model_type = model_type
        self.search = search.strip() if search else None
        self.has_anomalies = has_anomalies
        self.created_after = created_after
        self._search_re = re.compile(re.escape(self.search), re.IGNORECASE) if self.search else None

    def matches(self, document: Dict[str, Any]) -> bool:
        if self.status and document.get("status") != self.status:
            return False
        if self.model_type and _get_path(document, "model.type") != self.model_type:
            return False
        if self.has_anomalies is not None and bool(document.get("has_anomalies")) != self.has_anomalies:
            return False
        if self.created_after is not None:
            created = _parse_datetime(document.get("created_at"))
            if created is None or created < self.created_after:
                return False
        if self._search_re is not None:
            haystack = [document.get("name") or "", document.get("description") or ""]
            haystack.extend(document.get("tags") or [])
            if not any(self._search_re.search(str(text)) for text in haystack):
                return False
        return True


def _parse_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value:
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class ExperimentStore:
    """Experiment collection persisted to a single JSON file.

    Args:
        path: Collection file. Parent directories are created on first write.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # File I/O
    # ------------------------------------------------------------------

    def _read(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Cannot read experiment store {self.path}: {e}") from e
        if not isinstance(data, list):
            raise StoreError(f"Experiment store {self.path} is not a JSON list")
        return data

    def _write(self, documents: List[Dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".json.tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(documents, f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StoreError(f"Cannot write experiment store {self.path}: {e}") from e

    def _to_experiments(self, documents: List[Dict[str, Any]]) -> List[Experiment]:
        experiments = []
        for doc in documents:
            try:
                experiments.append(Experiment.model_validate(doc))
            except ValidationError as e:
                # Skip hand-edited or legacy documents instead of failing the whole query
                logger.warning("Skipping invalid experiment document %s: %s", doc.get("id"), e)
        return experiments

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def insert(self, payload: ExperimentCreate) -> Experiment:
        """Insert a new experiment and return the stored record."""
        now = _utcnow()
        experiment = Experiment(
            **payload.model_dump(),
            id=uuid.uuid4().hex,
            created_at=now,
            last_modified=now,
        )
        with self._lock:
            documents = self._read()
            documents.append(experiment.to_document())
            self._write(documents)
        logger.info("Inserted experiment %s (%s)", experiment.id, experiment.name)
        return experiment

    def insert_many(self, payloads: List[ExperimentCreate], created_at: Optional[List[datetime]] = None) -> List[Experiment]:
        """Bulk insert, optionally backdating ``created_at`` (used by the seed script)."""
        now = _utcnow()
        experiments = []
        for i, payload in enumerate(payloads):
            created = created_at[i] if created_at else now
            experiments.append(Experiment(
                **payload.model_dump(),
                id=uuid.uuid4().hex,
                created_at=created,
                last_modified=created,
            ))
        with self._lock:
            documents = self._read()
            documents.extend(exp.to_document() for exp in experiments)
            self._write(documents)
        logger.info("Inserted %d experiments", len(experiments))
        return experiments

    def get(self, experiment_id: str) -> Optional[Experiment]:
        """Return one experiment, or ``None`` if the id is unknown or its document is invalid."""
        with self._lock:
            documents = self._read()
        matches = [doc for doc in documents if doc.get("id") == experiment_id]
        found = self._to_experiments(matches)
        return found[0] if found else None

    def update(self, experiment_id: str, changes: ExperimentUpdate) -> Optional[Experiment]:
        """Apply a partial update and refresh ``last_modified``.

        Only fields present in the request are applied. An explicit ``null``
        clears optional fields and is ignored for required ones.
        """
        values = {
            key: value
            for key, value in changes.model_dump(mode="json", exclude_unset=True).items()
            if value is not None or key in NULLABLE_UPDATE_FIELDS
        }
        return self._modify(experiment_id, lambda doc: {**doc, **values})

    def save(self, experiment: Experiment) -> Experiment:
        """Replace the stored document with ``experiment`` (last write wins)."""
        saved = self._modify(experiment.id, lambda _: experiment.to_document())
        if saved is None:
            raise StoreError(f"Experiment {experiment.id} no longer exists")
        return saved

    def _modify(
        self,
        experiment_id: str,
        change: Callable[[Dict[str, Any]], Dict[str, Any]],
    ) -> Optional[Experiment]:
        with self._lock:
            documents = self._read()
            for i, doc in enumerate(documents):
                if doc.get("id") != experiment_id:
                    continue
                try:
                    updated = Experiment.model_validate(
                        {**change(doc), "id": experiment_id, "created_at": doc.get("created_at"), "last_modified": _utcnow()}
                    )
                except ValidationError as e:
                    logger.warning("Skipping invalid experiment document %s: %s", experiment_id, e)
                    return None
                documents[i] = updated.to_document()
                self._write(documents)
                return updated
        return None

    def delete(self, experiment_id: str) -> bool:
        """Delete an experiment; returns False if it did not exist."""
        with self._lock:
            documents = self._read()
            remaining = [doc for doc in documents if doc.get("id") != experiment_id]
            if len(remaining) == len(documents):
                return False
            self._write(remaining)
        logger.info("Deleted experiment %s", experiment_id)
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find(
        self,
        query: Optional[ExperimentFilter] = None,
        sort_by: str = "created_at",
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Experiment]:
        """Filtered, sorted, limited query.

        Args:
            query: Predicate; ``None`` matches everything.
            sort_by: Dotted document path, e.g. ``metrics.accuracy``.
            descending: Sort direction.
            limit: Maximum number of results; ``None`` or ``0`` for no limit.
        """
        with self._lock:
            documents = self._read()
        if query is not None:
            documents = [doc for doc in documents if query.matches(doc)]
        documents = sorted(documents, key=lambda doc: _document_sort_key(doc, sort_by), reverse=descending)
        if limit:
            documents = documents[:limit]
        return self._to_experiments(documents)

    def all(self) -> List[Experiment]:
        """Every experiment in insertion order."""
        with self._lock:
            documents = self._read()
        return self._to_experiments(documents)


def created_within(days: int, now: Optional[datetime] = None) -> datetime:
    """Lower bound for a ``created_after`` filter covering the last ``days`` days."""
    return (now or _utcnow()) - timedelta(days=days)


# ============= Store singleton =============

_store: Optional[ExperimentStore] = None
_store_lock = threading.Lock()


def get_experiment_store() -> ExperimentStore:
    """Return the process-wide store, creating it from settings on first use."""
    global _store
    with _store_lock:
        if _store is None:
            from .app_config import get_settings
            settings = get_settings()
            _store = ExperimentStore(settings.store_path)
            logger.info("Experiment store at %s", settings.store_path)
        return _store


def set_experiment_store(store: Optional[ExperimentStore]) -> None:
    """Replace the process-wide store (``None`` resets to the configured one)."""
    global _store
    with _store_lock:
        _store = store
