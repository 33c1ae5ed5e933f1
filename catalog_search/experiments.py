"""Deterministic A/B assignment of users and sessions to ranking variants."""
from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Protocol

from pydantic import BaseModel, Field

from .cache import CacheBackend
from .config import settings
from .models import RankingConfig, default_ranking_config

logger = logging.getLogger(__name__)

ACTIVE_EXPERIMENTS_KEY = "search:experiments:active"
BUCKETS = 100


class SearchExperimentVariant(BaseModel):
    id: str
    name: str = ""
    traffic_split: float = 0
    configuration: RankingConfig = Field(default_factory=RankingConfig)
    is_control: bool = False


class SearchExperiment(BaseModel):
    id: str
    name: str = ""
    description: str = ""
    status: str = "draft"
    traffic_allocation: float = 0
    variants: List[SearchExperimentVariant] = Field(default_factory=list)
    start_date: datetime
    end_date: Optional[datetime] = None
    target_metrics: List[str] = Field(default_factory=list)

    def is_running(self, now: datetime) -> bool:
        if self.status != "active":
            return False
        start = _utc(self.start_date)
        end = _utc(self.end_date) if self.end_date else None
        return start <= now and (end is None or now <= end)

    @property
    def control(self) -> Optional[SearchExperimentVariant]:
        return next((variant for variant in self.variants if variant.is_control), None)


class ExperimentAssignment(BaseModel):
    key: str
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    experiment_id: str
    variant_id: str
    assigned_at: datetime


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def stable_hash(value: str) -> int:
    """Process-independent non-negative hash of ``value``."""

    digest = hashlib.sha256(value.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big")


class ExperimentStore(Protocol):
    def list_experiments(self) -> List[SearchExperiment]: ...


class InMemoryExperimentStore:
    def __init__(self, experiments: Iterable[SearchExperiment] = ()) -> None:
        self._experiments = list(experiments)

    def list_experiments(self) -> List[SearchExperiment]:
        return list(self._experiments)

    def add(self, experiment: SearchExperiment) -> None:
        self._experiments = [item for item in self._experiments if item.id != experiment.id]
        self._experiments.append(experiment)


def load_experiments(path: str | Path) -> InMemoryExperimentStore:
    """Read experiment definitions from a JSON list; a missing file means none."""

    file_path = Path(path)
    if not file_path.exists():
        logger.info("No experiments file at %s; running without experiments", file_path)
        return InMemoryExperimentStore()
    with file_path.open("r", encoding="utf-8") as fh:
        raw = json.load(fh)
    experiments = [SearchExperiment.model_validate(item) for item in raw]
    logger.info("Loaded %s experiments from %s", len(experiments), file_path)
    return InMemoryExperimentStore(experiments)


class ExperimentAssigner:
    """Buckets a user (or, failing that, a session) into experiment variants.

    Inclusion uses ``stable_hash(f"{key}_{experiment_id}") % 100`` against the
    experiment's traffic allocation; the variant is chosen by walking the
    cumulative traffic splits with a second hash salted with ``_variant``.
    The same key keeps its variant for as long as the definition is
    unchanged.
    """

    def __init__(
        self,
        store: ExperimentStore,
        cache: Optional[CacheBackend] = None,
        clock: Optional[Callable[[], datetime]] = None,
        *,
        experiments_ttl: int = settings.experiment_cache_ttl_seconds,
        assignment_ttl: int = settings.assignment_ttl_seconds,
    ) -> None:
        self.store = store
        self.cache = cache
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.experiments_ttl = experiments_ttl
        self.assignment_ttl = assignment_ttl

    def active_experiments(self) -> List[SearchExperiment]:
        if self.cache is not None:
            cached = self.cache.get(ACTIVE_EXPERIMENTS_KEY)
            if cached is not None:
                return [SearchExperiment.model_validate(item) for item in cached]
        now = _utc(self.clock())
        experiments = [experiment for experiment in self.store.list_experiments() if experiment.is_running(now)]
        if self.cache is not None:
            self.cache.set(
                ACTIVE_EXPERIMENTS_KEY,
                [experiment.model_dump(mode="json") for experiment in experiments],
                self.experiments_ttl,
            )
        return experiments

    def _experiment(self, experiment_id: str) -> Optional[SearchExperiment]:
        return next((item for item in self.active_experiments() if item.id == experiment_id), None)

    def _select_variant(self, key: str, experiment: SearchExperiment) -> Optional[SearchExperimentVariant]:
        if stable_hash(f"{key}_{experiment.id}") % BUCKETS >= experiment.traffic_allocation:
            return None

        total_split = sum(variant.traffic_split for variant in experiment.variants)
        if total_split > BUCKETS:
            logger.warning(
                "Experiment %s variant splits sum to %s; using control variant",
                experiment.id,
                total_split,
            )
            return experiment.control

        percentile = stable_hash(f"{key}_{experiment.id}_variant") % BUCKETS
        cumulative = 0.0
        for variant in experiment.variants:
            cumulative += variant.traffic_split
            if percentile < cumulative:
                return variant

        logger.warning("No variant of experiment %s matched percentile %s", experiment.id, percentile)
        return experiment.control

    def assign(self, key: str, experiment_id: str) -> Optional[str]:
        """Variant id for ``key`` in ``experiment_id``, or ``None`` if excluded."""

        experiment = self._experiment(experiment_id)
        if experiment is None:
            return None
        variant = self._select_variant(key, experiment)
        return variant.id if variant else None

    def assignments(
        self,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> List[ExperimentAssignment]:
        key = user_id or session_id
        if not key:
            return []

        cache_key = f"search:assignment:{user_id or ''}:{session_id or ''}"
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return [ExperimentAssignment.model_validate(item) for item in cached]

        now = _utc(self.clock())
        result: List[ExperimentAssignment] = []
        for experiment in self.active_experiments():
            variant = self._select_variant(key, experiment)
            if variant is None:
                continue
            result.append(
                ExperimentAssignment(
                    key=key,
                    user_id=user_id,
                    session_id=session_id,
                    experiment_id=experiment.id,
                    variant_id=variant.id,
                    assigned_at=now,
                )
            )

        if self.cache is not None:
            self.cache.set(cache_key, [item.model_dump(mode="json") for item in result], self.assignment_ttl)
        return result

    def ranking_config(
        self,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> RankingConfig:
        """Default ranking merged with every assigned variant, in experiment order."""

        config = default_ranking_config()
        assignments = self.assignments(user_id, session_id)
        if not assignments:
            return config
        experiments = {experiment.id: experiment for experiment in self.active_experiments()}
        for assignment in assignments:
            experiment = experiments.get(assignment.experiment_id)
            if experiment is None:
                continue
            variant = next((item for item in experiment.variants if item.id == assignment.variant_id), None)
            if variant is not None:
                config = config.merged(variant.configuration)
        return config
