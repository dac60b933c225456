import threading
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..models.experiment import Experiment
from ..models.implementation import ImplementationRecord
from ..models.sample import MetricSample, SampleQuery
from ..models.session import VariantSessionCounts, VisitorSession
from ..models.variant import Variant
from .base import (
    ExperimentRepository,
    ImplementationRepository,
    Repositories,
    SampleRepository,
    SessionRepository,
    VariantRepository,
)


class InMemoryExperimentRepository(ExperimentRepository):
    def __init__(self):
        self._items: Dict[str, Experiment] = {}
        self._lock = threading.Lock()

    async def insert(self, experiment: Experiment) -> Experiment:
        with self._lock:
            if experiment.id in self._items:
                raise ValueError(f"Duplicate experiment id: {experiment.id}")
            self._items[experiment.id] = experiment.model_copy(deep=True)
        return experiment

    async def get(self, experiment_id: str) -> Optional[Experiment]:
        experiment = self._items.get(experiment_id)
        return experiment.model_copy(deep=True) if experiment else None

    async def save(self, experiment: Experiment) -> Experiment:
        with self._lock:
            self._items[experiment.id] = experiment.model_copy(deep=True)
        return experiment

    async def list(self, site_id: Optional[str] = None, status: Optional[str] = None) -> List[Experiment]:
        return [
            experiment.model_copy(deep=True)
            for experiment in list(self._items.values())
            if (site_id is None or experiment.site_id == site_id)
            and (status is None or experiment.status == status)
        ]


class InMemoryVariantRepository(VariantRepository):
    def __init__(self):
        self._items: Dict[str, Variant] = {}
        self._lock = threading.Lock()

    async def insert_many(self, variants: List[Variant]) -> List[Variant]:
        with self._lock:
            duplicates = [v.id for v in variants if v.id in self._items]
            if duplicates:
                raise ValueError(f"Duplicate variant ids: {', '.join(duplicates)}")
            for variant in variants:
                self._items[variant.id] = variant.model_copy(deep=True)
        return variants

    async def get(self, variant_id: str) -> Optional[Variant]:
        variant = self._items.get(variant_id)
        return variant.model_copy(deep=True) if variant else None

    async def list_by_experiment(self, experiment_id: str) -> List[Variant]:
        return [
            variant.model_copy(deep=True)
            for variant in list(self._items.values())
            if variant.experiment_id == experiment_id
        ]

    async def save(self, variant: Variant) -> Variant:
        with self._lock:
            self._items[variant.id] = variant.model_copy(deep=True)
        return variant


class InMemorySessionRepository(SessionRepository):
    def __init__(self):
        self._items: Dict[tuple, VisitorSession] = {}
        self._lock = threading.Lock()

    async def upsert_visit(
        self,
        experiment_id: str,
        visitor_id: str,
        variant_id: str,
        context: Dict[str, Any],
        seen_at: datetime
    ) -> VisitorSession:
        key = (experiment_id, visitor_id)
        with self._lock:
            session = self._items.get(key)
            if session is None:
                session = VisitorSession(
                    experiment_id=experiment_id,
                    visitor_id=visitor_id,
                    variant_id=variant_id,
                    first_seen=seen_at,
                    last_seen=seen_at,
                    visit_count=1,
                    created_at=seen_at,
                    updated_at=seen_at,
                    **context
                )
            else:
                session = session.model_copy(update={
                    **context,
                    "last_seen": seen_at,
                    "updated_at": seen_at,
                    "visit_count": session.visit_count + 1,
                })
            self._items[key] = session
            return session.model_copy()

    async def get(self, experiment_id: str, visitor_id: str) -> Optional[VisitorSession]:
        session = self._items.get((experiment_id, visitor_id))
        return session.model_copy() if session else None

    async def counts_per_variant(self, experiment_id: str) -> Dict[str, VariantSessionCounts]:
        sessions = defaultdict(int)
        visitors = defaultdict(set)
        for session in list(self._items.values()):
            if session.experiment_id != experiment_id or session.is_bot:
                continue
            sessions[session.variant_id] += 1
            visitors[session.variant_id].add(session.visitor_id)

        return {
            variant_id: VariantSessionCounts(
                session_count=count,
                unique_visitor_count=len(visitors[variant_id])
            )
            for variant_id, count in sessions.items()
        }

    async def count(self, experiment_id: str, include_bots: bool = False) -> int:
        return sum(
            1 for session in list(self._items.values())
            if session.experiment_id == experiment_id and (include_bots or not session.is_bot)
        )


class InMemorySampleRepository(SampleRepository):
    def __init__(self):
        self._items: List[MetricSample] = []
        self._lock = threading.Lock()

    async def insert(self, sample: MetricSample) -> MetricSample:
        with self._lock:
            self._items.append(sample.model_copy(deep=True))
        return sample

    async def query(self, experiment_id: str, query: SampleQuery) -> List[MetricSample]:
        with self._lock:
            items = list(self._items)

        matches = [
            sample for sample in items
            if sample.experiment_id == experiment_id
            and (query.variant_id is None or sample.variant_id == query.variant_id)
            and (query.start_date is None or sample.timestamp >= query.start_date)
            and (query.end_date is None or sample.timestamp <= query.end_date)
        ]
        matches.sort(key=lambda sample: sample.timestamp, reverse=query.sort == "desc")
        if query.limit is not None:
            matches = matches[:query.limit]
        return [sample.model_copy(deep=True) for sample in matches]


class InMemoryImplementationRepository(ImplementationRepository):
    def __init__(self):
        self._items: Dict[str, ImplementationRecord] = {}
        self._lock = threading.Lock()

    async def insert(self, record: ImplementationRecord) -> ImplementationRecord:
        with self._lock:
            self._items[record.id] = record.model_copy(deep=True)
        return record

    async def get(self, record_id: str) -> Optional[ImplementationRecord]:
        record = self._items.get(record_id)
        return record.model_copy(deep=True) if record else None

    async def save(self, record: ImplementationRecord) -> ImplementationRecord:
        with self._lock:
            self._items[record.id] = record.model_copy(deep=True)
        return record

    async def list_by_experiment(self, experiment_id: str) -> List[ImplementationRecord]:
        records = [r for r in list(self._items.values()) if r.experiment_id == experiment_id]
        records.sort(key=lambda record: record.implemented_at)
        return [record.model_copy(deep=True) for record in records]


def in_memory_repositories() -> Repositories:
    return Repositories(
        experiments=InMemoryExperimentRepository(),
        variants=InMemoryVariantRepository(),
        sessions=InMemorySessionRepository(),
        samples=InMemorySampleRepository(),
        implementations=InMemoryImplementationRepository()
    )
