"""
Storage interfaces for the experimentation engine.

Each component receives the repositories it needs through its constructor.
Two implementations ship with the engine: MongoDB (motor) for deployments and
an in-memory one for tests and local runs.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..models.experiment import Experiment
from ..models.implementation import ImplementationRecord
from ..models.sample import MetricSample, SampleQuery
from ..models.session import VariantSessionCounts, VisitorSession
from ..models.variant import Variant


class ExperimentRepository(ABC):
    @abstractmethod
    async def insert(self, experiment: Experiment) -> Experiment:
        ...

    @abstractmethod
    async def get(self, experiment_id: str) -> Optional[Experiment]:
        ...

    @abstractmethod
    async def save(self, experiment: Experiment) -> Experiment:
        ...

    @abstractmethod
    async def list(self, site_id: Optional[str] = None, status: Optional[str] = None) -> List[Experiment]:
        ...


class VariantRepository(ABC):
    @abstractmethod
    async def insert_many(self, variants: List[Variant]) -> List[Variant]:
        ...

    @abstractmethod
    async def get(self, variant_id: str) -> Optional[Variant]:
        ...

    @abstractmethod
    async def list_by_experiment(self, experiment_id: str) -> List[Variant]:
        ...

    @abstractmethod
    async def save(self, variant: Variant) -> Variant:
        ...


class SessionRepository(ABC):
    @abstractmethod
    async def upsert_visit(
        self,
        experiment_id: str,
        visitor_id: str,
        variant_id: str,
        context: Dict[str, Any],
        seen_at: datetime
    ) -> VisitorSession:
        """
        Insert the session if absent, otherwise register another visit.

        The stored variant of an existing session is never replaced; the
        committed row is returned in both cases.
        """

    @abstractmethod
    async def get(self, experiment_id: str, visitor_id: str) -> Optional[VisitorSession]:
        ...

    @abstractmethod
    async def counts_per_variant(self, experiment_id: str) -> Dict[str, VariantSessionCounts]:
        """Session and unique visitor counts per variant, bots excluded."""

    @abstractmethod
    async def count(self, experiment_id: str, include_bots: bool = False) -> int:
        ...


class SampleRepository(ABC):
    @abstractmethod
    async def insert(self, sample: MetricSample) -> MetricSample:
        ...

    @abstractmethod
    async def query(self, experiment_id: str, query: SampleQuery) -> List[MetricSample]:
        ...


class ImplementationRepository(ABC):
    @abstractmethod
    async def insert(self, record: ImplementationRecord) -> ImplementationRecord:
        ...

    @abstractmethod
    async def get(self, record_id: str) -> Optional[ImplementationRecord]:
        ...

    @abstractmethod
    async def save(self, record: ImplementationRecord) -> ImplementationRecord:
        ...

    @abstractmethod
    async def list_by_experiment(self, experiment_id: str) -> List[ImplementationRecord]:
        """Records for an experiment, oldest first."""


class Repositories:
    """The set of repositories one engine instance works against."""

    def __init__(
        self,
        experiments: ExperimentRepository,
        variants: VariantRepository,
        sessions: SessionRepository,
        samples: SampleRepository,
        implementations: ImplementationRepository
    ):
        self.experiments = experiments
        self.variants = variants
        self.sessions = sessions
        self.samples = samples
        self.implementations = implementations
