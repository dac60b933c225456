import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from ..core.errors import ExperimentInactive, InsufficientData
from ..core.monitoring import ASSIGNMENTS_TOTAL
from ..models.analysis import AnalysisResult
from ..models.experiment import Experiment, ExperimentCreate, ExperimentStatus, ExperimentUpdate
from ..models.implementation import ImplementationRecord, StopOptions, StopResult
from ..models.sample import MetricSample, MetricTrendPoint
from ..models.session import VariantSessionCounts, VisitContext
from ..models.views import ExperimentDetail, ExperimentStatusView, VariantView
from ..repositories.base import Repositories
from ..utils.planning import has_enough_data
from .code_change import CodeChangeClient, UnconfiguredCodeChangeClient
from .experiment_analysis import SignificanceAnalyzer
from .experiment_definition import ExperimentDefinitionService
from .sample_service import MetricSampleStore
from .session_service import VisitorSessionStore
from .traffic_splitter import TrafficSplitter
from .winner_service import WinnerCoordinator

logger = logging.getLogger(__name__)


class ExperimentService:
    """
    Entry point of the experimentation engine.

    Wires the definition, session, sample, analysis and winner components
    over one set of repositories and exposes the operations callers use.
    """

    def __init__(
        self,
        repositories: Repositories,
        code_changes: Optional[CodeChangeClient] = None,
        splitter: Optional[TrafficSplitter] = None
    ):
        self.repositories = repositories
        self.splitter = splitter or TrafficSplitter()
        self.definitions = ExperimentDefinitionService(repositories.experiments, repositories.variants)
        self.sessions = VisitorSessionStore(repositories.sessions, self.definitions)
        self.samples = MetricSampleStore(repositories.samples)
        self.analyzer = SignificanceAnalyzer(self.definitions, self.samples)
        self.winners = WinnerCoordinator(
            self.definitions,
            self.analyzer,
            repositories.implementations,
            code_changes or UnconfiguredCodeChangeClient()
        )

    async def create_experiment(self, config: Union[ExperimentCreate, Dict[str, Any]]) -> ExperimentDetail:
        return await self.definitions.create(config)

    async def get_experiment(self, experiment_id: str) -> ExperimentDetail:
        experiment = await self.definitions.get(experiment_id)
        variants = await self.definitions.get_variants(experiment_id)
        return ExperimentDetail(experiment=experiment, variants=variants)

    async def list_experiments(self, site_id: str, status: Optional[str] = None) -> List[Experiment]:
        return await self.definitions.list_by_site(site_id, status)

    async def update_experiment(
        self,
        experiment_id: str,
        update: Union[ExperimentUpdate, Dict[str, Any]]
    ) -> Experiment:
        patch = update.to_patch() if isinstance(update, ExperimentUpdate) else dict(update)
        experiment = await self.definitions.update(experiment_id, patch)
        if "traffic_allocation" in patch:
            self.splitter.invalidate(experiment_id)
        return experiment

    async def start_experiment(self, experiment_id: str) -> Experiment:
        experiment = await self.definitions.start(experiment_id)
        # Fails fast on an allocation that cannot be bucketed
        self.splitter.buckets_for(experiment)
        return experiment

    async def pause_experiment(self, experiment_id: str) -> Experiment:
        return await self.definitions.pause(experiment_id)

    async def stop_experiment(
        self,
        experiment_id: str,
        options: Union[StopOptions, Dict[str, Any], None] = None
    ) -> StopResult:
        if not isinstance(options, StopOptions):
            options = StopOptions.model_validate(options or {})
        result = await self.winners.stop_and_implement(experiment_id, options)
        self.splitter.invalidate(experiment_id)
        return result

    async def update_allocation(self, experiment_id: str, allocation: List[Any]) -> Experiment:
        experiment = await self.definitions.update_allocation(experiment_id, allocation)
        self.splitter.invalidate(experiment_id)
        logger.info(f"Updated traffic allocation of experiment: {experiment_id}")
        return experiment

    async def assign_variant(
        self,
        experiment_id: str,
        visitor_id: str,
        context: Union[VisitContext, Dict, None] = None
    ) -> str:
        """
        Variant a visitor sees in a running experiment.

        A returning visitor keeps the variant recorded on the first visit,
        even after the allocation changed.
        """
        experiment = await self.definitions.get(experiment_id)
        if experiment.status != ExperimentStatus.RUNNING:
            raise ExperimentInactive(
                f"Test is not active: {experiment_id}",
                {"experiment_id": experiment_id, "status": experiment.status}
            )

        variant_id = self.splitter.assign_variant(experiment, visitor_id)
        session = await self.sessions.record_visit(experiment_id, visitor_id, variant_id, context)
        ASSIGNMENTS_TOTAL.labels(experiment_id=experiment_id, variant_id=session.variant_id).inc()
        return session.variant_id

    async def record_sample(
        self,
        experiment_id: str,
        variant_id: str,
        timestamp: datetime,
        metrics: Optional[Dict[str, Any]] = None
    ) -> MetricSample:
        return await self.samples.append(experiment_id, variant_id, timestamp, metrics)

    async def query_samples(self, experiment_id: str, **filters) -> List[MetricSample]:
        return await self.samples.query(experiment_id, **filters)

    async def get_metric_trends(
        self,
        experiment_id: str,
        metric_path: Optional[str] = None,
        **filters
    ) -> Dict[str, List[MetricTrendPoint]]:
        """Per-variant time series of a metric, the primary metric by default."""
        experiment = await self.definitions.get(experiment_id)
        return await self.samples.metric_trends(
            experiment_id, metric_path or experiment.metrics.primary, **filters
        )

    async def sessions_per_variant(self, experiment_id: str) -> Dict[str, VariantSessionCounts]:
        return await self.sessions.sessions_per_variant(experiment_id)

    async def get_analysis(
        self,
        experiment_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> AnalysisResult:
        return await self.analyzer.analyze(experiment_id, start_date, end_date)

    async def get_status(self, experiment_id: str) -> ExperimentStatusView:
        """Definition, variants with traffic and sessions, and the current analysis."""
        experiment = await self.definitions.get(experiment_id)
        variants = await self.definitions.get_variants(experiment_id)
        sessions = await self.sessions.sessions_per_variant(experiment_id)
        shares = experiment.allocation_map()

        try:
            analysis = await self.analyzer.analyze(experiment_id)
        except InsufficientData:
            analysis = None

        sample_sizes = analysis.sample_sizes if analysis else {v.id: 0 for v in variants}
        readiness = has_enough_data(experiment.start_date, sample_sizes)

        return ExperimentStatusView(
            id=experiment.id,
            name=experiment.name,
            site_id=experiment.site_id,
            status=experiment.status,
            start_date=experiment.start_date,
            end_date=experiment.end_date,
            duration=experiment.duration,
            variants=[
                VariantView(
                    id=variant.id,
                    name=variant.name,
                    type=variant.type,
                    status=variant.status,
                    traffic=shares.get(variant.id),
                    sessions=sessions.get(variant.id, VariantSessionCounts())
                )
                for variant in variants
            ],
            analysis=analysis,
            readiness=readiness,
            has_winner=bool(analysis and analysis.has_winner),
            winner=analysis.winner.id if analysis and analysis.winner else None,
            confidence_level=analysis.winner.confidence if analysis and analysis.winner else None,
            improvement_percentage=analysis.improvement_percentage if analysis else None
        )

    async def list_implementations(self, experiment_id: str) -> List[ImplementationRecord]:
        return await self.winners.list_implementations(experiment_id)

    async def rollback_implementation(self, implementation_id: str) -> ImplementationRecord:
        return await self.winners.rollback(implementation_id)
