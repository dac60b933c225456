import time
import logging
from collections import defaultdict
from dataclasses import asdict
from datetime import datetime
from typing import Dict, List, Optional

from ..core.config import settings
from ..core.errors import InsufficientData
from ..core.monitoring import ANALYSES_TOTAL, ANALYSIS_LATENCY, metrics_logger
from ..models.analysis import AnalysisResult, TTestResult, VariantStatistics, WinnerInfo
from ..models.experiment import MetricDirection
from ..models.sample import MetricSample
from ..utils.metric_paths import get_metric_value
from ..utils.statistics import ExperimentStats
from .experiment_definition import ExperimentDefinitionService
from .sample_service import MetricSampleStore

logger = logging.getLogger(__name__)


class SignificanceAnalyzer:
    """Compares every variant against the control on the primary metric."""

    def __init__(self, definitions: ExperimentDefinitionService, samples: MetricSampleStore):
        self.definitions = definitions
        self.samples = samples
        self.stats = ExperimentStats()

    async def analyze(
        self,
        experiment_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> AnalysisResult:
        """Perform the significance analysis of an experiment."""
        started = time.perf_counter()
        logger.info(f"Analyzing A/B test data for test: {experiment_id}")
        try:
            experiment = await self.definitions.get(experiment_id)
            control = await self.definitions.get_control(experiment_id)

            samples = await self.samples.query(
                experiment_id,
                start_date=start_date,
                end_date=end_date,
                limit=settings.ANALYSIS_SAMPLE_LIMIT
            )
            if not samples:
                raise InsufficientData(
                    f"No performance data available for test: {experiment_id}",
                    {"experiment_id": experiment_id}
                )

            primary_metric = experiment.metrics.primary
            values_by_variant = self._group_values(samples, primary_metric, experiment.variants)
            variant_stats = {
                variant_id: self._describe(values)
                for variant_id, values in values_by_variant.items()
            }
            for variant_id, stats in variant_stats.items():
                if stats.count == 0:
                    logger.warning(f"No data for variant: {variant_id}")

            test_results = self._run_tests(
                variant_stats, control.id, experiment.confidence_threshold
            )
            lower_is_better = experiment.metric_direction == MetricDirection.MINIMIZE
            winner = self._determine_winner(test_results, variant_stats, lower_is_better)

            improvement = None
            if winner is not None:
                improvement = self.stats.improvement_percentage(
                    winner.stats.mean, variant_stats[control.id].mean, lower_is_better
                )

            result = AnalysisResult(
                experiment_id=experiment_id,
                primary_metric=primary_metric,
                metric_direction=experiment.metric_direction,
                confidence_threshold=experiment.confidence_threshold,
                control_variant_id=control.id,
                variant_stats=variant_stats,
                test_results=test_results,
                has_winner=winner is not None,
                winner=winner,
                improvement_percentage=improvement,
                sample_sizes={variant_id: len(values) for variant_id, values in values_by_variant.items()}
            )
            ANALYSES_TOTAL.labels(outcome="winner" if winner else "no_winner").inc()
            logger.info(
                f"Completed analysis for test: {experiment_id} "
                f"(winner: {winner.id if winner else None})"
            )
            return result

        except InsufficientData:
            ANALYSES_TOTAL.labels(outcome="insufficient_data").inc()
            raise
        except Exception as e:
            ANALYSES_TOTAL.labels(outcome="error").inc()
            metrics_logger.log_error(
                "experiment_analysis_error",
                str(e),
                {"experiment_id": experiment_id}
            )
            raise
        finally:
            ANALYSIS_LATENCY.observe(time.perf_counter() - started)

    def _group_values(
        self,
        samples: List[MetricSample],
        metric_path: str,
        variant_ids: List[str]
    ) -> Dict[str, List[float]]:
        raw = defaultdict(list)
        unknown = set()
        for sample in samples:
            if sample.variant_id not in variant_ids:
                unknown.add(sample.variant_id)
                continue
            raw[sample.variant_id].append(get_metric_value(sample.metrics, metric_path))

        if unknown:
            logger.warning(f"Ignoring samples of unknown variants: {', '.join(sorted(unknown))}")

        return {
            variant_id: self.stats.finite_values(raw.get(variant_id, []))
            for variant_id in variant_ids
        }

    def _describe(self, values: List[float]) -> VariantStatistics:
        described = self.stats.describe(values)
        return VariantStatistics(**asdict(described))

    def _run_tests(
        self,
        variant_stats: Dict[str, VariantStatistics],
        control_id: str,
        confidence_threshold: float
    ) -> Dict[str, TTestResult]:
        results = {}
        control = variant_stats[control_id]
        if control.count == 0:
            return results

        for variant_id, stats in variant_stats.items():
            if variant_id == control_id or stats.count == 0:
                continue

            test = self.stats.pooled_t_test(control, stats)
            if test is None:
                logger.info(f"Skipping t-test for variant {variant_id}: not enough spread or samples")
                continue

            results[variant_id] = TTestResult(
                t_value=test.t_value,
                degrees_of_freedom=test.degrees_of_freedom,
                p_value=test.p_value,
                is_significant=test.p_value < (1 - confidence_threshold),
                confidence_level=1 - test.p_value
            )
        return results

    @staticmethod
    def _determine_winner(
        test_results: Dict[str, TTestResult],
        variant_stats: Dict[str, VariantStatistics],
        lower_is_better: bool
    ) -> Optional[WinnerInfo]:
        significant = [
            WinnerInfo(
                id=variant_id,
                stats=variant_stats[variant_id],
                confidence=result.confidence_level
            )
            for variant_id, result in test_results.items()
            if result.is_significant
        ]
        if not significant:
            return None

        if lower_is_better:
            return min(significant, key=lambda w: w.stats.mean)
        return max(significant, key=lambda w: w.stats.mean)
