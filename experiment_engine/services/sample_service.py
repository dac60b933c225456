import math
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..core.config import settings
from ..core.errors import InvalidConfiguration
from ..core.monitoring import SAMPLES_TOTAL
from ..models.sample import MetricSample, MetricTrendPoint, SampleQuery
from ..repositories.base import SampleRepository
from ..utils.metric_paths import get_metric_value

logger = logging.getLogger(__name__)


class MetricSampleStore:
    """Append-only store of metric samples fed by the external metric producer."""

    def __init__(self, samples: SampleRepository):
        self.samples = samples

    async def append(
        self,
        experiment_id: str,
        variant_id: str,
        timestamp: datetime,
        metrics: Optional[Dict[str, Any]] = None
    ) -> MetricSample:
        if not experiment_id or not variant_id or timestamp is None:
            raise InvalidConfiguration("Metric samples require experiment_id, variant_id and timestamp")
        try:
            sample = MetricSample(
                experiment_id=experiment_id,
                variant_id=variant_id,
                timestamp=timestamp,
                metrics=metrics or {}
            )
        except ValidationError as e:
            raise InvalidConfiguration(f"Invalid metric sample: {e}")

        await self.samples.insert(sample)
        SAMPLES_TOTAL.labels(experiment_id=experiment_id).inc()
        logger.debug(f"Appended sample for variant {variant_id} of experiment {experiment_id}")
        return sample

    async def query(
        self,
        experiment_id: str,
        variant_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        sort: str = "desc",
        limit: Optional[int] = None
    ) -> List[MetricSample]:
        try:
            query = SampleQuery(
                variant_id=variant_id,
                start_date=start_date,
                end_date=end_date,
                sort=sort,
                limit=limit or settings.SAMPLE_QUERY_LIMIT
            )
        except ValidationError as e:
            raise InvalidConfiguration(f"Invalid sample query: {e}")
        return await self.samples.query(experiment_id, query)

    async def metric_trends(
        self,
        experiment_id: str,
        metric_path: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> Dict[str, List[MetricTrendPoint]]:
        """
        Time series of one metric per variant, oldest point first.

        Reads the most recent samples up to the query limit. Samples where the
        metric is missing or not a finite number contribute no point.
        """
        if not metric_path:
            raise InvalidConfiguration("Metric trends require a metric path")
        samples = await self.query(
            experiment_id, start_date=start_date, end_date=end_date, sort="desc", limit=limit
        )

        trends = defaultdict(list)
        for sample in reversed(samples):
            value = get_metric_value(sample.metrics, metric_path)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                continue
            trends[sample.variant_id].append(MetricTrendPoint(timestamp=sample.timestamp, value=value))

        logger.debug(f"Built {metric_path} trends for {len(trends)} variants of experiment {experiment_id}")
        return dict(trends)
