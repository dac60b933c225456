"""
Planning helpers for experiment configuration: duration, minimum detectable
effect, default traffic split and data sufficiency.
"""

import logging
import math
from datetime import datetime
from typing import Dict, List, Optional

from ..core.errors import InvalidConfiguration
from ..models.analysis import DataReadiness

logger = logging.getLogger(__name__)

DEFAULT_DURATION_DAYS = 14
MIN_DURATION_DAYS = 7
MAX_DURATION_DAYS = 56


def calculate_test_duration(
    expected_traffic: Optional[float],
    variant_count: int = 2,
    minimum_detectable_effect: Optional[float] = None,
    statistical_power: Optional[float] = None
) -> int:
    """
    Recommended test duration in days.

    Uses the heuristic sample size 16 / mde^2 * power^2 per variant and the
    expected daily traffic, clamped to [7, 56] days. Without traffic data the
    default of 14 days is returned.
    """
    if not expected_traffic:
        return DEFAULT_DURATION_DAYS

    mde = minimum_detectable_effect or 0.1
    power = statistical_power or 0.8

    sample_size_per_variant = 16 * (1 / mde ** 2) * power ** 2
    total_sample_size = sample_size_per_variant * max(variant_count, 2)
    days_needed = math.ceil(total_sample_size / expected_traffic)

    return max(MIN_DURATION_DAYS, min(days_needed, MAX_DURATION_DAYS))


def calculate_minimum_detectable_effect(
    daily_traffic: Optional[float],
    duration: Optional[int],
    variants: int = 2,
    power: float = 0.8
) -> float:
    """Smallest relative effect the test can detect, clamped to [0.05, 0.5]."""
    if not daily_traffic or not duration:
        raise InvalidConfiguration("Daily traffic and duration are required")

    sample_size_per_variant = daily_traffic * duration / variants
    mde = math.sqrt(16 * power ** 2 / sample_size_per_variant)
    return max(0.05, min(mde, 0.5))


def generate_traffic_allocation(variant_ids: List[str]) -> List[tuple]:
    """
    Equal split in whole percentage points; the rounding residual goes to
    the first variant.
    """
    if not variant_ids:
        return []

    base = math.floor(100 / len(variant_ids)) / 100
    allocation = [[variant_id, base] for variant_id in variant_ids]

    residual = 1 - base * len(variant_ids)
    if residual > 0:
        allocation[0][1] = round(allocation[0][1] + residual, 10)

    return [tuple(entry) for entry in allocation]


def has_enough_data(
    start_date: Optional[datetime],
    sample_sizes: Dict[str, int],
    min_sample_size: int = 100,
    min_duration: int = 7,
    min_per_variant: int = 50,
    now: Optional[datetime] = None
) -> DataReadiness:
    """Check whether a running test has collected enough data to conclude."""
    if start_date is None:
        return DataReadiness(
            has_enough=False,
            reason="Test has not been started",
            recommendations=["Start the test to begin collecting data"]
        )

    now = now or datetime.utcnow()
    days_running = (now - start_date).days

    if days_running < min_duration:
        return DataReadiness(
            has_enough=False,
            reason=f"Test has been running for {days_running} days, minimum is {min_duration} days",
            recommendations=["Continue the test for the minimum duration"],
            days_running=days_running
        )

    low_traffic = [variant_id for variant_id, size in sample_sizes.items() if size < min_per_variant]
    if low_traffic:
        return DataReadiness(
            has_enough=False,
            reason=f"Some variants have insufficient traffic: {', '.join(low_traffic)}",
            recommendations=[
                "Increase test duration",
                "Allocate more traffic to low-traffic variants",
                "Reduce the number of variants"
            ],
            days_running=days_running
        )

    total_sample_size = sum(sample_sizes.values())
    if total_sample_size < min_sample_size:
        return DataReadiness(
            has_enough=False,
            reason=f"Total sample size ({total_sample_size}) is less than minimum ({min_sample_size})",
            recommendations=[
                "Increase test duration",
                "Increase traffic to the test pages"
            ],
            total_sample_size=total_sample_size,
            days_running=days_running
        )

    return DataReadiness(
        has_enough=True,
        total_sample_size=total_sample_size,
        days_running=days_running
    )
