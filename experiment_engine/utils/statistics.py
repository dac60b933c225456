import math
import numpy as np
from scipy import stats
from typing import List, Optional, Sequence
from dataclasses import dataclass


@dataclass
class DescriptiveStats:
    """Descriptive statistics for one variant's metric values."""
    mean: Optional[float]
    median: Optional[float]
    min: Optional[float]
    max: Optional[float]
    std_dev: Optional[float]
    variance: Optional[float]
    count: int


@dataclass
class PooledTTest:
    """Results of a pooled-variance two-sample t-test."""
    t_value: float
    degrees_of_freedom: int
    p_value: float
    pooled_std_error: float


class ExperimentStats:
    """Statistical analysis utilities for A/B testing."""

    @staticmethod
    def describe(values: Sequence[float]) -> DescriptiveStats:
        """
        Compute descriptive statistics for a list of values.

        Spread uses the sample estimators (ddof=1) and is undefined for
        fewer than two values.
        """
        if len(values) == 0:
            return DescriptiveStats(
                mean=None, median=None, min=None, max=None,
                std_dev=None, variance=None, count=0
            )

        data = np.asarray(values, dtype=float)
        variance = float(np.var(data, ddof=1)) if data.size > 1 else None
        return DescriptiveStats(
            mean=float(np.mean(data)),
            median=float(np.median(data)),
            min=float(np.min(data)),
            max=float(np.max(data)),
            std_dev=math.sqrt(variance) if variance is not None else None,
            variance=variance,
            count=int(data.size)
        )

    @staticmethod
    def pooled_t_test(control: DescriptiveStats, variant: DescriptiveStats) -> Optional[PooledTTest]:
        """
        Two-sample t-test with pooled variance, control minus variant.

        The p-value is 1 - CDF(|t|, df): a one-sided tail on the absolute t
        value. A standard two-tailed p-value would be twice this. Returns None
        when either side has fewer than two values or the pooled standard
        error is zero.
        """
        n1, n2 = control.count, variant.count
        if n1 < 2 or n2 < 2:
            return None

        df = n1 + n2 - 2
        pooled_variance = ((n1 - 1) * control.variance + (n2 - 1) * variant.variance) / df
        pooled_std_error = math.sqrt(pooled_variance * (1 / n1 + 1 / n2))
        if pooled_std_error == 0:
            return None

        t_value = (control.mean - variant.mean) / pooled_std_error
        p_value = float(1 - stats.t.cdf(abs(t_value), df))

        return PooledTTest(
            t_value=t_value,
            degrees_of_freedom=df,
            p_value=p_value,
            pooled_std_error=pooled_std_error
        )

    @staticmethod
    def improvement_percentage(
        winner_mean: Optional[float],
        control_mean: Optional[float],
        lower_is_better: bool = False
    ) -> Optional[float]:
        """Relative improvement of the winner over the control, in percent."""
        if not winner_mean or not control_mean:
            return None
        if lower_is_better:
            return (control_mean - winner_mean) / control_mean * 100
        return (winner_mean - control_mean) / control_mean * 100

    @staticmethod
    def finite_values(values: List[object]) -> List[float]:
        """Keep real, finite numbers; booleans are not metric values."""
        result = []
        for value in values:
            if isinstance(value, bool) or not isinstance(value, (int, float, np.number)):
                continue
            if math.isfinite(value):
                result.append(float(value))
        return result
