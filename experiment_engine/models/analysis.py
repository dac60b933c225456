from pydantic import BaseModel, Field
from typing import Dict, Optional
from datetime import datetime


class VariantStatistics(BaseModel):
    mean: Optional[float] = None
    median: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None
    std_dev: Optional[float] = None
    variance: Optional[float] = None
    count: int = 0


class TTestResult(BaseModel):
    t_value: float
    degrees_of_freedom: int
    # 1 - CDF(|t|, df); one-sided on the absolute t value
    p_value: float
    is_significant: bool
    confidence_level: float


class WinnerInfo(BaseModel):
    id: str
    stats: VariantStatistics
    confidence: float


class AnalysisResult(BaseModel):
    experiment_id: str
    primary_metric: str
    metric_direction: str
    confidence_threshold: float
    control_variant_id: str
    variant_stats: Dict[str, VariantStatistics]
    test_results: Dict[str, TTestResult]
    has_winner: bool
    winner: Optional[WinnerInfo] = None
    improvement_percentage: Optional[float] = None
    sample_sizes: Dict[str, int]
    analysis_timestamp: datetime = Field(default_factory=datetime.utcnow)


class DataReadiness(BaseModel):
    has_enough: bool
    reason: Optional[str] = None
    recommendations: list = []
    total_sample_size: Optional[int] = None
    days_running: Optional[int] = None
