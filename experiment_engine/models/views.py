from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime

from .analysis import AnalysisResult, DataReadiness
from .experiment import Experiment
from .session import VariantSessionCounts
from .variant import Variant


class ExperimentDetail(BaseModel):
    experiment: Experiment
    variants: List[Variant]


class VariantView(BaseModel):
    id: str
    name: str
    type: str
    status: str
    traffic: Optional[float] = None
    sessions: VariantSessionCounts = VariantSessionCounts()


class ExperimentStatusView(BaseModel):
    """Definition, variants and the latest analysis merged into one view."""
    id: str
    name: str
    site_id: str
    status: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    duration: int
    variants: List[VariantView]
    analysis: Optional[AnalysisResult] = None
    readiness: Optional[DataReadiness] = None
    has_winner: bool = False
    winner: Optional[str] = None
    confidence_level: Optional[float] = None
    improvement_percentage: Optional[float] = None
