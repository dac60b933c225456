from pydantic import BaseModel, Field, field_validator
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
from enum import Enum
import uuid

from .variant import VariantChange, VariantType


class ExperimentStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETED = "completed"


TERMINAL_STATUSES = (ExperimentStatus.STOPPED, ExperimentStatus.COMPLETED)


class MetricDirection(str, Enum):
    MAXIMIZE = "maximize"
    MINIMIZE = "minimize"


class AllocationEntry(BaseModel):
    variant_id: str
    fraction: float


class ExperimentMetrics(BaseModel):
    primary: str
    secondary: List[str] = []


class Experiment(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    description: Optional[str] = None
    site_id: str
    status: ExperimentStatus = ExperimentStatus.CREATED
    variants: List[str]
    control_variant_id: str
    traffic_allocation: List[AllocationEntry]
    duration: int = Field(gt=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    metrics: ExperimentMetrics
    metric_direction: MetricDirection = MetricDirection.MAXIMIZE
    confidence_threshold: float = Field(0.95, gt=0, lt=1)
    expected_traffic: Optional[float] = None
    minimum_detectable_effect: Optional[float] = None
    statistical_power: Optional[float] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        use_enum_values = True
        validate_default = True
        from_attributes = True

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def allocation_map(self) -> Dict[str, float]:
        return {entry.variant_id: entry.fraction for entry in self.traffic_allocation}


class VariantConfig(BaseModel):
    """Variant as supplied in an experiment creation request."""
    id: Optional[str] = None
    name: str = Field(min_length=1)
    description: Optional[str] = None
    type: VariantType = VariantType.VARIANT
    traffic_allocation: Optional[float] = Field(None, ge=0, le=1)
    changes: List[VariantChange] = []


class ExperimentCreate(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    site_id: str = Field(min_length=1)
    variants: List[VariantConfig]
    duration: Optional[int] = Field(None, gt=0)
    metrics: ExperimentMetrics
    metric_direction: MetricDirection = MetricDirection.MAXIMIZE
    confidence_threshold: Optional[float] = Field(None, gt=0, lt=1)
    expected_traffic: Optional[float] = Field(None, gt=0)
    minimum_detectable_effect: Optional[float] = Field(None, gt=0)
    statistical_power: Optional[float] = Field(None, gt=0, le=1)

    @field_validator("metrics")
    @classmethod
    def validate_primary_metric(cls, v: ExperimentMetrics):
        if not v.primary:
            raise ValueError("Test configuration must specify a primary metric")
        return v


class ExperimentUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    duration: Optional[int] = Field(None, gt=0)
    metrics: Optional[ExperimentMetrics] = None
    metric_direction: Optional[MetricDirection] = None
    confidence_threshold: Optional[float] = Field(None, gt=0, lt=1)
    traffic_allocation: Optional[List[AllocationEntry]] = None

    def to_patch(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Store timestamps as naive UTC, the way MongoDB hands them back."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value
