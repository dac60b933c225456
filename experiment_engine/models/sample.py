from pydantic import BaseModel, Field, field_validator
from typing import Any, Dict, Literal, Optional
from datetime import datetime
import uuid

from .experiment import naive_utc


class MetricSample(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    experiment_id: str = Field(min_length=1)
    variant_id: str = Field(min_length=1)
    timestamp: datetime
    # Metric name -> number or null; nested groups are addressed by dot paths
    metrics: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return naive_utc(v)


class SampleCreate(BaseModel):
    variant_id: str
    timestamp: datetime
    metrics: Dict[str, Any] = {}


class SampleQuery(BaseModel):
    variant_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    sort: Literal["asc", "desc"] = "desc"
    limit: Optional[int] = Field(None, gt=0)

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_bounds(cls, v: Optional[datetime]) -> Optional[datetime]:
        return naive_utc(v)


class MetricTrendPoint(BaseModel):
    timestamp: datetime
    value: float
