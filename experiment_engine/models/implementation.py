from pydantic import BaseModel, Field
from typing import Any, List, Optional
from datetime import datetime
from enum import Enum
import uuid

from .analysis import AnalysisResult


class ImplementationStatus(str, Enum):
    NO_CHANGES_NEEDED = "no_changes_needed"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class ChangeRequest(BaseModel):
    path: str
    original: Optional[Any] = None
    modified: Optional[Any] = None
    message: str
    branch: str


class RollbackRequest(BaseModel):
    path: str
    commit_hash: Optional[str] = None
    original: Optional[Any] = None
    message: str
    branch: str


class ChangeResult(BaseModel):
    commit_hash: str


class ChangeOutcome(BaseModel):
    change_id: str
    element: str
    path: str
    success: bool
    skipped: bool = False
    commit_hash: Optional[str] = None
    error: Optional[str] = None


class ImplementationRecord(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    experiment_id: str
    winner_variant_id: str
    control_variant_id: str
    branch: Optional[str] = None
    changes: List[ChangeOutcome] = []
    status: ImplementationStatus
    message: Optional[str] = None
    implemented_at: datetime = Field(default_factory=datetime.utcnow)
    rollback_results: List[ChangeOutcome] = []
    rolled_back_at: Optional[datetime] = None

    class Config:
        use_enum_values = True
        validate_default = True


class StopOptions(BaseModel):
    implement_winner: bool = True
    winner_variant_id: Optional[str] = None
    branch: Optional[str] = None


class StopResult(BaseModel):
    id: str
    status: str
    analysis: Optional[AnalysisResult] = None
    implementation_result: Optional[ImplementationRecord] = None
