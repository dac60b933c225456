from pydantic import BaseModel, Field
from typing import Any, Dict, Optional
from datetime import datetime
import uuid


class VisitContext(BaseModel):
    """Request metadata supplied with a visit."""
    device: Optional[str] = None
    user_agent: Optional[str] = None
    referrer: Optional[str] = None
    ip_address: Optional[str] = None
    country: Optional[str] = None
    is_bot: Optional[bool] = None

    def supplied_fields(self) -> Dict[str, Any]:
        return {key: value for key, value in self.model_dump().items() if value is not None}


class VisitorSession(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    experiment_id: str
    visitor_id: str
    variant_id: str
    first_seen: datetime = Field(default_factory=datetime.utcnow)
    last_seen: datetime = Field(default_factory=datetime.utcnow)
    visit_count: int = 1
    device: Optional[str] = None
    user_agent: Optional[str] = None
    referrer: Optional[str] = None
    ip_address: Optional[str] = None
    country: Optional[str] = None
    is_bot: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        from_attributes = True


class VariantSessionCounts(BaseModel):
    session_count: int = 0
    unique_visitor_count: int = 0


class AssignmentRequest(BaseModel):
    visitor_id: str = Field(min_length=1)
    context: VisitContext = VisitContext()


class AssignmentResponse(BaseModel):
    experiment_id: str
    visitor_id: str
    variant_id: str
