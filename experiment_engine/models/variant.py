from pydantic import BaseModel, Field
from typing import Any, List, Optional
from datetime import datetime
from enum import Enum
import uuid


class VariantType(str, Enum):
    CONTROL = "control"
    VARIANT = "variant"


class VariantStatus(str, Enum):
    CREATED = "created"
    IMPLEMENTED = "implemented"
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"


class ChangeType(str, Enum):
    META = "meta"
    CONTENT = "content"
    SCHEMA = "schema"
    HEADER = "header"
    IMAGE = "image"
    ROBOTS = "robots"


class VariantChange(BaseModel):
    """A content mutation carried by a variant."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    element: str = Field(min_length=1)
    type: ChangeType
    path: str = Field(min_length=1)
    original: Optional[Any] = None
    modified: Optional[Any] = None
    # Commit that applied the change for the running variant
    commit_hash: Optional[str] = None

    class Config:
        use_enum_values = True


class Variant(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    experiment_id: str
    name: str
    description: Optional[str] = None
    type: VariantType = VariantType.VARIANT
    traffic_allocation: Optional[float] = None
    status: VariantStatus = VariantStatus.CREATED
    changes: List[VariantChange] = []
    implemented_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        use_enum_values = True
        validate_default = True
        from_attributes = True

    @property
    def is_control(self) -> bool:
        return self.type == VariantType.CONTROL
