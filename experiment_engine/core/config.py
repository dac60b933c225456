import os
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Project Info
    PROJECT_NAME: str = "A/B Test Experimentation Engine"
    API_V1_STR: str = "/api/v1"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = Field(
        False,
        description="Emit log records as JSON lines"
    )

    # MongoDB Configuration
    MONGODB_URI: Optional[str] = Field(
        None,
        description="MongoDB connection string; in-memory storage is used when unset"
    )
    MONGODB_DB_NAME: str = Field(
        "experiment_engine",
        description="MongoDB database name"
    )
    MONGODB_POOL_SIZE: int = 5
    MONGODB_CONNECT_TIMEOUT_MS: int = 5000
    MONGODB_SOCKET_TIMEOUT_MS: int = 10000

    # Experiment defaults
    DEFAULT_CONFIDENCE_THRESHOLD: float = Field(
        0.95,
        description="Confidence threshold used when an experiment does not set one"
    )
    SAMPLE_QUERY_LIMIT: int = Field(
        1000,
        description="Default result cap for metric sample queries"
    )
    ANALYSIS_SAMPLE_LIMIT: int = Field(
        100000,
        description="Maximum number of samples loaded for one analysis run"
    )

    # Code-change service
    CODE_CHANGE_SERVICE_URL: Optional[str] = Field(
        None,
        description="Base URL of the service that commits winning variant changes"
    )
    CODE_CHANGE_TIMEOUT: int = Field(
        30,
        description="Timeout in seconds for calls to the code-change service"
    )
    IMPLEMENTATION_BRANCH: str = Field(
        "production",
        description="Branch that winning variants are implemented on"
    )

    @field_validator("MONGODB_URI")
    @classmethod
    def validate_mongodb_uri(cls, v):
        if v and not v.startswith("mongodb://") and not v.startswith("mongodb+srv://"):
            raise ValueError("MongoDB URI must start with mongodb:// or mongodb+srv://")
        return v or None

    @field_validator("DEFAULT_CONFIDENCE_THRESHOLD")
    @classmethod
    def validate_confidence_threshold(cls, v):
        if not 0 < v < 1:
            raise ValueError("DEFAULT_CONFIDENCE_THRESHOLD must be between 0 and 1")
        return v

    class Config:
        # Set env_file only if it exists to avoid warnings
        env_file = ".env" if os.path.isfile(".env") else None
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"
        validate_assignment = True


settings = Settings()
