"""
Configuration loader for the cancer classification service.

Environment variables are centralized here to keep the rest of the code
focused on business logic and to make operational tuning clear.
"""

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
import tempfile
from typing import Optional, Tuple

from pydantic import Field, validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Model artifact location
    artifact_bucket: str = Field("buckets-ml")
    artifact_prefix: str = Field("data")
    artifact_topology_file: str = Field("model.json")
    artifact_shard_prefix: str = Field("group1-shard")
    staging_dir: Path = Field(Path(tempfile.gettempdir()) / "cancer_service_model")
    cleanup_staging: bool = Field(False)

    # S3-compatible blob store; unset credentials fall back to the boto3 chain
    s3_endpoint: Optional[str] = Field(None)
    s3_access_key_id: Optional[str] = Field(None)
    s3_secret_access_key: Optional[str] = Field(None)
    s3_region: Optional[str] = Field(None)
    store_connect_timeout_seconds: float = Field(5.0)
    store_read_timeout_seconds: float = Field(60.0)

    # Preprocessing + decision
    decision_threshold: float = Field(0.58)
    input_height: int = Field(224)
    input_width: int = Field(224)
    normalization_divisor: float = Field(255.0)

    # API
    max_upload_bytes: int = Field(1_000_000)
    prediction_store: str = Field("memory")
    prediction_bucket: Optional[str] = Field(None)
    prediction_prefix: str = Field("predictions")
    log_level: str = Field("INFO")

    class Config:
        env_file = ".env"
        case_sensitive = False

    @validator("decision_threshold")
    def validate_threshold(cls, v: float) -> float:  # noqa: B902
        if not 0.0 <= v <= 1.0:
            raise ValueError("DECISION_THRESHOLD must be within [0, 1]")
        return v

    @validator("normalization_divisor")
    def validate_divisor(cls, v: float) -> float:  # noqa: B902
        if v <= 0:
            raise ValueError("NORMALIZATION_DIVISOR must be positive")
        return v

    @validator("input_height", "input_width")
    def validate_input_size(cls, v: int) -> int:  # noqa: B902
        if v <= 0:
            raise ValueError("input dimensions must be positive")
        return v

    @validator("prediction_store")
    def validate_prediction_store(cls, v: str) -> str:  # noqa: B902
        if v not in {"memory", "s3"}:
            raise ValueError("PREDICTION_STORE must be one of memory|s3")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()


@dataclass(frozen=True)
class InferenceConfig:
    """Values the preprocessor and inference engine are built with."""

    threshold: float = 0.58
    input_size: Tuple[int, int] = (224, 224)  # (height, width)
    normalization_divisor: float = 255.0
    artifact_location: str = "buckets-ml/data"

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "InferenceConfig":
        settings = settings or get_settings()
        return cls(
            threshold=settings.decision_threshold,
            input_size=(settings.input_height, settings.input_width),
            normalization_divisor=settings.normalization_divisor,
            artifact_location=f"{settings.artifact_bucket}/{settings.artifact_prefix}",
        )
