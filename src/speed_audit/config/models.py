from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator


class LogModel(BaseModel):
    model_config = ConfigDict(extra="forbid")
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    debug: bool = False


class RoadModel(BaseModel):
    model_config = ConfigDict(extra="forbid")
    name: str
    locality: str
    region: str
    reverse: bool = False  # walk the assembled path the other way

    @field_validator("name", "locality", "region")
    @classmethod
    def _not_blank(cls, v: str, info: ValidationInfo) -> str:
        v = v.strip()
        if not v:
            raise ValueError(f"{info.field_name} must not be blank")
        return v


class SamplingModel(BaseModel):
    model_config = ConfigDict(extra="forbid")
    interval_m: float = 25.0
    start_offset_m: float = Field(default=0.0, ge=0.0)
    max_points: int = Field(default=10, ge=1)


class AnalysisModel(BaseModel):
    model_config = ConfigDict(extra="forbid")
    concurrency: int = Field(default=5, ge=1, le=20)
    confidence_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    country: str = "USA"
    lateral_offset_m: float = 4.0

    @field_validator("country")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.strip().upper()


# ----------------- RETRY POLICIES ---------------------


class RetryExponentialModel(BaseModel):
    model_config = ConfigDict(extra="forbid")
    kind: Literal["exponential"] = "exponential"
    max_attempts: int = Field(default=3, ge=1)
    initial_backoff_s: float = 2.0
    multiplier: float = 2.0
    max_backoff_s: float = 30.0
    jitter_s: float = 0.0

    @field_validator("initial_backoff_s", "max_backoff_s", "jitter_s")
    @classmethod
    def _nonneg(cls, v: float, info: ValidationInfo) -> float:
        if v < 0:
            raise ValueError(f"{info.field_name} must be >= 0")
        return v


class RetryNoneModel(BaseModel):
    model_config = ConfigDict(extra="forbid")
    kind: Literal["none"] = "none"


RetryUnion = Annotated[RetryExponentialModel | RetryNoneModel, Field(discriminator="kind")]


class CacheModel(BaseModel):
    model_config = ConfigDict(extra="forbid")
    enabled: bool = True
    ttl_s: float = Field(default=24 * 3600.0, gt=0)


class AuditModel(BaseModel):
    model_config = ConfigDict(extra="forbid")
    name: str = "audit"
    run_id: str = "local"
    road: RoadModel
    sampling: SamplingModel = Field(default_factory=SamplingModel)
    analysis: AnalysisModel = Field(default_factory=AnalysisModel)
    road_retry: RetryUnion = Field(default_factory=RetryExponentialModel)
    detector_retry: RetryUnion = Field(default_factory=RetryExponentialModel)
    cache: CacheModel = Field(default_factory=CacheModel)
    log: LogModel = Field(default_factory=LogModel)
