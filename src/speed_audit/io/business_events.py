# speed_audit/io/business_events.py

from dataclasses import dataclass


# Base type for report-facing events (consumed by PDF/video/UI collaborators)
@dataclass
class BizEvent:
    run_id: str
    seq: int  # emission order within the run
    name: str  # stable event name


@dataclass
class PointAnalyzedBiz(BizEvent):
    index: int
    lat: float
    lon: float
    recorded_speed: str | None
    detected_speed: int | None
    confidence: float | None
    image_date: str | None = None


@dataclass
class DiscrepancyFoundBiz(BizEvent):
    index: int
    lat: float
    lon: float
    recorded_speed: str | None
    detected_speed: int | None
    fragment_id: int | None = None


@dataclass
class TaskFailedBiz(BizEvent):
    index: int
    kind: str  # fatal | quota | other
    error: str


@dataclass
class RunHaltedBiz(BizEvent):
    index: int
    error: str
