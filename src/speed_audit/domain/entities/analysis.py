from dataclasses import dataclass
from enum import Enum

from speed_audit.domain.entities.geography import SamplePoint

# 1x1 transparent GIF, kept on points whose imagery never arrived
PLACEHOLDER_IMAGE = (
    b"GIF89a\x01\x00\x01\x00\x00\xff\x00,\x00\x00\x00\x00\x01\x00\x01\x00\x00\x02\x00;"
)


class TaskState(Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    DETECTING = "detecting"
    CLASSIFIED = "classified"
    FAILED = "failed"


@dataclass(frozen=True)
class Detection:
    value: int | None
    confidence: float


@dataclass(frozen=True)
class AnalyzedPoint:
    id: str
    index: int
    location: SamplePoint
    recorded_speed: str | None
    detected_speed: int | None
    confidence: float | None
    is_discrepancy: bool
    imagery: bytes
    heading: float
    fragment_id: int | None
    image_date: str | None = None
    state: TaskState = TaskState.CLASSIFIED
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.state is TaskState.FAILED


def point_id(sample: SamplePoint) -> str:
    return f"{sample.lat}-{sample.lon}"
