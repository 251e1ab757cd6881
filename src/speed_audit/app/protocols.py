from collections.abc import Callable
from typing import Protocol, runtime_checkable

from speed_audit.domain.entities.analysis import AnalyzedPoint, Detection, TaskState
from speed_audit.domain.entities.geography import RoadData, SamplePoint


# ------------- Collaborators --------------------
@runtime_checkable
class RoadDataSource(Protocol):
    """
    Responsibilities:
      • Return every fragment (and its nodes) named like the road inside locality/region.
      • Raise RoadDataError (RoadDataUnavailable when a retry may help).
    """

    async def fetch_fragments(self, name: str, locality: str, region: str) -> RoadData: ...


@runtime_checkable
class ImagerySource(Protocol):
    """
    Street-level imagery at a location, looking along heading (degrees).
    Both calls raise ImageryError on failure.
    """

    async def fetch_image(self, lat: float, lon: float, heading: float) -> bytes: ...
    async def fetch_capture_date(self, lat: float, lon: float) -> str: ...


@runtime_checkable
class SignDetector(Protocol):
    """
    Read a speed-limit sign off an image.
    Errors must be typed so the pipeline can route them:
      FatalError (authorization), RateLimitedError, MalformedResponseError, DetectionError.
    """

    async def detect(self, image: bytes) -> Detection: ...


ProgressFn = Callable[[int, int], None]  # (completed, total)


# ------------- Pipeline hooks --------------------
@runtime_checkable
class PipelineHooks(Protocol):
    def run_start(self, *, total: int, concurrency: int): ...
    def run_end(self, *, completed: int, cancelled: bool, failed: int, wall_ms: float): ...
    def task_state(self, index: int, state: TaskState): ...
    def task_start(self, index: int, sample: SamplePoint, *, heading: float): ...
    def task_warning(self, index: int, message: str): ...
    def task_end(self, index: int, point: AnalyzedPoint): ...
    def task_failed(self, index: int, *, error: str, kind: str): ...
    def halted(self, index: int, *, error: str): ...
