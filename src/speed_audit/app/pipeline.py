# speed_audit/app/pipeline.py
"""Bounded worker pool that analyzes sample points against street imagery.

N workers share one FIFO queue of (index, sample). Each finished task writes
its AnalyzedPoint into the slot of its original index, so completion order
never leaks into the output order. A fatal failure flips the shared cancel
event: nobody claims new work, in-flight tasks finish, and the error is
raised once after every worker has returned.
"""

import asyncio
import time
from collections.abc import Sequence
from dataclasses import dataclass

from speed_audit.app.errors import AnalysisHalted, FailureKind, classify_failure, snippet
from speed_audit.app.hooks import NoopHooks
from speed_audit.app.protocols import ImagerySource, PipelineHooks, ProgressFn, SignDetector
from speed_audit.domain.entities.analysis import (
    PLACEHOLDER_IMAGE,
    AnalyzedPoint,
    TaskState,
    point_id,
)
from speed_audit.domain.entities.geography import SamplePoint
from speed_audit.domain.geo import bearing_deg, lateral_offset
from speed_audit.domain.speeds import CountryProfile, classify_discrepancy, validate_detection

MAX_CONCURRENCY = 20
LATERAL_OFFSET_M = 4.0  # aim at the roadside, not the centerline


@dataclass
class PipelineResult:
    points: list[AnalyzedPoint]
    total: int
    cancelled: bool = False

    @property
    def failed(self) -> int:
        return sum(1 for p in self.points if p.failed)

    @property
    def discrepancies(self) -> list[AnalyzedPoint]:
        return [p for p in self.points if p.is_discrepancy]


def forward_heading(samples: Sequence[SamplePoint], index: int) -> float:
    p = samples[index]
    if index < len(samples) - 1:
        q = samples[index + 1]
        return bearing_deg(p.lat, p.lon, q.lat, q.lon)
    if index > 0:
        q = samples[index - 1]
        return bearing_deg(q.lat, q.lon, p.lat, p.lon)
    return 0.0


class AnalysisPipeline:
    def __init__(
        self,
        *,
        imagery: ImagerySource,
        detector: SignDetector,
        profile: CountryProfile,
        concurrency: int = 5,
        confidence_threshold: float = 0.3,
        lateral_offset_m: float = LATERAL_OFFSET_M,
        hooks: PipelineHooks | None = None,
        on_progress: ProgressFn | None = None,
    ):
        if not 1 <= concurrency <= MAX_CONCURRENCY:
            raise ValueError(f"concurrency must be in [1, {MAX_CONCURRENCY}], got {concurrency}")
        self.imagery, self.detector, self.profile = imagery, detector, profile
        self.concurrency = concurrency
        self.threshold = confidence_threshold
        self.lateral_offset_m = lateral_offset_m
        self.hooks = hooks or NoopHooks()
        self.on_progress = on_progress

        self._cancel = asyncio.Event()
        self._fatal: BaseException | None = None
        self._completed = 0

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Stop claiming new tasks; in-flight tasks still finish."""
        self._cancel.set()

    def reset(self) -> None:
        """Arm for a new run. run() never clears a pending cancel itself."""
        self._cancel.clear()

    # --------------- Run -----------------------------

    async def run(self, samples: Sequence[SamplePoint]) -> PipelineResult:
        total = len(samples)
        self._fatal = None
        self._completed = 0
        t0 = time.perf_counter()

        results: list[AnalyzedPoint | None] = [None] * total
        queue: asyncio.Queue[tuple[int, SamplePoint]] = asyncio.Queue()
        for item in enumerate(samples):
            queue.put_nowait(item)

        self.hooks.run_start(total=total, concurrency=self.concurrency)
        workers = [
            asyncio.create_task(self._worker(queue, samples, results))
            for _ in range(min(self.concurrency, total))
        ]
        outcomes = await asyncio.gather(*workers, return_exceptions=True)

        points = [p for p in results if p is not None]
        result = PipelineResult(points=points, total=total, cancelled=self.cancelled)
        self.hooks.run_end(
            completed=len(points),
            cancelled=result.cancelled,
            failed=result.failed,
            wall_ms=(time.perf_counter() - t0) * 1000,
        )
        if self._fatal is not None:
            raise AnalysisHalted(f"analysis halted: {self._fatal}", points) from self._fatal
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        return result

    async def _worker(
        self,
        queue: "asyncio.Queue[tuple[int, SamplePoint]]",
        samples: Sequence[SamplePoint],
        results: list[AnalyzedPoint | None],
    ) -> None:
        try:
            while not self._cancel.is_set():
                try:
                    index, _ = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                results[index] = await self._analyze(index, samples)
                self._completed += 1
                if self.on_progress is not None:
                    self.on_progress(self._completed, len(samples))
        except Exception:
            # a raising callback or hook stops dispatch; run() re-raises once drained
            self._cancel.set()
            raise

    # --------------- One task -----------------------------

    async def _analyze(self, index: int, samples: Sequence[SamplePoint]) -> AnalyzedPoint:
        sample = samples[index]
        heading = forward_heading(samples, index)
        lat, lon = lateral_offset(sample.lat, sample.lon, heading, self.lateral_offset_m)
        imagery = PLACEHOLDER_IMAGE
        image_date: str | None = None

        self.hooks.task_start(index, sample, heading=heading)
        try:
            self.hooks.task_state(index, TaskState.FETCHING)
            image, date = await asyncio.gather(
                self.imagery.fetch_image(lat, lon, heading),
                self.imagery.fetch_capture_date(lat, lon),
                return_exceptions=True,
            )
            for res in (image, date):
                if isinstance(res, BaseException) and not isinstance(res, Exception):
                    raise res
            if isinstance(date, Exception):
                self.hooks.task_warning(index, f"could not get image date: {snippet(date)}")
            else:
                image_date = date
            if isinstance(image, Exception):
                raise image
            imagery = image

            self.hooks.task_state(index, TaskState.DETECTING)
            detection = await self.detector.detect(image)
            detected = validate_detection(detection, threshold=self.threshold, profile=self.profile)
            if detection.value is not None and detected is None:
                self.hooks.task_warning(
                    index,
                    f"discarded detected {detection.value} (confidence {detection.confidence:.2f})",
                )

            point = AnalyzedPoint(
                id=point_id(sample),
                index=index,
                location=sample,
                recorded_speed=sample.speed,
                detected_speed=detected,
                confidence=detection.confidence,
                is_discrepancy=classify_discrepancy(sample.speed, detected, self.profile),
                imagery=imagery,
                heading=heading,
                fragment_id=sample.fragment_id,
                image_date=image_date,
                state=TaskState.CLASSIFIED,
            )
            self.hooks.task_state(index, TaskState.CLASSIFIED)
            self.hooks.task_end(index, point)
            return point

        except Exception as exc:
            kind = classify_failure(exc)
            point = AnalyzedPoint(
                id=point_id(sample),
                index=index,
                location=sample,
                recorded_speed=sample.speed,
                detected_speed=None,
                confidence=None,
                is_discrepancy=False,
                imagery=imagery,
                heading=heading,
                fragment_id=sample.fragment_id,
                image_date=image_date,
                state=TaskState.FAILED,
                error=snippet(exc),
            )
            self.hooks.task_state(index, TaskState.FAILED)
            self.hooks.task_failed(index, error=point.error, kind=kind.value)
            if kind is FailureKind.FATAL:
                self._cancel.set()
                if self._fatal is None:
                    self._fatal = exc
                self.hooks.halted(index, error=point.error)
            return point
