# tests/app/test_pipeline.py
import asyncio

import pytest

from speed_audit.app.errors import (
    AnalysisHalted,
    FatalError,
    ImageryError,
    RateLimitedError,
)
from speed_audit.app.hooks import NoopHooks
from speed_audit.app.pipeline import AnalysisPipeline, forward_heading
from speed_audit.domain.entities.analysis import PLACEHOLDER_IMAGE, Detection, TaskState
from speed_audit.domain.entities.geography import SamplePoint
from speed_audit.domain.speeds import CountryProfile

CAN = CountryProfile(code="CAN", unit="km/h", min_speed=10, max_speed=150)


def _samples(n, speed="50"):
    return [SamplePoint(0.0, i * 0.0005, speed=speed, fragment_id=100 + i) for i in range(n)]


# ---- stub collaborators


class FakeImagery:
    """Image bytes carry the sample number; optional per-call delay and failures."""

    def __init__(self, delays=None, fail=None, date_fails=False):
        self.delays = delays or {}
        self.fail = fail or {}
        self.date_fails = date_fails
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0

    @staticmethod
    def _index(lon: float) -> int:
        return round(lon / 0.0005)

    async def fetch_image(self, lat: float, lon: float, heading: float) -> bytes:
        i = self._index(lon)
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(i, 0.0))
            if i in self.fail:
                raise self.fail[i]
            return f"img-{i}".encode()
        finally:
            self.in_flight -= 1

    async def fetch_capture_date(self, lat: float, lon: float) -> str:
        if self.date_fails:
            raise ImageryError("metadata endpoint down")
        return "2024-06"


class FakeDetector:
    def __init__(self, values=None, fail=None, default=Detection(50, 0.9)):
        self.values = values or {}
        self.fail = fail or {}
        self.default = default

    async def detect(self, image: bytes) -> Detection:
        i = int(image.decode().split("-")[1])
        await asyncio.sleep(0)
        if i in self.fail:
            raise self.fail[i]
        return self.values.get(i, self.default)


class RecordingHooks(NoopHooks):
    def __init__(self):
        self.warnings = []
        self.failed = []
        self.states = {}
        self.halted_at = []
        self.run_ends = []

    def task_state(self, index, state):
        self.states.setdefault(index, []).append(state)

    def task_warning(self, index, message):
        self.warnings.append((index, message))

    def task_failed(self, index, *, error, kind):
        self.failed.append((index, kind))

    def halted(self, index, *, error):
        self.halted_at.append(index)

    def run_end(self, *, completed, cancelled, failed, wall_ms):
        self.run_ends.append((completed, cancelled, failed))


def _pipeline(imagery=None, detector=None, **kw):
    return AnalysisPipeline(
        imagery=imagery or FakeImagery(),
        detector=detector or FakeDetector(),
        profile=CAN,
        **kw,
    )


# ---- ordering & concurrency


def test_results_follow_input_order_under_shuffled_completion():
    n = 8
    delays = {i: 0.001 * (n - i) for i in range(n)}  # later samples finish first
    samples = _samples(n)
    pipe = _pipeline(FakeImagery(delays=delays), concurrency=4)

    result = asyncio.run(pipe.run(samples))

    assert [p.index for p in result.points] == list(range(n))
    assert [p.location for p in result.points] == samples
    assert [p.imagery for p in result.points] == [f"img-{i}".encode() for i in range(n)]
    assert result.cancelled is False
    assert result.failed == 0


def test_concurrency_is_bounded():
    imagery = FakeImagery(delays={i: 0.002 for i in range(12)})
    pipe = _pipeline(imagery, concurrency=3)
    asyncio.run(pipe.run(_samples(12)))
    assert imagery.calls == 12
    assert 1 <= imagery.max_in_flight <= 3


@pytest.mark.parametrize("bad", [0, 21])
def test_concurrency_outside_range_is_rejected(bad):
    with pytest.raises(ValueError):
        _pipeline(concurrency=bad)


def test_empty_input():
    result = asyncio.run(_pipeline().run([]))
    assert result.points == [] and result.total == 0


def test_progress_is_monotonic():
    seen = []
    pipe = _pipeline(concurrency=3, on_progress=lambda done, total: seen.append((done, total)))
    asyncio.run(pipe.run(_samples(5)))
    assert seen == [(i, 5) for i in range(1, 6)]


# ---- classification through the pipeline


def test_point_fields_and_discrepancy():
    detector = FakeDetector(values={1: Detection(80, 0.95)})
    hooks = RecordingHooks()
    result = asyncio.run(_pipeline(detector=detector, hooks=hooks).run(_samples(3)))

    p0, p1, _ = result.points
    assert p0.detected_speed == 50 and p0.is_discrepancy is False
    assert p1.detected_speed == 80 and p1.is_discrepancy is True
    assert p1.recorded_speed == "50"
    assert p1.fragment_id == 101
    assert p1.image_date == "2024-06"
    assert p1.id == f"{p1.location.lat}-{p1.location.lon}"
    assert p1.heading == pytest.approx(90.0)
    assert result.discrepancies == [p1]
    assert hooks.states[0] == [TaskState.FETCHING, TaskState.DETECTING, TaskState.CLASSIFIED]


def test_low_confidence_detection_is_discarded_with_warning():
    detector = FakeDetector(values={0: Detection(30, 0.1)})
    hooks = RecordingHooks()
    result = asyncio.run(_pipeline(detector=detector, hooks=hooks).run(_samples(1)))

    point = result.points[0]
    assert point.detected_speed is None
    assert point.is_discrepancy is False
    assert point.confidence == pytest.approx(0.1)
    assert hooks.warnings and hooks.warnings[0][0] == 0


def test_missing_capture_date_is_only_a_warning():
    hooks = RecordingHooks()
    result = asyncio.run(_pipeline(FakeImagery(date_fails=True), hooks=hooks).run(_samples(2)))

    assert result.failed == 0
    assert all(p.image_date is None for p in result.points)
    assert all(p.detected_speed == 50 for p in result.points)
    assert len(hooks.warnings) == 2


# ---- failure routing


def test_quota_and_other_failures_do_not_stop_the_run():
    imagery = FakeImagery(fail={2: ImageryError("no imagery here")})
    detector = FakeDetector(fail={1: RateLimitedError("quota exceeded")})
    hooks = RecordingHooks()
    result = asyncio.run(_pipeline(imagery, detector, hooks=hooks).run(_samples(4)))

    assert len(result.points) == 4
    assert result.failed == 2
    assert result.cancelled is False
    assert sorted(hooks.failed) == [(1, "quota"), (2, "other")]

    quota, other = result.points[1], result.points[2]
    assert quota.state is TaskState.FAILED
    assert quota.imagery == b"img-1"  # fetched before the detector gave up
    assert quota.detected_speed is None and quota.is_discrepancy is False
    assert other.imagery == PLACEHOLDER_IMAGE
    assert other.error == "no imagery here"


def test_error_message_is_truncated():
    long = "x" * 400
    detector = FakeDetector(fail={0: RuntimeError(long)})
    result = asyncio.run(_pipeline(detector=detector).run(_samples(1)))
    assert result.points[0].error == "x" * 150 + "..."


def test_fatal_error_halts_after_in_flight_tasks():
    n, concurrency, bad = 10, 2, 2
    detector = FakeDetector(fail={bad: FatalError("API key not valid")})
    hooks = RecordingHooks()
    pipe = _pipeline(detector=detector, concurrency=concurrency, hooks=hooks)

    with pytest.raises(AnalysisHalted) as info:
        asyncio.run(pipe.run(_samples(n)))

    halted = info.value
    assert isinstance(halted.__cause__, FatalError)
    assert pipe.cancelled
    assert hooks.halted_at == [bad]
    # nothing past the fatal task's slot plus the other workers' claims
    assert len(halted.points) <= bad + concurrency
    assert [p.index for p in halted.points] == sorted(p.index for p in halted.points)
    assert any(p.index == bad and p.failed for p in halted.points)
    assert hooks.run_ends and hooks.run_ends[0][1] is True


def test_permission_message_counts_as_fatal():
    detector = FakeDetector(fail={0: RuntimeError("403 Forbidden: permission denied")})
    with pytest.raises(AnalysisHalted):
        asyncio.run(_pipeline(detector=detector, concurrency=1).run(_samples(3)))


# ---- cancellation


def test_cancel_stops_dispatch():
    pipe = None

    def progress(done, total):
        pipe.cancel()

    pipe = _pipeline(concurrency=1, on_progress=progress)
    result = asyncio.run(pipe.run(_samples(5)))

    assert result.cancelled is True
    assert [p.index for p in result.points] == [0]


def test_raising_progress_callback_drains_workers_first():
    imagery = FakeImagery(delays={i: 0.002 for i in range(10)})
    hooks = RecordingHooks()

    def progress(done, total):
        raise RuntimeError("progress bar closed")

    pipe = _pipeline(imagery, concurrency=3, hooks=hooks, on_progress=progress)
    with pytest.raises(RuntimeError, match="progress bar closed"):
        asyncio.run(pipe.run(_samples(10)))

    assert imagery.in_flight == 0
    assert imagery.calls < 10  # dispatch stopped
    assert hooks.run_ends and hooks.run_ends[0][1] is True


# ---- headings


def test_forward_heading():
    eastward = _samples(3)
    assert forward_heading(eastward, 0) == pytest.approx(90.0)
    assert forward_heading(eastward, 2) == pytest.approx(90.0)  # last looks back
    assert forward_heading(eastward[:1], 0) == 0.0
