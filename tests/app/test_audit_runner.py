# tests/app/test_audit_runner.py
import asyncio

import pytest

from speed_audit.app.build import build
from speed_audit.app.errors import AnalysisHalted, FatalError, RoadDataError, RoadDataUnavailable
from speed_audit.domain.entities.analysis import Detection
from speed_audit.domain.entities.geography import Fragment, Node, RoadData
from speed_audit.io.recorder import MemorySink, Recorder


def _road(n_nodes=6, step=0.001, speed="50 mph"):
    """A straight east-west road split into two-node fragments."""
    nodes = {i: Node(i, 45.0, -75.0 + i * step) for i in range(1, n_nodes + 1)}
    frags = tuple(
        Fragment(100 + i, (i, i + 1), speed=speed) for i in range(1, n_nodes)
    )
    return RoadData(fragments=frags, nodes=nodes)


class FakeRoads:
    def __init__(self, data=None, failures=0):
        self.data = data if data is not None else _road()
        self.failures = failures
        self.calls = 0

    async def fetch_fragments(self, name, locality, region):
        self.calls += 1
        if self.calls <= self.failures:
            raise RoadDataUnavailable("504 Gateway Timeout")
        return self.data


class FakeImagery:
    async def fetch_image(self, lat, lon, heading):
        return b"jpeg"

    async def fetch_capture_date(self, lat, lon):
        return "2023-09"


class FakeDetector:
    def __init__(self, detection=Detection(50, 0.9), error=None):
        self.detection, self.error = detection, error
        self.calls = 0

    async def detect(self, image):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.detection


def _cfg(**overrides):
    cfg = {
        "run_id": "t-1",
        "road": {"name": "Bank Street", "locality": "Ottawa", "region": "Ontario"},
        "sampling": {"interval_m": 50.0, "max_points": 50},
        "analysis": {"country": "USA", "concurrency": 3},
    }
    for key, value in overrides.items():
        cfg[key] = {**cfg.get(key, {}), **value}
    return cfg


def _no_sleep(log):
    async def sleep(s):
        log.append(s)

    return sleep


def _app(cfg=None, roads=None, detector=None, sleeps=None, **kw):
    return build(
        cfg or _cfg(),
        road_source=roads or FakeRoads(),
        imagery=FakeImagery(),
        detector=detector or FakeDetector(),
        use_logging=False,
        deps={"sleep": _no_sleep(sleeps if sleeps is not None else [])},
        **kw,
    )


def test_full_run_produces_ordered_points():
    report = asyncio.run(_app().run())

    assert report.status == "complete"
    # 5 x ~78.6 m = ~393 m of road -> samples at 0, 50, ..., 350
    assert report.samples_total == 8
    assert len(report.points) == 8
    assert [p.index for p in report.points] == list(range(8))
    assert report.discrepancy_count == 0  # 50 mph tagged, 50 mph on the sign
    assert report.failed_count == 0
    assert report.from_cache is False
    lons = [p.location.lon for p in report.points]
    assert lons == sorted(lons)  # west to east


def test_points_are_capped():
    report = asyncio.run(_app(_cfg(sampling={"max_points": 3})).run())
    assert report.samples_total == 8
    assert len(report.points) == 3


def test_unknown_road_is_not_found():
    report = asyncio.run(_app(roads=FakeRoads(RoadData())).run())
    assert report.status == "not_found"
    assert report.points == []


def test_offset_beyond_road_gives_no_samples():
    report = asyncio.run(_app(_cfg(sampling={"start_offset_m": 5_000.0})).run())
    assert report.status == "no_samples"
    assert report.points == []
    assert len(report.path) == 6


def test_reverse_walks_east_to_west():
    report = asyncio.run(_app(_cfg(road={"reverse": True})).run())
    lons = [p.location.lon for p in report.points]
    assert lons == sorted(lons, reverse=True)


def test_second_fetch_comes_from_cache():
    roads = FakeRoads()
    app = _app(roads=roads)
    first = asyncio.run(app.run())
    second = asyncio.run(app.run())

    assert roads.calls == 1
    assert first.from_cache is False
    assert second.from_cache is True


def test_cache_can_be_disabled():
    roads = FakeRoads()
    app = _app(_cfg(cache={"enabled": False}), roads=roads)
    asyncio.run(app.run())
    asyncio.run(app.run())
    assert roads.calls == 2


def test_busy_map_server_is_retried():
    sleeps = []
    roads = FakeRoads(failures=2)
    report = asyncio.run(_app(roads=roads, sleeps=sleeps).run())
    assert report.status == "complete"
    assert roads.calls == 3
    assert sleeps == [2.0, 4.0]


def test_map_server_gives_up_after_budget():
    roads = FakeRoads(failures=5)
    with pytest.raises(RoadDataError, match="busy or unavailable after 3 attempts"):
        asyncio.run(_app(roads=roads).run())
    assert roads.calls == 3


def test_fatal_detector_error_reaches_caller_with_partial_results():
    detector = FakeDetector(error=RuntimeError("API key not valid. Please pass a valid API key."))
    with pytest.raises(AnalysisHalted) as info:
        asyncio.run(_app(detector=detector).run())
    assert isinstance(info.value.__cause__, FatalError)
    assert 1 <= len(info.value.points) <= 3
    assert detector.calls <= 3  # authorization failures are not retried


def test_metric_country_flags_mph_tags():
    # a 50 mph road read as 50 km/h in a metric country
    report = asyncio.run(_app(_cfg(analysis={"country": "can"})).run())
    assert report.discrepancy_count == len(report.points)


def test_build_wires_recorder_when_logging():
    sink = MemorySink()
    app = build(
        _cfg(),
        road_source=FakeRoads(),
        imagery=FakeImagery(),
        detector=FakeDetector(Detection(30, 0.9)),
        recorder=Recorder(sink),
        deps={"sleep": _no_sleep([])},
    )
    report = asyncio.run(app.run())

    assert app.profile.unit == "mph"
    assert len(sink.named("PointAnalyzedBiz")) == len(report.points)
    assert len(sink.named("DiscrepancyFoundBiz")) == report.discrepancy_count == 8


class CancellingRoads(FakeRoads):
    """Caller hits cancel while the map lookup is still in flight."""

    runner = None

    async def fetch_fragments(self, name, locality, region):
        self.runner.cancel()
        return await super().fetch_fragments(name, locality, region)


def test_cancel_during_road_fetch_skips_analysis():
    roads = CancellingRoads()
    detector = FakeDetector()
    app = _app(roads=roads, detector=detector)
    roads.runner = app.runner

    report = asyncio.run(app.run())

    assert report.status == "cancelled"
    assert report.points == []
    assert report.samples_total == 8
    assert len(report.path) == 6
    assert detector.calls == 0


def test_runner_rearms_after_a_cancelled_run():
    roads = CancellingRoads()
    app = _app(roads=roads)
    roads.runner = app.runner
    assert asyncio.run(app.run()).status == "cancelled"

    # second run is a cache hit, so nothing cancels it
    report = asyncio.run(app.run())
    assert roads.calls == 1
    assert report.status == "complete"
    assert len(report.points) == 8
