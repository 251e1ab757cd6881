# speed_audit/app/build.py
from collections.abc import Mapping
from dataclasses import dataclass

from speed_audit.app.audit import AuditReport, AuditRunner
from speed_audit.app.hooks import NoopHooks
from speed_audit.app.pipeline import AnalysisPipeline
from speed_audit.app.protocols import (
    ImagerySource,
    PipelineHooks,
    ProgressFn,
    RoadDataSource,
    SignDetector,
)
from speed_audit.config.models import AuditModel
from speed_audit.domain.speeds import CountryProfile
from speed_audit.io.audit_logging import AuditLogging, default_json_logger
from speed_audit.io.recorder import JsonlSink, Recorder
from speed_audit.runtime.registries import make_country_profile, make_retry_policy
from speed_audit.services.detection import RetryingSignDetector
from speed_audit.services.road_data import CachedRoadSource, RetryingRoadSource


@dataclass
class App:
    config: AuditModel
    profile: CountryProfile
    hooks: PipelineHooks
    road_source: RoadDataSource
    detector: SignDetector
    pipeline: AnalysisPipeline
    runner: AuditRunner

    async def run(self) -> AuditReport:
        return await self.runner.run()


def build(
    cfg: AuditModel | Mapping,
    *,
    road_source: RoadDataSource,
    imagery: ImagerySource,
    detector: SignDetector,
    on_progress: ProgressFn | None = None,
    recorder: Recorder | None = None,
    use_logging: bool = True,
    deps: dict | None = None,
) -> App:
    # 0) Validate config
    model = cfg if isinstance(cfg, AuditModel) else AuditModel.model_validate(cfg)
    deps = deps or {}

    # 1) Logging & hooks
    if use_logging:
        default_json_logger(level=model.log.level)
        hooks: PipelineHooks = AuditLogging(
            run_id=model.run_id,
            level=model.log.level,
            debug=model.log.debug,
            recorder=recorder or Recorder(JsonlSink()),
        )
    else:
        hooks = NoopHooks()

    # 2) Collaborators: retry first, cache outermost so hits skip the backoff loop
    road: RoadDataSource = RetryingRoadSource(
        road_source, make_retry_policy(model.road_retry, deps=deps)
    )
    if model.cache.enabled:
        road = CachedRoadSource(road, ttl_s=model.cache.ttl_s)
    detector = RetryingSignDetector(detector, make_retry_policy(model.detector_retry, deps=deps))

    # 3) Pipeline
    profile = make_country_profile(model.analysis.country)
    pipeline = AnalysisPipeline(
        imagery=imagery,
        detector=detector,
        profile=profile,
        concurrency=model.analysis.concurrency,
        confidence_threshold=model.analysis.confidence_threshold,
        lateral_offset_m=model.analysis.lateral_offset_m,
        hooks=hooks,
        on_progress=on_progress,
    )

    # 4) Runner
    runner = AuditRunner(
        road=model.road,
        sampling=model.sampling,
        road_source=road,
        pipeline=pipeline,
    )
    return App(model, profile, hooks, road, detector, pipeline, runner)
