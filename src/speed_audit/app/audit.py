# speed_audit/app/audit.py
import logging
from dataclasses import dataclass, field
from typing import Literal

from speed_audit.app.pipeline import AnalysisPipeline
from speed_audit.app.protocols import RoadDataSource
from speed_audit.config.models import RoadModel, SamplingModel
from speed_audit.domain.entities.analysis import AnalyzedPoint
from speed_audit.domain.entities.geography import AssembledPath, PathWarning
from speed_audit.domain.path.assembler import assemble_road
from speed_audit.domain.path.sampler import sample_path

logger = logging.getLogger(__name__)

Status = Literal["complete", "cancelled", "not_found", "no_samples"]


@dataclass
class AuditReport:
    status: Status
    points: list[AnalyzedPoint] = field(default_factory=list)
    path: AssembledPath = field(default_factory=AssembledPath.empty)
    samples_total: int = 0  # before the max_points cap
    from_cache: bool = False
    warnings: list[PathWarning] = field(default_factory=list)

    @property
    def discrepancy_count(self) -> int:
        return sum(1 for p in self.points if p.is_discrepancy)

    @property
    def failed_count(self) -> int:
        return sum(1 for p in self.points if p.failed)


class AuditRunner:
    """fetch -> assemble -> (reverse) -> sample -> cap -> analyze.

    "Nothing found" outcomes come back as a report with zero points; only a
    fatal analysis error (AnalysisHalted) or a road-data failure propagates.
    """

    def __init__(
        self,
        *,
        road: RoadModel,
        sampling: SamplingModel,
        road_source: RoadDataSource,
        pipeline: AnalysisPipeline,
    ):
        self.road, self.sampling = road, sampling
        self.road_source, self.pipeline = road_source, pipeline

    async def run(self) -> AuditReport:
        # cancel() may land anywhere from here on, including during the fetch
        self.pipeline.reset()
        r = self.road
        logger.info(
            "fetching road data",
            extra={"extra": {"road": r.name, "locality": r.locality, "region": r.region}},
        )
        data = await self.road_source.fetch_fragments(r.name, r.locality, r.region)
        from_cache = data.from_cache

        path = assemble_road(data)
        if r.reverse and len(path):
            path = path.flipped()
            logger.info("path direction reversed on request")
        if not len(path):
            logger.warning(
                "no road segments found",
                extra={"extra": {"road": r.name, "locality": r.locality, "region": r.region}},
            )
            return AuditReport(status="not_found", from_cache=from_cache)

        s = self.sampling
        samples = sample_path(path.points, s.interval_m, s.start_offset_m)
        total = len(samples)
        if total > s.max_points:
            logger.info(
                "capping sample points",
                extra={"extra": {"max_points": s.max_points, "available": total}},
            )
            samples = samples[: s.max_points]
        if not samples:
            return AuditReport(
                status="no_samples", path=path, from_cache=from_cache, warnings=path.warnings
            )

        if self.pipeline.cancelled:
            logger.info("cancelled before analysis", extra={"extra": {"samples": len(samples)}})
            return AuditReport(
                status="cancelled",
                path=path,
                samples_total=total,
                from_cache=from_cache,
                warnings=path.warnings,
            )

        result = await self.pipeline.run(samples)
        report = AuditReport(
            status="cancelled" if result.cancelled else "complete",
            points=result.points,
            path=path,
            samples_total=total,
            from_cache=from_cache,
            warnings=path.warnings,
        )
        logger.info(
            "audit finished",
            extra={
                "extra": {
                    "status": report.status,
                    "points": len(report.points),
                    "discrepancies": report.discrepancy_count,
                    "failed": report.failed_count,
                }
            },
        )
        return report

    def cancel(self) -> None:
        self.pipeline.cancel()
