# speed_audit/domain/path/sampler.py
import logging
from collections.abc import Sequence

from speed_audit.domain.entities.geography import PathPoint, SamplePoint
from speed_audit.domain.geo import cumulative_lengths_m

logger = logging.getLogger(__name__)

END_TOLERANCE_M = 1e-6


def _interpolate(p1: PathPoint, p2: PathPoint, frac: float) -> SamplePoint:
    # planar lerp; fine for the few-meter gaps between vertices
    return SamplePoint(
        p1.lat + (p2.lat - p1.lat) * frac,
        p1.lon + (p2.lon - p1.lon) * frac,
        speed=p1.speed,
        fragment_id=p1.fragment_id,
    )


def _as_sample(p: PathPoint) -> SamplePoint:
    return SamplePoint(p.lat, p.lon, speed=p.speed, fragment_id=p.fragment_id)


def path_length_m(points: Sequence[PathPoint]) -> float:
    if len(points) < 2:
        return 0.0
    cum = cumulative_lengths_m([p.lat for p in points], [p.lon for p in points])
    return float(cum[-1])


def sample_path(
    points: Sequence[PathPoint], interval_m: float, start_offset_m: float = 0.0
) -> list[SamplePoint]:
    """Evenly spaced samples by arc length.

    Targets are ``start_offset_m + k * interval_m`` up to and including the path
    end. Each target is located with one forward-moving cursor over the
    cumulative-length array and interpolated inside its segment; the sample
    takes speed/fragment from the segment's leading vertex.
    """
    if len(points) < 2 or interval_m <= 0:
        return []

    cum = cumulative_lengths_m([p.lat for p in points], [p.lon for p in points])
    total = float(cum[-1])
    if start_offset_m >= total:
        logger.warning(
            "start offset beyond path end; nothing sampled",
            extra={"extra": {"start_offset_m": start_offset_m, "total_m": total}},
        )
        return []

    n = len(points)
    out: list[SamplePoint] = []
    cursor = 1
    k = 0
    while True:
        target = start_offset_m + k * interval_m
        k += 1
        if target > total + END_TOLERANCE_M:
            break
        if target < 0:
            continue

        while cursor < n and cum[cursor] < target:
            cursor += 1
        if cursor >= n:
            # float drift past the last vertex
            out.append(_as_sample(points[-1]))
            break

        p1, p2 = points[cursor - 1], points[cursor]
        seg_start = float(cum[cursor - 1])
        seg_len = float(cum[cursor]) - seg_start
        if seg_len <= 0.0:
            # coincident vertices: at most one sample, never a repeat
            if not out or (out[-1].lat, out[-1].lon) != (p1.lat, p1.lon):
                out.append(_as_sample(p1))
            continue

        frac = min(1.0, max(0.0, (target - seg_start) / seg_len))
        out.append(_interpolate(p1, p2, frac))

    logger.debug(
        "sampled path",
        extra={"extra": {"samples": len(out), "interval_m": interval_m, "total_m": total}},
    )
    return out
