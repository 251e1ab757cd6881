# speed_audit/services/cost.py
from dataclasses import dataclass

# USD per 1000 calls, list prices used for estimation only
IMAGERY_PER_1000 = 7.00
VISION_PER_1000 = 0.125
REPORT_MAP_PER_1000 = 2.00


@dataclass(frozen=True)
class CostEstimate:
    points: int
    imagery: float
    vision: float
    report_map: float

    @property
    def analysis(self) -> float:
        return self.imagery + self.vision

    @property
    def total(self) -> float:
        return self.analysis + self.report_map


def estimate_cost(points: int) -> CostEstimate:
    """Upper bound for analyzing `points` samples (one image + one vision call each)."""
    n = max(0, int(points))
    return CostEstimate(
        points=n,
        imagery=n * IMAGERY_PER_1000 / 1000,
        vision=n * VISION_PER_1000 / 1000,
        report_map=REPORT_MAP_PER_1000 / 1000 if n else 0.0,
    )
