# speed_audit/domain/speeds.py
import re
from dataclasses import dataclass
from typing import Literal

from speed_audit.domain.entities.analysis import Detection

Unit = Literal["mph", "km/h"]

KMH_PER_MPH = 1.60934
TOLERANCE_KMH = 5.0  # absorbs rounding across unit systems (50 mph ~ 80 km/h)

_NUMBER = re.compile(r"(\d+)")


@dataclass(frozen=True)
class CountryProfile:
    code: str
    unit: Unit
    min_speed: int
    max_speed: int

    def plausible(self, value: int) -> bool:
        return self.min_speed <= value <= self.max_speed

    def to_kmh(self, value: float) -> float:
        return value * KMH_PER_MPH if self.unit == "mph" else value


@dataclass(frozen=True)
class RecordedSpeed:
    raw: str
    value: int | None  # None for qualitative tags ("signals", "walk", ...)
    unit: Unit

    @property
    def kmh(self) -> float | None:
        if self.value is None:
            return None
        return self.value * KMH_PER_MPH if self.unit == "mph" else float(self.value)


def parse_recorded_speed(tag: str | None) -> RecordedSpeed | None:
    if tag is None:
        return None
    m = _NUMBER.search(tag)
    unit: Unit = "mph" if "mph" in tag.lower() else "km/h"
    return RecordedSpeed(raw=tag, value=int(m.group(0)) if m else None, unit=unit)


def validate_detection(
    detection: Detection | None, *, threshold: float, profile: CountryProfile
) -> int | None:
    """Detected value that survives the confidence gate and plausibility bounds."""
    if detection is None or detection.value is None:
        return None
    if detection.confidence < threshold:
        return None
    return detection.value if profile.plausible(detection.value) else None


def classify_discrepancy(
    recorded: str | None,
    detected: int | None,
    profile: CountryProfile,
    *,
    tolerance_kmh: float = TOLERANCE_KMH,
) -> bool:
    parsed = parse_recorded_speed(recorded)
    if detected is None:
        return False  # only recorded, or neither
    if parsed is None:
        return True  # sign on the road, nothing in the map
    if parsed.kmh is None:
        return True  # qualitative tag against a numeric sign
    return abs(parsed.kmh - profile.to_kmh(detected)) > tolerance_kmh
