# speed_audit/app/errors.py
from enum import Enum

ERROR_SNIPPET = 150

_FATAL_MARKERS = ("api key", "permission", "403 forbidden")
_QUOTA_MARKERS = ("quota", "resource_exhausted", "rate limit")


class AuditError(Exception):
    """Base for everything the audit raises on purpose."""


# ---------- road data


class RoadDataError(AuditError):
    pass


class RoadDataUnavailable(RoadDataError):
    """Temporary server-side failure (502/503/504, overloaded remark); retryable."""


# ---------- per-task, recoverable


class RecoverableError(AuditError):
    pass


class ImageryError(RecoverableError):
    pass


class DetectionError(RecoverableError):
    pass


class RateLimitedError(DetectionError):
    pass


class MalformedResponseError(RecoverableError):
    pass


# ---------- run-stopping


class FatalError(AuditError):
    pass


class AnalysisHalted(FatalError):
    """Raised once after workers drain; carries whatever finished before the stop."""

    def __init__(self, message: str, points: list | None = None):
        super().__init__(message)
        self.points = points or []


class FailureKind(Enum):
    FATAL = "fatal"
    QUOTA = "quota"
    OTHER = "other"


def classify_failure(exc: BaseException) -> FailureKind:
    if isinstance(exc, FatalError):
        return FailureKind.FATAL
    if isinstance(exc, RateLimitedError):
        return FailureKind.QUOTA
    msg = str(exc).lower()
    if any(m in msg for m in _FATAL_MARKERS):
        return FailureKind.FATAL
    if any(m in msg for m in _QUOTA_MARKERS):
        return FailureKind.QUOTA
    return FailureKind.OTHER


def snippet(exc: BaseException, limit: int = ERROR_SNIPPET) -> str:
    msg = str(exc) or type(exc).__name__
    return msg if len(msg) <= limit else msg[:limit] + "..."
