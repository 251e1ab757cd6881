import json
import logging
import sys

from speed_audit.app.hooks import NoopHooks
from speed_audit.domain.entities.analysis import AnalyzedPoint, TaskState
from speed_audit.domain.entities.geography import SamplePoint
from speed_audit.io.business_events import (
    DiscrepancyFoundBiz,
    PointAnalyzedBiz,
    RunHaltedBiz,
    TaskFailedBiz,
)
from speed_audit.io.recorder import Recorder


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "level": record.levelname,
            "msg": record.getMessage(),
            "logger": record.name,
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def default_json_logger(name="speed_audit", level="INFO"):
    logger = logging.getLogger(name)
    if not logger.handlers:
        h = logging.StreamHandler(sys.stdout)
        h.setFormatter(_JsonFormatter())
        logger.addHandler(h)
        logger.setLevel(level)
    return logger


class AuditLogging(NoopHooks):
    """
    One place to shape and emit structured logs for pipeline progress and
    report-facing business events.
    """

    def __init__(
        self,
        run_id: str = "local",
        level: str = "INFO",
        debug: bool = False,
        logger: logging.Logger | None = None,
        recorder: Recorder | None = None,
    ):
        self.run_id, self.debug = run_id, debug
        self.recorder = recorder
        self.log = logger or default_json_logger(level=level)
        self.total = 0

    # --------------- Helpers -----------------------------

    def _emit(self, level: str, msg: str, **extra):
        payload = {"run_id": self.run_id}
        self.log.log(getattr(logging, level), msg, extra={"extra": {**payload, **extra}})

    def _tag(self, index: int) -> str:
        return f"[{index + 1}/{self.total}]"

    def _biz(self, cls, **fields):
        if self.recorder:
            self.recorder.emit(
                cls(run_id=self.run_id, seq=self.recorder.next_seq(), name=cls.__name__, **fields)
            )

    # --------------------------------------------------------

    # run lifecycle

    def run_start(self, *, total: int, concurrency: int):
        self.total = total
        self._emit("INFO", "run_start", total=total, concurrency=concurrency)

    def run_end(self, *, completed: int, cancelled: bool, failed: int, wall_ms: float):
        self._emit(
            "INFO",
            "run_end",
            completed=completed,
            cancelled=cancelled,
            failed=failed,
            wall_ms=round(wall_ms, 1),
        )

    # per task

    def task_start(self, index: int, sample: SamplePoint, *, heading: float):
        self._emit(
            "INFO",
            f"{self._tag(index)} requesting imagery",
            index=index,
            lat=round(sample.lat, 5),
            lon=round(sample.lon, 5),
            heading=round(heading, 1),
        )

    def task_state(self, index: int, state: TaskState):
        if self.debug:
            self._emit("DEBUG", "task_state", index=index, state=state.value)

    def task_warning(self, index: int, message: str):
        self._emit("WARNING", f"{self._tag(index)} {message}", index=index)

    def task_end(self, index: int, point: AnalyzedPoint):
        loc = point.location
        if point.is_discrepancy:
            self._emit(
                "WARNING",
                f"{self._tag(index)} discrepancy",
                index=index,
                recorded=point.recorded_speed,
                detected=point.detected_speed,
            )
            self._biz(
                DiscrepancyFoundBiz,
                index=index,
                lat=loc.lat,
                lon=loc.lon,
                recorded_speed=point.recorded_speed,
                detected_speed=point.detected_speed,
                fragment_id=point.fragment_id,
            )
        else:
            self._emit(
                "INFO",
                f"{self._tag(index)} finished",
                index=index,
                detected=point.detected_speed,
            )
        self._biz(
            PointAnalyzedBiz,
            index=index,
            lat=loc.lat,
            lon=loc.lon,
            recorded_speed=point.recorded_speed,
            detected_speed=point.detected_speed,
            confidence=point.confidence,
            image_date=point.image_date,
        )

    def task_failed(self, index: int, *, error: str, kind: str):
        level = "WARNING" if kind == "quota" else "ERROR"
        self._emit(level, f"{self._tag(index)} failed", index=index, kind=kind, error=error)
        self._biz(TaskFailedBiz, index=index, kind=kind, error=error)

    def halted(self, index: int, *, error: str):
        self._emit(
            "ERROR", f"{self._tag(index)} fatal; stopping analysis", index=index, error=error
        )
        self._biz(RunHaltedBiz, index=index, error=error)
