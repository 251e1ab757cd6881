# speed_audit/services/detection.py
import json
import logging
from collections.abc import Mapping
from typing import Any

from speed_audit.app.errors import (
    FailureKind,
    FatalError,
    MalformedResponseError,
    RateLimitedError,
    classify_failure,
)
from speed_audit.app.protocols import SignDetector
from speed_audit.domain.entities.analysis import Detection
from speed_audit.runtime.retry import RetryPolicy

logger = logging.getLogger(__name__)


def parse_detection(payload: str | Mapping[str, Any]) -> Detection:
    """Validate the vision model's JSON answer.

    Expected shape: {"speed_limit": int | null, "confidence": number}.
    Empty text means the model saw nothing.
    """
    if isinstance(payload, str):
        text = payload.strip()
        if not text:
            return Detection(value=None, confidence=0.0)
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise MalformedResponseError(f"vision response is not JSON: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise MalformedResponseError("vision response is not an object")

    confidence = payload.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise MalformedResponseError("Invalid confidence type in response")
    value = payload.get("speed_limit")
    if value is not None:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise MalformedResponseError("Invalid speed_limit type in response")
        value = int(value)
    return Detection(value=value, confidence=float(confidence))


class RetryingSignDetector(SignDetector):
    """
    Rate limits and malformed answers are retried with backoff.
    Out of budget: rate limits stay recoverable (quota-routed), malformed answers
    become fatal. Authorization failures are fatal straight away.
    """

    def __init__(self, inner: SignDetector, policy: RetryPolicy):
        self.inner, self.policy = inner, policy

    async def _attempt(self, image: bytes) -> Detection:
        try:
            return await self.inner.detect(image)
        except (RateLimitedError, MalformedResponseError, FatalError):
            raise
        except Exception as exc:
            kind = classify_failure(exc)
            if kind is FailureKind.FATAL:
                logger.error("vision call rejected", extra={"extra": {"error": str(exc)}})
                raise FatalError(
                    f"The vision API key appears to be invalid or lacks permissions: {exc}"
                ) from exc
            if kind is FailureKind.QUOTA:
                raise RateLimitedError(str(exc)) from exc
            raise

    async def detect(self, image: bytes) -> Detection:
        try:
            return await self.policy.run(
                lambda: self._attempt(image),
                retry_on=(RateLimitedError, MalformedResponseError),
            )
        except RateLimitedError as exc:
            logger.warning(
                "vision quota exhausted",
                extra={"extra": {"attempts": self.policy.max_attempts}},
            )
            raise RateLimitedError(
                f"Vision call failed after {self.policy.max_attempts} attempts due to quota limits"
            ) from exc
        except MalformedResponseError as exc:
            raise FatalError(
                f"Vision model kept returning malformed answers "
                f"({self.policy.max_attempts} attempts): {exc}"
            ) from exc
