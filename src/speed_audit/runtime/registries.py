# runtime/registries.py
import logging
from collections.abc import Callable

from speed_audit.config.models import RetryExponentialModel, RetryNoneModel, RetryUnion
from speed_audit.domain.speeds import CountryProfile
from speed_audit.runtime.retry import RetryPolicy

logger = logging.getLogger(__name__)

CountryFactory = Callable[[str], CountryProfile]
RetryFactory = Callable[[RetryUnion, dict], RetryPolicy]

_country_registry: dict[str, CountryFactory] = {}
_retry_registry: dict[str, RetryFactory] = {}

DEFAULT_COUNTRY = "CAN"


# ------------------- Country profiles ---------------------------


def register_country(*codes: str):
    def deco(fn: CountryFactory):
        for code in codes:
            _country_registry[code] = fn
        return fn

    return deco


def make_country_profile(code: str) -> CountryProfile:
    code = code.strip().upper()
    try:
        return _country_registry[code](code)
    except KeyError:
        logger.warning(
            "no profile for country; using metric defaults",
            extra={"extra": {"country": code}},
        )
        return _country_registry[DEFAULT_COUNTRY](code)


@register_country("USA", "US")
def _make_usa(code: str) -> CountryProfile:
    return CountryProfile(code=code, unit="mph", min_speed=5, max_speed=90)


@register_country("CAN", "CA")
def _make_metric(code: str) -> CountryProfile:
    return CountryProfile(code=code, unit="km/h", min_speed=10, max_speed=150)


# ------------------- Retry policies ---------------------------


def register_retry(kind: str):
    def deco(fn: RetryFactory):
        _retry_registry[kind] = fn
        return fn

    return deco


def make_retry_policy(cfg: RetryUnion, *, deps: dict | None = None) -> RetryPolicy:
    try:
        factory = _retry_registry[cfg.kind]
    except KeyError:
        raise ValueError(f"Unknown retry kind {cfg.kind!r}")
    return factory(cfg, deps or {})


@register_retry("exponential")
def _make_exponential(cfg: RetryExponentialModel, deps):
    kw = {}
    if "sleep" in deps:
        kw["sleep"] = deps["sleep"]
    return RetryPolicy(
        max_attempts=cfg.max_attempts,
        initial_backoff_s=cfg.initial_backoff_s,
        multiplier=cfg.multiplier,
        max_backoff_s=cfg.max_backoff_s,
        jitter_s=cfg.jitter_s,
        rng=deps.get("rng"),
        **kw,
    )


@register_retry("none")
def _make_none(cfg: RetryNoneModel, deps):
    return RetryPolicy.none()
