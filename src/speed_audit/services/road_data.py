# speed_audit/services/road_data.py
"""Road-data collaborator helpers: Overpass decoding, retry, in-memory cache."""

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from typing import Any

from speed_audit.app.errors import MalformedResponseError, RoadDataError, RoadDataUnavailable
from speed_audit.app.protocols import RoadDataSource
from speed_audit.domain.entities.geography import Fragment, Node, RoadData
from speed_audit.runtime.retry import RetryPolicy

logger = logging.getLogger(__name__)

ONEWAY_TRUE = {"yes", "true", "1"}


# ---------- Overpass `out body` decoding


def parse_overpass_elements(payload: Mapping[str, Any]) -> RoadData:
    """Decode an Overpass JSON document into fragments and nodes.

    A ``remark`` means the server gave up (timeout, overload), which is worth a
    retry. Elements of other types (relations, areas) are ignored.
    """
    if not isinstance(payload, Mapping):
        raise MalformedResponseError(f"expected a JSON object, got {type(payload).__name__}")
    remark = payload.get("remark")
    if remark:
        raise RoadDataUnavailable(f"Overpass returned a notice: {remark}")
    elements = payload.get("elements") or []
    if not isinstance(elements, list):
        raise MalformedResponseError("'elements' is not a list")

    nodes: dict[int, Node] = {}
    fragments: list[Fragment] = []
    for el in elements:
        try:
            kind = el["type"]
            if kind == "node":
                nodes[int(el["id"])] = Node(int(el["id"]), float(el["lat"]), float(el["lon"]))
            elif kind == "way":
                tags = el.get("tags") or {}
                fragments.append(
                    Fragment(
                        id=int(el["id"]),
                        node_ids=tuple(int(n) for n in el.get("nodes", ())),
                        speed=tags.get("maxspeed"),
                        oneway=str(tags.get("oneway", "no")).lower() in ONEWAY_TRUE,
                    )
                )
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedResponseError(f"bad Overpass element {el!r}: {exc}") from exc

    if not nodes or not fragments:
        return RoadData()
    return RoadData(fragments=tuple(fragments), nodes=nodes)


# ---------- Retry


class RetryingRoadSource(RoadDataSource):
    def __init__(self, inner: RoadDataSource, policy: RetryPolicy):
        self.inner, self.policy = inner, policy

    async def fetch_fragments(self, name: str, locality: str, region: str) -> RoadData:
        try:
            return await self.policy.run(
                lambda: self.inner.fetch_fragments(name, locality, region),
                retry_on=(RoadDataUnavailable,),
            )
        except RoadDataUnavailable as exc:
            raise RoadDataError(
                f"The map data server is busy or unavailable after "
                f"{self.policy.max_attempts} attempts: {exc}"
            ) from exc


# ---------- Cache


def cache_key(name: str, locality: str, region: str) -> str:
    def norm(s: str) -> str:
        return "-".join(s.strip().lower().split())

    return f"road_{norm(name)}_{norm(locality)}_{norm(region)}"


@dataclass
class _Entry:
    data: RoadData
    stored_at: float


class CachedRoadSource(RoadDataSource):
    """Keeps non-empty fetches in memory for ttl_s seconds.

    Hits come back with ``from_cache=True`` on the returned RoadData, so one
    instance can serve concurrent audits.
    """

    def __init__(
        self,
        inner: RoadDataSource,
        ttl_s: float = 24 * 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.inner, self.ttl_s, self.clock = inner, ttl_s, clock
        self._data: dict[str, _Entry] = {}

    def get(self, name: str, locality: str, region: str) -> RoadData | None:
        key = cache_key(name, locality, region)
        entry = self._data.get(key)
        if entry is None:
            return None
        if self.clock() - entry.stored_at >= self.ttl_s:
            del self._data[key]
            return None
        return entry.data

    def prune(self) -> int:
        now = self.clock()
        stale = [k for k, e in self._data.items() if now - e.stored_at >= self.ttl_s]
        for key in stale:
            del self._data[key]
        return len(stale)

    def clear(self, name: str, locality: str, region: str) -> None:
        key = cache_key(name, locality, region)
        self._data.pop(key, None)
        logger.info("road cache cleared", extra={"extra": {"key": key}})

    async def fetch_fragments(self, name: str, locality: str, region: str) -> RoadData:
        cached = self.get(name, locality, region)
        if cached is not None:
            return replace(cached, from_cache=True)
        data = await self.inner.fetch_fragments(name, locality, region)
        if data.is_empty():
            # "nothing found" may be a partial answer; ask again next time
            return data
        self.prune()
        self._data[cache_key(name, locality, region)] = _Entry(data, self.clock())
        return data
