# speed_audit/domain/path/assembler.py
"""Stitch disconnected road fragments into one travel path.

The map collaborator hands back every fragment carrying the road's name inside
an area, in no particular order and often split into several components.
This module picks the longest connected component, flattens it into points
and orients it consistently.
"""

import logging
from collections import deque
from collections.abc import Iterable, Mapping

from speed_audit.domain.entities.geography import (
    AssembledPath,
    Fragment,
    Node,
    PathPoint,
    PathWarning,
    RoadData,
)

logger = logging.getLogger(__name__)

ONEWAY_MAJORITY = 0.5


# ---------- Graph index & chain growth


def build_endpoint_index(fragments: Mapping[int, Fragment]) -> dict[int, list[int]]:
    """endpoint node id -> fragment ids touching it, in input order."""
    index: dict[int, list[int]] = {}
    for fid, frag in fragments.items():
        if not frag.node_ids:
            continue
        ends = (frag.first,) if frag.first == frag.last else (frag.first, frag.last)
        for nid in ends:
            index.setdefault(nid, []).append(fid)
    return index


def _next_unused(index: dict[int, list[int]], tip: int, used: set[int]) -> int | None:
    for fid in index.get(tip, ()):
        if fid not in used:
            return fid
    return None


def grow_chains(fragments: Mapping[int, Fragment]) -> list[list[int]]:
    """Greedy end-to-end growth; every non-empty fragment lands in exactly one chain."""
    index = build_endpoint_index(fragments)
    used: set[int] = set()
    chains: list[list[int]] = []

    for fid, frag in fragments.items():
        if fid in used or not frag.node_ids:
            continue
        chain = deque([fid])
        used.add(fid)

        # extend at the tail
        tip = frag.last
        while (nxt := _next_unused(index, tip, used)) is not None:
            used.add(nxt)
            chain.append(nxt)
            other = fragments[nxt]
            tip = other.last if other.first == tip else other.first

        # extend at the head
        tip = frag.first
        while (nxt := _next_unused(index, tip, used)) is not None:
            used.add(nxt)
            chain.appendleft(nxt)
            other = fragments[nxt]
            tip = other.first if other.last == tip else other.last

        chains.append(list(chain))
    return chains


def select_canonical(chains: list[list[int]]) -> list[int]:
    """Most fragments wins; ties go to the chain holding the lowest fragment id."""
    if not chains:
        return []
    return max(chains, key=lambda c: (len(c), -min(c)))


# ---------- Flattening


def _points_for(
    frag: Fragment, node_ids: Iterable[int], nodes: Mapping[int, Node]
) -> list[PathPoint]:
    out = []
    for nid in node_ids:
        node = nodes.get(nid)
        if node is None:
            continue  # referenced but not delivered; drop the vertex
        out.append(PathPoint(node.lat, node.lon, speed=frag.speed, fragment_id=frag.id))
    return out


def _touches(nid: int, tip: int, tip_point: PathPoint | None, nodes: Mapping[int, Node]) -> bool:
    if nid == tip:
        return True
    node = nodes.get(nid)
    return (
        node is not None
        and tip_point is not None
        and node.lat == tip_point.lat
        and node.lon == tip_point.lon
    )


def _orient(
    frag: Fragment, tip: int, tip_point: PathPoint | None, nodes: Mapping[int, Node]
) -> tuple[int, ...] | None:
    if _touches(frag.first, tip, tip_point, nodes):
        return frag.node_ids
    if _touches(frag.last, tip, tip_point, nodes):
        return frag.node_ids[::-1]
    return None


def flatten_chain(
    chain: list[int], fragments: Mapping[int, Fragment], nodes: Mapping[int, Node]
) -> tuple[list[PathPoint], list[PathWarning]]:
    if not chain:
        return [], []
    warnings: list[PathWarning] = []

    head = fragments[chain[0]]
    ids = head.node_ids
    if len(chain) > 1:
        nxt = fragments[chain[1]]
        joins = (nxt.first, nxt.last)
        # first fragment must end where the second one begins
        if head.first in joins and head.last not in joins:
            ids = ids[::-1]
    points = _points_for(head, ids, nodes)
    tip = ids[-1]

    for fid in chain[1:]:
        frag = fragments[fid]
        oriented = _orient(frag, tip, points[-1] if points else None, nodes)
        if oriented is None:
            msg = f"discontinuity at fragment {fid}; appended as-is"
            logger.warning(msg, extra={"extra": {"fragment_id": fid, "tip": tip}})
            warnings.append(PathWarning(fragment_id=fid, kind="discontinuity", message=msg))
            oriented = frag.node_ids
            points.extend(_points_for(frag, oriented, nodes))
        else:
            points.extend(_points_for(frag, oriented[1:], nodes))
        tip = oriented[-1]
    return points, warnings


# ---------- Direction & attribute normalization


def needs_reversal(points: list[PathPoint]) -> bool:
    """North-to-south along a lat-dominant road, west-to-east otherwise."""
    start, end = points[0], points[-1]
    if abs(end.lat - start.lat) > abs(end.lon - start.lon):
        return start.lat < end.lat
    return start.lon > end.lon


def carry_speeds_forward(points: list[PathPoint]) -> list[PathPoint]:
    out: list[PathPoint] = []
    for i, p in enumerate(points):
        if p.speed is None and i > 0:
            prev = out[-1]
            p = PathPoint(p.lat, p.lon, speed=prev.speed, fragment_id=prev.fragment_id)
        out.append(p)
    return out


def assemble_path(fragments: Iterable[Fragment], nodes: Mapping[int, Node]) -> AssembledPath:
    by_id: dict[int, Fragment] = {}
    for frag in fragments:
        by_id.setdefault(frag.id, frag)
    if not by_id or not nodes:
        return AssembledPath.empty()

    chains = grow_chains(by_id)
    chain = select_canonical(chains)
    if not chain:
        return AssembledPath.empty()
    if len(chains) > 1:
        logger.info(
            "road split into components; using the longest",
            extra={"extra": {"components": len(chains), "fragments": len(chain)}},
        )

    points, warnings = flatten_chain(chain, by_id, nodes)
    if not points:
        return AssembledPath.empty()

    oneway = sum(1 for fid in chain if by_id[fid].oneway)
    oneway_respected = oneway / len(chain) > ONEWAY_MAJORITY
    reversed_ = False
    if not oneway_respected and needs_reversal(points):
        points.reverse()
        chain = chain[::-1]
        reversed_ = True

    return AssembledPath(
        points=carry_speeds_forward(points),
        chain=chain,
        warnings=warnings,
        oneway_respected=oneway_respected,
        reversed=reversed_,
    )


def assemble_road(road: RoadData) -> AssembledPath:
    return assemble_path(road.fragments, road.nodes)
