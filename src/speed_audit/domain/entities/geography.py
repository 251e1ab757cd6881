from dataclasses import dataclass, field


# Raw road data as delivered by the map collaborator
@dataclass(frozen=True)
class Node:
    id: int
    lat: float
    lon: float


@dataclass(frozen=True)
class Fragment:
    id: int
    node_ids: tuple[int, ...]
    speed: str | None = None  # raw maxspeed tag, e.g. "50 mph", "signals"
    oneway: bool = False

    @property
    def first(self) -> int:
        return self.node_ids[0]

    @property
    def last(self) -> int:
        return self.node_ids[-1]


@dataclass(frozen=True)
class RoadData:
    fragments: tuple[Fragment, ...] = ()
    nodes: dict[int, Node] = field(default_factory=dict)
    from_cache: bool = field(default=False, compare=False)  # set by CachedRoadSource on hits

    def is_empty(self) -> bool:
        return not self.fragments or not self.nodes


# Derived, read-only per-run artifacts
@dataclass(frozen=True)
class PathPoint:
    lat: float
    lon: float
    speed: str | None = None
    fragment_id: int | None = None


@dataclass(frozen=True)
class SamplePoint:
    lat: float
    lon: float
    speed: str | None = None
    fragment_id: int | None = None


@dataclass(frozen=True)
class PathWarning:
    fragment_id: int
    kind: str
    message: str


@dataclass
class AssembledPath:
    points: list[PathPoint]
    chain: list[int]
    warnings: list[PathWarning] = field(default_factory=list)
    oneway_respected: bool = False
    reversed: bool = False

    @classmethod
    def empty(cls) -> "AssembledPath":
        return cls(points=[], chain=[])

    def __len__(self) -> int:
        return len(self.points)

    def flipped(self) -> "AssembledPath":
        """Same path travelled the other way (user-requested reversal)."""
        return AssembledPath(
            points=self.points[::-1],
            chain=self.chain[::-1],
            warnings=list(self.warnings),
            oneway_respected=self.oneway_respected,
            reversed=not self.reversed,
        )
