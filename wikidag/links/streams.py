"""
Edge streams feeding the associative edge merger.

A stream is scanned in half-open `[lo, hi)` windows over the source-side
page id; `key_bounds()` gives the range to cover.
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Sequence, Tuple

from ..source.base import FOLLOWED_MEMBERSHIP_KINDS, AliasEdge, GraphSource, RawEdge

logger = logging.getLogger(__name__)

AliasResolver = Callable[[AliasEdge], Optional[int]]


class EdgeStream(ABC):
    """Windowed, restartable scan over one raw edge relation."""

    name: str = "edges"

    @abstractmethod
    async def key_bounds(self) -> Optional[Tuple[int, int]]:
        """Half-open from_id range covering the stream, or None when empty."""

    @abstractmethod
    async def scan(self, lo: int, hi: int) -> List[RawEdge]:
        """Edges with lo <= from_id < hi."""


class LinkEdgeStream(EdgeStream):
    """Inter-page links."""

    def __init__(self, source: GraphSource, name: str = "pagelinks"):
        self.source = source
        self.name = name

    async def key_bounds(self) -> Optional[Tuple[int, int]]:
        return await self.source.link_bounds()

    async def scan(self, lo: int, hi: int) -> List[RawEdge]:
        return [RawEdge(from_id, to_id, "link") for from_id, to_id in await self.source.scan_links(lo, hi)]


class MembershipEdgeStream(EdgeStream):
    """Category memberships as member -> category edges. File members are skipped."""

    def __init__(self, source: GraphSource, name: str = "categorylinks"):
        self.source = source
        self.name = name

    async def key_bounds(self) -> Optional[Tuple[int, int]]:
        return await self.source.membership_bounds()

    async def scan(self, lo: int, hi: int) -> List[RawEdge]:
        return [
            RawEdge(edge.member_id, edge.category_id, "membership")
            for edge in await self.source.scan_membership(lo, hi)
            if edge.kind in FOLLOWED_MEMBERSHIP_KINDS
        ]


class AliasEdgeStream(EdgeStream):
    """
    Redirect edges resolved to a target page id by an injected resolver.

    The resolver receives each AliasEdge and returns the target page id,
    or None when the target cannot be resolved; unresolved edges are dropped.
    """

    def __init__(self, source: GraphSource, resolver: AliasResolver, name: str = "redirect"):
        self.source = source
        self.resolver = resolver
        self.name = name

    async def key_bounds(self) -> Optional[Tuple[int, int]]:
        return await self.source.alias_bounds()

    async def scan(self, lo: int, hi: int) -> List[RawEdge]:
        edges: List[RawEdge] = []
        unresolved = 0
        for alias in await self.source.scan_aliases(lo, hi):
            target = self.resolver(alias)
            if target is None:
                unresolved += 1
                continue
            edges.append(RawEdge(alias.from_id, int(target), "alias"))
        if unresolved:
            logger.debug("%s window [%d, %d): %d unresolved aliases", self.name, lo, hi, unresolved)
        return edges


class ChainedEdgeStream(EdgeStream):
    """Several streams scanned as one under a single name."""

    def __init__(self, streams: Sequence[EdgeStream], name: Optional[str] = None):
        if not streams:
            raise ValueError("ChainedEdgeStream needs at least one stream")
        self.streams = list(streams)
        self.name = name or "+".join(s.name for s in self.streams)

    async def key_bounds(self) -> Optional[Tuple[int, int]]:
        bounds = [b for b in [await s.key_bounds() for s in self.streams] if b is not None]
        if not bounds:
            return None
        return min(lo for lo, _ in bounds), max(hi for _, hi in bounds)

    async def scan(self, lo: int, hi: int) -> List[RawEdge]:
        edges: List[RawEdge] = []
        for stream in self.streams:
            edges.extend(await stream.scan(lo, hi))
        return edges
