"""
Graph source interface and record types.

A GraphSource exposes the raw relations (page metadata, category
membership, page links, redirects) read-only. All scans take half-open
`[lo, hi)` windows over the source-side page id so callers can process
arbitrarily large relations in bounded memory.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple


class MembershipKind(str, Enum):
    PAGE = "page"
    SUBCAT = "subcat"
    FILE = "file"


FOLLOWED_MEMBERSHIP_KINDS = (MembershipKind.PAGE, MembershipKind.SUBCAT)


@dataclass(frozen=True)
class NodeMeta:
    page_id: int
    title: str
    namespace: int
    length: int = 0
    content_model: Optional[str] = "wikitext"
    is_redirect: bool = False


@dataclass(frozen=True)
class MembershipEdge:
    """`member_id` is listed in category `category_id`."""

    member_id: int
    category_id: int
    kind: MembershipKind


@dataclass(frozen=True)
class AliasEdge:
    """Redirect from `from_id` to a target identified only by title."""

    from_id: int
    target_title: str
    target_namespace: int
    fragment: Optional[str] = None


@dataclass(frozen=True)
class RawEdge:
    from_id: int
    to_id: int
    source_kind: str  # membership | link | alias


def to_db_title(title: str) -> str:
    """Stored titles use underscores in place of spaces."""
    return title.strip().replace(" ", "_")


class GraphSource(ABC):
    """Read-only access to the raw relations."""

    @abstractmethod
    async def lookup_nodes(self, page_ids: Iterable[int]) -> Dict[int, NodeMeta]:
        """Metadata for the given ids; unknown ids are absent from the result."""

    @abstractmethod
    async def find_by_title(self, title: str, namespace: int) -> Optional[NodeMeta]:
        """Look up a page by exact title within a namespace."""

    @abstractmethod
    async def children_of(self, category_ids: Iterable[int]) -> List[MembershipEdge]:
        """Membership edges whose category is one of `category_ids`."""

    @abstractmethod
    async def membership_bounds(self) -> Optional[Tuple[int, int]]:
        """Half-open member id range covering all membership edges, or None."""

    @abstractmethod
    async def scan_membership(self, lo: int, hi: int) -> List[MembershipEdge]:
        """Membership edges with lo <= member_id < hi."""

    @abstractmethod
    async def link_bounds(self) -> Optional[Tuple[int, int]]:
        """Half-open source id range covering all page links, or None."""

    @abstractmethod
    async def scan_links(self, lo: int, hi: int) -> List[Tuple[int, int]]:
        """(from_id, to_id) page links with lo <= from_id < hi."""

    @abstractmethod
    async def alias_bounds(self) -> Optional[Tuple[int, int]]:
        """Half-open source id range covering all redirects, or None."""

    @abstractmethod
    async def scan_aliases(self, lo: int, hi: int) -> List[AliasEdge]:
        """Redirects with lo <= from_id < hi."""

    async def close(self) -> None:
        """Release any resources held by the source."""
        return None
