"""Edge streams and the associative edge merger."""

from .merger import AssociativeEdgeMerger, MergeResult
from .streams import (
    AliasEdgeStream,
    ChainedEdgeStream,
    EdgeStream,
    LinkEdgeStream,
    MembershipEdgeStream,
)

__all__ = [
    "AssociativeEdgeMerger",
    "MergeResult",
    "AliasEdgeStream",
    "ChainedEdgeStream",
    "EdgeStream",
    "LinkEdgeStream",
    "MembershipEdgeStream",
]
