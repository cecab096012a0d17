"""
Read-only access to the raw page, membership, link and redirect relations.
"""

from .base import AliasEdge, GraphSource, MembershipEdge, MembershipKind, NodeMeta, RawEdge
from .frames import FrameGraphSource
from .sql import SqlGraphSource

__all__ = [
    "AliasEdge",
    "GraphSource",
    "MembershipEdge",
    "MembershipKind",
    "NodeMeta",
    "RawEdge",
    "FrameGraphSource",
    "SqlGraphSource",
]
