"""Breadth-first construction of the category hierarchy."""

from .batching import AdaptiveBatchSizer
from .builder import BFSDagBuilder, BuildState, DagBuildResult, LevelStats
from .cycles import detect_cycles

__all__ = [
    "AdaptiveBatchSizer",
    "BFSDagBuilder",
    "BuildState",
    "DagBuildResult",
    "LevelStats",
    "detect_cycles",
]
