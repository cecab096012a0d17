"""
Domain value types shared across the build phases.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional


class NodeKind(str, Enum):
    BRANCH = "branch"  # category
    LEAF = "leaf"  # article


class LinkType(str, Enum):
    SOURCE1 = "source1"
    SOURCE2 = "source2"
    BOTH = "both"


class CheckpointStatus(str, Enum):
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class Node:
    """A materialized hierarchy node."""

    id: int
    label: str
    kind: NodeKind
    domain_root_id: int
    level: int
    parent_id: Optional[int] = None
    namespace: int = 14

    @property
    def is_branch(self) -> bool:
        return self.kind == NodeKind.BRANCH


@dataclass(frozen=True)
class BuildCheckpoint:
    """
    Resumable position within a phase.

    `last_committed_unit` is the last fully committed level/batch/window
    ordinal and `cursor` the key boundary reached, both None before the
    first commit. Values are immutable; every advance returns a new one.
    """

    phase: str
    cursor: Optional[int] = None
    last_committed_unit: Optional[int] = None
    status: CheckpointStatus = CheckpointStatus.RUNNING

    @classmethod
    def start(cls, phase: str) -> "BuildCheckpoint":
        return cls(phase=phase)

    @property
    def is_done(self) -> bool:
        return self.status == CheckpointStatus.DONE

    @property
    def next_unit(self) -> int:
        return 0 if self.last_committed_unit is None else self.last_committed_unit + 1

    def advance(self, unit: int, cursor: Optional[int] = None) -> "BuildCheckpoint":
        return replace(
            self,
            last_committed_unit=unit,
            cursor=cursor if cursor is not None else self.cursor,
            status=CheckpointStatus.RUNNING,
        )

    def complete(self) -> "BuildCheckpoint":
        return replace(self, status=CheckpointStatus.DONE)

    def fail(self) -> "BuildCheckpoint":
        return replace(self, status=CheckpointStatus.FAILED)
