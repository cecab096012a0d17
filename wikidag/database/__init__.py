"""
Result store for wikidag.

Provides SQLAlchemy async models and repositories for:
- The materialized hierarchy (dag_nodes)
- Identity mapping and canonical nodes
- Associative links and their staging relation
- Build checkpoints, progress, errors and cycles
"""

from .models import (
    AssociativeLink,
    Base,
    BuildCheckpointRecord,
    BuildError,
    BuildProgress,
    CanonicalNode,
    DagCycle,
    DagNode,
    IdentityMember,
    LinkConsolidation,
    LinkStaging,
)
from .connection import DatabaseManager, init_database
from .repository import (
    CheckpointRepository,
    CycleRepository,
    ErrorLogRepository,
    IdentityRepository,
    LinkRepository,
    NodeRepository,
    ProgressRepository,
)

__all__ = [
    "AssociativeLink",
    "Base",
    "BuildCheckpointRecord",
    "BuildError",
    "BuildProgress",
    "CanonicalNode",
    "DagCycle",
    "DagNode",
    "IdentityMember",
    "LinkConsolidation",
    "LinkStaging",
    "DatabaseManager",
    "init_database",
    "CheckpointRepository",
    "CycleRepository",
    "ErrorLogRepository",
    "IdentityRepository",
    "LinkRepository",
    "NodeRepository",
    "ProgressRepository",
]
