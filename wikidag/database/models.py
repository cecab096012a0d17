"""
SQLAlchemy models for the wikidag result store.

Holds the materialized hierarchy, the identity mapping, the canonical node
table, associative links and the bookkeeping tables (checkpoints, progress,
errors, cycles) that make every phase resumable.
"""

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase

from ..common.types import BuildCheckpoint, CheckpointStatus, Node, NodeKind


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class DagNode(Base):
    """
    Node of the materialized category hierarchy.

    Written once by the BFS builder at first discovery; `level` and
    `parent_id` are never updated afterwards.
    """
    __tablename__ = "dag_nodes"

    page_id = Column(BigInteger, primary_key=True, autoincrement=False)
    title = Column(String(255), nullable=False)
    namespace = Column(Integer, nullable=False)
    kind = Column(String(16), nullable=False)
    root_id = Column(BigInteger, nullable=False)
    level = Column(Integer, nullable=False)
    parent_id = Column(BigInteger, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_dag_level_kind", "level", "kind"),
        Index("idx_dag_root", "root_id"),
        Index("idx_dag_parent", "parent_id"),
    )

    def to_node(self) -> Node:
        return Node(
            id=self.page_id,
            label=self.title,
            kind=NodeKind(self.kind),
            domain_root_id=self.root_id,
            level=self.level,
            parent_id=self.parent_id,
            namespace=self.namespace,
        )

    def __repr__(self):
        return f"<DagNode(id={self.page_id}, level={self.level}, parent={self.parent_id})>"


class IdentityMember(Base):
    """Mapping of every hierarchy node to its cluster representative."""
    __tablename__ = "identity_members"

    page_id = Column(BigInteger, primary_key=True, autoincrement=False)
    normalized_title = Column(String(255), nullable=False)
    representative_id = Column(BigInteger, nullable=False)

    __table_args__ = (
        Index("idx_identity_title", "normalized_title"),
        Index("idx_identity_rep", "representative_id"),
    )


class CanonicalNode(Base):
    """One row per identity cluster, keyed by the representative page."""
    __tablename__ = "canonical_nodes"

    page_id = Column(BigInteger, primary_key=True, autoincrement=False)
    title = Column(String(255), nullable=False)
    raw_title = Column(String(255), nullable=False)
    namespace = Column(Integer, nullable=False)
    kind = Column(String(16), nullable=False)
    root_id = Column(BigInteger, nullable=False)
    level = Column(Integer, nullable=False)
    parent_id = Column(BigInteger, nullable=True)
    cluster_size = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("idx_canonical_title", "title"),
        Index("idx_canonical_level", "level"),
        Index("idx_canonical_parent", "parent_id"),
    )

    def __repr__(self):
        return f"<CanonicalNode(id={self.page_id}, title='{self.title[:50]}')>"


class LinkStaging(Base):
    """Resolved edge pairs tagged with the source that produced them."""
    __tablename__ = "link_staging"

    from_rep = Column(BigInteger, primary_key=True, autoincrement=False)
    to_rep = Column(BigInteger, primary_key=True, autoincrement=False)
    provenance = Column(String(16), primary_key=True)


class AssociativeLink(Base):
    """Deduplicated, provenance-classified relationship between representatives."""
    __tablename__ = "associative_links"

    from_rep_id = Column(BigInteger, primary_key=True, autoincrement=False)
    to_rep_id = Column(BigInteger, primary_key=True, autoincrement=False)
    link_type = Column(String(16), nullable=False)

    __table_args__ = (
        CheckConstraint("from_rep_id <> to_rep_id", name="ck_link_not_self"),
        Index("idx_link_to", "to_rep_id"),
        Index("idx_link_type", "link_type"),
    )

    def __repr__(self):
        return f"<AssociativeLink({self.from_rep_id}->{self.to_rep_id}, type='{self.link_type}')>"


class LinkConsolidation(Base):
    """Per-original-edge record of what identity resolution did to it."""
    __tablename__ = "link_consolidation"

    provenance = Column(String(16), primary_key=True)
    from_id = Column(BigInteger, primary_key=True, autoincrement=False)
    to_id = Column(BigInteger, primary_key=True, autoincrement=False)
    from_rep = Column(BigInteger, nullable=False)
    to_rep = Column(BigInteger, nullable=False)
    self_loop = Column(Boolean, nullable=False, default=False)
    collapsed = Column(Boolean, nullable=False, default=False)

    __table_args__ = (Index("idx_consolidation_pair", "from_rep", "to_rep"),)


class BuildCheckpointRecord(Base):
    """Persisted BuildCheckpoint, one row per phase."""
    __tablename__ = "build_checkpoints"

    phase = Column(String(64), primary_key=True)
    cursor = Column(BigInteger, nullable=True)
    last_committed_unit = Column(BigInteger, nullable=True)
    status = Column(String(16), nullable=False, default=CheckpointStatus.RUNNING.value)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @classmethod
    def from_checkpoint(cls, checkpoint: BuildCheckpoint) -> "BuildCheckpointRecord":
        return cls(
            phase=checkpoint.phase,
            cursor=checkpoint.cursor,
            last_committed_unit=checkpoint.last_committed_unit,
            status=checkpoint.status.value,
            updated_at=datetime.utcnow(),
        )

    def to_checkpoint(self) -> BuildCheckpoint:
        return BuildCheckpoint(
            phase=self.phase,
            cursor=self.cursor,
            last_committed_unit=self.last_committed_unit,
            status=CheckpointStatus(self.status),
        )


class BuildProgress(Base):
    """Throughput record for one committed unit."""
    __tablename__ = "build_progress"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phase = Column(String(64), nullable=False)
    unit = Column(String(64), nullable=False)
    batch_size = Column(Integer, nullable=True)
    rows_added = Column(Integer, nullable=False, default=0)
    execution_time_sec = Column(Float, nullable=False, default=0.0)
    rows_per_sec = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (Index("idx_progress_phase", "phase"),)


class BuildError(Base):
    """Error and diagnostics log keyed by phase and unit."""
    __tablename__ = "build_errors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phase = Column(String(64), nullable=False)
    unit = Column(String(64), nullable=True)
    error_type = Column(String(64), nullable=False)
    message = Column(Text, nullable=False)
    key_range = Column(String(64), nullable=True)
    key = Column(BigInteger, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_errors_phase", "phase"),
        Index("idx_errors_type", "error_type"),
    )

    def __repr__(self):
        return f"<BuildError(phase='{self.phase}', type='{self.error_type}')>"


class DagCycle(Base):
    """Parent chain that returned to its starting node."""
    __tablename__ = "dag_cycles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    page_id = Column(BigInteger, nullable=False)
    ancestor_id = Column(BigInteger, nullable=False)
    path_length = Column(Integer, nullable=False)
    detected_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (Index("idx_cycles_page", "page_id"),)
