"""
Data access layer for the wikidag result store.

Repository classes wrap one AsyncSession each; callers own the transaction
(see DatabaseManager.session) so several repositories can write inside the
same committed unit.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import and_, case, delete, func, insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from ..common.types import BuildCheckpoint, LinkType, NodeKind
from .models import (
    AssociativeLink,
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

logger = logging.getLogger(__name__)

# Keeps IN (...) lists under SQLite's bound-parameter ceiling.
IN_CLAUSE_CHUNK = 500

_NO_SYNC = {"synchronize_session": False}


def _chunks(values: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


def insert_if_absent(session: AsyncSession, model):
    """Build an INSERT that silently skips rows whose primary key exists."""
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as pg_insert

        return pg_insert(model).on_conflict_do_nothing()
    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as sqlite_insert

        return sqlite_insert(model).on_conflict_do_nothing()
    if dialect in ("mysql", "mariadb"):
        return insert(model).prefix_with("IGNORE")
    raise NotImplementedError(f"insert-if-absent is not supported for dialect {dialect!r}")


class NodeRepository:
    """Access to the materialized hierarchy (dag_nodes)."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def insert_nodes(self, rows: List[Dict[str, Any]], chunk_size: int = 10_000) -> None:
        """Insert node rows, skipping any page already materialized."""
        if not rows:
            return
        stmt = insert_if_absent(self.session, DagNode)
        for chunk in _chunks(rows, max(1, chunk_size)):
            await self.session.execute(stmt, list(chunk))

    async def existing_ids(self, page_ids: Iterable[int]) -> Set[int]:
        """Return the subset of page_ids already present at any level."""
        ids = sorted(set(page_ids))
        found: Set[int] = set()
        for chunk in _chunks(ids, IN_CLAUSE_CHUNK):
            result = await self.session.execute(
                select(DagNode.page_id).where(DagNode.page_id.in_(chunk))
            )
            found.update(result.scalars().all())
        return found

    async def frontier_page(self, level: int, after_id: int, limit: int) -> List[Tuple[int, int]]:
        """Branch nodes at `level` with id > after_id as (page_id, root_id)."""
        result = await self.session.execute(
            select(DagNode.page_id, DagNode.root_id)
            .where(
                DagNode.level == level,
                DagNode.kind == NodeKind.BRANCH.value,
                DagNode.page_id > after_id,
            )
            .order_by(DagNode.page_id)
            .limit(limit)
        )
        return [(row.page_id, row.root_id) for row in result]

    async def nodes_page(self, after_id: int, limit: int) -> List[DagNode]:
        """All nodes with id > after_id in id order."""
        result = await self.session.execute(
            select(DagNode).where(DagNode.page_id > after_id).order_by(DagNode.page_id).limit(limit)
        )
        return list(result.scalars().all())

    async def parent_pairs_page(self, after_id: int, limit: int) -> List[Tuple[int, Optional[int]]]:
        result = await self.session.execute(
            select(DagNode.page_id, DagNode.parent_id)
            .where(DagNode.page_id > after_id)
            .order_by(DagNode.page_id)
            .limit(limit)
        )
        return [(row.page_id, row.parent_id) for row in result]

    async def get_all(self) -> List[DagNode]:
        result = await self.session.execute(select(DagNode).order_by(DagNode.page_id))
        return list(result.scalars().all())

    async def count(self) -> int:
        result = await self.session.execute(select(func.count(DagNode.page_id)))
        return result.scalar() or 0

    async def count_by_level(self) -> Dict[int, int]:
        result = await self.session.execute(
            select(DagNode.level, func.count(DagNode.page_id)).group_by(DagNode.level)
        )
        return {level: count for level, count in result}


class CheckpointRepository:
    """Persistence for BuildCheckpoint values."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, phase: str) -> Optional[BuildCheckpoint]:
        record = await self.session.get(BuildCheckpointRecord, phase)
        return record.to_checkpoint() if record else None

    async def save(self, checkpoint: BuildCheckpoint) -> BuildCheckpoint:
        await self.session.merge(BuildCheckpointRecord.from_checkpoint(checkpoint))
        return checkpoint

    async def reset(self, phases: Iterable[str]) -> None:
        await self.session.execute(
            delete(BuildCheckpointRecord)
            .where(BuildCheckpointRecord.phase.in_(list(phases)))
            .execution_options(**_NO_SYNC)
        )


class ProgressRepository:
    """Throughput records per committed unit."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(
        self,
        phase: str,
        unit: str,
        rows_added: int,
        execution_time_sec: float,
        batch_size: Optional[int] = None,
    ) -> BuildProgress:
        rate = rows_added / execution_time_sec if execution_time_sec > 0 else float(rows_added)
        progress = BuildProgress(
            phase=phase,
            unit=unit,
            batch_size=batch_size,
            rows_added=rows_added,
            execution_time_sec=execution_time_sec,
            rows_per_sec=rate,
        )
        self.session.add(progress)
        await self.session.flush()
        return progress

    async def clear_unit(self, phase: str, unit: str) -> None:
        """Drop earlier records of a unit that is about to be rewritten."""
        await self.session.execute(
            delete(BuildProgress)
            .where(BuildProgress.phase == phase, BuildProgress.unit == unit)
            .execution_options(**_NO_SYNC)
        )

    async def get_by_phase(self, phase: str) -> List[BuildProgress]:
        result = await self.session.execute(
            select(BuildProgress).where(BuildProgress.phase == phase).order_by(BuildProgress.id)
        )
        return list(result.scalars().all())


class ErrorLogRepository:
    """Error/diagnostics log keyed by phase and unit."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(
        self,
        phase: str,
        error_type: str,
        message: str,
        unit: Optional[str] = None,
        key_range: Optional[Tuple[int, int]] = None,
        key: Optional[int] = None,
    ) -> None:
        self.session.add(
            BuildError(
                phase=phase,
                unit=unit,
                error_type=error_type,
                message=message,
                key_range=f"{key_range[0]}-{key_range[1]}" if key_range else None,
                key=key,
            )
        )
        await self.session.flush()

    async def clear_unit(self, phase: str, unit: str, error_type: str) -> None:
        """Drop earlier `error_type` rows of a unit that is about to be rewritten."""
        await self.session.execute(
            delete(BuildError)
            .where(BuildError.phase == phase, BuildError.unit == unit, BuildError.error_type == error_type)
            .execution_options(**_NO_SYNC)
        )

    async def get_errors(self, phase: Optional[str] = None, error_type: Optional[str] = None) -> List[BuildError]:
        query = select(BuildError).order_by(BuildError.id)
        if phase is not None:
            query = query.where(BuildError.phase == phase)
        if error_type is not None:
            query = query.where(BuildError.error_type == error_type)
        result = await self.session.execute(query)
        return list(result.scalars().all())


class CycleRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def replace(self, cycles: Iterable[Tuple[int, int, int]]) -> int:
        """Replace recorded cycles with (page_id, ancestor_id, path_length) rows."""
        await self.session.execute(delete(DagCycle).execution_options(**_NO_SYNC))
        rows = [
            {"page_id": page_id, "ancestor_id": ancestor_id, "path_length": length}
            for page_id, ancestor_id, length in cycles
        ]
        if rows:
            await self.session.execute(insert(DagCycle), rows)
        return len(rows)

    async def get_all(self) -> List[DagCycle]:
        result = await self.session.execute(select(DagCycle).order_by(DagCycle.page_id))
        return list(result.scalars().all())


class IdentityRepository:
    """Identity mapping and canonical node table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def insert_members(self, rows: List[Dict[str, Any]]) -> None:
        if rows:
            await self.session.execute(insert_if_absent(self.session, IdentityMember), rows)

    async def insert_canonical(self, rows: List[Dict[str, Any]]) -> None:
        if rows:
            await self.session.execute(insert_if_absent(self.session, CanonicalNode), rows)

    async def clear(self) -> None:
        await self.session.execute(delete(IdentityMember).execution_options(**_NO_SYNC))
        await self.session.execute(delete(CanonicalNode).execution_options(**_NO_SYNC))

    async def representative_map(self) -> Dict[int, int]:
        result = await self.session.execute(
            select(IdentityMember.page_id, IdentityMember.representative_id)
        )
        return {page_id: rep for page_id, rep in result}

    async def cluster(self, normalized_title: str) -> Tuple[Optional[int], List[int]]:
        """Return (representative_id, member ids) for a normalized title."""
        result = await self.session.execute(
            select(IdentityMember.page_id, IdentityMember.representative_id)
            .where(IdentityMember.normalized_title == normalized_title)
            .order_by(IdentityMember.page_id)
        )
        rows = result.all()
        if not rows:
            return None, []
        return rows[0].representative_id, [row.page_id for row in rows]

    async def canonical_nodes(self) -> List[CanonicalNode]:
        result = await self.session.execute(select(CanonicalNode).order_by(CanonicalNode.page_id))
        return list(result.scalars().all())


class LinkRepository:
    """Staging, classification and diagnostics for associative links."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def stage(self, pairs: Iterable[Tuple[int, int]], provenance: LinkType) -> None:
        rows = [
            {"from_rep": from_rep, "to_rep": to_rep, "provenance": provenance.value}
            for from_rep, to_rep in pairs
        ]
        if rows:
            await self.session.execute(insert_if_absent(self.session, LinkStaging), rows)

    async def stage_consolidation(self, rows: List[Dict[str, Any]]) -> None:
        if rows:
            await self.session.execute(insert_if_absent(self.session, LinkConsolidation), rows)

    async def clear(self) -> None:
        """Drop staged pairs, classified links and diagnostics."""
        for model in (LinkStaging, AssociativeLink, LinkConsolidation):
            await self.session.execute(delete(model).execution_options(**_NO_SYNC))

    async def classify(self) -> int:
        """
        Rebuild associative_links from the staging relation.

        A single grouped pass: each (from_rep, to_rep) group yields one row
        typed by which provenances occur in the group.
        """
        has_source1 = func.max(
            case((LinkStaging.provenance == LinkType.SOURCE1.value, 1), else_=0)
        )
        has_source2 = func.max(
            case((LinkStaging.provenance == LinkType.SOURCE2.value, 1), else_=0)
        )
        link_type = case(
            (and_(has_source1 == 1, has_source2 == 1), LinkType.BOTH.value),
            (has_source1 == 1, LinkType.SOURCE1.value),
            else_=LinkType.SOURCE2.value,
        )
        grouped = (
            select(LinkStaging.from_rep, LinkStaging.to_rep, link_type)
            .where(LinkStaging.from_rep != LinkStaging.to_rep)
            .group_by(LinkStaging.from_rep, LinkStaging.to_rep)
        )

        await self.session.execute(delete(AssociativeLink).execution_options(**_NO_SYNC))
        await self.session.execute(
            insert(AssociativeLink).from_select(
                ["from_rep_id", "to_rep_id", "link_type"], grouped
            )
        )
        result = await self.session.execute(select(func.count()).select_from(AssociativeLink))
        return result.scalar() or 0

    async def flag_collapsed(self) -> int:
        """Mark original edges whose resolved pair another original edge also produced."""
        other = aliased(LinkConsolidation)
        table = LinkConsolidation.__table__
        shares_pair = (
            select(other.from_id)
            .where(
                other.from_rep == table.c.from_rep,
                other.to_rep == table.c.to_rep,
                or_(
                    other.provenance != table.c.provenance,
                    other.from_id != table.c.from_id,
                    other.to_id != table.c.to_id,
                ),
            )
            .correlate(table)
            .exists()
        )
        await self.session.execute(
            update(table).where(table.c.self_loop.is_(False)).values(collapsed=shares_pair)
        )
        result = await self.session.execute(
            select(func.count()).select_from(table).where(table.c.collapsed.is_(True))
        )
        return result.scalar() or 0

    async def counts_by_type(self) -> Dict[str, int]:
        result = await self.session.execute(
            select(AssociativeLink.link_type, func.count()).group_by(AssociativeLink.link_type)
        )
        return {link_type: count for link_type, count in result}

    async def get_all(self) -> List[AssociativeLink]:
        result = await self.session.execute(
            select(AssociativeLink).order_by(AssociativeLink.from_rep_id, AssociativeLink.to_rep_id)
        )
        return list(result.scalars().all())

    async def consolidation_records(self) -> List[LinkConsolidation]:
        result = await self.session.execute(
            select(LinkConsolidation).order_by(
                LinkConsolidation.provenance, LinkConsolidation.from_id, LinkConsolidation.to_id
            )
        )
        return list(result.scalars().all())
