"""
Level-synchronous BFS construction of the category hierarchy.

Starting from seed categories, each level follows article and subcategory
memberships of the previous level's branch nodes. A node is written once,
at its first discovery, with the lowest-id parent of that level; later
levels never revisit it. Every level commits as one transaction together
with its progress row and checkpoint, so a stopped build resumes at the
first uncommitted level.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from time import perf_counter
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError

from ..common.config import CATEGORY_NAMESPACE, DagSettings, NodeRef, RetrySettings
from ..common.errors import ConfigurationError, CycleDetected, DataIntegrityError
from ..common.retry import run_with_retries
from ..common.types import BuildCheckpoint, NodeKind
from ..database.connection import DatabaseManager
from ..database.repository import (
    CheckpointRepository,
    CycleRepository,
    ErrorLogRepository,
    NodeRepository,
    ProgressRepository,
)
from ..source.base import FOLLOWED_MEMBERSHIP_KINDS, GraphSource, NodeMeta
from .batching import AdaptiveBatchSizer
from .cycles import detect_cycles

logger = logging.getLogger(__name__)

PHASE = "dag"

ExcludePredicate = Callable[[NodeMeta], bool]


class BuildState(str, Enum):
    INIT = "init"
    EXPAND = "expand"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class LevelStats:
    level: int
    frontier_size: int
    candidates: int
    nodes_added: int
    elapsed_sec: float
    batch_size: int


@dataclass
class DagBuildResult:
    state: BuildState
    checkpoint: BuildCheckpoint
    levels: List[LevelStats] = field(default_factory=list)
    nodes_added: int = 0
    cycles: List[Tuple[int, int, int]] = field(default_factory=list)


def _kind_for(namespace: int) -> NodeKind:
    return NodeKind.BRANCH if namespace == CATEGORY_NAMESPACE else NodeKind.LEAF


class BFSDagBuilder:
    """Breadth-first hierarchy builder over a GraphSource."""

    def __init__(
        self,
        db: DatabaseManager,
        source: GraphSource,
        settings: Optional[DagSettings] = None,
        retry: Optional[RetrySettings] = None,
        exclude: Optional[ExcludePredicate] = None,
    ):
        """
        Args:
            db: Result store
            source: Raw relations to expand over
            settings: Depth, batch bounds and node filters
            retry: Per-level retry policy
            exclude: Predicate rejecting categories/pages by metadata
        """
        self.db = db
        self.source = source
        self.settings = settings or DagSettings()
        self.retry = retry or RetrySettings()
        self.exclude = exclude
        self.state = BuildState.INIT

    async def build(
        self,
        seeds: Optional[Sequence[NodeRef]] = None,
        max_level: Optional[int] = None,
        batch_size_hint: Optional[int] = None,
        checkpoint: Optional[BuildCheckpoint] = None,
    ) -> DagBuildResult:
        """
        Expand seeds into the materialized hierarchy.

        Args:
            seeds: Page ids or category titles; defaults to configured seeds
            max_level: Deepest level to materialize; defaults to configured value
            batch_size_hint: Initial frontier page width
            checkpoint: Position to resume from; loaded from the store when None

        Returns:
            DagBuildResult with the final checkpoint and per-level stats

        Raises:
            ConfigurationError: invalid bounds or no resolvable seed
            TransientStorageError: a level kept failing after all retries
        """
        self.state = BuildState.INIT
        seeds = list(seeds if seeds is not None else self.settings.seeds)
        max_level = self.settings.max_level if max_level is None else max_level
        if max_level < 1:
            raise ConfigurationError(f"max_level must be at least 1, got {max_level}", phase=PHASE)
        sizer = AdaptiveBatchSizer(self.settings.batch, batch_size_hint)
        if checkpoint is not None and checkpoint.phase != PHASE:
            raise ConfigurationError(
                f"checkpoint belongs to phase '{checkpoint.phase}', expected '{PHASE}'", phase=PHASE
            )

        seed_nodes = await self._resolve_seeds(seeds)

        if checkpoint is None:
            async with self.db.session() as session:
                checkpoint = await CheckpointRepository(session).get(PHASE)

        result = DagBuildResult(state=BuildState.INIT, checkpoint=checkpoint or BuildCheckpoint.start(PHASE))

        # Levels up to this one were materialized by an earlier run.
        committed = -1
        if checkpoint is None or checkpoint.last_committed_unit is None:
            stats = await self._run_level(0, sizer, result, lambda session: self._seed_level(session, seed_nodes))
            logger.info("Seeded level 0 with %d nodes (%d new)", len(seed_nodes), stats.nodes_added)
        else:
            committed = checkpoint.last_committed_unit
            logger.info(
                "Resuming hierarchy build after level %d (status %s)",
                committed,
                checkpoint.status.value,
            )
            missing = await self._missing_seeds(seed_nodes)
            if missing:
                # New seeds restart expansion at level 1; the anti-join skips existing rows.
                logger.info("Adding %d new seeds to an existing hierarchy", len(missing))
                await self._run_level(0, sizer, result, lambda session: self._seed_level(session, missing))

        self.state = BuildState.EXPAND
        level = result.checkpoint.next_unit
        while level <= max_level:
            stats = await self._run_level(
                level,
                sizer,
                result,
                lambda session, lvl=level: self._expand_level(session, lvl, sizer.size),
            )
            if stats.nodes_added == 0 and level > committed:
                logger.info("Level %d added no nodes; hierarchy complete", level)
                break
            level += 1

        result.checkpoint = result.checkpoint.complete()
        async with self.db.session() as session:
            await CheckpointRepository(session).save(result.checkpoint)

        if self.settings.cycle_hop_limit > 0:
            result.cycles = await self._record_cycles(self.settings.cycle_hop_limit)

        self.state = BuildState.DONE
        result.state = BuildState.DONE
        logger.info(
            "Hierarchy build done: %d nodes added over %d levels",
            result.nodes_added,
            len(result.levels),
        )
        return result

    async def _resolve_seeds(self, seeds: Iterable[NodeRef]) -> List[NodeMeta]:
        ids = [s for s in seeds if isinstance(s, int)]
        titles = [s for s in seeds if not isinstance(s, int)]
        resolved: Dict[int, NodeMeta] = {}

        found = await self.source.lookup_nodes(ids) if ids else {}
        for page_id in ids:
            if page_id in found:
                resolved[page_id] = found[page_id]
            else:
                logger.warning("Seed page id %d not found in source", page_id)
        for title in titles:
            meta = await self.source.find_by_title(title, CATEGORY_NAMESPACE)
            if meta is None:
                logger.warning("Seed category '%s' not found in source", title)
            else:
                resolved[meta.page_id] = meta

        if not resolved:
            raise ConfigurationError("No seed resolved to a source page", phase=PHASE, unit="0")
        return [resolved[k] for k in sorted(resolved)]

    async def _run_level(self, level, sizer, result, work) -> LevelStats:
        """Run one level as a retried transaction and fold its stats into `result`."""
        previous = result.checkpoint

        async def attempt() -> LevelStats:
            started = perf_counter()
            async with self.db.session() as session:
                frontier, candidates, rows = await work(session)
                elapsed = perf_counter() - started
                await ProgressRepository(session).record(
                    PHASE, f"level_{level}", len(rows), elapsed, batch_size=sizer.size
                )
                await CheckpointRepository(session).save(previous.advance(level))
            return LevelStats(level, frontier, candidates, len(rows), perf_counter() - started, sizer.size)

        try:
            stats = await run_with_retries(attempt, policy=self.retry, phase=PHASE, unit=str(level))
        except Exception as exc:
            self.state = BuildState.FAILED
            logger.error("Hierarchy build failed at level %d: %s", level, exc)
            await self._record_failure(level, exc, previous.fail())
            raise

        result.checkpoint = previous.advance(level)
        result.levels.append(stats)
        result.nodes_added += stats.nodes_added
        sizer.observe(stats.nodes_added, stats.elapsed_sec)
        logger.info(
            "Level %d committed: frontier=%d candidates=%d added=%d in %.2fs",
            level,
            stats.frontier_size,
            stats.candidates,
            stats.nodes_added,
            stats.elapsed_sec,
        )
        return stats

    async def _missing_seeds(self, seed_nodes: List[NodeMeta]) -> List[NodeMeta]:
        async with self.db.session() as session:
            existing = await NodeRepository(session).existing_ids(m.page_id for m in seed_nodes)
        return [meta for meta in seed_nodes if meta.page_id not in existing]

    async def _seed_level(self, session, seed_nodes: List[NodeMeta]):
        existing = await NodeRepository(session).existing_ids(m.page_id for m in seed_nodes)
        rows = [
            {
                "page_id": meta.page_id,
                "title": meta.title,
                "namespace": meta.namespace,
                "kind": NodeKind.BRANCH.value,
                "root_id": meta.page_id,
                "level": 0,
                "parent_id": None,
            }
            for meta in seed_nodes
            if meta.page_id not in existing
        ]
        await NodeRepository(session).insert_nodes(rows)
        return 0, len(seed_nodes), rows

    async def _expand_level(self, session, level: int, width: int):
        """Compute and insert the nodes first discovered at `level`."""
        nodes = NodeRepository(session)

        # child id -> (winning parent id, inherited root id)
        winners: Dict[int, Tuple[int, int]] = {}
        frontier_size = 0
        after_id = -1
        while True:
            page = await nodes.frontier_page(level - 1, after_id, width)
            if not page:
                break
            frontier_size += len(page)
            after_id = page[-1][0]
            root_of = dict(page)
            for edge in await self.source.children_of(root_of):
                if edge.kind not in FOLLOWED_MEMBERSHIP_KINDS:
                    continue
                current = winners.get(edge.member_id)
                if current is None or edge.category_id < current[0]:
                    winners[edge.member_id] = (edge.category_id, root_of[edge.category_id])
            if len(page) < width:
                break

        if not winners:
            return frontier_size, 0, []

        metas = await self.source.lookup_nodes(winners)
        accepted: Dict[int, NodeMeta] = {}
        for child_id in sorted(winners):
            meta = metas.get(child_id)
            if meta is None:
                await self._record_orphan(session, level, child_id, winners[child_id][0])
                continue
            if self._accepts(meta):
                accepted[child_id] = meta

        existing = await nodes.existing_ids(accepted)
        rows = [
            {
                "page_id": child_id,
                "title": meta.title,
                "namespace": meta.namespace,
                "kind": _kind_for(meta.namespace).value,
                "root_id": winners[child_id][1],
                "level": level,
                "parent_id": winners[child_id][0],
            }
            for child_id, meta in accepted.items()
            if child_id not in existing
        ]
        await nodes.insert_nodes(rows)
        return frontier_size, len(winners), rows

    def _accepts(self, meta: NodeMeta) -> bool:
        if meta.namespace not in self.settings.allowed_namespaces:
            return False
        if self.settings.content_model is not None and meta.content_model != self.settings.content_model:
            return False
        if self.exclude is not None and self.exclude(meta):
            return False
        return True

    async def _record_orphan(self, session, level: int, child_id: int, parent_id: int) -> None:
        error = DataIntegrityError(
            f"Member {child_id} of category {parent_id} is missing from the page relation",
            key=child_id,
            phase=PHASE,
            unit=str(level),
        )
        logger.warning("Skipping orphan member: %s", error)
        await ErrorLogRepository(session).record(
            PHASE, type(error).__name__, error.message, unit=str(level), key=child_id
        )

    async def _record_failure(self, level: int, exc: Exception, failed: BuildCheckpoint) -> None:
        try:
            async with self.db.session() as session:
                await ErrorLogRepository(session).record(PHASE, type(exc).__name__, str(exc), unit=str(level))
                await CheckpointRepository(session).save(failed)
        except SQLAlchemyError as log_exc:
            logger.warning("Failed to record build error for level %d: %s", level, log_exc)

    async def _record_cycles(self, hop_limit: int) -> List[Tuple[int, int, int]]:
        parent_of: Dict[int, Optional[int]] = {}
        async with self.db.session() as session:
            nodes = NodeRepository(session)
            after_id = -1
            while True:
                page = await nodes.parent_pairs_page(after_id, self.settings.batch.maximum)
                if not page:
                    break
                parent_of.update(page)
                after_id = page[-1][0]

        cycles = detect_cycles(parent_of, hop_limit)
        for page_id, _, length in cycles:
            logger.warning("%s", CycleDetected(page_id, length, phase=PHASE))
        async with self.db.session() as session:
            await CycleRepository(session).replace(cycles)
        return cycles
