"""
Identity resolution: one canonical node per normalized title.

Nodes whose titles normalize to the same string form a cluster. Each
cluster's representative is the minimum under one comparator key:
pinned nodes first, then the deepest level, then branch before leaf,
then the lowest page id. The selection is a running minimum, so it is
independent of scan order and a rerun reproduces the same mapping.
"""

import logging
from dataclasses import dataclass, field
from time import perf_counter
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from ..common.config import IdentitySettings, RetrySettings
from ..common.errors import ConfigurationError, DataIntegrityError
from ..common.retry import run_with_retries
from ..common.types import BuildCheckpoint, Node
from ..database.connection import DatabaseManager
from ..database.repository import (
    CheckpointRepository,
    ErrorLogRepository,
    IdentityRepository,
    NodeRepository,
    ProgressRepository,
)
from .normalize import normalize_title

logger = logging.getLogger(__name__)

PHASE = "identity"
CANONICAL_PHASE = "identity:canonical"

Normalizer = Callable[[str], str]
PinnedPredicate = Callable[[Node], bool]
RepresentativeKey = Tuple[int, int, int, int]


def representative_key(node: Node, pinned: bool) -> RepresentativeKey:
    """Sort key whose minimum is the cluster representative."""
    return (0 if pinned else 1, -node.level, 0 if node.is_branch else 1, node.id)


@dataclass
class IdentityResolution:
    representative_of: Dict[int, int]
    canonical_nodes: List[Node]
    clusters: Dict[str, List[int]]


class ClusterAccumulator:
    """Streaming running-minimum representative selection."""

    def __init__(self, normalize: Normalizer = normalize_title, is_pinned: Optional[PinnedPredicate] = None):
        self.normalize = normalize
        self.is_pinned = is_pinned
        self.titles: List[str] = []
        self.best: List[Tuple[RepresentativeKey, Node]] = []
        self.members: List[List[int]] = []
        self.cluster_of: Dict[int, int] = {}
        self._index: Dict[str, int] = {}

    def add(self, node: Node) -> None:
        if node.id in self.cluster_of:
            return
        title = self.normalize(node.label)
        pinned = bool(self.is_pinned(node)) if self.is_pinned else False
        key = representative_key(node, pinned)
        idx = self._index.get(title)
        if idx is None:
            idx = len(self.titles)
            self._index[title] = idx
            self.titles.append(title)
            self.best.append((key, node))
            self.members.append([])
        elif key < self.best[idx][0]:
            self.best[idx] = (key, node)
        self.members[idx].append(node.id)
        self.cluster_of[node.id] = idx

    def representative(self, page_id: int) -> int:
        return self.best[self.cluster_of[page_id]][1].id

    def representative_of(self) -> Dict[int, int]:
        return {page_id: self.best[idx][1].id for page_id, idx in self.cluster_of.items()}

    def resolution(self) -> IdentityResolution:
        return IdentityResolution(
            representative_of=self.representative_of(),
            canonical_nodes=sorted((node for _, node in self.best), key=lambda n: n.id),
            clusters={title: sorted(ids) for title, ids in zip(self.titles, self.members)},
        )


def resolve_identities(
    nodes: Iterable[Node],
    normalize: Normalizer = normalize_title,
    is_pinned: Optional[PinnedPredicate] = None,
) -> IdentityResolution:
    """Cluster nodes by normalized title and pick one representative per cluster."""
    acc = ClusterAccumulator(normalize, is_pinned)
    for node in nodes:
        acc.add(node)
    return acc.resolution()


@dataclass
class IdentityResult:
    representative_of: Dict[int, int]
    clusters: int
    members_written: int = 0
    canonical_written: int = 0
    checkpoint: Optional[BuildCheckpoint] = None
    canonical_checkpoint: Optional[BuildCheckpoint] = None
    orphans: List[int] = field(default_factory=list)


class IdentityResolver:
    """Writes identity_members and canonical_nodes from the materialized hierarchy."""

    def __init__(
        self,
        db: DatabaseManager,
        settings: Optional[IdentitySettings] = None,
        normalize: Normalizer = normalize_title,
        is_pinned: Optional[PinnedPredicate] = None,
        retry: Optional[RetrySettings] = None,
    ):
        self.db = db
        self.settings = settings or IdentitySettings()
        self.normalize = normalize
        self.retry = retry or RetrySettings()

        if is_pinned is None and self.settings.pinned_max_level is not None:
            pinned_max_level = self.settings.pinned_max_level

            def is_pinned(node: Node) -> bool:
                return node.level <= pinned_max_level

        if self.settings.require_pinned and is_pinned is None:
            raise ConfigurationError(
                "identity.require_pinned is set but no pinned predicate or pinned_max_level was given",
                phase=PHASE,
            )
        self.is_pinned = is_pinned

    async def resolve(self, checkpoint: Optional[BuildCheckpoint] = None) -> IdentityResult:
        """
        Resolve identities for every materialized node.

        Args:
            checkpoint: Member-writing position to resume from; loaded when None

        Returns:
            IdentityResult with the complete representative mapping
        """
        started = perf_counter()
        acc, parent_of = await self._scan_nodes()
        logger.info(
            "Scanned %d nodes into %d identity clusters in %.2fs",
            len(acc.cluster_of),
            len(acc.titles),
            perf_counter() - started,
        )

        async with self.db.session() as session:
            checkpoints = CheckpointRepository(session)
            if checkpoint is None:
                checkpoint = await checkpoints.get(PHASE)
            canonical_checkpoint = await checkpoints.get(CANONICAL_PHASE)

        result = IdentityResult(representative_of=acc.representative_of(), clusters=len(acc.titles))
        result.checkpoint = await self._write_members(acc, checkpoint or BuildCheckpoint.start(PHASE), result)
        result.canonical_checkpoint = await self._write_canonical(
            acc, parent_of, canonical_checkpoint or BuildCheckpoint.start(CANONICAL_PHASE), result
        )
        logger.info(
            "Identity resolution done: %d members, %d canonical nodes written in %.2fs",
            result.members_written,
            result.canonical_written,
            perf_counter() - started,
        )
        return result

    async def _scan_nodes(self) -> Tuple[ClusterAccumulator, Dict[int, Optional[int]]]:
        acc = ClusterAccumulator(self.normalize, self.is_pinned)
        parent_of: Dict[int, Optional[int]] = {}
        async with self.db.session() as session:
            nodes = NodeRepository(session)
            after_id = -1
            while True:
                page = await nodes.nodes_page(after_id, self.settings.batch_size)
                if not page:
                    break
                for record in page:
                    node = record.to_node()
                    acc.add(node)
                    parent_of[node.id] = node.parent_id
                after_id = page[-1].page_id
        return acc, parent_of

    def _batches(self, ids: List[int], after: Optional[int]) -> Iterable[List[int]]:
        pending = [i for i in ids if after is None or i > after]
        size = self.settings.batch_size
        for start in range(0, len(pending), size):
            yield pending[start : start + size]

    async def _commit_batch(self, phase, checkpoint, unit, batch, write) -> BuildCheckpoint:
        advanced = checkpoint.advance(unit, cursor=batch[-1])

        async def attempt() -> None:
            began = perf_counter()
            async with self.db.session() as session:
                await write(session)
                await ProgressRepository(session).record(
                    phase, f"batch_{unit}", len(batch), perf_counter() - began, batch_size=self.settings.batch_size
                )
                await CheckpointRepository(session).save(advanced)

        try:
            await run_with_retries(
                attempt, policy=self.retry, phase=phase, unit=str(unit), key_range=(batch[0], batch[-1] + 1)
            )
        except Exception as exc:
            logger.error("%s batch %d failed: %s", phase, unit, exc)
            await self._record_failure(phase, unit, exc, checkpoint.fail())
            raise
        return advanced

    async def _write_members(self, acc: ClusterAccumulator, checkpoint: BuildCheckpoint, result) -> BuildCheckpoint:
        if checkpoint.is_done:
            logger.info("Identity members already written; skipping")
            return checkpoint

        unit = checkpoint.next_unit
        for batch in self._batches(sorted(acc.cluster_of), checkpoint.cursor):
            rows = [
                {
                    "page_id": page_id,
                    "normalized_title": acc.titles[acc.cluster_of[page_id]],
                    "representative_id": acc.representative(page_id),
                }
                for page_id in batch
            ]

            async def write(session, rows=rows):
                await IdentityRepository(session).insert_members(rows)

            checkpoint = await self._commit_batch(PHASE, checkpoint, unit, batch, write)
            result.members_written += len(rows)
            unit += 1

        checkpoint = checkpoint.complete()
        async with self.db.session() as session:
            await CheckpointRepository(session).save(checkpoint)
        return checkpoint

    def _remap_parent(
        self, rep: Node, acc: ClusterAccumulator, parent_of: Dict[int, Optional[int]]
    ) -> Tuple[Optional[int], Optional[int]]:
        """
        Representative of the nearest ancestor whose representative sits
        strictly above rep's level. Canonical levels then decrease along
        every parent chain, so the canonical hierarchy stays acyclic; a
        chain with no such ancestor makes rep a canonical root.

        Returns (parent_id, missing_ancestor_id).
        """
        current = parent_of.get(rep.id)
        hops = 0
        while current is not None and hops < self.settings.parent_hop_limit:
            if current not in acc.cluster_of:
                return None, current
            ancestor_rep = acc.best[acc.cluster_of[current]][1]
            if ancestor_rep.id != rep.id and ancestor_rep.level < rep.level:
                return ancestor_rep.id, None
            current = parent_of.get(current)
            hops += 1
        return None, None

    async def _write_canonical(
        self,
        acc: ClusterAccumulator,
        parent_of: Dict[int, Optional[int]],
        checkpoint: BuildCheckpoint,
        result: IdentityResult,
    ) -> BuildCheckpoint:
        if checkpoint.is_done:
            logger.info("Canonical nodes already written; skipping")
            return checkpoint

        by_rep = {node.id: (idx, node) for idx, (_, node) in enumerate(acc.best)}
        unit = checkpoint.next_unit
        for batch in self._batches(sorted(by_rep), checkpoint.cursor):
            rows = []
            orphans: List[Tuple[int, int]] = []
            for rep_id in batch:
                idx, node = by_rep[rep_id]
                parent_id, missing = self._remap_parent(node, acc, parent_of)
                if missing is not None:
                    orphans.append((rep_id, missing))
                rows.append(
                    {
                        "page_id": node.id,
                        "title": acc.titles[idx],
                        "raw_title": node.label,
                        "namespace": node.namespace,
                        "kind": node.kind.value,
                        "root_id": node.domain_root_id,
                        "level": node.level,
                        "parent_id": parent_id,
                        "cluster_size": len(acc.members[idx]),
                    }
                )

            async def write(session, rows=rows, orphans=orphans, unit=unit):
                await IdentityRepository(session).insert_canonical(rows)
                errors = ErrorLogRepository(session)
                for rep_id, missing in orphans:
                    error = DataIntegrityError(
                        f"Ancestor {missing} of canonical node {rep_id} is not a materialized node",
                        key=missing,
                        phase=CANONICAL_PHASE,
                        unit=str(unit),
                    )
                    logger.warning("%s", error)
                    await errors.record(CANONICAL_PHASE, type(error).__name__, error.message, unit=str(unit), key=missing)

            checkpoint = await self._commit_batch(CANONICAL_PHASE, checkpoint, unit, batch, write)
            result.canonical_written += len(rows)
            result.orphans.extend(missing for _, missing in orphans)
            unit += 1

        checkpoint = checkpoint.complete()
        async with self.db.session() as session:
            await CheckpointRepository(session).save(checkpoint)
        return checkpoint

    async def _record_failure(self, phase: str, unit: int, exc: Exception, failed: BuildCheckpoint) -> None:
        try:
            async with self.db.session() as session:
                await ErrorLogRepository(session).record(phase, type(exc).__name__, str(exc), unit=str(unit))
                await CheckpointRepository(session).save(failed)
        except SQLAlchemyError as log_exc:
            logger.warning("Failed to record %s error for batch %d: %s", phase, unit, log_exc)
