"""
Associative edge merger.

Two raw edge streams are rewritten onto cluster representatives and merged
into one deduplicated link table tagged by provenance:
- each stream is scanned in fixed [lo, hi) windows of from_id
- resolved pairs are appended to link_staging with insert-if-absent
- one grouped INSERT ... SELECT classifies every pair as source1/source2/both

Windows run in waves of up to `max_workers` concurrent tasks and the
per-source checkpoint advances after each complete wave.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from time import perf_counter
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from ..common.config import MergeSettings, RetrySettings
from ..common.errors import DataIntegrityError
from ..common.retry import run_with_retries
from ..common.types import BuildCheckpoint, LinkType
from ..database.connection import DatabaseManager
from ..database.repository import (
    CheckpointRepository,
    ErrorLogRepository,
    LinkRepository,
    ProgressRepository,
)
from .streams import EdgeStream

logger = logging.getLogger(__name__)

PHASE_SOURCE1 = "merge:source1"
PHASE_SOURCE2 = "merge:source2"
PHASE_CLASSIFY = "merge:classify"
MERGE_PHASES = (PHASE_SOURCE1, PHASE_SOURCE2, PHASE_CLASSIFY)

PreFilter = Callable[[int], bool]


@dataclass
class WindowStats:
    provenance: str
    lo: int
    hi: int
    scanned: int = 0
    filtered: int = 0
    orphans: int = 0
    self_loops: int = 0
    staged: int = 0
    elapsed_sec: float = 0.0


@dataclass
class MergeResult:
    links: int = 0
    counts: Dict[str, int] = field(default_factory=dict)
    scanned: Dict[str, int] = field(default_factory=dict)
    staged: Dict[str, int] = field(default_factory=dict)
    filtered: int = 0
    orphans: int = 0
    self_loops: int = 0
    collapsed: Optional[int] = None
    checkpoints: Dict[str, BuildCheckpoint] = field(default_factory=dict)

    def add_window(self, stats: WindowStats) -> None:
        self.scanned[stats.provenance] = self.scanned.get(stats.provenance, 0) + stats.scanned
        self.staged[stats.provenance] = self.staged.get(stats.provenance, 0) + stats.staged
        self.filtered += stats.filtered
        self.orphans += stats.orphans
        self.self_loops += stats.self_loops


def window_ranges(lo: int, hi: int, width: int, start: Optional[int] = None) -> List[Tuple[int, int]]:
    """Fixed [lo, hi) windows of `width` aligned to `lo`, beginning at `start`."""
    first = lo if start is None else max(lo, start)
    aligned = lo + ((first - lo) // width) * width
    return [(w, min(w + width, hi)) for w in range(aligned, hi, width) if min(w + width, hi) > first]


class AssociativeEdgeMerger:
    """Windowed, checkpointed merge of two edge streams into associative_links."""

    def __init__(
        self,
        db: DatabaseManager,
        settings: Optional[MergeSettings] = None,
        retry: Optional[RetrySettings] = None,
    ):
        self.db = db
        self.settings = settings or MergeSettings()
        self.retry = retry or RetrySettings()

    async def merge(
        self,
        source1: EdgeStream,
        source2: EdgeStream,
        representative_of: Mapping[int, int],
        pre_filter: Optional[PreFilter] = None,
        rebuild: Optional[bool] = None,
    ) -> MergeResult:
        """
        Merge both streams into associative_links.

        Args:
            source1: First edge stream (page links)
            source2: Second edge stream (category memberships)
            representative_of: Total node -> representative mapping
            pre_filter: Endpoint predicate applied before resolution;
                defaults to membership in representative_of
            rebuild: Discard staged and classified links first;
                defaults to merge.rebuild

        Returns:
            MergeResult with per-type link counts and window statistics
        """
        rebuild = self.settings.rebuild if rebuild is None else rebuild
        if pre_filter is None:
            def pre_filter(page_id: int) -> bool:
                return page_id in representative_of

        result = MergeResult()
        checkpoints = await self._prepare(rebuild)

        if checkpoints[PHASE_CLASSIFY].is_done:
            logger.info("Associative links already classified; pass rebuild=True to rebuild")
            async with self.db.session() as session:
                result.counts = await LinkRepository(session).counts_by_type()
            result.links = sum(result.counts.values())
            result.checkpoints = checkpoints
            return result

        for phase, provenance, stream in (
            (PHASE_SOURCE1, LinkType.SOURCE1, source1),
            (PHASE_SOURCE2, LinkType.SOURCE2, source2),
        ):
            checkpoints[phase] = await self._stage_stream(
                phase, provenance, stream, checkpoints[phase], representative_of, pre_filter, result
            )

        checkpoints[PHASE_CLASSIFY] = await self._classify(checkpoints[PHASE_CLASSIFY], result)
        result.checkpoints = checkpoints
        logger.info(
            "Merged %d associative links %s (filtered=%d orphans=%d self_loops=%d)",
            result.links,
            result.counts,
            result.filtered,
            result.orphans,
            result.self_loops,
        )
        return result

    async def _prepare(self, rebuild: bool) -> Dict[str, BuildCheckpoint]:
        async with self.db.session() as session:
            repo = CheckpointRepository(session)
            loaded = {phase: await repo.get(phase) for phase in MERGE_PHASES}
            fresh = all(cp is None for cp in loaded.values())
            if rebuild or fresh:
                logger.info("Starting associative link build from scratch (rebuild=%s)", rebuild)
                await LinkRepository(session).clear()
                await repo.reset(MERGE_PHASES)
                return {phase: BuildCheckpoint.start(phase) for phase in MERGE_PHASES}
        return {phase: cp or BuildCheckpoint.start(phase) for phase, cp in loaded.items()}

    async def _stage_stream(
        self,
        phase: str,
        provenance: LinkType,
        stream: EdgeStream,
        checkpoint: BuildCheckpoint,
        representative_of: Mapping[int, int],
        pre_filter: PreFilter,
        result: MergeResult,
    ) -> BuildCheckpoint:
        if checkpoint.is_done:
            logger.info("%s already staged; skipping", stream.name)
            return checkpoint

        bounds = await stream.key_bounds()
        windows = []
        if bounds is not None:
            windows = window_ranges(bounds[0], bounds[1], self.settings.window_size, checkpoint.cursor)
        logger.info(
            "Staging %s as %s: %d windows of width %d from %s",
            stream.name,
            provenance.value,
            len(windows),
            self.settings.window_size,
            checkpoint.cursor if checkpoint.cursor is not None else (bounds[0] if bounds else "-"),
        )

        unit = checkpoint.next_unit
        width = self.settings.max_workers
        for start in range(0, len(windows), width):
            wave = windows[start : start + width]
            outcomes = await asyncio.gather(
                *(
                    self._run_window(phase, provenance, stream, lo, hi, representative_of, pre_filter)
                    for lo, hi in wave
                ),
                return_exceptions=True,
            )
            failures = [o for o in outcomes if isinstance(o, BaseException)]
            for outcome in outcomes:
                if not isinstance(outcome, BaseException):
                    result.add_window(outcome)
            if failures:
                logger.error("%s wave %d failed: %s", phase, unit, failures[0])
                await self._record_failure(phase, unit, failures[0], checkpoint.fail())
                raise failures[0]

            checkpoint = checkpoint.advance(unit, cursor=wave[-1][1])
            async with self.db.session() as session:
                await CheckpointRepository(session).save(checkpoint)
            unit += 1

        checkpoint = checkpoint.complete()
        async with self.db.session() as session:
            await CheckpointRepository(session).save(checkpoint)
        return checkpoint

    async def _run_window(
        self,
        phase: str,
        provenance: LinkType,
        stream: EdgeStream,
        lo: int,
        hi: int,
        representative_of: Mapping[int, int],
        pre_filter: PreFilter,
    ) -> WindowStats:
        unit = f"{lo}-{hi}"

        async def attempt() -> WindowStats:
            started = perf_counter()
            stats = WindowStats(provenance=provenance.value, lo=lo, hi=hi)
            edges = await stream.scan(lo, hi)
            stats.scanned = len(edges)

            pairs = set()
            orphans: List[Tuple[int, int, int]] = []
            diagnostics: Dict[Tuple[int, int], dict] = {}
            for edge in edges:
                if self.settings.prefilter and not (pre_filter(edge.from_id) and pre_filter(edge.to_id)):
                    stats.filtered += 1
                    continue
                from_rep = representative_of.get(edge.from_id)
                to_rep = representative_of.get(edge.to_id)
                if from_rep is None or to_rep is None:
                    missing = edge.from_id if from_rep is None else edge.to_id
                    orphans.append((edge.from_id, edge.to_id, missing))
                    continue
                if self.settings.diagnostics:
                    diagnostics[(edge.from_id, edge.to_id)] = {
                        "provenance": provenance.value,
                        "from_id": edge.from_id,
                        "to_id": edge.to_id,
                        "from_rep": from_rep,
                        "to_rep": to_rep,
                        "self_loop": from_rep == to_rep,
                        "collapsed": False,
                    }
                if from_rep == to_rep:
                    stats.self_loops += 1
                    continue
                pairs.add((from_rep, to_rep))

            stats.orphans = len(orphans)
            stats.staged = len(pairs)
            async with self.db.session() as session:
                # A window rerun after a failed wave replaces its earlier orphan and progress rows.
                progress = ProgressRepository(session)
                await progress.clear_unit(phase, unit)
                await ErrorLogRepository(session).clear_unit(phase, unit, DataIntegrityError.__name__)
                links = LinkRepository(session)
                await links.stage(sorted(pairs), provenance)
                if diagnostics:
                    await links.stage_consolidation(list(diagnostics.values()))
                if orphans:
                    await self._record_orphans(session, phase, unit, lo, hi, orphans)
                stats.elapsed_sec = perf_counter() - started
                await progress.record(phase, unit, stats.staged, stats.elapsed_sec)
            return stats

        return await run_with_retries(attempt, policy=self.retry, phase=phase, unit=unit, key_range=(lo, hi))

    async def _record_orphans(self, session, phase, unit, lo, hi, orphans) -> None:
        logger.warning(
            "%s window [%d, %d): skipping %d edges with unresolved endpoints", phase, lo, hi, len(orphans)
        )
        errors = ErrorLogRepository(session)
        for from_id, to_id, missing in orphans:
            error = DataIntegrityError(
                f"Edge {from_id}->{to_id} references a page outside the node universe",
                key=missing,
                phase=phase,
                unit=unit,
                key_range=(lo, hi),
            )
            logger.debug("%s", error)
            await errors.record(phase, type(error).__name__, error.message, unit=unit, key_range=(lo, hi), key=missing)

    async def _classify(self, checkpoint: BuildCheckpoint, result: MergeResult) -> BuildCheckpoint:
        done = checkpoint.advance(0).complete()

        async def attempt() -> Tuple[int, Optional[int], Dict[str, int]]:
            started = perf_counter()
            async with self.db.session() as session:
                links = LinkRepository(session)
                total = await links.classify()
                collapsed = await links.flag_collapsed() if self.settings.diagnostics else None
                counts = await links.counts_by_type()
                await ProgressRepository(session).record(PHASE_CLASSIFY, "classify", total, perf_counter() - started)
                await CheckpointRepository(session).save(done)
            return total, collapsed, counts

        try:
            result.links, result.collapsed, result.counts = await run_with_retries(
                attempt, policy=self.retry, phase=PHASE_CLASSIFY, unit="classify"
            )
        except Exception as exc:
            logger.error("Link classification failed: %s", exc)
            await self._record_failure(PHASE_CLASSIFY, 0, exc, checkpoint.fail())
            raise
        if result.collapsed is not None:
            logger.info("%d original edges collapsed onto a shared representative pair", result.collapsed)
        return done

    async def _record_failure(self, phase: str, unit: int, exc: BaseException, failed: BuildCheckpoint) -> None:
        try:
            async with self.db.session() as session:
                await ErrorLogRepository(session).record(phase, type(exc).__name__, str(exc), unit=str(unit))
                await CheckpointRepository(session).save(failed)
        except SQLAlchemyError as log_exc:
            logger.warning("Failed to record %s error for unit %d: %s", phase, unit, log_exc)
