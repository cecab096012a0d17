"""
Pipeline orchestrator to run all build stages sequentially.

This module orchestrates the full build:
1. BFS DAG construction
2. Identity resolution
3. Associative edge merging

Each stage resumes from its own checkpoints, so rerunning the pipeline
after a failure continues where the failed stage stopped.
"""

import asyncio
import logging
import sys
from dataclasses import dataclass
from time import perf_counter
from typing import Callable, Optional

from ..dag.builder import BFSDagBuilder, DagBuildResult, ExcludePredicate
from ..database.connection import DatabaseManager
from ..identity.normalize import normalize_title
from ..identity.resolver import IdentityResolver, IdentityResult, PinnedPredicate
from ..links.merger import AssociativeEdgeMerger, MergeResult
from ..links.streams import (
    AliasEdgeStream,
    AliasResolver,
    ChainedEdgeStream,
    EdgeStream,
    LinkEdgeStream,
    MembershipEdgeStream,
)
from ..source.base import GraphSource
from ..source.frames import FrameGraphSource
from ..source.sql import SqlGraphSource
from .config import CONFIG_PATH, PipelineSettings, SourceSettings, load_settings
from .errors import ConfigurationError, WikiDagError
from .logging_utils import setup_logging

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    dag: DagBuildResult
    identity: IdentityResult
    merge: MergeResult
    elapsed_sec: float


def create_source(settings: SourceSettings) -> GraphSource:
    """Build the configured graph source (Parquet directory or SQL database)."""
    if settings.parquet_dir:
        return FrameGraphSource.from_parquet(settings.parquet_dir)
    if settings.url:
        return SqlGraphSource(url=settings.url)
    raise ConfigurationError("source.url or source.parquet_dir must be configured")


def edge_streams(source: GraphSource, alias_resolver: Optional[AliasResolver] = None):
    """Wire link edges as source1 and membership edges as source2."""
    source1: EdgeStream = LinkEdgeStream(source)
    if alias_resolver is not None:
        source1 = ChainedEdgeStream([source1, AliasEdgeStream(source, alias_resolver)])
    return source1, MembershipEdgeStream(source)


def _banner(message: str, *args) -> None:
    logger.info("=" * 80)
    logger.info(message, *args)
    logger.info("=" * 80)


async def run_pipeline(
    settings: PipelineSettings,
    db: DatabaseManager,
    source: GraphSource,
    normalize: Callable[[str], str] = normalize_title,
    exclude: Optional[ExcludePredicate] = None,
    is_pinned: Optional[PinnedPredicate] = None,
    alias_resolver: Optional[AliasResolver] = None,
) -> PipelineResult:
    """
    Run hierarchy, identity and link stages in order.

    Args:
        settings: Validated pipeline settings
        db: Result store
        source: Raw relations
        normalize: Title normalizer for identity resolution
        exclude: Category/page exclusion predicate for the hierarchy build
        is_pinned: Pinned-tier predicate for representative selection
        alias_resolver: Optional redirect resolver adding alias edges to source1

    Returns:
        PipelineResult with each stage's result
    """
    started = perf_counter()
    # Fails on configuration errors before any stage writes.
    resolver = IdentityResolver(
        db, settings.identity, normalize=normalize, is_pinned=is_pinned, retry=settings.retries
    )

    _banner("Starting stage: dag (max_level=%d)", settings.dag.max_level)
    dag_result = await BFSDagBuilder(db, source, settings.dag, settings.retries, exclude=exclude).build()

    _banner("Starting stage: identity")
    identity_result = await resolver.resolve()

    _banner("Starting stage: links")
    source1, source2 = edge_streams(source, alias_resolver)
    merge_result = await AssociativeEdgeMerger(db, settings.merge, settings.retries).merge(
        source1, source2, identity_result.representative_of
    )

    elapsed = perf_counter() - started
    _banner("Pipeline completed in %.2f seconds (%.1f minutes)", elapsed, elapsed / 60)
    return PipelineResult(dag_result, identity_result, merge_result, elapsed)


async def run_from_config(config_path: str = CONFIG_PATH) -> PipelineResult:
    """Load settings, open the store and source, and run the pipeline."""
    settings = load_settings(config_path)
    db = DatabaseManager(database_url=settings.database_url)
    source = create_source(settings.source)
    try:
        await db.initialize()
        return await run_pipeline(settings, db, source)
    finally:
        await source.close()
        await db.close()


def main(config_path: str = CONFIG_PATH) -> int:
    setup_logging(config_path)
    try:
        result = asyncio.run(run_from_config(config_path))
    except WikiDagError as exc:
        logger.error("Pipeline failed: %s", exc)
        return 1
    logger.info(
        "Built %d hierarchy nodes, %d identity clusters, %d associative links",
        result.dag.nodes_added,
        result.identity.clusters,
        result.merge.links,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
