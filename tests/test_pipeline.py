"""
End-to-end tests for the pipeline orchestrator.

This verifies that the orchestrator:
1. Runs dag -> identity -> links in order over one source
2. Wires the configured source and result store from config.yaml
3. Reports configuration failures through main()'s exit code
"""

import pandas as pd
import pytest
import yaml

from wikidag.common.config import DagSettings, MergeSettings, PipelineSettings, SourceSettings
from wikidag.common.errors import ConfigurationError
from wikidag.common.pipeline_orchestrator import (
    create_source,
    edge_streams,
    main,
    run_from_config,
    run_pipeline,
)
from wikidag.database.connection import DatabaseManager
from wikidag.database.repository import IdentityRepository, LinkRepository
from wikidag.links.streams import ChainedEdgeStream, LinkEdgeStream, MembershipEdgeStream
from wikidag.source.sql import SqlGraphSource

PAGES = [(1, "Science", 14), (2, "Atom", 0), (3, "Physics", 14), (4, "Energy", 0), (5, "Atom_(chemistry)", 0)]
MEMBERSHIPS = [(2, 1, "page"), (3, 1, "subcat"), (4, 3, "page"), (5, 3, "page")]
LINKS = [(2, 4), (4, 5), (5, 1)]

EXPECTED_LINKS = {
    (5, 4): "source1",
    (4, 5): "source1",
    (5, 1): "both",
    (3, 1): "source2",
    (4, 3): "source2",
    (5, 3): "source2",
}


@pytest.fixture
def pipeline_source(make_source):
    return make_source(PAGES, MEMBERSHIPS, LINKS)


def _settings(retries) -> PipelineSettings:
    return PipelineSettings(
        dag=DagSettings(seeds=("Science",), max_level=4),
        merge=MergeSettings(window_size=2),
        retries=retries,
    )


@pytest.mark.asyncio
async def test_run_pipeline_end_to_end(db, pipeline_source, fast_retry):
    result = await run_pipeline(_settings(fast_retry), db, pipeline_source)

    assert result.dag.nodes_added == 5
    assert result.identity.clusters == 4
    assert result.identity.representative_of[2] == 5
    assert result.merge.counts == {"both": 1, "source1": 2, "source2": 3}
    async with db.session() as session:
        links = {(l.from_rep_id, l.to_rep_id): l.link_type for l in await LinkRepository(session).get_all()}
        rep, members = await IdentityRepository(session).cluster("Atom")
    assert links == EXPECTED_LINKS
    assert (rep, members) == (5, [2, 5])


@pytest.mark.asyncio
async def test_rerun_is_idempotent(db, pipeline_source, fast_retry):
    await run_pipeline(_settings(fast_retry), db, pipeline_source)
    again = await run_pipeline(_settings(fast_retry), db, pipeline_source)

    assert again.dag.nodes_added == 0
    assert again.identity.members_written == 0
    assert again.merge.links == len(EXPECTED_LINKS)


def test_edge_streams_wiring(pipeline_source):
    source1, source2 = edge_streams(pipeline_source)
    assert isinstance(source1, LinkEdgeStream)
    assert isinstance(source2, MembershipEdgeStream)

    chained, _ = edge_streams(pipeline_source, alias_resolver=lambda alias: None)
    assert isinstance(chained, ChainedEdgeStream)


def test_create_source_requires_location():
    with pytest.raises(ConfigurationError):
        create_source(SourceSettings())


@pytest.mark.asyncio
async def test_create_source_from_url(tmp_path):
    source = create_source(SourceSettings(url=f"sqlite:///{tmp_path / 'raw.db'}"))
    try:
        assert isinstance(source, SqlGraphSource)
    finally:
        await source.close()


def _write_parquet(directory) -> None:
    directory.mkdir(parents=True)
    pd.DataFrame(PAGES, columns=["page_id", "page_title", "page_namespace"]).to_parquet(
        directory / "page.parquet"
    )
    pd.DataFrame(MEMBERSHIPS, columns=["cl_from", "cl_target_id", "cl_type"]).to_parquet(
        directory / "categorylinks.parquet"
    )
    pd.DataFrame(LINKS, columns=["pl_from", "pl_target_id"]).to_parquet(directory / "pagelinks.parquet")


def _write_config(tmp_path, source) -> str:
    config = {
        "database": {"url": f"sqlite+aiosqlite:///{tmp_path / 'wikidag.db'}"},
        "logging": {"level": "INFO"},
        "source": source,
        "dag": {"seeds": ["Science"], "max_level": 4},
        "merge": {"window_size": 2},
        "retries": {"max_retries": 2, "base_delay": 0.0, "max_delay": 0.0},
    }
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(config), encoding="utf-8")
    return str(path)


@pytest.mark.asyncio
async def test_run_from_config_with_parquet(tmp_path):
    _write_parquet(tmp_path / "raw")
    config_path = _write_config(tmp_path, {"parquet_dir": str(tmp_path / "raw")})

    result = await run_from_config(config_path)

    assert result.merge.links == len(EXPECTED_LINKS)
    db = DatabaseManager(database_url=f"sqlite+aiosqlite:///{tmp_path / 'wikidag.db'}")
    try:
        stats = await db.get_stats()
    finally:
        await db.close()
    assert stats["dag_nodes"] == 5
    assert stats["canonical_nodes"] == 4


def test_main_exit_codes(tmp_path):
    _write_parquet(tmp_path / "raw")
    assert main(_write_config(tmp_path, {"parquet_dir": str(tmp_path / "raw")})) == 0

    broken = tmp_path / "broken"
    broken.mkdir()
    assert main(_write_config(broken, {})) == 1
