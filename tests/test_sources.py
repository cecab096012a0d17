"""
Tests for the DataFrame and SQL graph sources.
"""

import pandas as pd
import pytest
import pytest_asyncio
from sqlalchemy import insert

from wikidag.common.errors import ConfigurationError
from wikidag.source.base import AliasEdge, MembershipEdge, MembershipKind, NodeMeta, to_db_title
from wikidag.source.frames import FrameGraphSource
from wikidag.source.sql import (
    SqlGraphSource,
    categorylinks_table,
    page_table,
    pagelinks_table,
    redirect_table,
)

PAGES = [
    {"page_id": 1, "page_title": "Physics", "page_namespace": 14, "page_len": 10,
     "page_content_model": "wikitext", "page_is_redirect": False},
    {"page_id": 2, "page_title": "Atom", "page_namespace": 0, "page_len": 250,
     "page_content_model": "wikitext", "page_is_redirect": False},
    {"page_id": 3, "page_title": "Quantum_mechanics", "page_namespace": 14, "page_len": 30,
     "page_content_model": "wikitext", "page_is_redirect": False},
    {"page_id": 7, "page_title": "Atoms", "page_namespace": 0, "page_len": 5,
     "page_content_model": "wikitext", "page_is_redirect": True},
]
CATEGORYLINKS = [
    {"cl_from": 2, "cl_target_id": 1, "cl_type": "page"},
    {"cl_from": 3, "cl_target_id": 1, "cl_type": "subcat"},
    {"cl_from": 2, "cl_target_id": 3, "cl_type": "page"},
]
PAGELINKS = [
    {"pl_from": 2, "pl_target_id": 3},
    {"pl_from": 3, "pl_target_id": 2},
    {"pl_from": 7, "pl_target_id": 2},
]
REDIRECTS = [{"rd_from": 7, "rd_namespace": 0, "rd_title": "Atom", "rd_fragment": "Structure"}]


def test_to_db_title():
    assert to_db_title("Quantum mechanics") == "Quantum_mechanics"


def frame_source() -> FrameGraphSource:
    return FrameGraphSource(
        pd.DataFrame(PAGES),
        pd.DataFrame(CATEGORYLINKS),
        pd.DataFrame(PAGELINKS),
        pd.DataFrame(REDIRECTS),
    )


async def sql_source(path) -> SqlGraphSource:
    source = SqlGraphSource(url=f"sqlite+aiosqlite:///{path}")
    await source.create_tables()
    async with source.engine.begin() as conn:
        await conn.execute(insert(page_table), PAGES)
        await conn.execute(insert(categorylinks_table), CATEGORYLINKS)
        await conn.execute(insert(pagelinks_table), PAGELINKS)
        await conn.execute(insert(redirect_table), REDIRECTS)
    return source


@pytest_asyncio.fixture(params=["frames", "sql"])
async def graph_source(request, tmp_path):
    """Both source implementations over the same rows."""
    if request.param == "frames":
        source = frame_source()
    else:
        source = await sql_source(tmp_path / "source.db")
    yield source
    await source.close()


class TestGraphSourceContract:
    @pytest.mark.asyncio
    async def test_lookup_nodes(self, graph_source):
        found = await graph_source.lookup_nodes([2, 7, 99])

        assert set(found) == {2, 7}
        assert found[2] == NodeMeta(2, "Atom", 0, length=250, content_model="wikitext", is_redirect=False)
        assert found[7].is_redirect is True
        assert await graph_source.lookup_nodes([]) == {}

    @pytest.mark.asyncio
    async def test_find_by_title_uses_namespace(self, graph_source):
        category = await graph_source.find_by_title("Quantum mechanics", 14)

        assert category.page_id == 3
        assert await graph_source.find_by_title("Quantum mechanics", 0) is None

    @pytest.mark.asyncio
    async def test_children_of(self, graph_source):
        edges = await graph_source.children_of([1])

        assert edges == [
            MembershipEdge(2, 1, MembershipKind.PAGE),
            MembershipEdge(3, 1, MembershipKind.SUBCAT),
        ]

    @pytest.mark.asyncio
    async def test_membership_scan_window(self, graph_source):
        assert await graph_source.membership_bounds() == (2, 4)
        edges = await graph_source.scan_membership(2, 3)
        assert [(e.member_id, e.category_id) for e in edges] == [(2, 1), (2, 3)]

    @pytest.mark.asyncio
    async def test_link_scan_window(self, graph_source):
        assert await graph_source.link_bounds() == (2, 8)
        assert await graph_source.scan_links(3, 8) == [(3, 2), (7, 2)]

    @pytest.mark.asyncio
    async def test_alias_scan(self, graph_source):
        assert await graph_source.alias_bounds() == (7, 8)
        assert await graph_source.scan_aliases(7, 8) == [
            AliasEdge(from_id=7, target_title="Atom", target_namespace=0, fragment="Structure")
        ]


class TestFrameGraphSource:
    def test_missing_columns(self):
        with pytest.raises(ConfigurationError):
            FrameGraphSource(pd.DataFrame({"page_id": [1]}), pd.DataFrame(CATEGORYLINKS))

    @pytest.mark.asyncio
    async def test_optional_frames_default_to_empty(self):
        source = FrameGraphSource(pd.DataFrame(PAGES), pd.DataFrame(CATEGORYLINKS))

        assert await source.link_bounds() is None
        assert await source.alias_bounds() is None

    @pytest.mark.asyncio
    async def test_from_parquet(self, tmp_path):
        pd.DataFrame(PAGES).to_parquet(tmp_path / "page.parquet")
        pd.DataFrame(CATEGORYLINKS).to_parquet(tmp_path / "categorylinks.parquet")
        pd.DataFrame(PAGELINKS).to_parquet(tmp_path / "pagelinks.parquet")

        source = FrameGraphSource.from_parquet(str(tmp_path))

        assert (await source.find_by_title("Physics", 14)).page_id == 1
        assert await source.scan_links(2, 3) == [(2, 3)]
        assert await source.alias_bounds() is None

    def test_from_parquet_requires_core_tables(self, tmp_path):
        pd.DataFrame(PAGES).to_parquet(tmp_path / "page.parquet")
        with pytest.raises(ConfigurationError):
            FrameGraphSource.from_parquet(str(tmp_path))


def test_sql_source_needs_url_or_engine():
    with pytest.raises(ValueError):
        SqlGraphSource()
