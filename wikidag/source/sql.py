"""
Graph source reading MediaWiki-shaped tables through SQLAlchemy Core.

The raw relations live in their own database (often a replica of the
dump import), so this source owns a separate async engine and metadata.
"""

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    func,
    select,
)
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from ..database.connection import to_async_url
from .base import AliasEdge, GraphSource, MembershipEdge, MembershipKind, NodeMeta, to_db_title

logger = logging.getLogger(__name__)

IN_CLAUSE_CHUNK = 500

source_metadata = MetaData()

page_table = Table(
    "page",
    source_metadata,
    Column("page_id", BigInteger, primary_key=True, autoincrement=False),
    Column("page_namespace", Integer, nullable=False),
    Column("page_title", String(255), nullable=False),
    Column("page_len", Integer, nullable=False, default=0),
    Column("page_content_model", String(32), nullable=True),
    Column("page_is_redirect", Boolean, nullable=False, default=False),
)

categorylinks_table = Table(
    "categorylinks",
    source_metadata,
    Column("cl_from", BigInteger, primary_key=True, autoincrement=False),
    Column("cl_target_id", BigInteger, primary_key=True, autoincrement=False),
    Column("cl_type", String(6), nullable=False),
)

pagelinks_table = Table(
    "pagelinks",
    source_metadata,
    Column("pl_from", BigInteger, primary_key=True, autoincrement=False),
    Column("pl_target_id", BigInteger, primary_key=True, autoincrement=False),
)

redirect_table = Table(
    "redirect",
    source_metadata,
    Column("rd_from", BigInteger, primary_key=True, autoincrement=False),
    Column("rd_namespace", Integer, nullable=False),
    Column("rd_title", String(255), nullable=False),
    Column("rd_fragment", String(255), nullable=True),
)


def _chunks(values: List[int], size: int = IN_CLAUSE_CHUNK):
    for start in range(0, len(values), size):
        yield values[start : start + size]


def _meta(row) -> NodeMeta:
    return NodeMeta(
        page_id=int(row.page_id),
        title=row.page_title,
        namespace=int(row.page_namespace),
        length=int(row.page_len or 0),
        content_model=row.page_content_model,
        is_redirect=bool(row.page_is_redirect),
    )


class SqlGraphSource(GraphSource):
    """GraphSource over `page`, `categorylinks`, `pagelinks` and `redirect` tables."""

    def __init__(self, url: Optional[str] = None, engine: Optional[AsyncEngine] = None, echo: bool = False):
        if engine is None and not url:
            raise ValueError("SqlGraphSource needs a database url or an engine")
        self._owns_engine = engine is None
        self.engine = engine or create_async_engine(to_async_url(url), echo=echo)

    async def create_tables(self) -> None:
        """Create the raw tables if missing (local extracts and tests)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(source_metadata.create_all)

    async def close(self) -> None:
        if self._owns_engine:
            await self.engine.dispose()

    async def _fetch(self, stmt) -> list:
        async with self.engine.connect() as conn:
            result = await conn.execute(stmt)
            return result.all()

    async def _bounds(self, column) -> Optional[Tuple[int, int]]:
        rows = await self._fetch(select(func.min(column), func.max(column)))
        lo, hi = rows[0]
        if lo is None:
            return None
        return int(lo), int(hi) + 1

    async def lookup_nodes(self, page_ids: Iterable[int]) -> Dict[int, NodeMeta]:
        found: Dict[int, NodeMeta] = {}
        for chunk in _chunks(sorted(set(page_ids))):
            rows = await self._fetch(select(page_table).where(page_table.c.page_id.in_(chunk)))
            for row in rows:
                found[int(row.page_id)] = _meta(row)
        return found

    async def find_by_title(self, title: str, namespace: int) -> Optional[NodeMeta]:
        rows = await self._fetch(
            select(page_table)
            .where(
                page_table.c.page_namespace == namespace,
                page_table.c.page_title == to_db_title(title),
            )
            .limit(1)
        )
        return _meta(rows[0]) if rows else None

    async def children_of(self, category_ids: Iterable[int]) -> List[MembershipEdge]:
        edges: List[MembershipEdge] = []
        for chunk in _chunks(sorted(set(category_ids))):
            rows = await self._fetch(
                select(categorylinks_table)
                .where(categorylinks_table.c.cl_target_id.in_(chunk))
                .order_by(categorylinks_table.c.cl_target_id, categorylinks_table.c.cl_from)
            )
            edges.extend(
                MembershipEdge(int(r.cl_from), int(r.cl_target_id), MembershipKind(r.cl_type))
                for r in rows
            )
        return edges

    async def membership_bounds(self) -> Optional[Tuple[int, int]]:
        return await self._bounds(categorylinks_table.c.cl_from)

    async def scan_membership(self, lo: int, hi: int) -> List[MembershipEdge]:
        rows = await self._fetch(
            select(categorylinks_table)
            .where(categorylinks_table.c.cl_from >= lo, categorylinks_table.c.cl_from < hi)
            .order_by(categorylinks_table.c.cl_from, categorylinks_table.c.cl_target_id)
        )
        return [MembershipEdge(int(r.cl_from), int(r.cl_target_id), MembershipKind(r.cl_type)) for r in rows]

    async def link_bounds(self) -> Optional[Tuple[int, int]]:
        return await self._bounds(pagelinks_table.c.pl_from)

    async def scan_links(self, lo: int, hi: int) -> List[Tuple[int, int]]:
        rows = await self._fetch(
            select(pagelinks_table.c.pl_from, pagelinks_table.c.pl_target_id)
            .where(pagelinks_table.c.pl_from >= lo, pagelinks_table.c.pl_from < hi)
            .order_by(pagelinks_table.c.pl_from, pagelinks_table.c.pl_target_id)
        )
        return [(int(r.pl_from), int(r.pl_target_id)) for r in rows]

    async def alias_bounds(self) -> Optional[Tuple[int, int]]:
        return await self._bounds(redirect_table.c.rd_from)

    async def scan_aliases(self, lo: int, hi: int) -> List[AliasEdge]:
        rows = await self._fetch(
            select(redirect_table)
            .where(redirect_table.c.rd_from >= lo, redirect_table.c.rd_from < hi)
            .order_by(redirect_table.c.rd_from)
        )
        return [
            AliasEdge(
                from_id=int(r.rd_from),
                target_title=r.rd_title,
                target_namespace=int(r.rd_namespace),
                fragment=r.rd_fragment or None,
            )
            for r in rows
        ]
