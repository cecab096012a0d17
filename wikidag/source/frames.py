"""
In-memory graph source backed by pandas DataFrames.

Frames follow the MediaWiki dump column names:
- page: page_id, page_title, page_namespace[, page_len, page_content_model, page_is_redirect]
- categorylinks: cl_from, cl_target_id, cl_type
- pagelinks: pl_from, pl_target_id
- redirect: rd_from, rd_namespace, rd_title[, rd_fragment]

Each relation is sorted once by its scan key so window scans are two
binary searches and a slice.
"""

import logging
import os
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

from ..common.errors import ConfigurationError
from .base import AliasEdge, GraphSource, MembershipEdge, MembershipKind, NodeMeta, to_db_title

logger = logging.getLogger(__name__)

PAGE_COLUMNS = ("page_id", "page_title", "page_namespace")
CATEGORYLINK_COLUMNS = ("cl_from", "cl_target_id", "cl_type")
PAGELINK_COLUMNS = ("pl_from", "pl_target_id")
REDIRECT_COLUMNS = ("rd_from", "rd_namespace", "rd_title")


def _require_columns(df: pd.DataFrame, columns: Tuple[str, ...], name: str) -> None:
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise ConfigurationError(f"{name} frame is missing columns: {', '.join(missing)}")


def _empty(columns: Tuple[str, ...]) -> pd.DataFrame:
    return pd.DataFrame({c: pd.Series(dtype="int64") for c in columns})


def _window(keys: np.ndarray, lo: int, hi: int) -> Tuple[int, int]:
    return int(np.searchsorted(keys, lo, side="left")), int(np.searchsorted(keys, hi, side="left"))


def _bounds(keys: np.ndarray) -> Optional[Tuple[int, int]]:
    if len(keys) == 0:
        return None
    return int(keys[0]), int(keys[-1]) + 1


def _optional_str(value) -> Optional[str]:
    return value if isinstance(value, str) and value else None


class FrameGraphSource(GraphSource):
    """GraphSource over pandas DataFrames (tests, Parquet extracts)."""

    def __init__(
        self,
        page: pd.DataFrame,
        categorylinks: pd.DataFrame,
        pagelinks: Optional[pd.DataFrame] = None,
        redirect: Optional[pd.DataFrame] = None,
    ):
        _require_columns(page, PAGE_COLUMNS, "page")
        _require_columns(categorylinks, CATEGORYLINK_COLUMNS, "categorylinks")
        pagelinks = pagelinks if pagelinks is not None else _empty(PAGELINK_COLUMNS)
        _require_columns(pagelinks, PAGELINK_COLUMNS, "pagelinks")
        if redirect is None:
            redirect = _empty(("rd_from", "rd_namespace")).assign(rd_title=pd.Series(dtype="object"))
        _require_columns(redirect, REDIRECT_COLUMNS, "redirect")

        page = page.copy()
        if "page_len" not in page.columns:
            page["page_len"] = 0
        if "page_content_model" not in page.columns:
            page["page_content_model"] = "wikitext"
        if "page_is_redirect" not in page.columns:
            page["page_is_redirect"] = False
        self._page = page.sort_values("page_id").reset_index(drop=True)
        self._page_by_title = {
            (ns, title): idx
            for idx, (ns, title) in enumerate(
                zip(self._page["page_namespace"].astype(int), self._page["page_title"].astype(str))
            )
        }

        self._membership = categorylinks.sort_values(["cl_from", "cl_target_id"]).reset_index(drop=True)
        self._membership_keys = self._membership["cl_from"].to_numpy()
        self._membership_by_target = categorylinks.sort_values(
            ["cl_target_id", "cl_from"]
        ).reset_index(drop=True)

        self._links = pagelinks.sort_values(["pl_from", "pl_target_id"]).reset_index(drop=True)
        self._link_keys = self._links["pl_from"].to_numpy()

        redirect = redirect.copy()
        if "rd_fragment" not in redirect.columns:
            redirect["rd_fragment"] = None
        self._redirects = redirect.sort_values("rd_from").reset_index(drop=True)
        self._redirect_keys = self._redirects["rd_from"].to_numpy()

        logger.info(
            "Frame source ready: %d pages, %d memberships, %d links, %d redirects",
            len(self._page),
            len(self._membership),
            len(self._links),
            len(self._redirects),
        )

    @classmethod
    def from_parquet(cls, directory: str) -> "FrameGraphSource":
        """Load `page`, `categorylinks` and optional `pagelinks`/`redirect` Parquet files."""
        frames: Dict[str, Optional[pd.DataFrame]] = {}
        for name in ("page", "categorylinks", "pagelinks", "redirect"):
            path = os.path.join(directory, f"{name}.parquet")
            if os.path.exists(path):
                frames[name] = pd.read_parquet(path)
                logger.info("Loaded %d rows from %s", len(frames[name]), path)
            else:
                frames[name] = None
        if frames["page"] is None or frames["categorylinks"] is None:
            raise ConfigurationError(
                f"Parquet directory {directory} must contain page.parquet and categorylinks.parquet"
            )
        return cls(
            page=frames["page"],
            categorylinks=frames["categorylinks"],
            pagelinks=frames["pagelinks"],
            redirect=frames["redirect"],
        )

    def _meta(self, row) -> NodeMeta:
        return NodeMeta(
            page_id=int(row.page_id),
            title=str(row.page_title),
            namespace=int(row.page_namespace),
            length=int(row.page_len) if pd.notna(row.page_len) else 0,
            content_model=_optional_str(row.page_content_model),
            is_redirect=bool(row.page_is_redirect),
        )

    async def lookup_nodes(self, page_ids: Iterable[int]) -> Dict[int, NodeMeta]:
        ids = list(page_ids)
        if not ids:
            return {}
        subset = self._page[self._page["page_id"].isin(ids)]
        return {int(row.page_id): self._meta(row) for row in subset.itertuples(index=False)}

    async def find_by_title(self, title: str, namespace: int) -> Optional[NodeMeta]:
        idx = self._page_by_title.get((int(namespace), to_db_title(title)))
        if idx is None:
            return None
        return self._meta(next(self._page.iloc[[idx]].itertuples(index=False)))

    async def children_of(self, category_ids: Iterable[int]) -> List[MembershipEdge]:
        ids = list(category_ids)
        if not ids:
            return []
        subset = self._membership_by_target[self._membership_by_target["cl_target_id"].isin(ids)]
        return [
            MembershipEdge(int(row.cl_from), int(row.cl_target_id), MembershipKind(row.cl_type))
            for row in subset.itertuples(index=False)
        ]

    async def membership_bounds(self) -> Optional[Tuple[int, int]]:
        return _bounds(self._membership_keys)

    async def scan_membership(self, lo: int, hi: int) -> List[MembershipEdge]:
        start, stop = _window(self._membership_keys, lo, hi)
        return [
            MembershipEdge(int(row.cl_from), int(row.cl_target_id), MembershipKind(row.cl_type))
            for row in self._membership.iloc[start:stop].itertuples(index=False)
        ]

    async def link_bounds(self) -> Optional[Tuple[int, int]]:
        return _bounds(self._link_keys)

    async def scan_links(self, lo: int, hi: int) -> List[Tuple[int, int]]:
        start, stop = _window(self._link_keys, lo, hi)
        window = self._links.iloc[start:stop]
        return list(zip(window["pl_from"].astype(int).tolist(), window["pl_target_id"].astype(int).tolist()))

    async def alias_bounds(self) -> Optional[Tuple[int, int]]:
        return _bounds(self._redirect_keys)

    async def scan_aliases(self, lo: int, hi: int) -> List[AliasEdge]:
        start, stop = _window(self._redirect_keys, lo, hi)
        return [
            AliasEdge(
                from_id=int(row.rd_from),
                target_title=str(row.rd_title),
                target_namespace=int(row.rd_namespace),
                fragment=_optional_str(row.rd_fragment),
            )
            for row in self._redirects.iloc[start:stop].itertuples(index=False)
        ]
