"""
Pytest configuration and shared fixtures for wikidag tests.

This module provides:
- A file-backed SQLite result store per test
- Builders for in-memory graph sources
- Fast retry settings for failure-injection tests
"""

from typing import Iterable, Optional, Tuple

import pandas as pd
import pytest
import pytest_asyncio

from wikidag.common.config import RetrySettings
from wikidag.database.connection import DatabaseManager
from wikidag.source.frames import FrameGraphSource

ARTICLE = 0
CATEGORY = 14


@pytest_asyncio.fixture
async def db(tmp_path):
    """Initialized result store backed by a temporary SQLite file."""
    manager = DatabaseManager(database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await manager.initialize()
    yield manager
    await manager.close()


@pytest.fixture
def fast_retry():
    """Retry policy without backoff delays."""
    return RetrySettings(max_retries=2, base_delay=0.0, max_delay=0.0)


def build_source(
    pages: Iterable[Tuple],
    memberships: Iterable[Tuple[int, int, str]] = (),
    links: Iterable[Tuple[int, int]] = (),
    redirects: Optional[Iterable[Tuple[int, int, str]]] = None,
) -> FrameGraphSource:
    """
    Build a FrameGraphSource from tuples.

    pages: (page_id, title, namespace[, content_model])
    memberships: (member_id, category_id, cl_type)
    links: (from_id, to_id)
    redirects: (from_id, namespace, title)
    """
    page_rows = []
    for page in pages:
        page_id, title, namespace = page[:3]
        content_model = page[3] if len(page) > 3 else "wikitext"
        page_rows.append(
            {
                "page_id": page_id,
                "page_title": title,
                "page_namespace": namespace,
                "page_len": 100,
                "page_content_model": content_model,
                "page_is_redirect": False,
            }
        )
    categorylinks = pd.DataFrame(
        list(memberships), columns=["cl_from", "cl_target_id", "cl_type"]
    ).astype({"cl_from": "int64", "cl_target_id": "int64"})
    pagelinks = pd.DataFrame(list(links), columns=["pl_from", "pl_target_id"]).astype("int64")
    redirect = None
    if redirects is not None:
        redirect = pd.DataFrame(list(redirects), columns=["rd_from", "rd_namespace", "rd_title"])
    return FrameGraphSource(pd.DataFrame(page_rows), categorylinks, pagelinks, redirect)


@pytest.fixture
def make_source():
    """Factory fixture wrapping build_source."""
    return build_source


@pytest.fixture
def scenario_a_source():
    """Seeds {A}; A contains B and C; C contains D."""
    return build_source(
        pages=[
            (1, "A", CATEGORY),
            (2, "B", ARTICLE),
            (3, "C", CATEGORY),
            (4, "D", ARTICLE),
        ],
        memberships=[
            (2, 1, "page"),
            (3, 1, "subcat"),
            (4, 3, "page"),
        ],
    )


@pytest.fixture
def chain_source():
    """Seed 1 with a category chain 1 -> 2 -> ... -> 7, each holding one article."""
    pages = []
    memberships = []
    for cat_id in range(1, 8):
        pages.append((cat_id, f"Cat_{cat_id}", CATEGORY))
        pages.append((100 + cat_id, f"Article_{cat_id}", ARTICLE))
        memberships.append((100 + cat_id, cat_id, "page"))
        if cat_id > 1:
            memberships.append((cat_id, cat_id - 1, "subcat"))
    return build_source(pages, memberships)
