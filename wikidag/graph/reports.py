"""
Summary reports over the finished result store.

All reports are pandas DataFrames computed from three frames loaded once:
hierarchy nodes, canonical nodes and associative links.
"""

import logging
from typing import Dict, Tuple

import pandas as pd
from sqlalchemy import select

from ..common.types import LinkType, NodeKind
from ..database.connection import DatabaseManager
from ..database.models import AssociativeLink, CanonicalNode, DagNode

logger = logging.getLogger(__name__)

VALID_LINK_TYPES = {t.value for t in LinkType}

_KIND_LABELS = {NodeKind.BRANCH.value: "Category", NodeKind.LEAF.value: "Article"}


async def load_tables(db: DatabaseManager) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """Load (nodes, canonical, links) frames from the result store."""
    async with db.session() as session:
        nodes = (
            await session.execute(
                select(
                    DagNode.page_id,
                    DagNode.title,
                    DagNode.kind,
                    DagNode.root_id,
                    DagNode.level,
                    DagNode.parent_id,
                )
            )
        ).all()
        canonical = (
            await session.execute(
                select(
                    CanonicalNode.page_id,
                    CanonicalNode.title,
                    CanonicalNode.kind,
                    CanonicalNode.root_id,
                    CanonicalNode.level,
                    CanonicalNode.parent_id,
                    CanonicalNode.cluster_size,
                )
            )
        ).all()
        links = (
            await session.execute(
                select(AssociativeLink.from_rep_id, AssociativeLink.to_rep_id, AssociativeLink.link_type)
            )
        ).all()

    nodes_df = pd.DataFrame([tuple(r) for r in nodes], columns=["page_id", "title", "kind", "root_id", "level", "parent_id"])
    canonical_df = pd.DataFrame(
        [tuple(r) for r in canonical], columns=["page_id", "title", "kind", "root_id", "level", "parent_id", "cluster_size"]
    )
    links_df = pd.DataFrame([tuple(r) for r in links], columns=["from_rep_id", "to_rep_id", "link_type"])
    logger.info(
        "Loaded %d nodes, %d canonical nodes, %d links for reporting",
        len(nodes_df),
        len(canonical_df),
        len(links_df),
    )
    return nodes_df, canonical_df, links_df


def _with_percentage(df: pd.DataFrame, count_col: str = "count") -> pd.DataFrame:
    total = df[count_col].sum()
    df["percentage"] = (100.0 * df[count_col] / total).round(1) if total else 0.0
    return df


def level_distribution(nodes_df: pd.DataFrame) -> pd.DataFrame:
    """Node counts per level, split into categories and articles."""
    if nodes_df.empty:
        return pd.DataFrame(columns=["level", "categories", "articles", "total"])
    table = pd.crosstab(nodes_df["level"], nodes_df["kind"])
    out = pd.DataFrame(
        {
            "level": table.index.astype(int),
            "categories": table.get(NodeKind.BRANCH.value, pd.Series(0, index=table.index)).to_numpy(),
            "articles": table.get(NodeKind.LEAF.value, pd.Series(0, index=table.index)).to_numpy(),
        }
    )
    out["total"] = out["categories"] + out["articles"]
    return out.sort_values("level").reset_index(drop=True)


def domain_distribution(nodes_df: pd.DataFrame) -> pd.DataFrame:
    """Node counts and depth per root domain."""
    if nodes_df.empty:
        return pd.DataFrame(columns=["root_id", "root_title", "nodes", "max_level"])
    titles = nodes_df.set_index("page_id")["title"]
    grouped = (
        nodes_df.groupby("root_id")
        .agg(nodes=("page_id", "count"), max_level=("level", "max"))
        .reset_index()
    )
    grouped["root_title"] = grouped["root_id"].map(titles)
    grouped = grouped[["root_id", "root_title", "nodes", "max_level"]]
    return grouped.sort_values(["nodes", "root_id"], ascending=[False, True]).reset_index(drop=True)


def link_type_distribution(links_df: pd.DataFrame) -> pd.DataFrame:
    """Link counts and percentage per provenance type."""
    if links_df.empty:
        return pd.DataFrame(columns=["link_type", "count", "percentage"])
    counts = links_df["link_type"].value_counts().rename_axis("link_type").reset_index(name="count")
    counts = counts.sort_values(["count", "link_type"], ascending=[False, True]).reset_index(drop=True)
    return _with_percentage(counts)


def _joined(links_df: pd.DataFrame, canonical_df: pd.DataFrame) -> pd.DataFrame:
    if links_df.empty or canonical_df.empty:
        return pd.DataFrame()
    nodes = canonical_df[["page_id", "kind", "root_id"]]
    joined = links_df.merge(
        nodes.rename(columns={"page_id": "from_rep_id", "kind": "from_kind", "root_id": "from_root"}),
        on="from_rep_id",
    )
    return joined.merge(
        nodes.rename(columns={"page_id": "to_rep_id", "kind": "to_kind", "root_id": "to_root"}),
        on="to_rep_id",
    )


def link_direction_analysis(links_df: pd.DataFrame, canonical_df: pd.DataFrame) -> pd.DataFrame:
    """Link counts by endpoint kind, e.g. 'Article -> Category'."""
    joined = _joined(links_df, canonical_df)
    if joined.empty:
        return pd.DataFrame(columns=["link_direction", "count", "percentage"])
    joined["link_direction"] = (
        joined["from_kind"].map(_KIND_LABELS) + " -> " + joined["to_kind"].map(_KIND_LABELS)
    )
    counts = joined["link_direction"].value_counts().rename_axis("link_direction").reset_index(name="count")
    return _with_percentage(counts)


def cross_domain_analysis(links_df: pd.DataFrame, canonical_df: pd.DataFrame) -> pd.DataFrame:
    """Share of links staying inside one root domain."""
    joined = _joined(links_df, canonical_df)
    if joined.empty:
        return pd.DataFrame(columns=["domain_relationship", "count", "percentage"])
    same = joined["from_root"] == joined["to_root"]
    joined["domain_relationship"] = same.map({True: "Same Domain", False: "Cross Domain"})
    counts = (
        joined["domain_relationship"].value_counts().rename_axis("domain_relationship").reset_index(name="count")
    )
    return _with_percentage(counts)


def most_connected(links_df: pd.DataFrame, canonical_df: pd.DataFrame, top_n: int = 10) -> pd.DataFrame:
    """Canonical nodes with the most outbound links."""
    if links_df.empty or canonical_df.empty:
        return pd.DataFrame(columns=["page_id", "title", "outbound_links", "level", "kind"])
    outbound = links_df.groupby("from_rep_id").size().rename("outbound_links").reset_index()
    outbound = outbound.merge(
        canonical_df[["page_id", "title", "level", "kind"]], left_on="from_rep_id", right_on="page_id"
    )
    outbound = outbound.sort_values(["outbound_links", "page_id"], ascending=[False, True]).head(top_n)
    return outbound[["page_id", "title", "outbound_links", "level", "kind"]].reset_index(drop=True)


def validate_link_integrity(links_df: pd.DataFrame, canonical_df: pd.DataFrame) -> Dict[str, object]:
    """
    Check associative links against the canonical node table.

    Returns:
        Dict with orphaned_sources, orphaned_targets, self_links,
        invalid_types, duplicate_pairs and an overall `valid` flag
    """
    known = set(canonical_df["page_id"].tolist())
    report = {
        "orphaned_sources": int((~links_df["from_rep_id"].isin(known)).sum()),
        "orphaned_targets": int((~links_df["to_rep_id"].isin(known)).sum()),
        "self_links": int((links_df["from_rep_id"] == links_df["to_rep_id"]).sum()),
        "invalid_types": int((~links_df["link_type"].isin(VALID_LINK_TYPES)).sum()),
        "duplicate_pairs": int(links_df.duplicated(subset=["from_rep_id", "to_rep_id"]).sum()),
    }
    report["valid"] = not any(report.values())
    if not report["valid"]:
        logger.warning("Link integrity check failed: %s", report)
    return report


async def build_report(db: DatabaseManager) -> Dict[str, object]:
    """Compute every report from the current result store."""
    nodes_df, canonical_df, links_df = await load_tables(db)
    return {
        "level_distribution": level_distribution(nodes_df),
        "domain_distribution": domain_distribution(nodes_df),
        "link_type_distribution": link_type_distribution(links_df),
        "link_direction": link_direction_analysis(links_df, canonical_df),
        "cross_domain": cross_domain_analysis(links_df, canonical_df),
        "most_connected": most_connected(links_df, canonical_df),
        "integrity": validate_link_integrity(links_df, canonical_df),
    }
