"""
Knowledge graph view using NetworkX.

Builds a two-layer graph over canonical nodes:
- Layer 1: Hierarchy edges (canonical parent -> child)
- Layer 2: Associative links (source1 / source2 / both)
"""

import logging
import os
import pickle
from typing import List, Optional

import networkx as nx
import pandas as pd

from ..database.connection import DatabaseManager
from .reports import load_tables

logger = logging.getLogger(__name__)

HIERARCHY_LAYER = 1
ASSOCIATIVE_LAYER = 2


class KnowledgeGraphBuilder:
    """Builds a NetworkX DiGraph from canonical nodes and associative links."""

    def __init__(self, include_associative: bool = True):
        """
        Initialize graph builder.

        Args:
            include_associative: Whether to add Layer 2 associative edges
        """
        self.include_associative = include_associative
        self.graph: Optional[nx.DiGraph] = None

    def build_graph(self, canonical_df: pd.DataFrame, links_df: pd.DataFrame) -> nx.DiGraph:
        """
        Build the knowledge graph.

        Args:
            canonical_df: DataFrame with columns: page_id, title, kind, root_id, level, parent_id
            links_df: DataFrame with columns: from_rep_id, to_rep_id, link_type

        Returns:
            NetworkX DiGraph keyed by representative page id
        """
        logger.info("Building knowledge graph from %d canonical nodes", len(canonical_df))
        self.graph = nx.DiGraph()

        for row in canonical_df.itertuples(index=False):
            self.graph.add_node(
                int(row.page_id),
                title=row.title,
                kind=row.kind,
                level=int(row.level),
                root_id=int(row.root_id),
            )

        hierarchy_count = 0
        for row in canonical_df.itertuples(index=False):
            if pd.isna(row.parent_id) or int(row.parent_id) not in self.graph:
                continue
            self.graph.add_edge(int(row.parent_id), int(row.page_id), layer=HIERARCHY_LAYER, type="hierarchy")
            hierarchy_count += 1

        associative_count = 0
        if self.include_associative:
            for row in links_df.itertuples(index=False):
                source, target = int(row.from_rep_id), int(row.to_rep_id)
                if source not in self.graph or target not in self.graph:
                    continue
                # Hierarchy edges take precedence on the same ordered pair.
                if self.graph.has_edge(source, target):
                    self.graph.edges[source, target]["link_type"] = row.link_type
                    continue
                self.graph.add_edge(source, target, layer=ASSOCIATIVE_LAYER, type=row.link_type)
                associative_count += 1

        logger.info(
            "Graph construction complete: %d nodes, %d edges (L1: %d, L2: %d)",
            self.graph.number_of_nodes(),
            self.graph.number_of_edges(),
            hierarchy_count,
            associative_count,
        )
        return self.graph

    async def build_from_store(self, db: DatabaseManager) -> nx.DiGraph:
        """Load canonical nodes and links from the result store and build the graph."""
        _, canonical_df, links_df = await load_tables(db)
        return self.build_graph(canonical_df, links_df)

    def hierarchy_subgraph(self) -> nx.DiGraph:
        if self.graph is None:
            raise ValueError("Graph not built yet. Call build_graph() first.")
        edges = [(u, v) for u, v, layer in self.graph.edges(data="layer") if layer == HIERARCHY_LAYER]
        return self.graph.edge_subgraph(edges).copy()

    def hierarchy_is_acyclic(self) -> bool:
        """True when the hierarchy layer forms a DAG."""
        acyclic = nx.is_directed_acyclic_graph(self.hierarchy_subgraph())
        if not acyclic:
            logger.warning("Hierarchy layer contains a cycle")
        return acyclic

    def get_neighbors(self, page_id: int, link_type: Optional[str] = None) -> List[int]:
        """Outbound associative neighbors, optionally restricted to one link type."""
        if self.graph is None or page_id not in self.graph:
            return []
        neighbors = []
        for _, target, data in self.graph.out_edges(page_id, data=True):
            if data.get("layer") != ASSOCIATIVE_LAYER and "link_type" not in data:
                continue
            kind = data.get("link_type", data.get("type"))
            if link_type is None or kind == link_type:
                neighbors.append(target)
        return sorted(neighbors)

    def save_graph(self, path: str) -> None:
        """Save graph to disk using pickle."""
        if self.graph is None:
            raise ValueError("Graph not built yet. Call build_graph() first.")

        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "wb") as f:
            pickle.dump(self.graph, f)
        logger.info("Saved graph to %s (%d nodes, %d edges)", path, self.graph.number_of_nodes(), self.graph.number_of_edges())

    @staticmethod
    def load_graph(path: str) -> nx.DiGraph:
        """Load graph from disk."""
        with open(path, "rb") as f:
            graph = pickle.load(f)
        logger.info("Loaded graph from %s (%d nodes, %d edges)", path, graph.number_of_nodes(), graph.number_of_edges())
        return graph
