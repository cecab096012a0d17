"""
wikidag: builds a knowledge graph from raw encyclopedia extracts.

Three sequential phases write to one result store:
- BFS DAG builder (category hierarchy from seed topics)
- Identity resolver (one canonical node per normalized title)
- Associative edge merger (deduplicated, provenance-tagged links)
"""

__version__ = "0.1.0"
