"""
Bounded cycle detection over parent chains.
"""

import logging
from typing import List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)


def detect_cycles(
    parent_of: Mapping[int, Optional[int]],
    hop_limit: int,
) -> List[Tuple[int, int, int]]:
    """
    Find nodes whose parent chain returns to the node itself.

    Walks each chain iteratively for at most `hop_limit` hops, stopping at a
    root, at an unknown parent, or at a node already seen on the walk.

    Returns:
        Sorted (page_id, ancestor_id, path_length) tuples, where ancestor_id
        is the last node before the chain closes.
    """
    if hop_limit <= 0:
        return []

    cycles: List[Tuple[int, int, int]] = []
    for start in sorted(parent_of):
        seen = {start}
        previous = start
        current = parent_of.get(start)
        hops = 1
        while current is not None and hops <= hop_limit:
            if current == start:
                cycles.append((start, previous, hops))
                break
            if current in seen:
                # Chain enters a cycle that does not include `start`.
                break
            seen.add(current)
            previous = current
            current = parent_of.get(current)
            hops += 1

    if cycles:
        logger.warning("Detected %d nodes on parent cycles", len(cycles))
    return cycles

