"""
Error taxonomy shared by every build phase.

All errors carry the phase, unit (level, batch or window identifier) and
key range they occurred in so a failed run can be restarted precisely.
"""

from typing import Optional, Tuple


class WikiDagError(Exception):
    """Base class for all wikidag errors."""

    def __init__(
        self,
        message: str,
        *,
        phase: Optional[str] = None,
        unit: Optional[str] = None,
        key_range: Optional[Tuple[int, int]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.phase = phase
        self.unit = unit
        self.key_range = key_range

    def context(self) -> str:
        """Human-readable phase/unit/key-range suffix for log lines."""
        parts = []
        if self.phase:
            parts.append(f"phase={self.phase}")
        if self.unit is not None:
            parts.append(f"unit={self.unit}")
        if self.key_range is not None:
            parts.append(f"range=[{self.key_range[0]}, {self.key_range[1]})")
        return " ".join(parts)

    def __str__(self) -> str:
        ctx = self.context()
        return f"{self.message} ({ctx})" if ctx else self.message


class ConfigurationError(WikiDagError):
    """Invalid seeds, bounds or settings. Raised before any state is touched."""


class TransientStorageError(WikiDagError):
    """I/O failure while reading the source or committing a unit."""

    def __init__(self, message: str, *, attempts: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.attempts = attempts


class DataIntegrityError(WikiDagError):
    """A referenced node or edge endpoint is missing (orphan reference)."""

    def __init__(self, message: str, *, key: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.key = key


class CycleDetected(WikiDagError):
    """Diagnostic: a node's parent chain returns to itself."""

    def __init__(self, page_id: int, path_length: int, **kwargs):
        super().__init__(
            f"Cycle detected at page {page_id} (path length {path_length})",
            **kwargs,
        )
        self.page_id = page_id
        self.path_length = path_length
