"""
Adaptive batch sizing for the BFS builder.
"""

import logging
from typing import Optional

from ..common.config import BatchSettings
from ..common.errors import ConfigurationError

logger = logging.getLogger(__name__)

SHRINK_FACTOR = 0.8
GROW_FACTOR = 1.2
LOW_WATERMARK = 0.8
HIGH_WATERMARK = 1.2


class AdaptiveBatchSizer:
    """
    Adjusts the frontier page width toward a rows-per-second target.

    After each committed level the measured throughput is compared with the
    target: under 80% shrinks the width by 0.8x, over 120% grows it by 1.2x,
    and the result is clamped to [minimum, maximum].
    """

    def __init__(self, settings: BatchSettings, initial: Optional[int] = None):
        self.settings = settings
        start = initial if initial is not None else settings.initial
        if start <= 0:
            raise ConfigurationError(f"batch size hint must be positive, got {start}")
        self._size = self._clamp(start)

    @property
    def size(self) -> int:
        return self._size

    def _clamp(self, value: float) -> int:
        return int(max(self.settings.minimum, min(self.settings.maximum, value)))

    def observe(self, rows: int, elapsed_sec: float) -> int:
        """Record one unit's throughput and return the next width."""
        if rows <= 0:
            return self._size
        rate = rows / elapsed_sec if elapsed_sec > 0 else float("inf")
        target = self.settings.target_rows_per_sec
        previous = self._size
        if rate < target * LOW_WATERMARK:
            self._size = self._clamp(self._size * SHRINK_FACTOR)
        elif rate > target * HIGH_WATERMARK:
            self._size = self._clamp(self._size * GROW_FACTOR)
        if self._size != previous:
            logger.info(
                "Batch width %d -> %d (%.0f rows/s, target %.0f)",
                previous,
                self._size,
                rate,
                target,
            )
        return self._size
