"""
core/audio_search/normalization.py — Per-search z-score statistics.

Statistics come from every scan window of the current track and search,
never from a global corpus. They are discarded with the search result.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

_MIN_STD = 1e-6


@dataclass(frozen=True, eq=False)
class ZScoreStats:
    mean: np.ndarray
    inv_std: np.ndarray
    """``1/std`` per dimension, 1 where the std is below 1e-6."""

    def apply(self, vector: np.ndarray) -> np.ndarray:
        """Return ``(vector - mean) * inv_std`` as a new array."""
        return (vector - self.mean) * self.inv_std


class ZScoreAccumulator:
    """Accumulates per-dimension sum and sum of squares over window vectors."""

    def __init__(self, dim: int) -> None:
        self._sum = np.zeros(dim, dtype=np.float64)
        self._sum_sq = np.zeros(dim, dtype=np.float64)
        self._count = 0

    @property
    def count(self) -> int:
        return self._count

    def add(self, vector: np.ndarray) -> None:
        self._sum += vector
        self._sum_sq += vector * vector
        self._count += 1

    def finalize(self) -> ZScoreStats:
        n = max(1, self._count)
        mean = self._sum / n
        variance = np.maximum(0.0, self._sum_sq / n - mean * mean)
        std = np.sqrt(variance)
        inv_std = np.ones_like(std)
        np.divide(1.0, std, out=inv_std, where=std > _MIN_STD)
        return ZScoreStats(mean=mean, inv_std=inv_std)
