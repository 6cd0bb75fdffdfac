"""
Shared fixtures for the test suite.

Centralizes the synthetic frame series so individual test files don't
need to rebuild tracks by hand.

Synthetic track layout (default):
    - 60 s at a 20 ms frame hop (3001 frames), 16 mel bands, 13 MFCCs
    - background: noisy energy in the low mel bands, flat onset floor
    - motif: a fixed 0.5 s pattern in the high mel bands with two onset
      spikes, repeated at 10, 20, 30 and 40 s
"""

from __future__ import annotations

from collections.abc import Callable, Sequence

import numpy as np
import pytest

from core.audio_search.types import FrameSeries

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

FRAME_HOP_SEC: float = 0.02
MEL_BANDS: int = 16
MFCC_COEFFS: int = 13
MOTIF_STARTS: tuple[float, ...] = (10.0, 20.0, 30.0, 40.0)
MOTIF_SEC: float = 0.5


# ---------------------------------------------------------------------------
# Synthetic frame factory
# ---------------------------------------------------------------------------


def _build_frames(
    *,
    duration_sec: float = 60.0,
    motif_starts: Sequence[float] = MOTIF_STARTS,
    with_mfcc: bool = True,
    seed: int = 7,
) -> FrameSeries:
    rng = np.random.default_rng(seed)
    n = int(round(duration_sec / FRAME_HOP_SEC)) + 1
    times = np.arange(n, dtype=np.float64) * FRAME_HOP_SEC

    mel = 0.05 + 0.05 * rng.random((n, MEL_BANDS))
    mel[:, : MEL_BANDS // 2] += 1.0 + 0.3 * rng.random((n, MEL_BANDS // 2))
    # Flat floor: the onset envelope has strict peaks only at motif onsets.
    onset = np.full(n, 0.05)
    mfcc = rng.normal(0.0, 0.1, size=(n, MFCC_COEFFS))

    motif_frames = int(round(MOTIF_SEC / FRAME_HOP_SEC)) + 1
    decay = np.exp(-np.arange(motif_frames) / 8.0)
    high_profile = np.linspace(3.0, 1.0, MEL_BANDS // 2)
    mfcc_profile = np.linspace(2.0, -2.0, MFCC_COEFFS)

    for start in motif_starts:
        i0 = int(round(start / FRAME_HOP_SEC))
        i1 = min(n, i0 + motif_frames)
        k = i1 - i0
        mel[i0:i1, MEL_BANDS // 2 :] += decay[:k, None] * high_profile[None, :]
        mel[i0:i1, : MEL_BANDS // 2] *= 0.2
        mfcc[i0:i1] += decay[:k, None] * mfcc_profile[None, :]
        onset[i0] = 1.0
        if i0 + 12 < n:
            onset[i0 + 12] = 0.6

    return FrameSeries.from_arrays(
        times=times,
        mel=mel,
        onset=onset,
        mfcc=mfcc if with_mfcc else None,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def track_frames() -> FrameSeries:
    """60 s synthetic track with the motif at 10, 20, 30 and 40 s."""
    return _build_frames()


@pytest.fixture(scope="session")
def short_frames() -> FrameSeries:
    """5 s track with a single motif at 1 s and no MFCC frames."""
    return _build_frames(duration_sec=5.0, motif_starts=(1.0,), with_mfcc=False, seed=3)


@pytest.fixture()
def make_frames() -> Callable[..., FrameSeries]:
    """Factory for custom synthetic tracks (same keyword args as the defaults)."""
    return _build_frames


@pytest.fixture()
def cancel_after() -> Callable[[int], Callable[[], bool]]:
    """Build a cancellation predicate that turns True on call ``n`` (1-based)."""

    def factory(n: int) -> Callable[[], bool]:
        calls = {"count": 0}

        def is_cancelled() -> bool:
            calls["count"] += 1
            return calls["count"] >= n

        return is_cancelled

    return factory
