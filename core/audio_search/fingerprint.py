"""
core/audio_search/fingerprint.py — Single-window fingerprint extraction.

Reduces the frames inside ``[t0, t1]`` to block statistics:
    - mel: per-band mean and variance
    - onset: mean, max, peaks per second
    - mfcc (optional): per-coefficient mean and variance, coefficients 1..12

Two variants:
    - normalize_frames=True: each mel/mfcc frame is divided by its L2 norm
      before averaging, which removes loudness dependence. Used for the
      one-shot query fingerprint and the plain scan.
    - normalize_frames=False: plain mean/variance of the raw frames.

An empty window yields an all-zero fingerprint of the right shape.
"""

from __future__ import annotations

import numpy as np

from core.audio_search.config import PeakPickConfig
from core.audio_search.peaks import pick_peaks_with_config
from core.audio_search.types import (
    MFCC_FIRST_COEFF,
    Fingerprint,
    FrameSeries,
    SearchWindow,
)

_EPS = 1e-12
_MIN_DURATION_SEC = 1e-6


def find_frame_window(times: np.ndarray, t0: float, t1: float) -> tuple[int, int]:
    """Index range ``[start, end)`` of frames with ``t0 <= time <= t1``."""
    start = int(np.searchsorted(times, t0, side="left"))
    end = int(np.searchsorted(times, t1, side="right"))
    return start, max(start, end)


def frame_l2_scale(frames: np.ndarray) -> np.ndarray:
    """Per-row ``1 / ||row||``, or 1 where the norm is ~0."""
    if frames.size == 0:
        return np.ones(frames.shape[0], dtype=np.float64)
    norms = np.sqrt(np.einsum("ij,ij->i", frames, frames))
    scale = np.ones_like(norms)
    np.divide(1.0, norms, out=scale, where=norms > _EPS)
    return scale


def _mean_variance(frames: np.ndarray, dim: int) -> tuple[np.ndarray, np.ndarray]:
    if frames.shape[0] == 0 or dim == 0:
        return np.zeros(dim, dtype=np.float64), np.zeros(dim, dtype=np.float64)
    mean = frames.mean(axis=0)
    variance = ((frames - mean) ** 2).mean(axis=0)
    return mean, variance


def _mfcc_block(frames: FrameSeries) -> np.ndarray | None:
    """Coefficients 1..12 of every frame, or None without MFCC input."""
    if frames.mfcc is None:
        return None
    dim = frames.mfcc_dim
    return frames.mfcc[:, MFCC_FIRST_COEFF : MFCC_FIRST_COEFF + dim]


def compute_fingerprint(
    window: SearchWindow,
    frames: FrameSeries,
    *,
    peak_pick: PeakPickConfig | None = None,
    normalize_frames: bool = True,
    onset_peak_times: np.ndarray | None = None,
) -> Fingerprint:
    """Compute the fingerprint of one time window.

    Args:
        window:           Time interval in seconds (bounds may be reversed).
        frames:           Time-aligned frame series.
        peak_pick:        Onset peak-picking settings for peak density.
        normalize_frames: L2-normalise each frame before statistics.
        onset_peak_times: Precomputed onset peak times. When given, peak
                          picking is skipped (a scan computes them once).

    Returns:
        Fingerprint; all zeros when no frame falls inside the window.
    """
    w = window.ordered()
    t0, t1 = w.start, w.end
    duration = max(_MIN_DURATION_SEC, t1 - t0)
    start, end = find_frame_window(frames.times, t0, t1)

    mel = frames.mel[start:end]
    if normalize_frames:
        mel = mel * frame_l2_scale(mel)[:, None]
    mel_mean, mel_variance = _mean_variance(mel, frames.mel_dim)

    onset = frames.onset[start:end]
    onset_mean = float(onset.mean()) if onset.size else 0.0
    onset_max = float(onset.max()) if onset.size else 0.0

    if onset_peak_times is None:
        peaks = pick_peaks_with_config(
            frames.times, frames.onset, peak_pick or PeakPickConfig(), strict=True
        )
        onset_peak_times = np.array([p.time for p in peaks], dtype=np.float64)
    lo = int(np.searchsorted(onset_peak_times, t0, side="left"))
    hi = int(np.searchsorted(onset_peak_times, t1, side="right"))
    peak_density = max(0, hi - lo) / duration

    mfcc_mean = mfcc_variance = None
    mfcc_all = _mfcc_block(frames)
    if mfcc_all is not None:
        mfcc = mfcc_all[start:end]
        if normalize_frames:
            mfcc = mfcc * frame_l2_scale(mfcc)[:, None]
        mfcc_mean, mfcc_variance = _mean_variance(mfcc, frames.mfcc_dim)

    return Fingerprint(
        t0=t0,
        t1=t1,
        mel_mean=mel_mean,
        mel_variance=mel_variance,
        onset_mean=onset_mean,
        onset_max=onset_max,
        onset_peak_density_hz=peak_density,
        mfcc_mean=mfcc_mean,
        mfcc_variance=mfcc_variance,
    )
