"""
ingestion/frame_loader.py — File I/O boundary for precomputed analysis frames.

This is the ONLY module in the search pipeline that reads files from disk.
Everything downstream (core/audio_search/*) takes a FrameSeries — never
file paths.

Archive format (numpy ``.npz``):
    times  (n,)            frame times in seconds, non-decreasing
    mel    (n, mel_bands)  mel-band energies
    onset  (n,)            onset-strength envelope
    mfcc   (n, coeffs)     optional cepstral coefficients (C0 first)

Usage:
    from ingestion.frame_loader import load_frame_series
    frames = load_frame_series("/path/to/track_frames.npz")
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import numpy as np

from core.audio_search.types import FrameSeries

logger = logging.getLogger(__name__)

FRAME_EXTENSIONS: frozenset[str] = frozenset({".npz"})
REQUIRED_ARRAYS: tuple[str, ...] = ("times", "mel", "onset")

# Upper bound on frames per track; ~66 min at a 20 ms hop.
DEFAULT_MAX_FRAMES: int = 200_000


def max_frames() -> int:
    """Frame cap from ``AUDIO_SEARCH_MAX_FRAMES`` (default 200 000)."""
    raw = os.environ.get("AUDIO_SEARCH_MAX_FRAMES")
    if not raw:
        return DEFAULT_MAX_FRAMES
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"AUDIO_SEARCH_MAX_FRAMES must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"AUDIO_SEARCH_MAX_FRAMES must be positive, got {value}")
    return value


def load_frame_series(path: str | Path) -> FrameSeries:
    """Load a ``.npz`` frame archive and return a validated FrameSeries.

    Args:
        path: Absolute or relative path to a ``.npz`` archive.

    Returns:
        FrameSeries with float64 arrays.

    Raises:
        FileNotFoundError: File does not exist at the given path.
        ValueError: Wrong extension, missing arrays, inconsistent shapes,
                    or more frames than AUDIO_SEARCH_MAX_FRAMES.
        RuntimeError: numpy could not decode the archive.
    """
    file_path = Path(path)

    if not file_path.exists():
        raise FileNotFoundError(f"Frame archive not found: {file_path}")

    if file_path.suffix.lower() not in FRAME_EXTENSIONS:
        raise ValueError(
            f"Unsupported frame archive format {file_path.suffix!r}. "
            f"Supported: {sorted(FRAME_EXTENSIONS)}"
        )

    try:
        with np.load(file_path, allow_pickle=False) as archive:
            arrays = {name: archive[name] for name in archive.files}
    except Exception as exc:
        raise RuntimeError(
            f"Failed to decode frame archive {file_path.name!r}: {exc}"
        ) from exc

    missing = [name for name in REQUIRED_ARRAYS if name not in arrays]
    if missing:
        raise ValueError(f"Frame archive {file_path.name!r} is missing arrays: {missing}")

    n_frames = int(np.asarray(arrays["times"]).reshape(-1).shape[0])
    limit = max_frames()
    if n_frames > limit:
        raise ValueError(
            f"Frame archive {file_path.name!r} has {n_frames} frames, limit is {limit}"
        )

    frames = FrameSeries.from_arrays(
        times=arrays["times"],
        mel=arrays["mel"],
        onset=arrays["onset"],
        mfcc=arrays.get("mfcc"),
    )
    logger.debug(
        "Loaded %d frames (%d mel bands, %d mfcc) from %s",
        frames.n_frames,
        frames.mel_dim,
        frames.mfcc_dim,
        file_path.name,
    )
    return frames
