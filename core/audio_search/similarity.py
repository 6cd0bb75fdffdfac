"""
core/audio_search/similarity.py — Baseline cosine similarity.

Two flavours, both returning a score in [0, 1] via ``(cos + 1) / 2``:

    fingerprint_similarity   — plain search. Each block (mel mean+variance,
                               onset scalars, mfcc mean+variance) is
                               L2-normalised, weighted, concatenated; one
                               cosine over the result.
    block_cosine_similarity  — guided search over flat layout vectors. Dot
                               products and squared norms are accumulated
                               per block, weighted by w^2. A block that is
                               ~0 on one side still adds its weight to the
                               other side's normalisation mass, pulling the
                               score down instead of failing.
"""

from __future__ import annotations

import numpy as np

from core.audio_search.config import BlockWeights
from core.audio_search.types import FeatureSlice, FeatureVectorLayout, Fingerprint

_EPS = 1e-12


def _rescale_cosine(cos: float) -> float:
    clamped = max(-1.0, min(1.0, cos))
    return (clamped + 1.0) / 2.0


def cosine_similarity01(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity mapped to [0, 1]; 0 when either vector is zero.

    Raises:
        ValueError: If the vectors differ in length.
    """
    if a.shape[0] != b.shape[0]:
        raise ValueError(f"vector length mismatch: {a.shape[0]} vs {b.shape[0]}")
    denom = float(np.linalg.norm(a)) * float(np.linalg.norm(b))
    if denom <= 0.0:
        return 0.0
    return _rescale_cosine(float(np.dot(a, b)) / denom)


# ---------------------------------------------------------------------------
# Fingerprint flavour (plain search)
# ---------------------------------------------------------------------------


def _normalised(block: np.ndarray) -> np.ndarray:
    norm = float(np.linalg.norm(block))
    return block / (norm if norm > _EPS else 1.0)


def fingerprint_to_vector(fp: Fingerprint, weights: BlockWeights | None = None) -> np.ndarray:
    """Concatenate per-block L2-normalised, weighted fingerprint blocks."""
    w = weights or BlockWeights()
    parts = [
        _normalised(np.concatenate([fp.mel_mean, fp.mel_variance])) * w.mel,
        _normalised(
            np.array([fp.onset_mean, fp.onset_max, fp.onset_peak_density_hz], dtype=np.float64)
        )
        * w.transient,
    ]
    if fp.mfcc_mean is not None and fp.mfcc_variance is not None:
        parts.append(_normalised(np.concatenate([fp.mfcc_mean, fp.mfcc_variance])) * w.mfcc)
    return np.concatenate(parts)


def fingerprint_similarity(
    a: Fingerprint, b: Fingerprint, weights: BlockWeights | None = None
) -> float:
    return cosine_similarity01(fingerprint_to_vector(a, weights), fingerprint_to_vector(b, weights))


# ---------------------------------------------------------------------------
# Block flavour (guided search)
# ---------------------------------------------------------------------------


def _block_groups(
    layout: FeatureVectorLayout, weights: BlockWeights
) -> list[tuple[tuple[FeatureSlice, ...], float]]:
    """(slices, weight) per scored block; contrast blocks share their family weight."""
    groups: list[tuple[tuple[FeatureSlice, ...], float]] = [
        ((layout.mel_mean_fg, layout.mel_variance_fg), weights.mel),
        ((layout.onset_fg,), weights.transient),
    ]
    if layout.mfcc_mean_fg is not None and layout.mfcc_variance_fg is not None:
        groups.append(((layout.mfcc_mean_fg, layout.mfcc_variance_fg), weights.mfcc))
    if layout.mel_contrast is not None:
        groups.append(((layout.mel_contrast,), weights.mel))
    if layout.onset_contrast is not None:
        groups.append(((layout.onset_contrast,), weights.transient))
    if layout.mfcc_mean_contrast is not None and layout.mfcc_variance_contrast is not None:
        groups.append(
            ((layout.mfcc_mean_contrast, layout.mfcc_variance_contrast), weights.mfcc)
        )
    return groups


def block_cosine_similarity(
    query: np.ndarray,
    window: np.ndarray,
    layout: FeatureVectorLayout,
    weights: BlockWeights | None = None,
) -> float:
    """Weighted per-block cosine between two layout vectors, in [0, 1].

    Returns 0 when either side has no non-zero block at all.
    """
    w = weights or BlockWeights()
    num = 0.0
    aa = 0.0
    bb = 0.0

    for slices, weight in _block_groups(layout, w):
        if weight == 0:
            continue
        dot = na2 = nb2 = 0.0
        for s in slices:
            qa = query[s.as_slice()]
            wb = window[s.as_slice()]
            dot += float(np.dot(qa, wb))
            na2 += float(np.dot(qa, qa))
            nb2 += float(np.dot(wb, wb))
        na = np.sqrt(na2)
        nb = np.sqrt(nb2)
        w2 = weight * weight
        if na > _EPS:
            aa += w2
        if nb > _EPS:
            bb += w2
        if na > _EPS and nb > _EPS:
            num += w2 * (dot / (na * nb))

    denom = np.sqrt(aa) * np.sqrt(bb)
    if denom <= 0.0:
        return 0.0
    return _rescale_cosine(num / float(denom))
