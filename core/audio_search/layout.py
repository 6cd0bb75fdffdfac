"""
core/audio_search/layout.py — Feature vector schema.

The per-window feature vector is a flat float64 array. This module decides
where each named block lives in it:

    [mel mean | mel variance | onset (mean, max, peaks/s) | mfcc mean | mfcc var |
     mel contrast | onset contrast | mfcc mean contrast | mfcc var contrast]

MFCC blocks are present only when cepstral coefficients are available;
contrast blocks only when local contrast is enabled.
"""

from __future__ import annotations

import numpy as np

from core.audio_search.types import FeatureSlice, FeatureVectorLayout, Fingerprint

ONSET_SCALARS: int = 3  # mean, max, peak density


def make_feature_vector_layout(
    mel_dim: int,
    mfcc_dim: int = 0,
    *,
    include_contrast: bool = True,
) -> FeatureVectorLayout:
    """Compute block offsets for the given input dimensionality.

    Args:
        mel_dim: Number of mel bands. Negative values clamp to 0.
        mfcc_dim: Number of cepstral coefficients used (0 = no MFCC blocks).
        include_contrast: Add foreground-minus-background blocks.

    Returns:
        FeatureVectorLayout with contiguous, non-overlapping slices.
    """
    mel_dim = max(0, int(mel_dim))
    mfcc_dim = max(0, int(mfcc_dim))

    offset = 0

    def take(length: int) -> FeatureSlice:
        nonlocal offset
        s = FeatureSlice(offset=offset, length=length)
        offset += length
        return s

    mel_mean_fg = take(mel_dim)
    mel_variance_fg = take(mel_dim)
    onset_fg = take(ONSET_SCALARS)

    mfcc_mean_fg = mfcc_variance_fg = None
    if mfcc_dim > 0:
        mfcc_mean_fg = take(mfcc_dim)
        mfcc_variance_fg = take(mfcc_dim)

    mel_contrast = onset_contrast = None
    mfcc_mean_contrast = mfcc_variance_contrast = None
    if include_contrast:
        mel_contrast = take(mel_dim)
        onset_contrast = take(ONSET_SCALARS)
        if mfcc_dim > 0:
            mfcc_mean_contrast = take(mfcc_dim)
            mfcc_variance_contrast = take(mfcc_dim)

    return FeatureVectorLayout(
        dim=offset,
        mel_mean_fg=mel_mean_fg,
        mel_variance_fg=mel_variance_fg,
        onset_fg=onset_fg,
        mfcc_mean_fg=mfcc_mean_fg,
        mfcc_variance_fg=mfcc_variance_fg,
        mel_contrast=mel_contrast,
        onset_contrast=onset_contrast,
        mfcc_mean_contrast=mfcc_mean_contrast,
        mfcc_variance_contrast=mfcc_variance_contrast,
    )


def _write_block(out: np.ndarray, block: FeatureSlice, values: np.ndarray | None) -> None:
    target = out[block.as_slice()]
    target[:] = 0.0
    if values is None:
        return
    n = min(block.length, values.shape[0])
    target[:n] = values[:n]


def fingerprint_to_feature_vector(
    fp: Fingerprint,
    layout: FeatureVectorLayout,
    out: np.ndarray | None = None,
) -> np.ndarray:
    """Flatten a fingerprint into a vector following ``layout``.

    Fingerprints carry no background information, so contrast blocks are
    always zero. Missing or short blocks are zero-padded.
    """
    if out is None:
        out = np.zeros(layout.dim, dtype=np.float64)
    else:
        out[:] = 0.0

    _write_block(out, layout.mel_mean_fg, fp.mel_mean)
    _write_block(out, layout.mel_variance_fg, fp.mel_variance)
    onset = out[layout.onset_fg.as_slice()]
    onset[0] = fp.onset_mean
    onset[1] = fp.onset_max
    onset[2] = fp.onset_peak_density_hz

    if layout.mfcc_mean_fg is not None and layout.mfcc_variance_fg is not None:
        _write_block(out, layout.mfcc_mean_fg, fp.mfcc_mean)
        _write_block(out, layout.mfcc_variance_fg, fp.mfcc_variance)

    return out
