"""
core/audio_search/explain.py — Logit decomposition for logistic candidates.

Splits ``w·x + b`` into per-group dot products so a caller can see which
feature family drove a detection:

    logit = mel + onset + mfcc + bias
    mel   = mel_foreground + mel_contrast     (likewise onset, mfcc)

Only computed for emitted candidates, never for every scanned window.
"""

from __future__ import annotations

import numpy as np

from core.audio_search.types import (
    FeatureSlice,
    FeatureVectorLayout,
    LogisticModel,
    LogitContributions,
)


def _slice_dot(w: np.ndarray, x: np.ndarray, *slices: FeatureSlice | None) -> float:
    total = 0.0
    for s in slices:
        if s is not None:
            total += float(np.dot(w[s.as_slice()], x[s.as_slice()]))
    return total


def logit_contributions(
    model: LogisticModel,
    vector: np.ndarray,
    layout: FeatureVectorLayout,
) -> LogitContributions:
    """Decompose the model's logit for a z-scored window vector."""
    w = model.weights
    mel_fg = _slice_dot(w, vector, layout.mel_mean_fg, layout.mel_variance_fg)
    mel_ct = _slice_dot(w, vector, layout.mel_contrast)
    onset_fg = _slice_dot(w, vector, layout.onset_fg)
    onset_ct = _slice_dot(w, vector, layout.onset_contrast)
    mfcc_fg = _slice_dot(w, vector, layout.mfcc_mean_fg, layout.mfcc_variance_fg)
    mfcc_ct = _slice_dot(w, vector, layout.mfcc_mean_contrast, layout.mfcc_variance_contrast)

    mel = mel_fg + mel_ct
    onset = onset_fg + onset_ct
    mfcc = mfcc_fg + mfcc_ct
    has_mfcc = layout.mfcc_mean_fg is not None or layout.mfcc_mean_contrast is not None

    return LogitContributions(
        logit=mel + onset + mfcc + model.bias,
        bias=model.bias,
        mel=mel,
        mel_foreground=mel_fg,
        mel_contrast=mel_ct if layout.mel_contrast is not None else None,
        onset=onset,
        onset_foreground=onset_fg,
        onset_contrast=onset_ct if layout.onset_contrast is not None else None,
        mfcc=mfcc if has_mfcc else None,
        mfcc_foreground=mfcc_fg if has_mfcc else None,
        mfcc_contrast=mfcc_ct if layout.mfcc_mean_contrast is not None else None,
    )
