"""
core/audio_search/models.py — Refinement model selection, training and scoring.

Decision policy over the user's labels:
    refinement disabled         -> baseline (0/0 counts)
    fewer than 2 accepted       -> baseline
    >= 2 accepted, 0 rejected   -> prototype (mean of positives)
    >= 2 accepted, >= 1 rejected -> logistic regression

Training is deterministic batch gradient descent: no random initialisation,
no shuffling. Identical inputs give bit-identical weights.

All vectors passed in here are expected to be z-scored already
(see normalization.py) except for the baseline path, which compares raw
layout vectors block by block.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from core.audio_search.config import BlockWeights, RefinementConfig, TrainingConfig
from core.audio_search.similarity import block_cosine_similarity, cosine_similarity01
from core.audio_search.types import (
    BaselineModel,
    FeatureSlice,
    FeatureVectorLayout,
    GroupWeightNorms,
    LogisticModel,
    ModelKind,
    ModelSummary,
    PrototypeModel,
    RefinedModel,
    RefinementLabel,
    TrainingDiagnostics,
)

_SIGMOID_CLAMP = 20.0
_PROB_EPS = 1e-9
_EARLY_STOP_DELTA = 1e-6
_LR_DECAY = 0.01


# ---------------------------------------------------------------------------
# Model selection
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelDecision:
    kind: ModelKind
    positives: tuple[RefinementLabel, ...]
    negatives: tuple[RefinementLabel, ...]

    def baseline(self) -> BaselineModel:
        """Baseline model carrying this decision's label counts.

        Used for baseline decisions, empty tracks and refinement fallback.
        """
        return baseline_model(len(self.positives), len(self.negatives))


def decide_model_kind(refinement: RefinementConfig) -> ModelDecision:
    """Pick the model variant for the given labels."""
    if not refinement.enabled:
        return ModelDecision(kind=ModelKind.BASELINE, positives=(), negatives=())

    positives = tuple(lb for lb in refinement.labels if lb.status == "accepted")
    negatives = tuple(lb for lb in refinement.labels if lb.status == "rejected")

    if len(positives) < 2:
        kind = ModelKind.BASELINE
    elif not negatives:
        kind = ModelKind.PROTOTYPE
    else:
        kind = ModelKind.LOGISTIC
    return ModelDecision(kind=kind, positives=positives, negatives=negatives)


def baseline_model(positives: int = 0, negatives: int = 0) -> BaselineModel:
    return BaselineModel(
        summary=ModelSummary(kind=ModelKind.BASELINE, positives=positives, negatives=negatives)
    )


# ---------------------------------------------------------------------------
# Math helpers
# ---------------------------------------------------------------------------


def sigmoid(x: np.ndarray | float) -> np.ndarray | float:
    """Logistic function with the input clamped to +/-20."""
    z = np.clip(x, -_SIGMOID_CLAMP, _SIGMOID_CLAMP)
    out = 1.0 / (1.0 + np.exp(-z))
    return float(out) if np.ndim(out) == 0 else out


def _sum_squares(weights: np.ndarray, *slices: FeatureSlice | None) -> float:
    total = 0.0
    for s in slices:
        if s is None:
            continue
        block = weights[s.as_slice()]
        total += float(np.dot(block, block))
    return total


def summarise_weight_norms(weights: np.ndarray, layout: FeatureVectorLayout) -> GroupWeightNorms:
    """L2 norm of the weight vector per feature group.

    Contrast and mfcc entries are None when the group is absent or all-zero.
    """
    mel_fg = _sum_squares(weights, layout.mel_mean_fg, layout.mel_variance_fg)
    mel_ct = _sum_squares(weights, layout.mel_contrast)
    onset_fg = _sum_squares(weights, layout.onset_fg)
    onset_ct = _sum_squares(weights, layout.onset_contrast)
    mfcc_fg = _sum_squares(weights, layout.mfcc_mean_fg, layout.mfcc_variance_fg)
    mfcc_ct = _sum_squares(weights, layout.mfcc_mean_contrast, layout.mfcc_variance_contrast)

    has_mfcc = mfcc_fg + mfcc_ct > 0
    return GroupWeightNorms(
        mel=float(np.sqrt(mel_fg + mel_ct)),
        mel_foreground=float(np.sqrt(mel_fg)),
        mel_contrast=float(np.sqrt(mel_ct)) if mel_ct > 0 else None,
        onset=float(np.sqrt(onset_fg + onset_ct)),
        onset_foreground=float(np.sqrt(onset_fg)),
        onset_contrast=float(np.sqrt(onset_ct)) if onset_ct > 0 else None,
        mfcc=float(np.sqrt(mfcc_fg + mfcc_ct)) if has_mfcc else None,
        mfcc_foreground=float(np.sqrt(mfcc_fg)) if has_mfcc else None,
        mfcc_contrast=float(np.sqrt(mfcc_ct)) if has_mfcc and mfcc_ct > 0 else None,
    )


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def build_prototype_model(
    positives: Sequence[np.ndarray], layout: FeatureVectorLayout
) -> PrototypeModel:
    """Mean of the positive vectors (zeros when there are none)."""
    if positives:
        prototype = np.mean(np.stack(positives), axis=0)
    else:
        prototype = np.zeros(layout.dim, dtype=np.float64)
    return PrototypeModel(
        prototype=prototype,
        summary=ModelSummary(kind=ModelKind.PROTOTYPE, positives=len(positives), negatives=0),
    )


def train_logistic_model(
    positives: Sequence[np.ndarray],
    negatives: Sequence[np.ndarray],
    layout: FeatureVectorLayout,
    config: TrainingConfig | None = None,
) -> LogisticModel:
    """Train ``sigmoid(w·x + b)`` by class-balanced batch gradient descent.

    Each class carries a total sample weight of 0.5, split evenly among its
    members. The L2 penalty ``l2 * ||w||^2 / 2`` excludes the bias. The
    step size decays as ``lr / (1 + 0.01 * iteration)`` and training stops
    early once the loss changes by less than 1e-6.

    Args:
        positives: Z-scored positive example vectors.
        negatives: Z-scored negative example vectors.
        layout:    Feature layout (vector dimension, weight-norm groups).
        config:    Iteration budget, learning rate and L2 strength.

    Returns:
        LogisticModel with training diagnostics and per-group weight norms.
    """
    cfg = config or TrainingConfig()
    dim = layout.dim

    rows = list(positives) + list(negatives)
    x = np.stack(rows) if rows else np.zeros((0, dim), dtype=np.float64)
    y = np.concatenate([np.ones(len(positives)), np.zeros(len(negatives))])
    sample_w = np.concatenate(
        [
            np.full(len(positives), 0.5 / len(positives) if positives else 0.0),
            np.full(len(negatives), 0.5 / len(negatives) if negatives else 0.0),
        ]
    )

    w = np.zeros(dim, dtype=np.float64)
    b = 0.0
    last_loss = np.inf
    loss = 0.0
    iterations_used = 0

    for iteration in range(cfg.iterations):
        iterations_used = iteration + 1

        p = sigmoid(x @ w + b)
        err = sample_w * (p - y)
        grad_w = err @ x
        grad_b = float(err.sum())

        p_safe = np.clip(p, _PROB_EPS, 1.0 - _PROB_EPS)
        loss = float(-np.sum(sample_w * (y * np.log(p_safe) + (1.0 - y) * np.log(1.0 - p_safe))))

        if cfg.l2 > 0:
            grad_w = grad_w + cfg.l2 * w
            loss += cfg.l2 * float(np.dot(w, w)) / 2.0

        lr = cfg.learning_rate / (1.0 + iteration * _LR_DECAY)
        w = w - lr * grad_w
        b -= lr * grad_b

        if abs(last_loss - loss) < _EARLY_STOP_DELTA:
            break
        last_loss = loss

    summary = ModelSummary(
        kind=ModelKind.LOGISTIC,
        positives=len(positives),
        negatives=len(negatives),
        weight_norms=summarise_weight_norms(w, layout),
        training=TrainingDiagnostics(
            iterations=iterations_used,
            final_loss=float(last_loss) if np.isfinite(last_loss) else 0.0,
        ),
    )
    return LogisticModel(weights=w, bias=b, summary=summary)


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def score_with_model(
    model: RefinedModel,
    vector: np.ndarray,
    *,
    query: np.ndarray,
    layout: FeatureVectorLayout,
    weights: BlockWeights | None = None,
) -> float:
    """Score one window vector in [0, 1].

    baseline  -> block cosine similarity between ``query`` and ``vector``
    prototype -> cosine similarity to the prototype, rescaled to [0, 1]
    logistic  -> ``sigmoid(w·x + b)``
    """
    if model.kind is ModelKind.BASELINE:
        score = block_cosine_similarity(query, vector, layout, weights)
    elif model.kind is ModelKind.PROTOTYPE:
        score = cosine_similarity01(model.prototype, vector)
    elif model.kind is ModelKind.LOGISTIC:
        score = sigmoid(float(np.dot(model.weights, vector)) + model.bias)
    else:
        raise ValueError(f"Unknown model kind {model.kind!r}")
    return min(1.0, max(0.0, float(score)))
