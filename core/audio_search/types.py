"""
core/audio_search/types.py — Data types for audio similarity search.

All result types are frozen dataclasses — immutable value objects created
fresh for each search call and discarded afterwards.

Design:
    - Types that hold numpy arrays use ``eq=False`` so that equality falls
      back to identity instead of ambiguous element-wise array comparison.
    - Invariants are documented here and enforced at creation sites
      (``FrameSeries.from_arrays``, layout.py, sliding.py, models.py).
    - Models form a tagged variant: exactly three classes, each carrying a
      ``kind`` discriminator. Dispatch happens on ``kind`` in models.py.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

import numpy as np

CurveKind = Literal["similarity", "confidence"]
LabelStatus = Literal["accepted", "rejected"]
LabelSource = Literal["auto", "manual"]

# Cepstral coefficients used by the feature blocks: 1..12 inclusive (C0 excluded).
MFCC_FIRST_COEFF: int = 1
MFCC_MAX_COEFFS: int = 12


# ---------------------------------------------------------------------------
# Frame series — precomputed, time-aligned analysis frames
# ---------------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class FrameSeries:
    """Time-aligned analysis frames for one track.

    Invariants:
        times is 1-D, non-decreasing, length n
        mel.shape == (n, mel_bands)
        onset.shape == (n,)
        mfcc is None or mfcc.shape[0] == n
    """

    times: np.ndarray
    """Frame centre times in seconds, shape (n,)."""

    mel: np.ndarray
    """Mel-band energies, shape (n, mel_bands)."""

    onset: np.ndarray
    """Onset-strength envelope, shape (n,)."""

    mfcc: np.ndarray | None = None
    """Cepstral coefficients including C0, shape (n, n_coeffs). Optional."""

    @classmethod
    def from_arrays(
        cls,
        times: np.ndarray | list[float],
        mel: np.ndarray | list[list[float]],
        onset: np.ndarray | list[float],
        mfcc: np.ndarray | list[list[float]] | None = None,
    ) -> FrameSeries:
        """Build a validated FrameSeries from array-likes.

        Raises:
            ValueError: If shapes disagree or times decrease.
        """
        t = np.asarray(times, dtype=np.float64).reshape(-1)
        n = t.shape[0]

        m = np.asarray(mel, dtype=np.float64)
        if m.ndim == 1 and m.size == 0:
            m = np.zeros((n, 0), dtype=np.float64)
        if m.ndim != 2 or m.shape[0] != n:
            raise ValueError(f"mel must have shape ({n}, bands), got {m.shape}")

        o = np.asarray(onset, dtype=np.float64).reshape(-1)
        if o.shape[0] != n:
            raise ValueError(f"onset must have {n} frames, got {o.shape[0]}")

        c: np.ndarray | None = None
        if mfcc is not None:
            c = np.asarray(mfcc, dtype=np.float64)
            if c.ndim != 2 or c.shape[0] != n:
                raise ValueError(f"mfcc must have shape ({n}, coeffs), got {c.shape}")

        if n > 1 and np.any(np.diff(t) < 0):
            raise ValueError("frame times must be non-decreasing")

        return cls(times=t, mel=m, onset=o, mfcc=c)

    @property
    def n_frames(self) -> int:
        return int(self.times.shape[0])

    @property
    def mel_dim(self) -> int:
        return int(self.mel.shape[1]) if self.mel.ndim == 2 else 0

    @property
    def mfcc_dim(self) -> int:
        """Number of cepstral coefficients used (1..12), 0 when absent."""
        if self.mfcc is None or self.mfcc.ndim != 2:
            return 0
        return max(0, min(MFCC_MAX_COEFFS, int(self.mfcc.shape[1]) - MFCC_FIRST_COEFF))

    @property
    def duration(self) -> float:
        """Time of the last frame in seconds (0.0 for an empty series)."""
        return float(self.times[-1]) if self.n_frames else 0.0


# ---------------------------------------------------------------------------
# Windows and labels
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SearchWindow:
    """A time interval in seconds. ``start`` may exceed ``end`` on input;
    use ``ordered()`` to normalise."""

    start: float
    end: float

    @property
    def duration(self) -> float:
        return abs(self.end - self.start)

    def ordered(self) -> SearchWindow:
        if self.start <= self.end:
            return self
        return SearchWindow(start=self.end, end=self.start)

    def overlaps(self, other: SearchWindow) -> bool:
        """Open-interval overlap: touching endpoints do not overlap."""
        return self.start < other.end and self.end > other.start


@dataclass(frozen=True)
class RefinementLabel:
    """A user or heuristic judgement on a candidate window.

    Used only as a training example for the current search.
    """

    start: float
    end: float
    status: LabelStatus
    source: LabelSource = "manual"

    @property
    def window(self) -> SearchWindow:
        return SearchWindow(start=self.start, end=self.end)


# ---------------------------------------------------------------------------
# Feature vector layout
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FeatureSlice:
    """A contiguous block ``[offset, offset + length)`` in a feature vector."""

    offset: int
    length: int

    @property
    def stop(self) -> int:
        return self.offset + self.length

    def as_slice(self) -> slice:
        return slice(self.offset, self.stop)


@dataclass(frozen=True)
class FeatureVectorLayout:
    """Named blocks of the flat per-window feature vector.

    Invariants:
        dim == sum of the lengths of all present slices
        slices are contiguous and never overlap
    """

    dim: int
    mel_mean_fg: FeatureSlice
    mel_variance_fg: FeatureSlice
    onset_fg: FeatureSlice
    mfcc_mean_fg: FeatureSlice | None = None
    mfcc_variance_fg: FeatureSlice | None = None
    mel_contrast: FeatureSlice | None = None
    onset_contrast: FeatureSlice | None = None
    mfcc_mean_contrast: FeatureSlice | None = None
    mfcc_variance_contrast: FeatureSlice | None = None

    @property
    def mel_dim(self) -> int:
        return self.mel_mean_fg.length

    @property
    def mfcc_dim(self) -> int:
        return self.mfcc_mean_fg.length if self.mfcc_mean_fg is not None else 0

    @property
    def has_contrast(self) -> bool:
        return self.mel_contrast is not None

    def slices(self) -> dict[str, FeatureSlice]:
        """All present slices keyed by name, in vector order."""
        names = (
            "mel_mean_fg",
            "mel_variance_fg",
            "onset_fg",
            "mfcc_mean_fg",
            "mfcc_variance_fg",
            "mel_contrast",
            "onset_contrast",
            "mfcc_mean_contrast",
            "mfcc_variance_contrast",
        )
        out: dict[str, FeatureSlice] = {}
        for name in names:
            s = getattr(self, name)
            if s is not None:
                out[name] = s
        return out


# ---------------------------------------------------------------------------
# Fingerprint
# ---------------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class Fingerprint:
    """Statistical summary of one time window prior to flattening."""

    t0: float
    t1: float
    mel_mean: np.ndarray
    mel_variance: np.ndarray
    onset_mean: float
    onset_max: float
    onset_peak_density_hz: float
    """Onset peaks per second inside the window."""
    mfcc_mean: np.ndarray | None = None
    mfcc_variance: np.ndarray | None = None


# ---------------------------------------------------------------------------
# Models — tagged variant
# ---------------------------------------------------------------------------


class ModelKind(str, Enum):
    """Discriminator for the three refinement model variants."""

    BASELINE = "baseline"
    PROTOTYPE = "prototype"
    LOGISTIC = "logistic"


@dataclass(frozen=True)
class TrainingDiagnostics:
    iterations: int
    final_loss: float


@dataclass(frozen=True)
class GroupWeightNorms:
    """L2 norms of a logistic weight vector per feature group."""

    mel: float
    mel_foreground: float
    onset: float
    onset_foreground: float
    mel_contrast: float | None = None
    onset_contrast: float | None = None
    mfcc: float | None = None
    mfcc_foreground: float | None = None
    mfcc_contrast: float | None = None


@dataclass(frozen=True)
class ModelSummary:
    """What the caller sees about the model used for a search."""

    kind: ModelKind
    positives: int
    negatives: int
    weight_norms: GroupWeightNorms | None = None
    training: TrainingDiagnostics | None = None


@dataclass(frozen=True)
class BaselineModel:
    """No parameters: scores are block-wise cosine similarity to the query."""

    summary: ModelSummary
    kind: ModelKind = field(default=ModelKind.BASELINE, init=False)


@dataclass(frozen=True, eq=False)
class PrototypeModel:
    """Mean of the (z-scored) positive example vectors."""

    prototype: np.ndarray
    summary: ModelSummary
    kind: ModelKind = field(default=ModelKind.PROTOTYPE, init=False)


@dataclass(frozen=True, eq=False)
class LogisticModel:
    """Linear classifier ``sigmoid(w·x + b)`` over z-scored vectors."""

    weights: np.ndarray
    bias: float
    summary: ModelSummary
    kind: ModelKind = field(default=ModelKind.LOGISTIC, init=False)

    @property
    def diagnostics(self) -> TrainingDiagnostics | None:
        return self.summary.training


RefinedModel = BaselineModel | PrototypeModel | LogisticModel


# ---------------------------------------------------------------------------
# Explainability
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LogitContributions:
    """Per-group decomposition of a logistic logit.

    Invariant: mel + onset + (mfcc or 0) + bias == logit
    """

    logit: float
    bias: float
    mel: float
    mel_foreground: float
    onset: float
    onset_foreground: float
    mel_contrast: float | None = None
    onset_contrast: float | None = None
    mfcc: float | None = None
    mfcc_foreground: float | None = None
    mfcc_contrast: float | None = None


# ---------------------------------------------------------------------------
# Search output
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SearchCandidate:
    """One detected match. Invariant: 0 <= score <= 1."""

    time: float
    score: float
    window_start: float
    window_end: float
    explain: LogitContributions | None = None


@dataclass(frozen=True)
class SearchTimings:
    """Wall-clock breakdown of one search call, in milliseconds."""

    feature_prep_ms: float
    scan_ms: float
    model_ms: float
    total_ms: float


@dataclass(frozen=True, eq=False)
class SearchResult:
    """Complete result of one search call.

    ``times`` holds window start times and ``scores`` the per-window score
    in [0, 1] (similarity or model confidence, see ``curve_kind``).
    """

    times: np.ndarray
    scores: np.ndarray
    curve_kind: CurveKind
    candidates: tuple[SearchCandidate, ...]
    model: ModelSummary
    timings: SearchTimings
    window_sec: float
    hop_sec: float
    scanned_windows: int
    skipped_windows: int
    refinement_fallback: bool = False
    """True when refinement failed and the baseline scan was used instead."""
