"""
core/audio_search/config.py — Configuration for similarity search.

Immutable config objects with every default stated in one place. A search
call resolves its SearchConfig exactly once (``resolve_search_config``) and
never re-reads options mid-scan.

Example:
    >>> config = SearchConfig(hop_sec=0.02, threshold=0.8)
    >>> result = search_track_guided(SearchWindow(10.0, 10.5), frames, config)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from core.audio_search.cancellation import CancellationCheck
from core.audio_search.types import RefinementLabel, SearchWindow

AdaptiveMethod = Literal["mean_std", "median"]
SearchPrecision = Literal["fine", "medium", "coarse"]

MIN_HOP_SEC: float = 0.005
MIN_WINDOW_SEC: float = 1e-3
DEFAULT_SPACING_FACTOR: float = 0.8

_PRECISION_HOP_SEC: dict[str, float] = {
    "fine": 0.02,
    "medium": 0.035,
    "coarse": 0.05,
}
_LONG_SELECTION_SEC: float = 2.0
_LONG_SELECTION_HOP_SCALE: float = 1.5


@dataclass(frozen=True)
class PeakPickConfig:
    """Peak-picking parameters.

    Attributes:
        threshold: Absolute minimum peak height. Ignored when
            ``adaptive_factor`` is set.
        min_interval_sec: Minimum time between accepted peaks.
        adaptive_factor: When set, the threshold becomes
            ``mean + factor*std`` (``mean_std``) or ``median*factor``
            (``median``) of the series.
        adaptive_method: Which adaptive rule to use.
    """

    threshold: float = 0.0
    min_interval_sec: float = 0.0
    adaptive_factor: float | None = None
    adaptive_method: AdaptiveMethod = "mean_std"

    def __post_init__(self) -> None:
        if self.min_interval_sec < 0:
            raise ValueError(
                f"min_interval_sec must be non-negative, got {self.min_interval_sec}"
            )
        if self.adaptive_method not in ("mean_std", "median"):
            raise ValueError(f"Unknown adaptive_method {self.adaptive_method!r}")


@dataclass(frozen=True)
class BlockWeights:
    """Per-block weights for baseline cosine scoring."""

    mel: float = 1.0
    transient: float = 1.0
    mfcc: float = 1.0


@dataclass(frozen=True)
class LocalContrastConfig:
    """Foreground-vs-background contrast features.

    ``background_scale`` is the background duration as a multiple of the
    foreground duration (values below 1 are treated as 1).
    """

    enabled: bool = True
    background_scale: float = 3.0


@dataclass(frozen=True)
class RefinementConfig:
    """Labels and switches that drive model selection."""

    enabled: bool = False
    labels: tuple[RefinementLabel, ...] = ()
    include_query_as_positive: bool = True


@dataclass(frozen=True)
class TrainingConfig:
    """Logistic-regression training budget."""

    iterations: int = 80
    learning_rate: float = 0.15
    l2: float = 0.01

    def __post_init__(self) -> None:
        if self.iterations <= 0:
            raise ValueError(f"iterations must be positive, got {self.iterations}")
        if self.learning_rate <= 0:
            raise ValueError(f"learning_rate must be positive, got {self.learning_rate}")
        if self.l2 < 0:
            raise ValueError(f"l2 must be non-negative, got {self.l2}")


@dataclass(frozen=True)
class SearchConfig:
    """All recognised search options.

    Attributes:
        hop_sec: Scan step in seconds. Floored at 0.005.
        threshold: Minimum score for a candidate, clamped to [0, 1].
        min_candidate_spacing_sec: Minimum time between candidates.
            None means 0.8 x query duration.
        skip_window_overlap: Windows overlapping this interval score 0.
        weights: Block weights for baseline cosine scoring.
        local_contrast: Background-contrast feature settings.
        refinement: Labels and model-selection switches.
        query_peak_pick: Peak picking for the onset peak-density feature.
        candidate_strict: Strict (>) or non-strict (>=) local maxima for
            candidate extraction.
        softmax_similarity: Return a softmax-sharpened similarity curve.
            Applied after candidate extraction and never to confidence
            curves.
        training: Logistic training budget.
        is_cancelled: Cooperative cancellation predicate.
    """

    hop_sec: float = 0.03
    threshold: float = 0.75
    min_candidate_spacing_sec: float | None = None
    skip_window_overlap: SearchWindow | None = None
    weights: BlockWeights = field(default_factory=BlockWeights)
    local_contrast: LocalContrastConfig = field(default_factory=LocalContrastConfig)
    refinement: RefinementConfig = field(default_factory=RefinementConfig)
    query_peak_pick: PeakPickConfig = field(default_factory=PeakPickConfig)
    candidate_strict: bool = True
    softmax_similarity: bool = False
    training: TrainingConfig = field(default_factory=TrainingConfig)
    is_cancelled: CancellationCheck | None = field(default=None, compare=False)


@dataclass(frozen=True)
class ResolvedSearchParams:
    """Numeric parameters derived once per call from SearchConfig + query."""

    query: SearchWindow
    window_sec: float
    hop_sec: float
    threshold: float
    min_spacing_sec: float
    background_scale: float
    contrast_enabled: bool


def _clamp01(x: float) -> float:
    return 0.0 if x <= 0.0 else 1.0 if x >= 1.0 else float(x)


def resolve_search_config(config: SearchConfig, query: SearchWindow) -> ResolvedSearchParams:
    """Clamp and default every numeric option for one search call."""
    q = query.ordered()
    window_sec = max(MIN_WINDOW_SEC, q.end - q.start)
    spacing = config.min_candidate_spacing_sec
    if spacing is None:
        spacing = window_sec * DEFAULT_SPACING_FACTOR
    return ResolvedSearchParams(
        query=q,
        window_sec=window_sec,
        hop_sec=max(MIN_HOP_SEC, config.hop_sec),
        threshold=_clamp01(config.threshold),
        min_spacing_sec=max(0.0, spacing),
        background_scale=max(1.0, config.local_contrast.background_scale),
        contrast_enabled=config.local_contrast.enabled,
    )


def precision_to_hop_sec(precision: SearchPrecision, selection_duration_sec: float) -> float:
    """Map a coarse precision setting to a hop size in seconds.

    Long selections (> 2 s) get a 1.5x larger hop to keep window counts low.
    """
    if precision not in _PRECISION_HOP_SEC:
        raise ValueError(
            f"Unknown precision {precision!r}, valid options: {sorted(_PRECISION_HOP_SEC)}"
        )
    base = _PRECISION_HOP_SEC[precision]
    duration = max(0.0, selection_duration_sec)
    scaled = base * _LONG_SELECTION_HOP_SCALE if duration > _LONG_SELECTION_SEC else base
    return max(MIN_HOP_SEC, scaled)


DEFAULT_CONFIG = SearchConfig()
"""Default search configuration: 30 ms hop, 0.75 threshold, contrast on."""
