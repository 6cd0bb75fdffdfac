"""
core/audio_search/search.py — Public search entry points.

Two entry points over one track's precomputed frames:

    search_track(query, frames, config)          plain search
        │
        ├─ compute_fingerprint(query)             [fingerprint.py]
        ├─ per window: compute_fingerprint()      [fingerprint.py]
        │              fingerprint_similarity()   [similarity.py]
        └─ pick_peaks(score curve)                [peaks.py]

    search_track_guided(query, frames, config)   guided / refined search
        │
        ├─ make_feature_vector_layout()           [layout.py]
        ├─ WindowFeatureExtractor                 [sliding.py]
        ├─ decide_model_kind(labels)              [models.py]
        │     baseline  → one scan, block cosine to the query vector
        │     otherwise → pass 1: z-score stats over all windows
        │                 train prototype / logistic on labelled windows
        │                 pass 2: score z-scored windows
        │                 on failure → baseline scan from scratch
        ├─ pick_peaks(score curve)                [peaks.py]
        └─ logit_contributions(candidates)        [explain.py, logistic only]

Windows overlapping ``skip_window_overlap`` score exactly 0 and are
excluded from candidate extraction. SearchCancelledError from the
cancellation predicate always propagates to the caller unchanged.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, replace

import numpy as np

from core.audio_search.cancellation import SearchCancelledError, check_cancelled
from core.audio_search.config import (
    DEFAULT_CONFIG,
    ResolvedSearchParams,
    SearchConfig,
    resolve_search_config,
)
from core.audio_search.explain import logit_contributions
from core.audio_search.fingerprint import compute_fingerprint
from core.audio_search.layout import make_feature_vector_layout
from core.audio_search.models import (
    ModelDecision,
    baseline_model,
    build_prototype_model,
    decide_model_kind,
    score_with_model,
    train_logistic_model,
)
from core.audio_search.normalization import ZScoreAccumulator, ZScoreStats
from core.audio_search.peaks import pick_peaks, pick_peaks_with_config
from core.audio_search.similarity import fingerprint_similarity
from core.audio_search.sliding import WindowFeatureExtractor
from core.audio_search.types import (
    CurveKind,
    FrameSeries,
    ModelKind,
    ModelSummary,
    RefinedModel,
    SearchCandidate,
    SearchResult,
    SearchTimings,
    SearchWindow,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


def _clamp01(x: float) -> float:
    return 0.0 if x <= 0.0 else 1.0 if x >= 1.0 else x


def softmax_similarity_curve(result: SearchResult) -> SearchResult:
    """Replace a similarity curve by its softmax to sharpen peaks.

    Confidence curves are returned unchanged, since their scores are
    probabilities compared against the threshold. Candidates keep the
    scores they were picked with.
    """
    if result.curve_kind != "similarity" or result.scores.size == 0:
        return result
    exp = np.exp(result.scores - result.scores.max())
    total = float(exp.sum())
    return replace(result, scores=exp / (total if total > 0 else 1.0))


def count_windows(track_duration: float, window_sec: float, hop_sec: float) -> int:
    """Number of scan windows of ``window_sec`` that fit with step ``hop_sec``."""
    return max(0, math.floor((track_duration - window_sec) / hop_sec) + 1)


def _skip_mask(times: np.ndarray, window_sec: float, skip: SearchWindow | None) -> np.ndarray:
    """True for every window ``[t, t + window_sec]`` overlapping ``skip``."""
    if skip is None:
        return np.zeros(times.shape[0], dtype=bool)
    s = skip.ordered()
    return (times < s.end) & (times + window_sec > s.start)


def _pick_candidates(
    times: np.ndarray,
    scores: np.ndarray,
    skip: np.ndarray,
    params: ResolvedSearchParams,
    strict: bool,
) -> list[SearchCandidate]:
    events = pick_peaks(
        times,
        scores,
        threshold=params.threshold,
        min_interval_sec=params.min_spacing_sec,
        strict=strict,
        exclude=skip,
    )
    return [
        SearchCandidate(
            time=e.time,
            score=e.strength,
            window_start=e.time,
            window_end=e.time + params.window_sec,
        )
        for e in events
    ]


def _empty_result(
    params: ResolvedSearchParams, model_summary: ModelSummary, prep_ms: float, start: float
) -> SearchResult:
    return SearchResult(
        times=np.zeros(0, dtype=np.float64),
        scores=np.zeros(0, dtype=np.float64),
        curve_kind="similarity",
        candidates=(),
        model=model_summary,
        timings=SearchTimings(
            feature_prep_ms=prep_ms, scan_ms=0.0, model_ms=0.0, total_ms=_elapsed_ms(start)
        ),
        window_sec=params.window_sec,
        hop_sec=params.hop_sec,
        scanned_windows=0,
        skipped_windows=0,
    )


# ---------------------------------------------------------------------------
# Plain search
# ---------------------------------------------------------------------------


def search_track(
    query: SearchWindow,
    frames: FrameSeries,
    config: SearchConfig = DEFAULT_CONFIG,
) -> SearchResult:
    """Slide the query fingerprint across the track and score each window.

    Every window is fingerprinted from its own frames (frame-normalised
    variant) and compared with ``fingerprint_similarity``. The curve kind
    is always ``"similarity"`` and the model is baseline.

    Args:
        query:  Query interval in seconds (bounds may be reversed).
        frames: Precomputed frame series of the track.
        config: Search options, resolved once for this call.

    Returns:
        SearchResult with one score per window start time.

    Raises:
        SearchCancelledError: If ``config.is_cancelled`` returns True.
    """
    start = time.perf_counter()
    params = resolve_search_config(config, query)
    is_cancelled = config.is_cancelled

    prep_start = time.perf_counter()
    check_cancelled(is_cancelled)
    onset_peaks = pick_peaks_with_config(
        frames.times, frames.onset, config.query_peak_pick, strict=True
    )
    peak_times = np.array([p.time for p in onset_peaks], dtype=np.float64)
    query_fp = compute_fingerprint(params.query, frames, onset_peak_times=peak_times)
    prep_ms = _elapsed_ms(prep_start)

    n_windows = count_windows(frames.duration, params.window_sec, params.hop_sec)
    if n_windows == 0:
        return _empty_result(params, baseline_model().summary, prep_ms, start)

    scan_start = time.perf_counter()
    times = np.arange(n_windows, dtype=np.float64) * params.hop_sec
    scores = np.zeros(n_windows, dtype=np.float64)
    skip = _skip_mask(times, params.window_sec, config.skip_window_overlap)

    scanned = 0
    for w in range(n_windows):
        check_cancelled(is_cancelled)
        if skip[w]:
            continue
        t0 = float(times[w])
        fp = compute_fingerprint(
            SearchWindow(start=t0, end=t0 + params.window_sec),
            frames,
            onset_peak_times=peak_times,
        )
        scores[w] = _clamp01(fingerprint_similarity(query_fp, fp, config.weights))
        scanned += 1
    scan_ms = _elapsed_ms(scan_start)

    candidates = _pick_candidates(times, scores, skip, params, config.candidate_strict)

    return SearchResult(
        times=times,
        scores=scores,
        curve_kind="similarity",
        candidates=tuple(candidates),
        model=baseline_model().summary,
        timings=SearchTimings(
            feature_prep_ms=prep_ms,
            scan_ms=scan_ms,
            model_ms=0.0,
            total_ms=_elapsed_ms(start),
        ),
        window_sec=params.window_sec,
        hop_sec=params.hop_sec,
        scanned_windows=scanned,
        skipped_windows=n_windows - scanned,
    )


# ---------------------------------------------------------------------------
# Guided search
# ---------------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class _ScanOutcome:
    scores: np.ndarray
    scanned: int
    model: RefinedModel
    curve_kind: CurveKind
    zscore: ZScoreStats | None = None


def _baseline_scan(
    extractor: WindowFeatureExtractor,
    query_vec: np.ndarray,
    decision: ModelDecision,
    n_windows: int,
    params: ResolvedSearchParams,
    skip: np.ndarray,
    config: SearchConfig,
) -> _ScanOutcome:
    model = decision.baseline()
    scores = np.zeros(n_windows, dtype=np.float64)
    scanned = 0
    for wv in extractor.scan(n_windows, params.hop_sec, params.window_sec):
        if skip[wv.index]:
            continue
        scores[wv.index] = score_with_model(
            model, wv.vector, query=query_vec, layout=extractor.layout, weights=config.weights
        )
        scanned += 1
    return _ScanOutcome(scores=scores, scanned=scanned, model=model, curve_kind="similarity")


def _refined_scan(
    extractor: WindowFeatureExtractor,
    query_vec: np.ndarray,
    decision: ModelDecision,
    n_windows: int,
    params: ResolvedSearchParams,
    skip: np.ndarray,
    config: SearchConfig,
) -> _ScanOutcome:
    layout = extractor.layout

    # Pass 1: z-score statistics over every window of this track.
    accumulator = ZScoreAccumulator(layout.dim)
    for wv in extractor.scan(n_windows, params.hop_sec, params.window_sec):
        accumulator.add(wv.vector)
    zscore = accumulator.finalize()

    positives = [zscore.apply(extractor.vector_for_interval(lb.window)) for lb in decision.positives]
    negatives = [zscore.apply(extractor.vector_for_interval(lb.window)) for lb in decision.negatives]
    if config.refinement.include_query_as_positive:
        positives.append(zscore.apply(query_vec))

    model: RefinedModel
    if decision.kind is ModelKind.LOGISTIC:
        model = train_logistic_model(positives, negatives, layout, config.training)
    else:
        model = build_prototype_model(positives, layout)

    # Pass 2: score z-scored windows with the trained model.
    scores = np.zeros(n_windows, dtype=np.float64)
    scanned = 0
    for wv in extractor.scan(n_windows, params.hop_sec, params.window_sec):
        if skip[wv.index]:
            continue
        scores[wv.index] = score_with_model(
            model, zscore.apply(wv.vector), query=query_vec, layout=layout, weights=config.weights
        )
        scanned += 1
    return _ScanOutcome(
        scores=scores, scanned=scanned, model=model, curve_kind="confidence", zscore=zscore
    )


def _attempt_refined_scan(
    extractor: WindowFeatureExtractor,
    query_vec: np.ndarray,
    decision: ModelDecision,
    n_windows: int,
    params: ResolvedSearchParams,
    skip: np.ndarray,
    config: SearchConfig,
) -> _ScanOutcome | None:
    """Run the refined scan; None when it fails for any reason but cancellation."""
    try:
        return _refined_scan(extractor, query_vec, decision, n_windows, params, skip, config)
    except SearchCancelledError:
        raise
    except Exception:
        logger.warning(
            "Refinement with %s model failed, falling back to baseline scan",
            decision.kind.value,
            exc_info=True,
        )
        return None


def search_track_guided(
    query: SearchWindow,
    frames: FrameSeries,
    config: SearchConfig = DEFAULT_CONFIG,
) -> SearchResult:
    """Guided search with local contrast features and optional refinement.

    With fewer than two accepted labels (or refinement disabled) windows are
    scored by block cosine similarity to the query vector. Otherwise a
    prototype or logistic model is fitted on the labelled windows and the
    curve becomes a confidence curve. A failed refinement attempt is
    discarded and the baseline scan re-run, with ``refinement_fallback``
    set on the result.

    Args:
        query:  Query interval in seconds (bounds may be reversed).
        frames: Precomputed frame series of the track.
        config: Search options, resolved once for this call.

    Returns:
        SearchResult. Logistic candidates carry logit explanations.

    Raises:
        SearchCancelledError: If ``config.is_cancelled`` returns True.
    """
    start = time.perf_counter()
    params = resolve_search_config(config, query)
    decision = decide_model_kind(config.refinement)

    prep_start = time.perf_counter()
    layout = make_feature_vector_layout(
        frames.mel_dim, frames.mfcc_dim, include_contrast=params.contrast_enabled
    )
    extractor = WindowFeatureExtractor(
        frames,
        layout,
        query_peak_pick=config.query_peak_pick,
        background_scale=params.background_scale,
        is_cancelled=config.is_cancelled,
    )
    query_vec = extractor.vector_for_interval(params.query)
    prep_ms = _elapsed_ms(prep_start)

    n_windows = count_windows(extractor.track_duration, params.window_sec, params.hop_sec)
    if n_windows == 0:
        summary = decision.baseline().summary
        return _empty_result(params, summary, prep_ms, start)

    times = np.arange(n_windows, dtype=np.float64) * params.hop_sec
    skip = _skip_mask(times, params.window_sec, config.skip_window_overlap)

    scan_start = time.perf_counter()
    model_ms = 0.0
    outcome: _ScanOutcome | None = None
    fallback = False
    if decision.kind is not ModelKind.BASELINE:
        # Model time covers the refined attempt and any fallback re-scan.
        model_start = time.perf_counter()
        outcome = _attempt_refined_scan(
            extractor, query_vec, decision, n_windows, params, skip, config
        )
        if outcome is None:
            fallback = True
            outcome = _baseline_scan(
                extractor, query_vec, decision, n_windows, params, skip, config
            )
        model_ms = _elapsed_ms(model_start)
    else:
        outcome = _baseline_scan(extractor, query_vec, decision, n_windows, params, skip, config)
    scan_ms = _elapsed_ms(scan_start)

    candidates = _pick_candidates(times, outcome.scores, skip, params, config.candidate_strict)

    model = outcome.model
    if model.kind is ModelKind.LOGISTIC and outcome.zscore is not None:
        explained = []
        for c in candidates:
            vec = outcome.zscore.apply(
                extractor.vector_for_interval(SearchWindow(c.window_start, c.window_end))
            )
            explained.append(replace(c, explain=logit_contributions(model, vec, layout)))
        candidates = explained

    return SearchResult(
        times=times,
        scores=outcome.scores,
        curve_kind=outcome.curve_kind,
        candidates=tuple(candidates),
        model=model.summary,
        timings=SearchTimings(
            feature_prep_ms=prep_ms,
            scan_ms=scan_ms,
            model_ms=model_ms,
            total_ms=_elapsed_ms(start),
        ),
        window_sec=params.window_sec,
        hop_sec=params.hop_sec,
        scanned_windows=outcome.scanned,
        skipped_windows=n_windows - outcome.scanned,
        refinement_fallback=fallback,
    )
