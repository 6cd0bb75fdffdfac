"""
End-to-end tests for core/audio_search/search.py.

Uses the synthetic 60 s track from conftest.py: the query is the motif at
10 s, repeats sit at 20, 30 and 40 s, everything else is background.
A 20 ms hop makes scan windows start exactly on frame times.

Coverage:
    search_track         — plain fingerprint scan
    search_track_guided  — baseline, prototype and logistic refinement,
                           skip window, explanations, fallback, cancellation
    softmax_similarity_curve — optional sharpening of similarity curves
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import replace

import numpy as np
import pytest

import core.audio_search.search as search_module
from core.audio_search.cancellation import SearchCancelledError
from core.audio_search.config import (
    LocalContrastConfig,
    PeakPickConfig,
    RefinementConfig,
    SearchConfig,
)
from core.audio_search.models import build_prototype_model, sigmoid
from core.audio_search.peaks import pick_peaks_with_config
from core.audio_search.search import (
    count_windows,
    search_track,
    search_track_guided,
    softmax_similarity_curve,
)
from core.audio_search.types import (
    FrameSeries,
    ModelKind,
    RefinementLabel,
    SearchResult,
    SearchWindow,
)

QUERY = SearchWindow(10.0, 10.5)
REPEATS = (20.0, 30.0, 40.0)
TIME_TOL = 0.07


def _config(**overrides: object) -> SearchConfig:
    base: dict[str, object] = {"hop_sec": 0.02, "skip_window_overlap": QUERY}
    base.update(overrides)
    return SearchConfig(**base)  # type: ignore[arg-type]


def _refine(*labels: RefinementLabel, enabled: bool = True) -> RefinementConfig:
    return RefinementConfig(enabled=enabled, labels=labels)


def _accepted(start: float) -> RefinementLabel:
    return RefinementLabel(start=start, end=start + 0.5, status="accepted")


def _rejected(start: float) -> RefinementLabel:
    return RefinementLabel(start=start, end=start + 0.5, status="rejected")


def _candidate_near(result: SearchResult, t: float) -> bool:
    return any(abs(c.time - t) <= TIME_TOL for c in result.candidates)


def _assert_well_formed(result: SearchResult) -> None:
    assert result.times.shape == result.scores.shape
    assert np.all(result.scores >= 0.0)
    assert np.all(result.scores <= 1.0)
    assert result.scanned_windows + result.skipped_windows == result.times.shape[0]
    times = [c.time for c in result.candidates]
    assert times == sorted(times)
    for c in result.candidates:
        assert 0.0 <= c.score <= 1.0
        assert c.window_end == pytest.approx(c.window_start + result.window_sec)


class TestSyntheticTrack:
    def test_onset_peaks_only_at_motif_onsets(self, track_frames: FrameSeries) -> None:
        events = pick_peaks_with_config(track_frames.times, track_frames.onset, PeakPickConfig())
        expected = [t + offset for t in (10.0, *REPEATS) for offset in (0.0, 0.24)]
        assert [e.time for e in events] == pytest.approx(expected)


# ---------------------------------------------------------------------------
# Default options
# ---------------------------------------------------------------------------


class TestDefaultOptions:
    """Default SearchConfig: 30 ms hop, 0.75 threshold, no skip window."""

    def _assert_self_match(self, result: SearchResult) -> None:
        assert result.hop_sec == pytest.approx(0.03)
        near = [c for c in result.candidates if abs(c.time - QUERY.start) <= result.hop_sec]
        assert near, "no candidate within one hop of the query"
        assert max(c.score for c in near) == pytest.approx(1.0, abs=5e-3)
        gaps = np.diff([c.time for c in result.candidates])
        assert np.all(gaps >= 0.4 - 1e-9)

    def test_plain_search(self, track_frames: FrameSeries) -> None:
        result = search_track(QUERY, track_frames, SearchConfig())
        _assert_well_formed(result)
        assert result.curve_kind == "similarity"
        self._assert_self_match(result)

    def test_guided_search(self, track_frames: FrameSeries) -> None:
        result = search_track_guided(QUERY, track_frames, SearchConfig())
        _assert_well_formed(result)
        assert result.curve_kind == "similarity"
        assert result.model.kind is ModelKind.BASELINE
        self._assert_self_match(result)

    def test_two_accepted_labels_use_prototype(self, track_frames: FrameSeries) -> None:
        config = SearchConfig(refinement=_refine(_accepted(20.0), _accepted(30.0)))
        result = search_track_guided(QUERY, track_frames, config)
        _assert_well_formed(result)
        assert result.curve_kind == "confidence"
        assert result.model.kind is ModelKind.PROTOTYPE
        assert result.model.positives == 3
        assert not result.refinement_fallback


# ---------------------------------------------------------------------------
# Plain search
# ---------------------------------------------------------------------------


class TestSearchTrack:
    def test_finds_every_repeat(self, track_frames: FrameSeries) -> None:
        result = search_track(QUERY, track_frames, _config())
        _assert_well_formed(result)
        assert result.curve_kind == "similarity"
        assert result.model.kind is ModelKind.BASELINE
        for t in REPEATS:
            assert _candidate_near(result, t), f"no candidate near {t}s"

    def test_repeats_score_high(self, track_frames: FrameSeries) -> None:
        result = search_track(QUERY, track_frames, _config())
        for t in REPEATS:
            i = int(np.argmin(np.abs(result.times - t)))
            assert result.scores[i] > 0.9

    def test_repeats_outscore_background(self, track_frames: FrameSeries) -> None:
        result = search_track(QUERY, track_frames, _config())
        at_repeat = min(
            result.scores[int(np.argmin(np.abs(result.times - t)))] for t in REPEATS
        )
        background = result.scores[(result.times > 45.0) & (result.times < 59.0)]
        assert at_repeat > float(background.max())

    def test_window_count_and_hop(self, track_frames: FrameSeries) -> None:
        result = search_track(QUERY, track_frames, _config())
        expected = count_windows(track_frames.duration, 0.5, 0.02)
        assert result.times.shape[0] == expected
        assert result.hop_sec == 0.02
        assert result.window_sec == pytest.approx(0.5)

    def test_reversed_query_bounds(self, track_frames: FrameSeries) -> None:
        a = search_track(QUERY, track_frames, _config())
        b = search_track(SearchWindow(10.5, 10.0), track_frames, _config())
        np.testing.assert_array_equal(a.scores, b.scores)

    def test_without_mfcc(self, short_frames: FrameSeries) -> None:
        result = search_track(SearchWindow(1.0, 1.5), short_frames, SearchConfig(hop_sec=0.02))
        _assert_well_formed(result)
        assert result.times.shape[0] > 0

    def test_cancelled_before_scan(
        self, track_frames: FrameSeries, cancel_after: Callable[[int], Callable[[], bool]]
    ) -> None:
        with pytest.raises(SearchCancelledError):
            search_track(QUERY, track_frames, _config(is_cancelled=cancel_after(1)))

    def test_cancelled_mid_scan(
        self, track_frames: FrameSeries, cancel_after: Callable[[int], Callable[[], bool]]
    ) -> None:
        with pytest.raises(SearchCancelledError):
            search_track(QUERY, track_frames, _config(is_cancelled=cancel_after(100)))


# ---------------------------------------------------------------------------
# Guided search — baseline
# ---------------------------------------------------------------------------


class TestGuidedBaseline:
    def test_finds_every_repeat(self, track_frames: FrameSeries) -> None:
        result = search_track_guided(QUERY, track_frames, _config())
        _assert_well_formed(result)
        assert result.curve_kind == "similarity"
        assert result.model.kind is ModelKind.BASELINE
        assert not result.refinement_fallback
        for t in REPEATS:
            assert _candidate_near(result, t), f"no candidate near {t}s"

    def test_repeats_score_high(self, track_frames: FrameSeries) -> None:
        result = search_track_guided(QUERY, track_frames, _config())
        for t in REPEATS:
            i = int(np.argmin(np.abs(result.times - t)))
            assert result.scores[i] > 0.9

    def test_candidate_spacing(self, track_frames: FrameSeries) -> None:
        result = search_track_guided(QUERY, track_frames, _config(threshold=0.0))
        gaps = np.diff([c.time for c in result.candidates])
        assert len(result.candidates) > 3
        assert np.all(gaps >= 0.4 - 1e-9)

    def test_explicit_spacing(self, track_frames: FrameSeries) -> None:
        result = search_track_guided(
            QUERY, track_frames, _config(threshold=0.0, min_candidate_spacing_sec=5.0)
        )
        gaps = np.diff([c.time for c in result.candidates])
        assert np.all(gaps >= 5.0 - 1e-9)

    def test_without_contrast(self, track_frames: FrameSeries) -> None:
        config = _config(local_contrast=LocalContrastConfig(enabled=False))
        result = search_track_guided(QUERY, track_frames, config)
        _assert_well_formed(result)
        assert _candidate_near(result, 30.0)

    def test_disabled_refinement_ignores_labels(self, track_frames: FrameSeries) -> None:
        config = _config(refinement=_refine(_accepted(20.0), _accepted(30.0), enabled=False))
        result = search_track_guided(QUERY, track_frames, config)
        assert result.model.kind is ModelKind.BASELINE
        assert (result.model.positives, result.model.negatives) == (0, 0)
        assert result.curve_kind == "similarity"

    def test_single_positive_stays_baseline(self, track_frames: FrameSeries) -> None:
        config = _config(refinement=_refine(_accepted(20.0)))
        result = search_track_guided(QUERY, track_frames, config)
        assert result.model.kind is ModelKind.BASELINE
        assert result.model.positives == 1
        assert result.curve_kind == "similarity"
        assert not result.refinement_fallback


# ---------------------------------------------------------------------------
# Skip window
# ---------------------------------------------------------------------------


class TestSkipWindow:
    @pytest.mark.parametrize("entry_point", [search_track, search_track_guided])
    def test_skipped_windows_score_zero_and_never_emit(
        self, track_frames: FrameSeries, entry_point: Callable[..., SearchResult]
    ) -> None:
        config = _config(threshold=0.0, candidate_strict=False)
        result = entry_point(QUERY, track_frames, config)

        overlaps = (result.times < QUERY.end) & (result.times + result.window_sec > QUERY.start)
        assert overlaps.any()
        assert not result.scores[overlaps].any()
        assert result.skipped_windows == int(overlaps.sum())
        for c in result.candidates:
            assert not (c.time < QUERY.end and c.time + result.window_sec > QUERY.start)

    def test_without_skip_query_matches_itself(self, track_frames: FrameSeries) -> None:
        result = search_track_guided(QUERY, track_frames, _config(skip_window_overlap=None))
        assert result.skipped_windows == 0
        assert _candidate_near(result, QUERY.start)
        self_match = min(result.candidates, key=lambda c: abs(c.time - QUERY.start))
        assert self_match.score == pytest.approx(1.0, abs=1e-6)


# ---------------------------------------------------------------------------
# Guided search — refinement
# ---------------------------------------------------------------------------


class TestGuidedPrototype:
    def test_confidence_curve_from_two_positives(self, track_frames: FrameSeries) -> None:
        config = _config(refinement=_refine(_accepted(20.0), _accepted(30.0)))
        result = search_track_guided(QUERY, track_frames, config)
        _assert_well_formed(result)
        assert result.curve_kind == "confidence"
        assert result.model.kind is ModelKind.PROTOTYPE
        # two labels plus the query
        assert result.model.positives == 3
        assert result.model.negatives == 0
        assert _candidate_near(result, 40.0)
        assert all(c.explain is None for c in result.candidates)

    def test_query_not_included_as_positive(self, track_frames: FrameSeries) -> None:
        refinement = RefinementConfig(
            enabled=True,
            labels=(_accepted(20.0), _accepted(30.0)),
            include_query_as_positive=False,
        )
        result = search_track_guided(QUERY, track_frames, _config(refinement=refinement))
        assert result.model.positives == 2


class TestGuidedLogistic:
    @pytest.fixture(scope="class")
    def result(self, track_frames: FrameSeries) -> SearchResult:
        config = _config(
            threshold=0.5,
            refinement=_refine(_accepted(20.0), _accepted(30.0), _rejected(50.0)),
        )
        return search_track_guided(QUERY, track_frames, config)

    def test_model_summary(self, result: SearchResult) -> None:
        assert result.curve_kind == "confidence"
        assert result.model.kind is ModelKind.LOGISTIC
        assert (result.model.positives, result.model.negatives) == (3, 1)
        assert result.model.training is not None
        assert 1 <= result.model.training.iterations <= 80
        assert result.model.weight_norms is not None
        assert not result.refinement_fallback

    def test_finds_unlabelled_repeat(self, result: SearchResult) -> None:
        _assert_well_formed(result)
        assert _candidate_near(result, 40.0)

    def test_every_candidate_is_explained(self, result: SearchResult) -> None:
        assert result.candidates
        for c in result.candidates:
            e = c.explain
            assert e is not None
            assert e.mel + e.onset + (e.mfcc or 0.0) + e.bias == pytest.approx(e.logit)
            assert sigmoid(e.logit) == pytest.approx(c.score, abs=1e-6)

    def test_deterministic(self, track_frames: FrameSeries, result: SearchResult) -> None:
        config = _config(
            threshold=0.5,
            refinement=_refine(_accepted(20.0), _accepted(30.0), _rejected(50.0)),
        )
        again = search_track_guided(QUERY, track_frames, config)
        assert np.array_equal(result.scores, again.scores)
        assert [c.time for c in result.candidates] == [c.time for c in again.candidates]


class TestRefinementFallback:
    def test_training_failure_falls_back_to_baseline(
        self, track_frames: FrameSeries, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def boom(*args: object, **kwargs: object) -> None:
            raise RuntimeError("singular")

        monkeypatch.setattr("core.audio_search.search.train_logistic_model", boom)
        config = _config(refinement=_refine(_accepted(20.0), _accepted(30.0), _rejected(50.0)))
        result = search_track_guided(QUERY, track_frames, config)

        assert result.refinement_fallback
        assert result.curve_kind == "similarity"
        assert result.model.kind is ModelKind.BASELINE
        assert (result.model.positives, result.model.negatives) == (2, 1)
        assert _candidate_near(result, 30.0)

    def test_fallback_scores_match_plain_baseline(
        self, track_frames: FrameSeries, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def boom(*args: object, **kwargs: object) -> None:
            raise ValueError("bad labels")

        monkeypatch.setattr("core.audio_search.search.build_prototype_model", boom)
        refined = search_track_guided(
            QUERY, track_frames, _config(refinement=_refine(_accepted(20.0), _accepted(30.0)))
        )
        baseline = search_track_guided(QUERY, track_frames, _config())
        assert np.array_equal(refined.scores, baseline.scores)

    def test_cancellation_during_training_propagates(
        self, track_frames: FrameSeries, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def cancelled(*args: object, **kwargs: object) -> None:
            raise SearchCancelledError()

        monkeypatch.setattr("core.audio_search.search.train_logistic_model", cancelled)
        config = _config(refinement=_refine(_accepted(20.0), _accepted(30.0), _rejected(50.0)))
        with pytest.raises(SearchCancelledError):
            search_track_guided(QUERY, track_frames, config)

    def test_model_time_includes_fallback_scan(
        self, track_frames: FrameSeries, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def boom(*args: object, **kwargs: object) -> None:
            raise ValueError("bad labels")

        real_scan = search_module._baseline_scan

        def slow_scan(*args: object, **kwargs: object) -> object:
            time.sleep(0.05)
            return real_scan(*args, **kwargs)  # type: ignore[arg-type]

        monkeypatch.setattr("core.audio_search.search.build_prototype_model", boom)
        monkeypatch.setattr("core.audio_search.search._baseline_scan", slow_scan)
        result = search_track_guided(
            QUERY, track_frames, _config(refinement=_refine(_accepted(20.0), _accepted(30.0)))
        )
        assert result.refinement_fallback
        assert result.timings.model_ms >= 50.0


# ---------------------------------------------------------------------------
# Cancellation and degenerate input
# ---------------------------------------------------------------------------


class TestGuidedCancellation:
    def test_cancelled_during_prep(
        self, track_frames: FrameSeries, cancel_after: Callable[[int], Callable[[], bool]]
    ) -> None:
        with pytest.raises(SearchCancelledError):
            search_track_guided(QUERY, track_frames, _config(is_cancelled=cancel_after(1)))

    def test_cancelled_during_refined_scan(
        self, track_frames: FrameSeries, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        state = {"armed": False}
        real_build = build_prototype_model

        def build_then_cancel(*args: object, **kwargs: object) -> object:
            state["armed"] = True
            return real_build(*args, **kwargs)  # type: ignore[arg-type]

        monkeypatch.setattr("core.audio_search.search.build_prototype_model", build_then_cancel)
        config = _config(
            refinement=_refine(_accepted(20.0), _accepted(30.0)),
            is_cancelled=lambda: state["armed"],
        )
        # Cancellation in the scoring pass is not turned into a baseline fallback
        with pytest.raises(SearchCancelledError):
            search_track_guided(QUERY, track_frames, config)


class TestDegenerateInput:
    @pytest.mark.parametrize("entry_point", [search_track, search_track_guided])
    def test_track_shorter_than_query(
        self, make_frames: Callable[..., FrameSeries], entry_point: Callable[..., SearchResult]
    ) -> None:
        frames = make_frames(duration_sec=0.3, motif_starts=())
        result = entry_point(SearchWindow(0.0, 0.5), frames, SearchConfig())
        assert result.times.shape == (0,)
        assert result.scores.shape == (0,)
        assert result.candidates == ()
        assert result.curve_kind == "similarity"
        assert result.scanned_windows == 0

    def test_empty_result_keeps_label_counts(self, make_frames: Callable[..., FrameSeries]) -> None:
        frames = make_frames(duration_sec=0.3, motif_starts=())
        config = SearchConfig(refinement=_refine(_accepted(0.0), _accepted(0.1)))
        result = search_track_guided(SearchWindow(0.0, 0.5), frames, config)
        assert result.model.kind is ModelKind.BASELINE
        assert result.model.positives == 2

    def test_timings_are_non_negative(self, track_frames: FrameSeries) -> None:
        result = search_track_guided(QUERY, track_frames, _config())
        t = result.timings
        assert min(t.feature_prep_ms, t.scan_ms, t.model_ms, t.total_ms) >= 0.0
        assert t.total_ms >= t.feature_prep_ms


# ---------------------------------------------------------------------------
# Softmax post-processing
# ---------------------------------------------------------------------------


class TestSoftmaxSimilarityCurve:
    @pytest.fixture(scope="class")
    def result(self, track_frames: FrameSeries) -> SearchResult:
        return search_track(QUERY, track_frames, _config())

    def test_sharpens_similarity_curve(self, result: SearchResult) -> None:
        sharp = softmax_similarity_curve(result)
        assert sharp.scores.sum() == pytest.approx(1.0)
        assert np.all(sharp.scores > 0.0)
        assert int(np.argmax(sharp.scores)) == int(np.argmax(result.scores))
        np.testing.assert_array_equal(sharp.times, result.times)

    def test_candidates_and_input_are_untouched(self, result: SearchResult) -> None:
        before = result.scores.copy()
        sharp = softmax_similarity_curve(result)
        assert sharp.candidates == result.candidates
        np.testing.assert_array_equal(result.scores, before)

    def test_confidence_curve_is_returned_unchanged(self, result: SearchResult) -> None:
        confidence = replace(result, curve_kind="confidence")
        assert softmax_similarity_curve(confidence) is confidence

    def test_flat_curve_becomes_uniform(self, result: SearchResult) -> None:
        flat = replace(result, scores=np.zeros(4), times=np.arange(4) * 0.03)
        np.testing.assert_allclose(softmax_similarity_curve(flat).scores, np.full(4, 0.25))
