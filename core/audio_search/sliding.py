"""
core/audio_search/sliding.py — Sliding-window feature aggregation.

Produces the feature vector of every scan window in amortised O(1) per
window instead of re-reading all frames of each window.

Building blocks:
    - SlidingMoments: running sum / sum of squares over a frame range whose
      start and end only move forward within one scan pass.
    - SparseTableMax: O(n log n) build, O(1) range-maximum query.
    - OnsetIndex: prefix sums (mean), sparse table (max) and a prefix count
      of onset peaks (peak density) over the onset envelope.
    - WindowFeatureExtractor: owns the per-search buffers and writes window
      vectors following a FeatureVectorLayout, including background
      contrast blocks computed from a second, lockstep set of moments.

Every expensive loop checks the cancellation predicate at a fixed stride.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from typing import NamedTuple

import numpy as np

from core.audio_search.cancellation import (
    FRAME_STRIDE_MASK,
    WINDOW_STRIDE_MASK,
    CancellationCheck,
    check_cancelled,
)
from core.audio_search.config import PeakPickConfig
from core.audio_search.fingerprint import frame_l2_scale
from core.audio_search.peaks import pick_peaks_with_config
from core.audio_search.types import (
    MFCC_FIRST_COEFF,
    FeatureVectorLayout,
    FrameSeries,
    SearchWindow,
)

_MIN_DURATION_SEC = 1e-6


# ---------------------------------------------------------------------------
# Running moments
# ---------------------------------------------------------------------------


class SlidingMoments:
    """Running per-column sum and sum of squares over rows ``[start, end)``.

    Both pointers are non-decreasing across ``advance`` calls. Create a new
    instance for every scan pass; instances are never rewound or shared.
    """

    def __init__(self, values: np.ndarray, squares: np.ndarray | None = None) -> None:
        self._values = values
        self._squares = squares if squares is not None else values * values
        dim = values.shape[1] if values.ndim == 2 else 0
        self.sum = np.zeros(dim, dtype=np.float64)
        self.sum_sq = np.zeros(dim, dtype=np.float64)
        self.start = 0
        self.end = 0

    @property
    def count(self) -> int:
        return self.end - self.start

    def advance(self, new_start: int, new_end: int) -> None:
        """Move the window to ``[new_start, new_end)``.

        Raises:
            ValueError: If either pointer would move backwards.
        """
        s = max(0, int(new_start))
        e = max(s, int(new_end))
        if s < self.start or e < self.end:
            raise ValueError(
                f"SlidingMoments cannot move backwards: [{self.start}, {self.end}) -> [{s}, {e})"
            )
        if e > self.end:
            self.sum += self._values[self.end : e].sum(axis=0)
            self.sum_sq += self._squares[self.end : e].sum(axis=0)
            self.end = e
        if s > self.start:
            self.sum -= self._values[self.start : s].sum(axis=0)
            self.sum_sq -= self._squares[self.start : s].sum(axis=0)
            self.start = s

    def mean(self) -> np.ndarray:
        n = self.count
        if n <= 0:
            return np.zeros_like(self.sum)
        return self.sum / n

    def variance(self) -> np.ndarray:
        """Population variance, clamped at zero against rounding error."""
        n = self.count
        if n <= 0:
            return np.zeros_like(self.sum)
        mean = self.sum / n
        return np.maximum(0.0, self.sum_sq / n - mean * mean)


# ---------------------------------------------------------------------------
# Range maximum
# ---------------------------------------------------------------------------


class SparseTableMax:
    """Range-maximum queries in O(1) after an O(n log n) build."""

    def __init__(self, values: np.ndarray, is_cancelled: CancellationCheck | None = None) -> None:
        base = np.asarray(values, dtype=np.float64)
        self._n = int(base.shape[0])
        self._levels: list[np.ndarray] = [base]
        k = 1
        while (1 << k) <= self._n:
            check_cancelled(is_cancelled)
            span = 1 << k
            half = span >> 1
            prev = self._levels[-1]
            length = self._n - span + 1
            self._levels.append(np.maximum(prev[:length], prev[half : half + length]))
            k += 1

    def query(self, start: int, end: int) -> float | None:
        """Maximum of ``values[start:end]``; None for an empty range."""
        lo = max(0, int(start))
        hi = min(self._n, int(end))
        length = hi - lo
        if length <= 0:
            return None
        k = length.bit_length() - 1
        row = self._levels[k]
        a = row[lo]
        b = row[hi - (1 << k)]
        return float(a if a > b else b)


class OnsetIndex:
    """O(1) onset range statistics: sum, max and peak count."""

    def __init__(
        self,
        times: np.ndarray,
        onset: np.ndarray,
        peak_pick: PeakPickConfig,
        is_cancelled: CancellationCheck | None = None,
    ) -> None:
        check_cancelled(is_cancelled)
        self._prefix = np.concatenate(([0.0], np.cumsum(onset, dtype=np.float64)))
        self._max = SparseTableMax(onset, is_cancelled)

        peaks = pick_peaks_with_config(times, onset, peak_pick, strict=True)
        is_peak = np.zeros(onset.shape[0], dtype=np.int64)
        for p in peaks:
            is_peak[p.index] = 1
        self._peak_prefix = np.concatenate(([0], np.cumsum(is_peak)))

    def range_sum(self, start: int, end: int) -> float:
        if end <= start:
            return 0.0
        return float(self._prefix[end] - self._prefix[start])

    def range_max(self, start: int, end: int) -> float | None:
        return self._max.query(start, end)

    def peak_count(self, start: int, end: int) -> int:
        if end <= start:
            return 0
        return int(self._peak_prefix[end] - self._peak_prefix[start])


# ---------------------------------------------------------------------------
# Background window
# ---------------------------------------------------------------------------


def compute_background_window(
    foreground: SearchWindow,
    track_duration: float,
    background_scale: float,
) -> SearchWindow:
    """Background window centred on the foreground.

    Duration is ``background_scale`` x the foreground duration, capped at the
    track length. Near the track edges the window is shifted rather than
    shrunk, and it always contains the foreground.
    """
    fg = foreground.ordered()
    fg_dur = max(_MIN_DURATION_SEC, fg.end - fg.start)

    desired = max(fg_dur, fg_dur * max(1.0, background_scale))
    max_dur = max(fg_dur, track_duration)
    dur = min(desired, max_dur)

    center = (fg.start + fg.end) / 2.0
    bg_start = center - dur / 2.0
    bg_end = bg_start + dur

    if bg_start < 0.0:
        bg_start = 0.0
        bg_end = min(track_duration, dur)
    if bg_end > track_duration:
        bg_end = track_duration
        bg_start = max(0.0, bg_end - dur)

    return SearchWindow(start=min(bg_start, fg.start), end=max(bg_end, fg.end))


# ---------------------------------------------------------------------------
# Window feature extractor
# ---------------------------------------------------------------------------


class WindowVector(NamedTuple):
    index: int
    t0: float
    t1: float
    vector: np.ndarray


@dataclass
class _ScanState:
    """Moment trackers owned by exactly one scan pass (or one interval)."""

    mel_fg: SlidingMoments
    mel_bg: SlidingMoments
    mfcc_fg: SlidingMoments | None
    mfcc_bg: SlidingMoments | None


def _index_at_or_after(times: np.ndarray, t: float) -> int:
    return int(np.searchsorted(times, t, side="left"))


def _index_after(times: np.ndarray, t: float) -> int:
    return int(np.searchsorted(times, t, side="right"))


class WindowFeatureExtractor:
    """Writes per-window feature vectors for one search call.

    All buffers (scaled frames, squares, prefix sums, sparse table) are
    sized once from the input and owned by this instance.
    """

    def __init__(
        self,
        frames: FrameSeries,
        layout: FeatureVectorLayout,
        *,
        query_peak_pick: PeakPickConfig,
        background_scale: float,
        is_cancelled: CancellationCheck | None = None,
    ) -> None:
        self._times = frames.times
        self._layout = layout
        self._track_duration = frames.duration
        self._background_scale = background_scale
        self._is_cancelled = is_cancelled

        self._mel = self._normalised(frames.mel[:, : layout.mel_dim])
        self._mel_sq = self._mel * self._mel

        self._mfcc: np.ndarray | None = None
        self._mfcc_sq: np.ndarray | None = None
        if layout.mfcc_dim > 0 and frames.mfcc is not None:
            block = frames.mfcc[:, MFCC_FIRST_COEFF : MFCC_FIRST_COEFF + layout.mfcc_dim]
            self._mfcc = self._normalised(block)
            self._mfcc_sq = self._mfcc * self._mfcc

        self._onset = OnsetIndex(frames.times, frames.onset, query_peak_pick, is_cancelled)

    @property
    def layout(self) -> FeatureVectorLayout:
        return self._layout

    @property
    def track_duration(self) -> float:
        return self._track_duration

    def _normalised(self, block: np.ndarray) -> np.ndarray:
        """Scale every frame to unit L2 norm, checking cancellation per chunk."""
        n = block.shape[0]
        scale = np.ones(n, dtype=np.float64)
        chunk = FRAME_STRIDE_MASK + 1
        for start in range(0, n, chunk):
            check_cancelled(self._is_cancelled)
            scale[start : start + chunk] = frame_l2_scale(block[start : start + chunk])
        return block * scale[:, None]

    def _new_state(self) -> _ScanState:
        mfcc_fg = mfcc_bg = None
        if self._mfcc is not None:
            mfcc_fg = SlidingMoments(self._mfcc, self._mfcc_sq)
            mfcc_bg = SlidingMoments(self._mfcc, self._mfcc_sq)
        return _ScanState(
            mel_fg=SlidingMoments(self._mel, self._mel_sq),
            mel_bg=SlidingMoments(self._mel, self._mel_sq),
            mfcc_fg=mfcc_fg,
            mfcc_bg=mfcc_bg,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def vector_for_interval(self, window: SearchWindow) -> np.ndarray:
        """Feature vector of a single interval, from fresh state."""
        fg = window.ordered()
        bg = compute_background_window(fg, self._track_duration, self._background_scale)
        fg_s = _index_at_or_after(self._times, fg.start)
        fg_e = max(fg_s, _index_after(self._times, fg.end))
        bg_s = _index_at_or_after(self._times, bg.start)
        bg_e = max(bg_s, _index_after(self._times, bg.end))

        out = np.zeros(self._layout.dim, dtype=np.float64)
        self._write(self._new_state(), out, fg_s, fg_e, bg_s, bg_e, fg, bg)
        return out

    def scan(self, n_windows: int, hop_sec: float, window_sec: float) -> Iterator[WindowVector]:
        """Yield the feature vector of every scan window, left to right.

        Window ``w`` covers ``[w*hop_sec, w*hop_sec + window_sec]``. Each call
        starts a new pass with its own moment trackers.
        """
        state = self._new_state()
        fg_s = fg_e = bg_s = bg_e = 0

        for w in range(n_windows):
            if (w & WINDOW_STRIDE_MASK) == 0:
                check_cancelled(self._is_cancelled)

            t0 = w * hop_sec
            t1 = t0 + window_sec
            fg = SearchWindow(start=t0, end=t1)
            bg = compute_background_window(fg, self._track_duration, self._background_scale)

            fg_s = max(fg_s, _index_at_or_after(self._times, t0))
            fg_e = max(fg_e, fg_s, _index_after(self._times, t1))
            bg_s = max(bg_s, _index_at_or_after(self._times, bg.start))
            bg_e = max(bg_e, bg_s, _index_after(self._times, bg.end))

            out = np.zeros(self._layout.dim, dtype=np.float64)
            self._write(state, out, fg_s, fg_e, bg_s, bg_e, fg, bg)
            yield WindowVector(index=w, t0=t0, t1=t1, vector=out)

    # ------------------------------------------------------------------
    # Vector composition
    # ------------------------------------------------------------------

    def _write(
        self,
        state: _ScanState,
        out: np.ndarray,
        fg_s: int,
        fg_e: int,
        bg_s: int,
        bg_e: int,
        fg: SearchWindow,
        bg: SearchWindow,
    ) -> None:
        layout = self._layout
        state.mel_fg.advance(fg_s, fg_e)
        state.mel_bg.advance(bg_s, bg_e)

        fg_count = max(0, fg_e - fg_s)
        bg_count = max(0, bg_e - bg_s)
        bg_ex_count = max(0, bg_count - fg_count)

        # --- mel
        mel_mean = state.mel_fg.mean()
        out[layout.mel_mean_fg.as_slice()] = mel_mean
        out[layout.mel_variance_fg.as_slice()] = state.mel_fg.variance()
        if layout.mel_contrast is not None:
            if bg_ex_count > 0:
                bg_mean_ex = (state.mel_bg.sum - state.mel_fg.sum) / bg_ex_count
            else:
                bg_mean_ex = mel_mean
            out[layout.mel_contrast.as_slice()] = mel_mean - bg_mean_ex

        # --- onset
        onset = self._onset
        fg_sum = onset.range_sum(fg_s, fg_e)
        fg_mean = fg_sum / fg_count if fg_count > 0 else 0.0
        fg_max_raw = onset.range_max(fg_s, fg_e)
        fg_max = fg_max_raw if fg_max_raw is not None else 0.0
        fg_peaks = onset.peak_count(fg_s, fg_e)
        fg_dur = max(_MIN_DURATION_SEC, fg.end - fg.start)
        fg_density = fg_peaks / fg_dur

        o = layout.onset_fg.offset
        out[o] = fg_mean
        out[o + 1] = fg_max
        out[o + 2] = fg_density

        if layout.onset_contrast is not None:
            bg_sum = onset.range_sum(bg_s, bg_e)
            bg_mean_ex = (bg_sum - fg_sum) / bg_ex_count if bg_ex_count > 0 else fg_mean

            remainders = [
                m
                for m in (onset.range_max(bg_s, fg_s), onset.range_max(fg_e, bg_e))
                if m is not None
            ]
            bg_max_ex = max(remainders) if remainders else fg_max

            bg_peaks_ex = max(0, onset.peak_count(bg_s, bg_e) - fg_peaks)
            bg_ex_dur = max(_MIN_DURATION_SEC, (bg.end - bg.start) - fg_dur)

            c = layout.onset_contrast.offset
            out[c] = fg_mean - bg_mean_ex
            out[c + 1] = fg_max - bg_max_ex
            out[c + 2] = fg_density - bg_peaks_ex / bg_ex_dur

        # --- mfcc
        if (
            state.mfcc_fg is not None
            and state.mfcc_bg is not None
            and layout.mfcc_mean_fg is not None
            and layout.mfcc_variance_fg is not None
        ):
            state.mfcc_fg.advance(fg_s, fg_e)
            state.mfcc_bg.advance(bg_s, bg_e)
            mean = state.mfcc_fg.mean()
            variance = state.mfcc_fg.variance()
            out[layout.mfcc_mean_fg.as_slice()] = mean
            out[layout.mfcc_variance_fg.as_slice()] = variance

            if layout.mfcc_mean_contrast is not None and layout.mfcc_variance_contrast is not None:
                if bg_ex_count > 0:
                    bg_mean = (state.mfcc_bg.sum - state.mfcc_fg.sum) / bg_ex_count
                    bg_var = np.maximum(
                        0.0,
                        (state.mfcc_bg.sum_sq - state.mfcc_fg.sum_sq) / bg_ex_count
                        - bg_mean * bg_mean,
                    )
                else:
                    bg_mean = mean
                    bg_var = variance
                out[layout.mfcc_mean_contrast.as_slice()] = mean - bg_mean
                out[layout.mfcc_variance_contrast.as_slice()] = variance - bg_var
