"""
core/audio_search/peaks.py — Peak picking on a scalar time series.

Used twice per search: on the onset envelope (peak-density feature) and on
the per-window score curve (candidate extraction).

Design:
    - Local-maximum detection is vectorised; only the (few) maxima above the
      threshold go through the sequential spacing pass.
    - The spacing pass scans left to right. A peak closer than
      ``min_interval_sec`` to the last accepted one replaces it only when
      strictly stronger, so output times increase monotonically and
      consecutive events are at least ``min_interval_sec`` apart.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from core.audio_search.config import PeakPickConfig


@dataclass(frozen=True)
class PeakEvent:
    time: float
    strength: float
    index: int


def adaptive_threshold(values: np.ndarray, method: str, factor: float) -> float:
    """``mean + factor*std`` (population std) or ``median * factor``."""
    if values.size == 0:
        return 0.0
    if method == "median":
        return float(np.median(values)) * factor
    return float(np.mean(values)) + factor * float(np.std(values))


def pick_peaks(
    times: np.ndarray,
    values: np.ndarray,
    *,
    threshold: float = 0.0,
    min_interval_sec: float = 0.0,
    adaptive_method: str | None = None,
    adaptive_factor: float = 1.0,
    strict: bool = True,
    exclude: np.ndarray | None = None,
) -> list[PeakEvent]:
    """Find spaced local maxima of ``values`` at or above a threshold.

    Args:
        times:            Sample times in seconds, same length as values.
        values:           Scalar series.
        threshold:        Absolute minimum peak height.
        min_interval_sec: Minimum time between consecutive events.
        adaptive_method:  ``"mean_std"`` or ``"median"`` to derive the
                          threshold from the series instead.
        adaptive_factor:  Factor for the adaptive rule.
        strict:           Require value > both neighbours (else >=).
        exclude:          Boolean mask of indices that may never be events.

    Returns:
        Events in increasing time order. Endpoints are never events.

    Raises:
        ValueError: If times and values differ in length.
    """
    t = np.asarray(times, dtype=np.float64)
    v = np.asarray(values, dtype=np.float64)
    if t.shape[0] != v.shape[0]:
        raise ValueError(
            f"times and values must have the same length, got {t.shape[0]} and {v.shape[0]}"
        )

    n = v.shape[0]
    if n < 3:
        return []

    thr = threshold
    if adaptive_method is not None:
        thr = adaptive_threshold(v, adaptive_method, adaptive_factor)

    mid = v[1:-1]
    prev = v[:-2]
    nxt = v[2:]
    if strict:
        is_max = (mid > prev) & (mid > nxt)
    else:
        is_max = (mid >= prev) & (mid >= nxt)
    is_max &= mid >= thr
    if exclude is not None:
        is_max &= ~np.asarray(exclude, dtype=bool)[1:-1]

    out: list[PeakEvent] = []
    last_time = -np.inf
    for i in (np.flatnonzero(is_max) + 1).tolist():
        ti = float(t[i])
        vi = float(v[i])
        if ti - last_time < min_interval_sec:
            # Within the spacing of the previous event: keep the stronger one.
            if out and vi > out[-1].strength:
                out[-1] = PeakEvent(time=ti, strength=vi, index=i)
                last_time = ti
            continue
        out.append(PeakEvent(time=ti, strength=vi, index=i))
        last_time = ti
    return out


def pick_peaks_with_config(
    times: np.ndarray,
    values: np.ndarray,
    config: PeakPickConfig,
    *,
    strict: bool = True,
) -> list[PeakEvent]:
    """``pick_peaks`` driven by a PeakPickConfig."""
    return pick_peaks(
        times,
        values,
        threshold=config.threshold,
        min_interval_sec=config.min_interval_sec,
        adaptive_method=config.adaptive_method if config.adaptive_factor else None,
        adaptive_factor=config.adaptive_factor or 1.0,
        strict=strict,
    )
