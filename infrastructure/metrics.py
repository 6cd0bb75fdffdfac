"""Prometheus metrics for the audio similarity search service.

Metrics carry the search mode and curve kind so dashboards show how often
users refine a search, not just generic HTTP stats.

Metrics:
    audio_search_requests_total            Counter by mode (plain/guided) and curve kind
    audio_search_latency_seconds           Histogram of end-to-end search latency by mode
    audio_search_cancelled_total           Searches aborted by cooperative cancellation
    audio_search_refinement_fallbacks_total  Refined searches that fell back to baseline
    audio_search_candidates                Histogram of candidates per search

Usage::

    from infrastructure.metrics import LatencyTimer, record_search

    with LatencyTimer() as t:
        result = search_track_guided(query, frames, config)
    record_search(mode="guided", curve_kind=result.curve_kind,
                  candidates=len(result.candidates), latency_seconds=t.elapsed)
"""

from __future__ import annotations

import logging
import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

REGISTRY = CollectorRegistry()

search_requests_total = Counter(
    "audio_search_requests_total",
    "Completed searches by mode and curve kind",
    ["mode", "curve_kind"],
    registry=REGISTRY,
)

search_latency_seconds = Histogram(
    "audio_search_latency_seconds",
    "End-to-end search latency in seconds",
    ["mode"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

search_cancelled_total = Counter(
    "audio_search_cancelled_total",
    "Searches aborted by cooperative cancellation",
    ["mode"],
    registry=REGISTRY,
)

refinement_fallbacks_total = Counter(
    "audio_search_refinement_fallbacks_total",
    "Refined searches that failed and fell back to the baseline scan",
    registry=REGISTRY,
)

search_candidates = Histogram(
    "audio_search_candidates",
    "Number of candidates returned per search",
    ["mode"],
    buckets=[0, 1, 2, 5, 10, 20, 50, 100],
    registry=REGISTRY,
)

logger.info("Prometheus metrics registry initialized")


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def record_search(
    *,
    mode: str,
    curve_kind: str,
    candidates: int,
    latency_seconds: float,
    refinement_fallback: bool = False,
) -> None:
    """Record a completed search.

    Args:
        mode: "plain" or "guided".
        curve_kind: "similarity" or "confidence".
        candidates: Number of candidates in the result.
        latency_seconds: End-to-end wall-clock time in seconds.
        refinement_fallback: True when refinement failed and baseline was used.
    """
    search_requests_total.labels(mode=mode, curve_kind=curve_kind).inc()
    search_latency_seconds.labels(mode=mode).observe(latency_seconds)
    search_candidates.labels(mode=mode).observe(candidates)
    if refinement_fallback:
        refinement_fallbacks_total.inc()


def record_cancelled(mode: str) -> None:
    """Increment the cancelled-search counter."""
    search_cancelled_total.labels(mode=mode).inc()


def get_metrics_response() -> tuple[bytes, str]:
    """Generate Prometheus text exposition format.

    Returns:
        Tuple of (body_bytes, content_type_string).
    """
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST


class LatencyTimer:
    """Context manager for measuring latency.

    Usage::

        with LatencyTimer() as t:
            result = run_search()
        record_search(mode="plain", curve_kind="similarity",
                      candidates=3, latency_seconds=t.elapsed)
    """

    def __init__(self) -> None:
        self._start: float = 0.0
        self.elapsed: float = 0.0

    def __enter__(self) -> LatencyTimer:
        self._start = time.perf_counter()
        return self

    def __exit__(self, *_: object) -> None:
        self.elapsed = time.perf_counter() - self._start
