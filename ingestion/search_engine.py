"""
ingestion/search_engine.py — Similarity search orchestrator.

AudioSearchEngine wires the frame loader to the pure search core:

    frame archive (.npz)
        │
        ├─ load_frame_series()            [ingestion/frame_loader.py — I/O boundary]
        │       ↓
        ├─ search_track()                 [core/audio_search/search.py — plain]
        │   or search_track_guided()      [core/audio_search/search.py — guided]
        │       ↓
        ├─ record_search() / record_cancelled()   [infrastructure/metrics.py]
        │       ↓
        └─ SearchResult

This module lives in `ingestion/` because it performs file I/O (frame
loading) and records metrics. The search logic itself is pure.

Design:
    - The loader is injectable so tests can hand in synthetic frames
      without touching the filesystem.
    - Frames are loaded once per call and discarded with the result; nothing
      is cached between searches.
    - SearchCancelledError is counted and re-raised unchanged.
    - ``softmax_similarity`` reshapes the returned similarity curve only after
      candidates and metrics are recorded from the raw scores.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from core.audio_search.cancellation import SearchCancelledError
from core.audio_search.config import DEFAULT_CONFIG, SearchConfig
from core.audio_search.search import (
    search_track,
    search_track_guided,
    softmax_similarity_curve,
)
from core.audio_search.types import FrameSeries, SearchResult, SearchWindow
from infrastructure.metrics import LatencyTimer, record_cancelled, record_search
from ingestion.frame_loader import load_frame_series

logger = logging.getLogger(__name__)

SearchFn = Callable[[SearchWindow, FrameSeries, SearchConfig], SearchResult]


@dataclass
class AudioSearchEngine:
    """High-level entry point for searching a track's frame archive.

    Attributes:
        loader: Callable turning a path into a FrameSeries. Defaults to the
            ``.npz`` loader; tests inject an in-memory one.
    """

    loader: Callable[[str | Path], FrameSeries] = load_frame_series

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def search(
        self,
        path: str | Path,
        query: SearchWindow,
        config: SearchConfig = DEFAULT_CONFIG,
    ) -> SearchResult:
        """Plain fingerprint search over the track at ``path``.

        Raises:
            FileNotFoundError:    Frame archive not found.
            ValueError:           Invalid archive contents.
            RuntimeError:         Archive decode failure.
            SearchCancelledError: Cancelled via ``config.is_cancelled``.
        """
        return self._run("plain", search_track, path, query, config)

    def guided_search(
        self,
        path: str | Path,
        query: SearchWindow,
        config: SearchConfig = DEFAULT_CONFIG,
    ) -> SearchResult:
        """Guided search (local contrast, optional refinement) over ``path``.

        Raises:
            FileNotFoundError:    Frame archive not found.
            ValueError:           Invalid archive contents.
            RuntimeError:         Archive decode failure.
            SearchCancelledError: Cancelled via ``config.is_cancelled``.
        """
        return self._run("guided", search_track_guided, path, query, config)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _run(
        self,
        mode: str,
        search_fn: SearchFn,
        path: str | Path,
        query: SearchWindow,
        config: SearchConfig,
    ) -> SearchResult:
        frames = self.loader(path)

        try:
            with LatencyTimer() as timer:
                result = search_fn(query, frames, config)
        except SearchCancelledError:
            record_cancelled(mode)
            logger.info("%s search cancelled for %s", mode, path)
            raise

        record_search(
            mode=mode,
            curve_kind=result.curve_kind,
            candidates=len(result.candidates),
            latency_seconds=timer.elapsed,
            refinement_fallback=result.refinement_fallback,
        )
        logger.info(
            "%s search: %d windows, %d candidates, model=%s, %.1f ms",
            mode,
            result.scanned_windows + result.skipped_windows,
            len(result.candidates),
            result.model.kind.value,
            result.timings.total_ms,
        )
        if config.softmax_similarity:
            result = softmax_similarity_curve(result)
        return result
