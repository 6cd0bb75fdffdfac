"""
api/routes/audio_search.py — Similarity search endpoints.

Endpoints
=========
    POST /audio-search/search  — Plain fingerprint search (similarity curve)
    POST /audio-search/guided  — Guided search with local contrast and optional
                                 label-driven refinement (confidence curve)

Both endpoints accept a server-side frame archive path and delegate to
AudioSearchEngine. They are thin HTTP controllers — no search logic lives here.

Error codes
===========
    422  — File not found, unsupported format, invalid archive or options
    409  — Search cancelled before completion
    500  — Archive decode or search failure
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException

from api.schemas.audio_search import GuidedSearchRequest, SearchRequest
from core.audio_search.cancellation import SearchCancelledError
from core.audio_search.config import (
    BlockWeights,
    LocalContrastConfig,
    PeakPickConfig,
    RefinementConfig,
    SearchConfig,
    precision_to_hop_sec,
)
from core.audio_search.types import (
    LogitContributions,
    RefinementLabel,
    SearchResult,
    SearchWindow,
)
from ingestion.search_engine import AudioSearchEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/audio-search", tags=["audio-search"])

# Shared engine instance — lazy-initialized on first request
_engine: AudioSearchEngine | None = None


def _get_engine() -> AudioSearchEngine:
    global _engine
    if _engine is None:
        _engine = AudioSearchEngine()
    return _engine


# ---------------------------------------------------------------------------
# Request → config
# ---------------------------------------------------------------------------


def _query_window(request: SearchRequest) -> SearchWindow:
    return SearchWindow(start=request.query.start, end=request.query.end)


def _hop_sec(request: SearchRequest, query: SearchWindow) -> float:
    if request.hop_sec is not None:
        return request.hop_sec
    if request.precision is not None:
        return precision_to_hop_sec(request.precision, query.duration)
    return SearchConfig().hop_sec


def _build_config(request: SearchRequest, query: SearchWindow) -> SearchConfig:
    local_contrast = LocalContrastConfig()
    refinement = RefinementConfig()
    if isinstance(request, GuidedSearchRequest):
        local_contrast = LocalContrastConfig(
            enabled=request.local_contrast,
            background_scale=request.background_scale,
        )
        refinement = RefinementConfig(
            enabled=request.refine,
            labels=tuple(
                RefinementLabel(start=lb.start, end=lb.end, status=lb.status, source=lb.source)
                for lb in request.labels
            ),
            include_query_as_positive=request.include_query_as_positive,
        )

    return SearchConfig(
        hop_sec=_hop_sec(request, query),
        threshold=request.threshold,
        min_candidate_spacing_sec=request.min_candidate_spacing_sec,
        skip_window_overlap=query if request.skip_query else None,
        weights=BlockWeights(
            mel=request.weights.mel,
            transient=request.weights.transient,
            mfcc=request.weights.mfcc,
        ),
        local_contrast=local_contrast,
        refinement=refinement,
        query_peak_pick=PeakPickConfig(
            threshold=request.query_peak_pick.threshold,
            min_interval_sec=request.query_peak_pick.min_interval_sec,
            adaptive_factor=request.query_peak_pick.adaptive_factor,
        ),
        candidate_strict=request.candidate_strict,
        softmax_similarity=request.softmax_similarity,
    )


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _serialize_explain(explain: LogitContributions | None) -> dict[str, Any] | None:
    if explain is None:
        return None
    return {
        key: round(value, 6)
        for key, value in {
            "logit": explain.logit,
            "bias": explain.bias,
            "mel": explain.mel,
            "mel_foreground": explain.mel_foreground,
            "mel_contrast": explain.mel_contrast,
            "onset": explain.onset,
            "onset_foreground": explain.onset_foreground,
            "onset_contrast": explain.onset_contrast,
            "mfcc": explain.mfcc,
            "mfcc_foreground": explain.mfcc_foreground,
            "mfcc_contrast": explain.mfcc_contrast,
        }.items()
        if value is not None
    }


def _serialize_result(result: SearchResult) -> dict[str, Any]:
    """Convert a SearchResult to a JSON-serializable dict."""
    model = result.model
    weight_norms = None
    if model.weight_norms is not None:
        weight_norms = {
            k: round(v, 6) for k, v in vars(model.weight_norms).items() if v is not None
        }
    training = None
    if model.training is not None:
        training = {
            "iterations": model.training.iterations,
            "final_loss": round(model.training.final_loss, 6),
        }

    return {
        "curve_kind": result.curve_kind,
        "times": [round(float(t), 4) for t in result.times],
        "scores": [round(float(s), 4) for s in result.scores],
        "candidates": [
            {
                "time": round(c.time, 4),
                "score": round(c.score, 4),
                "window_start": round(c.window_start, 4),
                "window_end": round(c.window_end, 4),
                **({"explain": _serialize_explain(c.explain)} if c.explain else {}),
            }
            for c in result.candidates
        ],
        "model": {
            "kind": model.kind.value,
            "positives": model.positives,
            "negatives": model.negatives,
            "weight_norms": weight_norms,
            "training": training,
        },
        "timings_ms": {
            "feature_prep": round(result.timings.feature_prep_ms, 2),
            "scan": round(result.timings.scan_ms, 2),
            "model": round(result.timings.model_ms, 2),
            "total": round(result.timings.total_ms, 2),
        },
        "window_sec": result.window_sec,
        "hop_sec": result.hop_sec,
        "scanned_windows": result.scanned_windows,
        "skipped_windows": result.skipped_windows,
        "refinement_fallback": result.refinement_fallback,
    }


def _handle_search_error(exc: Exception, context: str) -> None:
    """Translate common search errors to appropriate HTTP exceptions."""
    if isinstance(exc, (FileNotFoundError, ValueError)):
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    if isinstance(exc, SearchCancelledError):
        raise HTTPException(status_code=409, detail=f"{context} cancelled") from exc
    logger.error("%s failed: %s", context, exc)
    raise HTTPException(status_code=500, detail=f"{context} failed: {exc}") from exc


# ---------------------------------------------------------------------------
# POST /audio-search/search
# ---------------------------------------------------------------------------


@router.post("/search")
def search(request: SearchRequest) -> dict[str, Any]:
    """Find regions of a track that sound like the query excerpt.

    Args:
        request: SearchRequest with file_path, query window and scan options.

    Returns:
        JSON with the similarity curve, candidates, model summary and timings.

    Raises:
        422: File not found, unsupported format or invalid options.
        500: Archive decode or search failure.
    """
    engine = _get_engine()
    try:
        query = _query_window(request)
        result = engine.search(request.file_path, query, _build_config(request, query))
    except Exception as exc:
        _handle_search_error(exc, "Audio search")

    return _serialize_result(result)  # type: ignore[possibly-undefined]


# ---------------------------------------------------------------------------
# POST /audio-search/guided
# ---------------------------------------------------------------------------


@router.post("/guided")
def guided_search(request: GuidedSearchRequest) -> dict[str, Any]:
    """Guided search with local contrast features and label-driven refinement.

    With ``refine`` set and at least two accepted labels the similarity
    curve is replaced by the confidence of a prototype (no rejected labels)
    or logistic model (at least one rejected label).

    Args:
        request: GuidedSearchRequest with file_path, query, options and labels.

    Returns:
        JSON with the score curve, candidates (with logit explanations for
        logistic models), model summary and timings.

    Raises:
        422: File not found, unsupported format or invalid options.
        500: Archive decode or search failure.
    """
    engine = _get_engine()
    try:
        query = _query_window(request)
        result = engine.guided_search(request.file_path, query, _build_config(request, query))
    except Exception as exc:
        _handle_search_error(exc, "Guided audio search")

    return _serialize_result(result)  # type: ignore[possibly-undefined]
