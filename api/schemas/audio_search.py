"""
api/schemas/audio_search.py — Pydantic request models for the /audio-search endpoints.

All fields use snake_case. Default values match core/audio_search/config.py.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class WindowModel(BaseModel):
    """A time interval in seconds."""

    start: float = Field(..., ge=0, description="Interval start in seconds")
    end: float = Field(..., ge=0, description="Interval end in seconds")


class BlockWeightsModel(BaseModel):
    mel: float = Field(1.0, ge=0, description="Weight of the mel mean+variance block")
    transient: float = Field(1.0, ge=0, description="Weight of the onset scalar block")
    mfcc: float = Field(1.0, ge=0, description="Weight of the MFCC mean+variance block")


class PeakPickModel(BaseModel):
    threshold: float = Field(0.0, description="Absolute minimum onset peak height")
    min_interval_sec: float = Field(0.0, ge=0, description="Minimum time between onset peaks")
    adaptive_factor: float | None = Field(
        None, description="If set, threshold = mean + factor*std of the onset envelope"
    )


class LabelModel(BaseModel):
    """A reviewed candidate used as a training example."""

    start: float = Field(..., ge=0)
    end: float = Field(..., ge=0)
    status: Literal["accepted", "rejected"]
    source: Literal["auto", "manual"] = "manual"


class SearchRequest(BaseModel):
    """POST /audio-search/search — plain fingerprint search."""

    file_path: str = Field(..., description="Absolute path to a .npz frame archive on the server")
    query: WindowModel = Field(..., description="Query excerpt of the track")
    hop_sec: float | None = Field(
        None, gt=0, description="Scan step in seconds (default 0.03, floor 0.005)"
    )
    precision: Literal["fine", "medium", "coarse"] | None = Field(
        None, description="Derive hop_sec from a precision preset; ignored when hop_sec is set"
    )
    threshold: float = Field(0.75, description="Minimum candidate score, clamped to [0, 1]")
    min_candidate_spacing_sec: float | None = Field(
        None, ge=0, description="Minimum time between candidates (default 0.8 x query duration)"
    )
    skip_query: bool = Field(
        True, description="Score windows overlapping the query as 0 (no self-match)"
    )
    weights: BlockWeightsModel = Field(default_factory=BlockWeightsModel)
    query_peak_pick: PeakPickModel = Field(default_factory=PeakPickModel)
    candidate_strict: bool = Field(True, description="Strict local maxima for candidates")
    softmax_similarity: bool = Field(
        False, description="Return a softmax-sharpened similarity curve (not confidence curves)"
    )


class GuidedSearchRequest(SearchRequest):
    """POST /audio-search/guided — contrast features and label-driven refinement."""

    local_contrast: bool = Field(True, description="Add foreground-vs-background features")
    background_scale: float = Field(
        3.0, gt=0, description="Background duration as a multiple of the query duration"
    )
    refine: bool = Field(False, description="Train a model from labels when enough exist")
    labels: list[LabelModel] = Field(default_factory=list)
    include_query_as_positive: bool = Field(
        True, description="Add the query itself as a positive training example"
    )
