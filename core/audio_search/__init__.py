"""
core/audio_search — Content-based audio similarity search with refinement.

Given a query excerpt of a track, finds other time regions that sound alike
and ranks them. Reviewed candidates (accepted / rejected) train a small
per-search model that replaces cosine similarity with a confidence curve.

All functions are pure: FrameSeries (precomputed mel, onset, optional MFCC
frames) in → frozen dataclasses out. No file I/O in this package (frame
loading lives in ingestion/frame_loader.py).

Public API:
    Types:       FrameSeries, SearchWindow, RefinementLabel, Fingerprint,
                 FeatureVectorLayout, SearchCandidate, SearchResult, ...
    Config:      SearchConfig, PeakPickConfig, BlockWeights,
                 LocalContrastConfig, RefinementConfig, TrainingConfig
    Search:      search_track, search_track_guided, softmax_similarity_curve
    Building blocks: make_feature_vector_layout, compute_fingerprint,
                 WindowFeatureExtractor, pick_peaks, block_cosine_similarity,
                 train_logistic_model, logit_contributions
    Refinement:  RefinementCandidate, compute_refinement_stats,
                 make_auto_candidate_id, merge_candidates, labels_from_candidates
    Errors:      SearchCancelledError
"""

from core.audio_search.cancellation import CancellationCheck, SearchCancelledError
from core.audio_search.config import (
    DEFAULT_CONFIG,
    BlockWeights,
    LocalContrastConfig,
    PeakPickConfig,
    RefinementConfig,
    SearchConfig,
    TrainingConfig,
    precision_to_hop_sec,
    resolve_search_config,
)
from core.audio_search.explain import logit_contributions
from core.audio_search.fingerprint import compute_fingerprint
from core.audio_search.layout import fingerprint_to_feature_vector, make_feature_vector_layout
from core.audio_search.models import (
    build_prototype_model,
    decide_model_kind,
    score_with_model,
    summarise_weight_norms,
    train_logistic_model,
)
from core.audio_search.peaks import PeakEvent, pick_peaks
from core.audio_search.refinement import (
    RefinementCandidate,
    RefinementStats,
    candidates_from_result,
    compute_refinement_stats,
    labels_from_candidates,
    make_auto_candidate_id,
    merge_candidates,
)
from core.audio_search.search import (
    search_track,
    search_track_guided,
    softmax_similarity_curve,
)
from core.audio_search.similarity import block_cosine_similarity, fingerprint_similarity
from core.audio_search.sliding import WindowFeatureExtractor, compute_background_window
from core.audio_search.types import (
    BaselineModel,
    FeatureSlice,
    FeatureVectorLayout,
    Fingerprint,
    FrameSeries,
    GroupWeightNorms,
    LogisticModel,
    LogitContributions,
    ModelKind,
    ModelSummary,
    PrototypeModel,
    RefinementLabel,
    SearchCandidate,
    SearchResult,
    SearchTimings,
    SearchWindow,
    TrainingDiagnostics,
)

__all__ = [
    # Types
    "FrameSeries",
    "SearchWindow",
    "RefinementLabel",
    "FeatureSlice",
    "FeatureVectorLayout",
    "Fingerprint",
    "ModelKind",
    "ModelSummary",
    "TrainingDiagnostics",
    "GroupWeightNorms",
    "BaselineModel",
    "PrototypeModel",
    "LogisticModel",
    "LogitContributions",
    "SearchCandidate",
    "SearchTimings",
    "SearchResult",
    "PeakEvent",
    # Config
    "SearchConfig",
    "PeakPickConfig",
    "BlockWeights",
    "LocalContrastConfig",
    "RefinementConfig",
    "TrainingConfig",
    "DEFAULT_CONFIG",
    "resolve_search_config",
    "precision_to_hop_sec",
    # Search
    "search_track",
    "search_track_guided",
    "softmax_similarity_curve",
    # Building blocks
    "make_feature_vector_layout",
    "fingerprint_to_feature_vector",
    "compute_fingerprint",
    "compute_background_window",
    "WindowFeatureExtractor",
    "pick_peaks",
    "block_cosine_similarity",
    "fingerprint_similarity",
    "decide_model_kind",
    "build_prototype_model",
    "train_logistic_model",
    "score_with_model",
    "summarise_weight_norms",
    "logit_contributions",
    # Refinement bookkeeping
    "RefinementCandidate",
    "RefinementStats",
    "compute_refinement_stats",
    "make_auto_candidate_id",
    "merge_candidates",
    "candidates_from_result",
    "labels_from_candidates",
    # Errors
    "CancellationCheck",
    "SearchCancelledError",
]
