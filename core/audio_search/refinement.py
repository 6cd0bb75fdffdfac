"""
core/audio_search/refinement.py — Review bookkeeping for search candidates.

A review session turns search candidates into RefinementCandidates, lets a
user accept or reject them, and feeds the reviewed ones back into the next
guided search as RefinementLabels. Unreviewed candidates are never sent as
training data. ``merge_candidates`` folds each re-run's hits into the
review without losing what the user already decided.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass, replace
from typing import Literal

from core.audio_search.types import LabelSource, RefinementLabel, SearchResult

CandidateStatus = Literal["unreviewed", "accepted", "rejected"]


@dataclass(frozen=True)
class RefinementCandidate:
    id: str
    start: float
    end: float
    score: float | None
    status: CandidateStatus = "unreviewed"
    source: LabelSource = "auto"

    def with_status(self, status: CandidateStatus) -> RefinementCandidate:
        return replace(self, status=status)


@dataclass(frozen=True)
class RefinementStats:
    accepted: int = 0
    rejected: int = 0
    unreviewed: int = 0

    @property
    def total(self) -> int:
        return self.accepted + self.rejected + self.unreviewed


def _round_ms(seconds: float) -> int:
    # Round half up; round() would use banker's rounding.
    return int(math.floor(seconds * 1000.0 + 0.5))


def make_auto_candidate_id(start_sec: float, end_sec: float, index: int) -> str:
    """Stable id ``auto-{startMs}-{endMs}-{index}`` for an automatic candidate."""
    return f"auto-{_round_ms(start_sec)}-{_round_ms(end_sec)}-{index}"


def compute_refinement_stats(candidates: Iterable[RefinementCandidate]) -> RefinementStats:
    accepted = rejected = unreviewed = 0
    for c in candidates:
        if c.status == "accepted":
            accepted += 1
        elif c.status == "rejected":
            rejected += 1
        else:
            unreviewed += 1
    return RefinementStats(accepted=accepted, rejected=rejected, unreviewed=unreviewed)


def candidates_from_result(result: SearchResult) -> list[RefinementCandidate]:
    """Unreviewed, automatically sourced candidates for every search hit."""
    return [
        RefinementCandidate(
            id=make_auto_candidate_id(c.window_start, c.window_end, i),
            start=c.window_start,
            end=c.window_end,
            score=c.score,
        )
        for i, c in enumerate(result.candidates)
    ]


MERGE_OVERLAP_RATIO: float = 0.9
_MIN_DURATION_SEC: float = 1e-6


def overlap_ratio(a_start: float, a_end: float, b_start: float, b_end: float) -> float:
    """Overlap of two intervals divided by the shorter duration."""
    start = max(min(a_start, a_end), min(b_start, b_end))
    end = min(max(a_start, a_end), max(b_start, b_end))
    overlap = max(0.0, end - start)
    shorter = min(
        max(_MIN_DURATION_SEC, abs(a_end - a_start)),
        max(_MIN_DURATION_SEC, abs(b_end - b_start)),
    )
    return overlap / shorter


def merge_candidates(
    previous: Iterable[RefinementCandidate], result: SearchResult
) -> list[RefinementCandidate]:
    """Merge a new search result into an ongoing review.

    Manual and reviewed candidates survive a re-run; unreviewed automatic
    ones are replaced by the new hits. Each hit (in start order) claims the
    best-overlapping surviving candidate not yet claimed. With an overlap
    ratio of at least 0.9 the hit is absorbed: an auto candidate takes the
    hit's bounds and score (keeping its id and status), a manual one is
    left as is. Unclaimed hits become new unreviewed auto candidates whose
    id index is their position in the start-sorted hits.

    Returns:
        The merged candidates sorted by start time.
    """
    kept = [c for c in previous if c.source == "manual" or c.status != "unreviewed"]
    claimed: set[int] = set()
    fresh: list[RefinementCandidate] = []

    hits = sorted(result.candidates, key=lambda c: c.window_start)
    for idx, hit in enumerate(hits):
        best_index = -1
        best_ratio = 0.0
        for i, p in enumerate(kept):
            if i in claimed:
                continue
            ratio = overlap_ratio(hit.window_start, hit.window_end, p.start, p.end)
            if ratio > best_ratio:
                best_ratio = ratio
                best_index = i

        if best_index >= 0 and best_ratio >= MERGE_OVERLAP_RATIO:
            claimed.add(best_index)
            p = kept[best_index]
            if p.source != "manual":
                kept[best_index] = replace(
                    p, start=hit.window_start, end=hit.window_end, score=hit.score
                )
            continue

        fresh.append(
            RefinementCandidate(
                id=make_auto_candidate_id(hit.window_start, hit.window_end, idx),
                start=hit.window_start,
                end=hit.window_end,
                score=hit.score,
            )
        )

    return sorted(kept + fresh, key=lambda c: c.start)


def labels_from_candidates(candidates: Iterable[RefinementCandidate]) -> tuple[RefinementLabel, ...]:
    """Training labels from reviewed candidates; unreviewed ones are dropped."""
    return tuple(
        RefinementLabel(start=c.start, end=c.end, status=c.status, source=c.source)
        for c in candidates
        if c.status != "unreviewed"
    )
