"""
core/audio_search/cancellation.py — Cooperative cancellation for long loops.

Searches run synchronously; the caller decides thread placement and imposes
timeouts by flipping the predicate it passes in. Every expensive loop calls
``check_cancelled`` at a fixed stride.
"""

from __future__ import annotations

from collections.abc import Callable

CancellationCheck = Callable[[], bool]

# Loop strides (power of two minus one, used as bit masks).
FRAME_STRIDE_MASK: int = 2047
WINDOW_STRIDE_MASK: int = 255


class SearchCancelledError(Exception):
    """Raised when the caller's cancellation predicate returns True.

    Propagates unchanged through every layer of the search; it is never
    translated into a fallback or a partial result.
    """

    def __init__(self, message: str = "audio search cancelled") -> None:
        super().__init__(message)


def check_cancelled(is_cancelled: CancellationCheck | None) -> None:
    """Raise SearchCancelledError if the predicate reports cancellation."""
    if is_cancelled is not None and is_cancelled():
        raise SearchCancelledError()
