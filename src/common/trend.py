# ABOUTME: Classifies time-ordered score sequences as improving, stable, or declining.
# ABOUTME: Shared by risk scoring, intervention context, grouping, and class roll-ups.

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np

IMPROVING = "improving"
STABLE = "stable"
DECLINING = "declining"

DEFAULT_TREND_THRESHOLD = 5.0


@dataclass(frozen=True)
class TrendResult:
    direction: str
    magnitude: int
    difference: float = 0.0


def classify_trend(scores: Sequence[float], threshold: float = DEFAULT_TREND_THRESHOLD) -> TrendResult:
    """
    Compare the mean of the later half of a sequence against the earlier half.

    The split happens at ``len(scores) // 2`` so odd-length sequences put the
    middle observation in the later half.
    """

    if len(scores) < 2:
        return TrendResult(direction=STABLE, magnitude=0, difference=0.0)

    values = np.asarray(scores, dtype=float)
    midpoint = len(values) // 2
    difference = float(values[midpoint:].mean() - values[:midpoint].mean())

    if difference >= threshold:
        direction = IMPROVING
    elif difference <= -threshold:
        direction = DECLINING
    else:
        direction = STABLE
    return TrendResult(direction=direction, magnitude=int(round(abs(difference))), difference=round(difference, 4))


def score_volatility(scores: Sequence[float]) -> float:
    """Population standard deviation of the scores (0 for fewer than two)."""

    if len(scores) < 2:
        return 0.0
    return float(np.std(np.asarray(scores, dtype=float), ddof=0))
