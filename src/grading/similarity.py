# ABOUTME: Computes Dice-coefficient similarity over character bigrams.
# ABOUTME: Used for approximate grading of short-answer responses.

from __future__ import annotations

import re
from collections import Counter

_WHITESPACE = re.compile(r"\s+")


def normalize_answer(value) -> str:
    return str(value).strip().lower()


def dice_similarity(first: str, second: str) -> float:
    """
    Dice coefficient of the two strings' bigram multisets, in [0, 1].

    Whitespace is removed before bigrams are taken, so "new york" and
    "newyork" compare as identical.
    """

    first = _WHITESPACE.sub("", first)
    second = _WHITESPACE.sub("", second)

    if first == second:
        return 1.0
    if len(first) < 2 or len(second) < 2:
        return 0.0

    first_bigrams = Counter(first[i : i + 2] for i in range(len(first) - 1))
    second_bigrams = Counter(second[i : i + 2] for i in range(len(second) - 1))
    overlap = sum((first_bigrams & second_bigrams).values())
    return (2.0 * overlap) / (len(first) + len(second) - 2)
