from __future__ import annotations

import math
from typing import Sequence

from ..errors import DimensionMismatch
from ..types import Group, SearchHit


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    if len(left) != len(right):
        raise DimensionMismatch(expected=len(left), actual=len(right))

    dot = 0.0
    left_norm = 0.0
    right_norm = 0.0
    for lval, rval in zip(left, right):
        dot += lval * rval
        left_norm += lval * lval
        right_norm += rval * rval

    if left_norm == 0.0 or right_norm == 0.0:
        return 0.0

    similarity = dot / (math.sqrt(left_norm) * math.sqrt(right_norm))
    # Rounding can push identical vectors a hair past 1.0.
    return max(-1.0, min(1.0, similarity))


def find_best(query: Sequence[float], group: Group) -> SearchHit | None:
    """Return the record most similar to ``query``, or None for an empty group.

    Ties keep the earliest appended record.
    """
    best: SearchHit | None = None
    for position, record in enumerate(group.embeddings):
        if len(record.embedding) != len(query):
            raise DimensionMismatch(expected=len(query), actual=len(record.embedding))

        score = cosine_similarity(query, record.embedding)
        if best is None or score > best.score:
            best = SearchHit(record=record, score=score, position=position)

    return best
