from __future__ import annotations

from typing import Final

from ..errors import ShapeError
from .types import PredictOutput, Probs

N_CLASSES: Final[int] = 10


def argmax_first(scores: Probs) -> int:
    # strict comparison keeps the lowest index on ties
    top_idx = 0
    best = scores[0]
    for i in range(1, len(scores)):
        if scores[i] > best:
            best = scores[i]
            top_idx = i
    return top_idx


def reduce_scores(
    scores: Probs, model_id: str, precision: int = 2, n_classes: int = N_CLASSES
) -> PredictOutput:
    """Turn a raw score vector into a prediction.

    The arg-max and confidence use the full-precision scores; only
    ``display_probs`` is rounded to ``precision`` decimal places.
    """
    if len(scores) != n_classes:
        raise ShapeError(f"expected {n_classes} scores, got {len(scores)}")
    full = tuple(float(s) for s in scores)
    top = argmax_first(full)
    return PredictOutput(
        digit=top,
        confidence=full[top],
        probs=full,
        display_probs=tuple(round(s, precision) for s in full),
        model_id=model_id,
    )
