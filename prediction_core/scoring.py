from __future__ import annotations

from prediction_core.models import Scoreline


POINTS_EXACT = 5
POINTS_DIFF = 3
POINTS_OUTCOME = 2
POINTS_MISS = 0


def _sign(v: int) -> int:
    if v > 0:
        return 1
    if v < 0:
        return -1
    return 0


def score_prediction(pred: Scoreline, actual: Scoreline) -> int:
    """Points for one prediction against the full-time result.

    Only the 90-minute score settles a prediction. Inputs are assumed valid.
    """
    if pred.home == actual.home and pred.away == actual.away:
        return POINTS_EXACT
    pred_diff = pred.home - pred.away
    actual_diff = actual.home - actual.away
    same_outcome = _sign(pred_diff) == _sign(actual_diff)
    if same_outcome and abs(pred_diff) == abs(actual_diff):
        return POINTS_DIFF
    if same_outcome:
        return POINTS_OUTCOME
    return POINTS_MISS


def hit_counts(points: int) -> tuple[int, int, int]:
    if points == POINTS_EXACT:
        return 1, 0, 0
    if points == POINTS_DIFF:
        return 0, 1, 0
    if points == POINTS_OUTCOME:
        return 0, 0, 1
    return 0, 0, 0
