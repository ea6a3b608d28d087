"""
Pure scoring utilities shared by the ratings and awards engines.

Every rating method is mapped onto a common 0-10 basis for conversion,
and onto 0-100 for the profile "master average". Unknown methods are a
contract violation and raise instead of silently scoring zero.
"""

from typing import Any, Mapping, Optional

from engine.classes.enums import RatingMethod
from engine.misc.helpers import parse_float, round_half_up

AWARD_CATEGORIES: tuple[str, ...] = (
    "Directing",
    "Leading Actress",
    "Leading Actor",
    "Supporting Actress",
    "Supporting Actor",
    "Screenplay",
    "Score",
    "Song",
    "Sound",
    "Makeup & Hairstyle",
    "Costume Design",
    "Cinematography",
    "Production Design",
    "Film Editing",
    "Visual Effects",
)

_AWARD_SCORE_MIN = 1.0
_AWARD_SCORE_MAX = 10.0


def _coerce_method(method: RatingMethod | str) -> RatingMethod:
    if isinstance(method, RatingMethod):
        return method
    parsed = RatingMethod.from_string(method) if isinstance(method, str) else None
    if parsed is None:
        raise ValueError(f"Unknown rating method: {method!r}")
    return parsed


def to_ten_point_basis(score: float, method: RatingMethod | str) -> float:
    """Express a native-scale score on the common 0-10 basis."""
    method = _coerce_method(method)
    if method in (RatingMethod.CLASSIC, RatingMethod.AWARDS):
        return score
    if method is RatingMethod.PIZZA:
        return score * 2
    if method is RatingMethod.PERCENTAGE:
        return score / 10
    raise ValueError(f"Unhandled rating method: {method!r}")


def from_ten_point_basis(score: float, method: RatingMethod | str) -> float:
    """Express a 0-10 basis score in the native scale of `method`."""
    method = _coerce_method(method)
    if method in (RatingMethod.CLASSIC, RatingMethod.AWARDS):
        return score
    if method is RatingMethod.PIZZA:
        return score / 2
    if method is RatingMethod.PERCENTAGE:
        return score * 10
    raise ValueError(f"Unhandled rating method: {method!r}")


def convert_rating(
    score: float,
    from_method: RatingMethod | str,
    to_method: RatingMethod | str,
) -> float:
    """
    Convert a score between rating-method scales.

    The transform is linear through the 0-10 basis, so converting there
    and back returns the original score up to float rounding.

    Args:
        score: Score in the native scale of `from_method`.
        from_method: Method the score is expressed in.
        to_method: Method to express the score in.

    Returns:
        The score in the native scale of `to_method`.

    Raises:
        ValueError: If either method is not a known rating method.
    """
    return from_ten_point_basis(to_ten_point_basis(score, from_method), to_method)


def normalize_score(method: RatingMethod | str, score: float) -> float:
    """Normalize any native-scale score to 0-100 for cross-method averages."""
    return to_ten_point_basis(score, method) * 10


def calculate_award_average(breakdown: Optional[Mapping[str, Any]]) -> Optional[float]:
    """
    Average the per-category scores of an Awards rating.

    Values are parsed leniently ("8" counts as 8.0). Anything unparseable
    or outside [1.0, 10.0] is treated as "not rated" and dropped.

    Returns:
        Mean of the surviving values rounded to one decimal, or None if
        no category holds a valid score.
    """
    if not breakdown:
        return None

    valid_values = []
    for raw_value in breakdown.values():
        value = parse_float(raw_value)
        if value is not None and _AWARD_SCORE_MIN <= value <= _AWARD_SCORE_MAX:
            valid_values.append(value)

    if not valid_values:
        return None

    return round_half_up(sum(valid_values) / len(valid_values), 1)


def is_score_in_range(score: float, method: RatingMethod | str) -> bool:
    low, high = _coerce_method(method).bounds
    return low <= score <= high
