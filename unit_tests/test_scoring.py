"""Unit tests for rating conversion and the Awards average."""

import pytest

from engine.classes.enums import RatingMethod
from engine.scoring import (
    AWARD_CATEGORIES,
    calculate_award_average,
    convert_rating,
    is_score_in_range,
    normalize_score,
)


@pytest.mark.parametrize(
    ("score", "from_method", "to_method", "expected"),
    [
        (8.0, RatingMethod.CLASSIC, RatingMethod.PIZZA, 4.0),
        (4.5, RatingMethod.PIZZA, RatingMethod.PERCENTAGE, 90.0),
        (73.0, RatingMethod.PERCENTAGE, RatingMethod.CLASSIC, 7.3),
        (6.5, RatingMethod.AWARDS, RatingMethod.CLASSIC, 6.5),
        (3.0, "pizza", "classic", 6.0),
    ],
)
def test_convert_rating_is_linear_through_ten_point_basis(score, from_method, to_method, expected) -> None:
    """convert_rating should scale through the 0-10 basis."""
    assert convert_rating(score, from_method, to_method) == pytest.approx(expected)


@pytest.mark.parametrize("from_method", list(RatingMethod))
@pytest.mark.parametrize("to_method", list(RatingMethod))
def test_convert_rating_there_and_back_stays_within_a_tenth(from_method, to_method) -> None:
    """Converting A -> B -> A returns the original score within 0.1."""
    low, high = from_method.bounds
    for score in (low, (low + high) / 2, high, low + (high - low) * 0.37):
        there = convert_rating(score, from_method, to_method)
        back = convert_rating(there, to_method, from_method)
        assert abs(back - score) <= 0.1


def test_convert_rating_rejects_unknown_method() -> None:
    """Unknown methods fail fast instead of scoring zero."""
    with pytest.raises(ValueError):
        convert_rating(5, "stars", RatingMethod.CLASSIC)


@pytest.mark.parametrize(
    ("method", "score", "expected"),
    [
        (RatingMethod.CLASSIC, 7.0, 70.0),
        (RatingMethod.PIZZA, 4.0, 80.0),
        (RatingMethod.PERCENTAGE, 65.0, 65.0),
        (RatingMethod.AWARDS, 8.5, 85.0),
    ],
)
def test_normalize_score_maps_to_hundred_point_scale(method, score, expected) -> None:
    """normalize_score should put every method on 0-100."""
    assert normalize_score(method, score) == pytest.approx(expected)


def test_normalize_score_rejects_unknown_method() -> None:
    with pytest.raises(ValueError):
        normalize_score("stars", 5)


def test_calculate_award_average_ignores_out_of_range_and_junk() -> None:
    """Values outside [1, 10] or unparseable are dropped before averaging."""
    breakdown = {
        "Directing": 8,
        "Leading Actor": "7",
        "Score": 0,
        "Song": 11,
        "Sound": "n/a",
        "Cinematography": None,
    }
    assert calculate_award_average(breakdown) == 7.5


def test_calculate_award_average_rounds_half_up() -> None:
    """7.25 rounds to 7.3, not 7.2."""
    assert calculate_award_average({"Directing": 7.0, "Score": 7.5}) == 7.3


@pytest.mark.parametrize("breakdown", [None, {}, {"Directing": 0, "Score": "x"}])
def test_calculate_award_average_without_valid_entries_is_none(breakdown) -> None:
    """No valid category score means there is no average."""
    assert calculate_award_average(breakdown) is None


def test_award_categories_are_the_fifteen_ceremony_categories() -> None:
    assert len(AWARD_CATEGORIES) == 15
    assert "Directing" in AWARD_CATEGORIES
    assert "Visual Effects" in AWARD_CATEGORIES


@pytest.mark.parametrize(
    ("method", "score", "expected"),
    [
        (RatingMethod.PIZZA, 5.0, True),
        (RatingMethod.PIZZA, 5.5, False),
        (RatingMethod.PERCENTAGE, 100.0, True),
        (RatingMethod.CLASSIC, -0.1, False),
    ],
)
def test_is_score_in_range(method, score, expected) -> None:
    assert is_score_in_range(score, method) is expected
