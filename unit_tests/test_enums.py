"""Unit tests for enum conversion and string formatting behavior."""

import pytest

from engine.classes.enums import ConnectionStatus, LockOverride, RatingMethod


@pytest.mark.parametrize(
    ("raw_method", "expected"),
    [
        ("classic", RatingMethod.CLASSIC),
        ("1-10", RatingMethod.CLASSIC),
        ("Pizza", RatingMethod.PIZZA),
        ("1-5", RatingMethod.PIZZA),
        ("percentage", RatingMethod.PERCENTAGE),
        ("Awards Rating", RatingMethod.AWARDS),
        ("awards", RatingMethod.AWARDS),
        ("stars", None),
        ("", None),
    ],
)
def test_rating_method_from_string(raw_method: str, expected: RatingMethod | None) -> None:
    """RatingMethod.from_string should accept canonical and legacy labels and reject unknown values."""
    assert RatingMethod.from_string(raw_method) == expected


def test_rating_method_bounds_are_stable() -> None:
    """Native scale bounds should remain stable for score validation."""
    assert RatingMethod.CLASSIC.bounds == (0.0, 10.0)
    assert RatingMethod.PIZZA.bounds == (0.0, 5.0)
    assert RatingMethod.PERCENTAGE.bounds == (0.0, 100.0)
    assert RatingMethod.AWARDS.bounds == (0.0, 10.0)


def test_rating_method_str_labels() -> None:
    """str() should give the display label."""
    assert str(RatingMethod.PIZZA) == "Pizza"
    assert str(RatingMethod.AWARDS) == "Awards"


def test_connection_status_only_moves_forward_one_step() -> None:
    """Connection status transitions are matching -> voting -> revealed only."""
    assert ConnectionStatus.MATCHING.can_transition_to(ConnectionStatus.VOTING)
    assert ConnectionStatus.VOTING.can_transition_to(ConnectionStatus.REVEALED)
    assert not ConnectionStatus.MATCHING.can_transition_to(ConnectionStatus.REVEALED)
    assert not ConnectionStatus.REVEALED.can_transition_to(ConnectionStatus.VOTING)
    assert not ConnectionStatus.VOTING.can_transition_to(ConnectionStatus.VOTING)


@pytest.mark.parametrize(
    ("raw_value", "expected"),
    [
        (None, LockOverride.AUTO),
        ("auto", LockOverride.AUTO),
        ("OPEN", LockOverride.OPEN),
        (" closed ", LockOverride.CLOSED),
        ("locked", None),
    ],
)
def test_lock_override_from_string(raw_value: str | None, expected: LockOverride | None) -> None:
    """A missing override means auto; unknown labels are rejected."""
    assert LockOverride.from_string(raw_value) == expected
