"""
Enum classes for ratings, match sessions and awards events.

Stored documents carry the string values; code paths always work with
the enum members so dispatch stays exhaustive.
"""

from enum import Enum
from engine.misc.helpers import normalize_string


class RatingMethod(Enum):
    """Interchangeable rating schemes a user can rate a movie with."""
    CLASSIC = "classic"
    PIZZA = "pizza"
    PERCENTAGE = "percentage"
    AWARDS = "awards"

    @classmethod
    def from_string(cls, method: str) -> "RatingMethod | None":
        """
        Convert a stored or user-supplied label to a RatingMethod.

        Accepts the canonical values plus the legacy labels the mobile
        client used to persist ("1-10", "1-5", "Awards Rating").
        Returns None if the label doesn't match any rating method.
        """
        normalized_method = normalize_string(method)
        _map = {
            normalize_string("classic"): cls.CLASSIC,
            normalize_string("1-10"): cls.CLASSIC,
            normalize_string("pizza"): cls.PIZZA,
            normalize_string("1-5"): cls.PIZZA,
            normalize_string("percentage"): cls.PERCENTAGE,
            normalize_string("awards"): cls.AWARDS,
            normalize_string("awards rating"): cls.AWARDS,
        }
        return _map.get(normalized_method, None)

    @property
    def bounds(self) -> tuple[float, float]:
        """Inclusive (min, max) of the method's native scale."""
        _bounds = {
            RatingMethod.CLASSIC: (0.0, 10.0),
            RatingMethod.PIZZA: (0.0, 5.0),
            RatingMethod.PERCENTAGE: (0.0, 100.0),
            RatingMethod.AWARDS: (0.0, 10.0),
        }
        return _bounds[self]

    def __str__(self) -> str:
        _labels = {
            RatingMethod.CLASSIC: "Classic",
            RatingMethod.PIZZA: "Pizza",
            RatingMethod.PERCENTAGE: "Percentage",
            RatingMethod.AWARDS: "Awards",
        }
        return _labels[self]


class ConnectionStatus(Enum):
    """Lifecycle phases of a group match session. Transitions only move forward."""
    MATCHING = "matching"
    VOTING = "voting"
    REVEALED = "revealed"

    @property
    def order(self) -> int:
        _order = {
            ConnectionStatus.MATCHING: 0,
            ConnectionStatus.VOTING: 1,
            ConnectionStatus.REVEALED: 2,
        }
        return _order[self]

    def can_transition_to(self, target: "ConnectionStatus") -> bool:
        return target.order == self.order + 1


class LockOverride(Enum):
    """Manual ballot lock setting an admin can apply to an awards event."""
    AUTO = "auto"
    OPEN = "open"
    CLOSED = "closed"

    @classmethod
    def from_string(cls, value: str | None) -> "LockOverride | None":
        """
        Convert a stored override to a LockOverride.

        A missing value means AUTO. Returns None for unknown labels.
        """
        if value is None:
            return cls.AUTO
        _map = {
            "auto": cls.AUTO,
            "open": cls.OPEN,
            "closed": cls.CLOSED,
        }
        return _map.get(normalize_string(value), None)
