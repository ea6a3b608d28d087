"""
Typed failures raised by the engines.

Each error carries a user-facing message and a stable machine code. The
API layer maps each class to an HTTP status; callers inside the engines
catch them by class, never by message.
"""

from typing import Any, Optional


class MovieNightError(Exception):
    """Base class for every expected engine failure."""

    code: str = "MOVIE_NIGHT_ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class NotFoundError(MovieNightError):
    """A referenced connection, event, category, nominee or document does not exist."""

    code = "NOT_FOUND"


class InvalidInputError(MovieNightError):
    """Input rejected before any write (out-of-range score, duplicate id, bad date...)."""

    code = "INVALID_INPUT"


class VotingLockedError(MovieNightError):
    """A write was attempted after voting closed."""

    code = "VOTING_LOCKED"


class UpstreamUnavailableError(MovieNightError):
    """The catalog or the document store could not be reached."""

    code = "UPSTREAM_UNAVAILABLE"


class NoCandidatesError(MovieNightError):
    """Matching produced no candidate movies, even after the catalog top-up."""

    code = "NO_CANDIDATES"
