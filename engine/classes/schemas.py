"""
Pydantic models for everything the engines read from and write to the
document store.

Documents are stored with camelCase keys (the mobile client's layout);
models accept either camelCase or snake_case on input and dump with
aliases via `to_document()`. Catalog payloads (MovieStub and friends)
keep TMDB's own snake_case keys.
"""

import datetime as dt
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .enums import ConnectionStatus, LockOverride, RatingMethod
from engine.misc.helpers import REFERENCE_TZ, ensure_aware, movie_key


class _Document(BaseModel):
    """Base for stored documents: camelCase on disk, snake_case in code."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# -----------------------------
#          CATALOG
# -----------------------------

class MovieStub(BaseModel):
    """The subset of a catalog movie carried around as a match candidate."""
    id: int
    title: str
    poster_path: Optional[str] = None
    overview: Optional[str] = None
    release_date: Optional[str] = None

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class Genre(BaseModel):
    id: int
    name: str


class MovieDetail(MovieStub):
    """Full catalog detail. Unlisted TMDB fields are kept as extras."""
    model_config = ConfigDict(extra="allow")

    runtime: Optional[int] = None
    vote_average: Optional[float] = None
    genres: list[Genre] = []


class PersonDetail(BaseModel):
    """Catalog person with combined (movie + tv) credits."""
    model_config = ConfigDict(extra="allow")

    id: int
    name: str
    biography: Optional[str] = None
    profile_path: Optional[str] = None
    combined_credits: dict[str, Any] = {}


# -----------------------------
#          RATINGS
# -----------------------------

class RatingRecord(_Document):
    """
    One user's rating of one movie.

    `score` is always in the native scale of `rating_method`; `breakdown`
    (category -> score) only applies to the Awards method.
    """
    movie_id: int | str
    user_id: str
    rating_method: RatingMethod
    score: float
    breakdown: Optional[dict[str, Any]] = None
    timestamp: dt.datetime

    @field_validator("rating_method", mode="before")
    @classmethod
    def _parse_rating_method(cls, value: Any) -> Any:
        if isinstance(value, str):
            method = RatingMethod.from_string(value)
            if method is None:
                raise ValueError(f"Unknown rating method: {value!r}")
            return method
        return value


class AggregateStats(_Document):
    """Rolling per-movie statistics for one rating method."""
    count: int = 0
    sum: float = 0.0
    average: Optional[float] = None


# -----------------------------
#        CONNECTIONS
# -----------------------------

class Connection(_Document):
    """A group match session."""
    id: str
    name: str
    participants: list[str]
    status: ConnectionStatus = ConnectionStatus.MATCHING
    matched_movies: list[MovieStub] = []
    # user id -> movie key -> score (1..10, or -1 for "skip / already seen")
    votes: dict[str, dict[str, int]] = {}
    duration_minutes: int
    deadline: dt.datetime
    created_at: dt.datetime
    created_by: str
    refill_page: int = 1

    @field_validator("deadline", "created_at")
    @classmethod
    def _aware(cls, value: dt.datetime) -> dt.datetime:
        return ensure_aware(value)

    def has_movie(self, movie_id: int) -> bool:
        return any(movie.id == movie_id for movie in self.matched_movies)

    def unvoted_movies(self, user_id: str) -> list[MovieStub]:
        """Candidates this user has neither scored nor skipped, in list order."""
        user_votes = self.votes.get(user_id, {})
        return [movie for movie in self.matched_movies if movie_key(movie.id) not in user_votes]


class RankedMovie(BaseModel):
    movie: MovieStub
    average_score: float
    vote_count: int


class RevealResult(BaseModel):
    """Winner plus the remaining candidates in rank order."""
    winner: RankedMovie
    runners_up: list[RankedMovie]


# -----------------------------
#           AWARDS
# -----------------------------

class Nominee(_Document):
    tmdb_id: int
    title: str
    # Role / person description, e.g. "Cillian Murphy as J. Robert Oppenheimer"
    name: str = ""
    poster_path: Optional[str] = Field(default=None, alias="poster_path")


class Category(_Document):
    id: str
    name: str
    awards_rating_key: str
    nominees: list[Nominee] = []
    winner_tmdb_id: Optional[int] = None

    @model_validator(mode="after")
    def _check_nominees(self) -> "Category":
        seen: set[int] = set()
        for nominee in self.nominees:
            if nominee.tmdb_id in seen:
                raise ValueError(f"Duplicate nominee {nominee.tmdb_id} in category '{self.id}'")
            seen.add(nominee.tmdb_id)
        if self.winner_tmdb_id is not None and self.winner_tmdb_id not in seen:
            raise ValueError(
                f"Winner {self.winner_tmdb_id} is not a nominee in category '{self.id}'"
            )
        return self

    def get_nominee(self, tmdb_id: int) -> Optional[Nominee]:
        return next((n for n in self.nominees if n.tmdb_id == tmdb_id), None)


class AwardsEvent(_Document):
    id: str
    name: str
    # Calendar date of the ceremony in the reference timezone
    date: dt.date
    is_active: bool = True
    lock_override: LockOverride = LockOverride.AUTO
    categories: list[Category] = []

    @field_validator("date", mode="before")
    @classmethod
    def _parse_date(cls, value: Any) -> Any:
        # Legacy documents hold a Firestore-style {"seconds": ...} timestamp
        if isinstance(value, dict) and "seconds" in value:
            value = dt.datetime.fromtimestamp(value["seconds"], tz=dt.timezone.utc)
        if isinstance(value, str) and "T" in value:
            value = dt.datetime.fromisoformat(value)
        if isinstance(value, dt.datetime):
            if value.tzinfo is None:
                return value.date()
            return value.astimezone(REFERENCE_TZ).date()
        return value

    @field_validator("lock_override", mode="before")
    @classmethod
    def _parse_lock_override(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            override = LockOverride.from_string(value)
            if override is None:
                raise ValueError(f"Unknown lock override: {value!r}")
            return override
        return value

    @model_validator(mode="after")
    def _check_unique_categories(self) -> "AwardsEvent":
        ids = [category.id for category in self.categories]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate category id in event '{self.id}'")
        return self

    def get_category(self, category_id: str) -> Optional[Category]:
        return next((c for c in self.categories if c.id == category_id), None)


class Ballot(_Document):
    """One user's picks for one event: category id -> nominee tmdb id."""
    user_id: str
    event_id: str
    picks: dict[str, int] = {}


class BallotScore(BaseModel):
    correct: int
    decided: int
    picked: int = 0
    total: int = 0


class AnalyticalPick(BaseModel):
    """The nominee the user's own category ratings favour. Advisory only."""
    nominee: Nominee
    score: float
