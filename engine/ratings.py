"""
Rating submission and per-movie aggregate statistics.

One RatingRecord exists per (user, movie); resubmitting replaces it. After
every submission the movie's AggregateStats are rebuilt from a full
re-scan of its ratings rather than incremental counters, so a partial
write can never leave the aggregate drifting. The re-scan is a plain
read-then-write: concurrent submissions race and the last recompute wins.
"""

import logging
from datetime import datetime
from typing import Any, Mapping, Optional

from db.document_store import DocumentStore
from engine.classes.enums import RatingMethod
from engine.classes.errors import InvalidInputError
from engine.classes.schemas import AggregateStats, RatingRecord
from engine.misc.helpers import ensure_aware, movie_key, parse_float, utc_now
from engine.scoring import calculate_award_average, is_score_in_range

logger = logging.getLogger(__name__)

RATINGS_COLLECTION = "ratings"
MOVIE_STATS_COLLECTION = "movie_stats"


def _rating_doc_id(user_id: str, movie_id: int | str) -> str:
    return f"{user_id}_{movie_key(movie_id)}"


def _coerce_method(method: RatingMethod | str) -> RatingMethod:
    if isinstance(method, RatingMethod):
        return method
    parsed = RatingMethod.from_string(method)
    if parsed is None:
        raise InvalidInputError(f"Unknown rating method '{method}'.")
    return parsed


async def submit_rating(
    store: DocumentStore,
    user_id: str,
    movie_id: int | str,
    method: RatingMethod | str,
    score: Optional[float] = None,
    breakdown: Optional[Mapping[str, Any]] = None,
    now: Optional[datetime] = None,
) -> RatingRecord:
    """
    Record (or replace) a user's rating of a movie and refresh its stats.

    For the Awards method the score defaults to the average of the valid
    category scores in `breakdown`.

    Raises:
        InvalidInputError: Unknown method, missing or out-of-range score,
            or a breakdown supplied for a non-Awards method.
    """
    if not user_id:
        raise InvalidInputError("A user id is required to rate a movie.")
    method = _coerce_method(method)

    if breakdown is not None and method is not RatingMethod.AWARDS:
        raise InvalidInputError("Category breakdowns are only supported for Awards ratings.")

    if method is RatingMethod.AWARDS and score is None:
        score = calculate_award_average(breakdown)
        if score is None:
            raise InvalidInputError("Rate at least one award category between 1 and 10.")

    parsed_score = parse_float(score)
    if parsed_score is None:
        raise InvalidInputError("A numeric score is required.")
    if not is_score_in_range(parsed_score, method):
        low, high = method.bounds
        raise InvalidInputError(f"{method} scores must be between {low:g} and {high:g}.")

    record = RatingRecord(
        movie_id=movie_id,
        user_id=user_id,
        rating_method=method,
        score=parsed_score,
        breakdown=dict(breakdown) if breakdown is not None else None,
        timestamp=ensure_aware(now) if now else utc_now(),
    )
    document = record.to_document()
    document["movieKey"] = movie_key(movie_id)
    await store.set(RATINGS_COLLECTION, _rating_doc_id(user_id, movie_id), document)
    logger.info("User %s rated movie %s: %s (%s)", user_id, movie_id, parsed_score, method.value)

    try:
        await recompute_aggregate_stats(store, movie_id)
    except Exception:
        # The rating itself is committed; stats catch up on the next submission.
        logger.exception("Aggregate stats recompute failed for movie %s", movie_id)

    return record


async def recompute_aggregate_stats(
    store: DocumentStore,
    movie_id: int | str,
) -> dict[RatingMethod, AggregateStats]:
    """
    Rebuild a movie's per-method statistics from all of its ratings.

    Returns:
        Mapping of rating method -> {count, sum, average}; methods nobody
        used for this movie are absent.
    """
    documents = await store.query(RATINGS_COLLECTION, [("movieKey", "==", movie_key(movie_id))])

    totals: dict[RatingMethod, tuple[int, float]] = {}
    for document in documents:
        try:
            record = RatingRecord.model_validate(document)
        except ValueError:
            logger.warning("Skipping malformed rating document %s", document.get("id"))
            continue
        count, running_sum = totals.get(record.rating_method, (0, 0.0))
        totals[record.rating_method] = (count + 1, running_sum + record.score)

    stats = {
        method: AggregateStats(count=count, sum=running_sum, average=running_sum / count)
        for method, (count, running_sum) in totals.items()
    }
    await store.set(
        MOVIE_STATS_COLLECTION,
        movie_key(movie_id),
        {method.value: entry.to_document() for method, entry in stats.items()},
    )
    return stats


async def fetch_aggregate_stats(store: DocumentStore, movie_id: int | str) -> dict[RatingMethod, AggregateStats]:
    document = await store.get(MOVIE_STATS_COLLECTION, movie_key(movie_id)) or {}
    stats: dict[RatingMethod, AggregateStats] = {}
    for method in RatingMethod:
        if isinstance(document.get(method.value), dict):
            stats[method] = AggregateStats.model_validate(document[method.value])
    return stats


async def fetch_rating(store: DocumentStore, user_id: str, movie_id: int | str) -> Optional[RatingRecord]:
    document = await store.get(RATINGS_COLLECTION, _rating_doc_id(user_id, movie_id))
    return RatingRecord.model_validate(document) if document else None


async def fetch_user_ratings(store: DocumentStore, user_id: str) -> dict[str, RatingRecord]:
    """All of a user's ratings keyed by movie key (stringified catalog id)."""
    documents = await store.query(RATINGS_COLLECTION, [("userId", "==", user_id)])
    ratings: dict[str, RatingRecord] = {}
    for document in documents:
        try:
            record = RatingRecord.model_validate(document)
        except ValueError:
            logger.warning("Skipping malformed rating document %s", document.get("id"))
            continue
        ratings[movie_key(record.movie_id)] = record
    return ratings
