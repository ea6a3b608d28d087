"""
Awards ballot engine.

Users lock one nominee per category into a per-(user, event) ballot.
Voting closes at 18:00 on the ceremony date in one fixed reference
timezone (America/Chicago by default), so every voter shares a single
global cutoff regardless of device locale. An admin override ("open" /
"closed") always beats the clock.

Once winners are declared, each ballot scores one point per correct
category and is ranked against every other ballot for the event.
"""

import logging
import math
from datetime import datetime, tzinfo
from typing import Any, Iterable, Mapping, Optional

from db.document_store import DocumentStore
from engine.classes.enums import LockOverride
from engine.classes.errors import NotFoundError, VotingLockedError
from engine.classes.schemas import AnalyticalPick, AwardsEvent, Ballot, BallotScore, Category, RatingRecord
from engine.misc.helpers import REFERENCE_TZ, ensure_aware, movie_key, parse_float, reference_timezone, utc_now
from engine.ratings import fetch_user_ratings

logger = logging.getLogger(__name__)

EVENTS_COLLECTION = "award_events"
BALLOTS_COLLECTION = "awards_ballots"

# Polls close at 6 PM reference time on the ceremony date
LOCK_HOUR = 18


def _ballot_doc_id(user_id: str, event_id: str) -> str:
    return f"{user_id}_{event_id}"


# ===============================
#          LOCK WINDOW
# ===============================

def is_voting_closed(event: AwardsEvent, now: datetime, tz: tzinfo | str | None = None) -> bool:
    """
    Whether ballot picks for `event` are locked at `now`.

    Pure: the answer depends only on the arguments. Naive `now` values
    are taken as UTC.

    Args:
        event: The awards event.
        now: The instant to evaluate.
        tz: Reference timezone override; defaults to REFERENCE_TZ, resolved
            from AWARDS_REFERENCE_TZ once at import.

    Returns:
        True if the admin closed voting, or (override "auto") the
        reference-time date is past the ceremony date, or it is the
        ceremony date and the hour is 18 or later.
    """
    if event.lock_override is LockOverride.CLOSED:
        return True
    if event.lock_override is LockOverride.OPEN:
        return False

    if isinstance(tz, tzinfo):
        zone = tz
    else:
        zone = reference_timezone(tz) if tz else REFERENCE_TZ
    local_now = ensure_aware(now).astimezone(zone)
    today = local_now.date()

    if today > event.date:
        return True
    return today == event.date and local_now.hour >= LOCK_HOUR


# ===============================
#            EVENTS
# ===============================

async def fetch_event(store: DocumentStore, event_id: str) -> AwardsEvent:
    document = await store.get(EVENTS_COLLECTION, event_id)
    if document is None:
        raise NotFoundError("Awards event not found.", details={"event_id": event_id})
    return AwardsEvent.model_validate(document)


async def fetch_active_events(store: DocumentStore) -> list[AwardsEvent]:
    """Published events, earliest ceremony first."""
    documents = await store.query(EVENTS_COLLECTION, [("isActive", "==", True)])
    events = [AwardsEvent.model_validate(document) for document in documents]
    return sorted(events, key=lambda event: event.date)


def _require_category(event: AwardsEvent, category_id: str) -> Category:
    category = event.get_category(category_id)
    if category is None:
        raise NotFoundError("Category not found.", details={"event_id": event.id, "category_id": category_id})
    return category


# ===============================
#            BALLOTS
# ===============================

async def lock_pick(
    store: DocumentStore,
    user_id: str,
    event_id: str,
    category_id: str,
    nominee_id: int,
    now: Optional[datetime] = None,
) -> Ballot:
    """
    Save the user's pick for one category.

    The pick is merged into the ballot, leaving every other category's
    pick as it was.

    Raises:
        NotFoundError: Unknown event, category or nominee.
        VotingLockedError: Voting for the event has closed.
    """
    event = await fetch_event(store, event_id)
    category = _require_category(event, category_id)
    if category.get_nominee(nominee_id) is None:
        raise NotFoundError(
            "Nominee not found in this category.",
            details={"category_id": category_id, "nominee_id": nominee_id},
        )

    if is_voting_closed(event, now or utc_now()):
        raise VotingLockedError("Voting closed: the polls closed at 6:00 PM Central on ceremony day.")

    await store.set(
        BALLOTS_COLLECTION,
        _ballot_doc_id(user_id, event_id),
        {"userId": user_id, "eventId": event_id, "picks": {category_id: nominee_id}},
        merge=True,
    )
    logger.info("User %s picked %s for %s/%s", user_id, nominee_id, event_id, category_id)
    return await fetch_ballot(store, user_id, event_id)


async def fetch_ballot(store: DocumentStore, user_id: str, event_id: str) -> Ballot:
    """The user's ballot for the event; an empty ballot if they haven't picked yet."""
    document = await store.get(BALLOTS_COLLECTION, _ballot_doc_id(user_id, event_id))
    if document is None:
        return Ballot(user_id=user_id, event_id=event_id)
    return Ballot.model_validate(document)


def _picks_of(ballot: Ballot | Mapping[str, Any]) -> Mapping[str, Any]:
    return ballot.picks if isinstance(ballot, Ballot) else ballot


def score_ballot(ballot: Ballot | Mapping[str, Any], event: AwardsEvent) -> BallotScore:
    """
    Score a ballot against declared winners.

    Categories without a winner yet neither score nor count as decided.
    """
    picks = _picks_of(ballot)
    correct = 0
    decided = 0
    for category in event.categories:
        if category.winner_tmdb_id is None:
            continue
        decided += 1
        if picks.get(category.id) == category.winner_tmdb_id:
            correct += 1

    picked = sum(1 for category in event.categories if category.id in picks)
    return BallotScore(correct=correct, decided=decided, picked=picked, total=len(event.categories))


def compute_percentile(my_score: float, all_peer_scores: Iterable[float]) -> Optional[int]:
    """
    Percentile rank of `my_score` among every ballot's score.

    percentile = (scores <= my_score) / total * 100, rounded half up.
    `all_peer_scores` is expected to include the caller's own score.

    Returns:
        Integer percentile, or None when there are no scores at all.
    """
    scores = list(all_peer_scores)
    if not scores:
        return None
    at_or_below = sum(1 for score in scores if score <= my_score)
    return math.floor(at_or_below / len(scores) * 100 + 0.5)


async def compute_event_percentile(store: DocumentStore, user_id: str, event_id: str) -> Optional[int]:
    """
    Rank the user's ballot against all ballots cast for the event.

    Returns None until at least one winner is declared, or when nobody
    has cast a ballot. A user without a ballot ranks with a score of 0.
    """
    event = await fetch_event(store, event_id)
    if not any(category.winner_tmdb_id is not None for category in event.categories):
        return None

    documents = await store.query(BALLOTS_COLLECTION, [("eventId", "==", event_id)])
    if not documents:
        return None

    peer_scores: list[int] = []
    my_score: Optional[int] = None
    for document in documents:
        ballot = Ballot.model_validate(document)
        score = score_ballot(ballot, event).correct
        peer_scores.append(score)
        if ballot.user_id == user_id:
            my_score = score

    if my_score is None:
        my_score = 0
        peer_scores.append(my_score)

    return compute_percentile(my_score, peer_scores)


# ===============================
#      ANALYTICAL SUGGESTION
# ===============================

def _breakdown_of(rating: RatingRecord | Mapping[str, Any] | None) -> Mapping[str, Any]:
    if rating is None:
        return {}
    if isinstance(rating, RatingRecord):
        return rating.breakdown or {}
    return rating.get("breakdown") or {}


def calculate_analytical_pick(
    category: Category,
    user_ratings: Mapping[Any, RatingRecord | Mapping[str, Any]],
) -> Optional[AnalyticalPick]:
    """
    Suggest the nominee the user's own Awards ratings favour.

    Looks up each nominee's rating breakdown under the category's
    awards_rating_key and returns the highest; the first nominee wins a
    tie. Nominees without a usable breakdown score are ignored. This never
    fills in a ballot.

    Args:
        category: Category whose nominees to compare.
        user_ratings: The user's ratings keyed by catalog movie id
            (string or int keys both work).

    Returns:
        The suggested nominee with its score, or None with no usable data.
    """
    best: Optional[AnalyticalPick] = None
    for nominee in category.nominees:
        rating = user_ratings.get(movie_key(nominee.tmdb_id), user_ratings.get(nominee.tmdb_id))
        score = parse_float(_breakdown_of(rating).get(category.awards_rating_key))
        if score is None:
            continue
        if best is None or score > best.score:
            best = AnalyticalPick(nominee=nominee, score=score)
    return best


async def suggest_picks(store: DocumentStore, user_id: str, event_id: str) -> dict[str, AnalyticalPick]:
    """Analytical suggestion for every category of the event that has one."""
    event = await fetch_event(store, event_id)
    ratings = await fetch_user_ratings(store, user_id)
    suggestions: dict[str, AnalyticalPick] = {}
    for category in event.categories:
        pick = calculate_analytical_pick(category, ratings)
        if pick is not None:
            suggestions[category.id] = pick
    return suggestions
