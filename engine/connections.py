"""
Connection (group match session) engine.

A connection moves one way through matching -> voting -> revealed:

    matching  participants confirmed, no candidates yet
    voting    candidates sourced from overlapping watch-later lists, topped
              up with catalog "popular" movies; each participant scores
              every candidate 1-10 or skips it (-1)
    revealed  averages computed and the winner announced

All writes to the shared connection document are field-path partial
merges (votes.<user>.<movie>, id-keyed array unions on matchedMovies), so two
participants acting at once never clobber each other. Side effects
(catalog refills, push notifications) run in the background and are
logged, never raised, on failure.
"""

import asyncio
import logging
import os
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, Optional

from db.document_store import ArrayUnion, DocumentStore, PreconditionFailedError, Unsubscribe
from db.push_notifications import USERS_COLLECTION, ExpoPushSender, broadcast_to_group
from db.tmdb import TMDBCatalogClient
from engine.classes.enums import ConnectionStatus
from engine.classes.errors import (
    InvalidInputError,
    NoCandidatesError,
    NotFoundError,
    VotingLockedError,
)
from engine.classes.schemas import Connection, MovieStub, RankedMovie, RevealResult
from engine.misc.helpers import ensure_aware, movie_key, utc_now

logger = logging.getLogger(__name__)

CONNECTIONS_COLLECTION = "connections"

WATCH_LATER_LIST_ID = 2
WATCH_LATER_LIST_NAME = "Watch Later"

SKIP_SCORE = -1
MIN_VOTE_SCORE = 1
MAX_VOTE_SCORE = 10

# Top up with popular movies when overlap yields fewer than this many...
MIN_OVERLAP_CANDIDATES = 10
# ...until the candidate list holds at least this many.
TARGET_CANDIDATES = 20
_MAX_TOP_UP_PAGES = 3
# Refill a participant's queue once fewer than this many candidates remain unvoted.
REFILL_THRESHOLD = 3

ENFORCE_VOTE_DEADLINE: bool = os.getenv("ENFORCE_VOTE_DEADLINE", "0").strip().lower() in ("1", "true", "yes")

_background_tasks: set[asyncio.Task] = set()


def _run_in_background(coro: Awaitable[Any], description: str) -> asyncio.Task:
    """Schedule a fire-and-forget side effect; failures are logged, not raised."""
    task = asyncio.ensure_future(coro)
    _background_tasks.add(task)

    def _done(finished: asyncio.Task) -> None:
        _background_tasks.discard(finished)
        if not finished.cancelled() and finished.exception() is not None:
            logger.error("Background %s failed: %s", description, finished.exception())

    task.add_done_callback(_done)
    return task


async def drain_background_tasks() -> None:
    """Wait for every pending background side effect (used at shutdown and in tests)."""
    while _background_tasks:
        await asyncio.gather(*list(_background_tasks), return_exceptions=True)


# ===============================
#        DEADLINE HELPERS
# ===============================

def time_remaining(now: datetime, deadline: datetime) -> timedelta:
    """Time left before the deadline, never negative."""
    remaining = ensure_aware(deadline) - ensure_aware(now)
    return max(remaining, timedelta(0))


def is_voting_open(now: datetime, deadline: datetime) -> bool:
    return ensure_aware(now) < ensure_aware(deadline)


def format_time_remaining(now: datetime, deadline: datetime) -> str:
    """
    Countdown label for the session screen.

    Returns "2d 3h" while more than a day is left, "3h 5m" otherwise, and
    "Time's Up!" once the deadline has passed.
    """
    remaining = time_remaining(now, deadline)
    if remaining <= timedelta(0):
        return "Time's Up!"
    total_minutes = int(remaining.total_seconds() // 60)
    days, rest = divmod(total_minutes, 24 * 60)
    hours, minutes = divmod(rest, 60)
    if days > 0:
        return f"{days}d {hours}h"
    return f"{hours}h {minutes}m"


# ===============================
#            LOOKUPS
# ===============================

async def fetch_connection(store: DocumentStore, connection_id: str) -> Connection:
    document = await store.get(CONNECTIONS_COLLECTION, connection_id)
    if document is None:
        raise NotFoundError("Connection not found.", details={"connection_id": connection_id})
    return Connection.model_validate(document)


async def list_connections_for_user(store: DocumentStore, user_id: str) -> list[Connection]:
    """Every connection the user participates in, newest first."""
    documents = await store.query(CONNECTIONS_COLLECTION, [("participants", "array_contains", user_id)])
    connections = [Connection.model_validate(document) for document in documents]
    return sorted(connections, key=lambda c: c.created_at, reverse=True)


async def subscribe_connection(
    store: DocumentStore,
    connection_id: str,
    on_change: Callable[[Optional[Connection]], Any],
) -> Unsubscribe:
    """
    Push every committed change of the connection to `on_change`.

    Each delivery is a full replacement of the caller's state; None means
    the connection was deleted.
    """
    def _deliver(document: Optional[dict[str, Any]]) -> None:
        on_change(Connection.model_validate(document) if document is not None else None)

    return await store.subscribe(CONNECTIONS_COLLECTION, connection_id, _deliver)


def _require_participant(connection: Connection, user_id: str) -> None:
    if user_id not in connection.participants:
        raise InvalidInputError("You are not a participant in this connection.")


# ===============================
#           LIFECYCLE
# ===============================

async def create_connection(
    store: DocumentStore,
    name: str,
    created_by: str,
    participant_ids: Iterable[str],
    duration_minutes: int,
    notifier: Optional[ExpoPushSender] = None,
    now: Optional[datetime] = None,
) -> Connection:
    """
    Start a new match session in the `matching` phase.

    The creator is always a participant; duplicate ids collapse. The
    voting deadline is fixed at creation: created_at + duration_minutes.
    """
    name = (name or "").strip()
    if not name:
        raise InvalidInputError("Please give your group a name (e.g. 'Date Night').")
    if not created_by:
        raise InvalidInputError("A creator id is required.")
    if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int) or duration_minutes <= 0:
        raise InvalidInputError("Duration must be a positive number of minutes.")

    participants = list(dict.fromkeys(uid for uid in [created_by, *participant_ids] if uid))
    created_at = ensure_aware(now) if now else utc_now()

    connection = Connection(
        id=uuid.uuid4().hex,
        name=name,
        participants=participants,
        status=ConnectionStatus.MATCHING,
        duration_minutes=duration_minutes,
        deadline=created_at + timedelta(minutes=duration_minutes),
        created_at=created_at,
        created_by=created_by,
    )
    await store.set(CONNECTIONS_COLLECTION, connection.id, connection.to_document())
    logger.info("Connection %s created by %s with %d participants", connection.id, created_by, len(participants))

    if notifier is not None and len(participants) > 1:
        _run_in_background(
            broadcast_to_group(
                store,
                notifier,
                participants,
                title="New Movie Match",
                body=f"You've been added to '{name}'. Start voting!",
                data={"connectionId": connection.id},
                exclude_user_id=created_by,
            ),
            "invite notification",
        )

    return connection


async def delete_connection(store: DocumentStore, connection_id: str, user_id: str) -> None:
    """Any participant may delete the connection."""
    connection = await fetch_connection(store, connection_id)
    _require_participant(connection, user_id)
    await store.delete(CONNECTIONS_COLLECTION, connection_id)
    logger.info("Connection %s deleted by %s", connection_id, user_id)


# ===============================
#           MATCHING
# ===============================

async def fetch_watch_later(store: DocumentStore, user_id: str) -> list[MovieStub]:
    """The user's personal "Watch Later" list; empty if they have none."""
    user = await store.get(USERS_COLLECTION, user_id)
    if not user:
        return []

    watch_list = next(
        (
            movie_list for movie_list in user.get("movieLists") or []
            if movie_list.get("id") == WATCH_LATER_LIST_ID or movie_list.get("name") == WATCH_LATER_LIST_NAME
        ),
        None,
    )
    if not watch_list:
        return []

    movies: list[MovieStub] = []
    for entry in watch_list.get("movies") or []:
        try:
            movies.append(MovieStub.model_validate(entry))
        except ValueError:
            logger.warning("Skipping malformed watch-later entry for %s: %s", user_id, entry)
    return movies


def select_overlap_candidates(watch_lists: list[list[MovieStub]], participant_count: int) -> list[MovieStub]:
    """
    Movies on enough participants' watch-later lists.

    With two or more participants a movie must appear on at least two
    lists (shared interest, not unanimity); a solo session takes its
    whole list. Order follows first appearance.
    """
    threshold = 2 if participant_count > 1 else 1
    tallies: dict[int, list[Any]] = {}
    for watch_list in watch_lists:
        # A movie listed twice by one user still counts once for them
        for movie in {m.id: m for m in watch_list}.values():
            if movie.id not in tallies:
                tallies[movie.id] = [0, movie]
            tallies[movie.id][0] += 1
    return [movie for count, movie in tallies.values() if count >= threshold]


async def _top_up_with_popular(
    catalog: TMDBCatalogClient,
    candidates: list[MovieStub],
) -> tuple[list[MovieStub], int]:
    """
    Append popular movies (deduplicated by id) until TARGET_CANDIDATES is
    reached or the feed runs dry. Returns the list and the last page read.
    """
    seen = {movie.id for movie in candidates}
    topped_up = list(candidates)
    page = 0

    while len(topped_up) < TARGET_CANDIDATES and page < _MAX_TOP_UP_PAGES:
        page += 1
        try:
            popular = await catalog.get_popular(page)
        except Exception as exc:
            logger.warning("Popular movies page %d unavailable during matching: %s", page, exc)
            break
        if not popular:
            break
        for movie in popular:
            if len(topped_up) >= TARGET_CANDIDATES:
                break
            if movie.id not in seen:
                seen.add(movie.id)
                topped_up.append(movie)

    return topped_up, max(page, 1)


async def run_matching(
    store: DocumentStore,
    catalog: TMDBCatalogClient,
    connection_id: str,
) -> Connection:
    """
    Source the candidate movies and open voting.

    Steps:
        1. Load every participant's watch-later list.
        2. Keep movies shared by enough participants.
        3. With fewer than MIN_OVERLAP_CANDIDATES, top up from the catalog's
           popular feed to at least TARGET_CANDIDATES.
        4. Write the candidates and move the connection to `voting`.

    Raises:
        InvalidInputError: The connection already left the matching phase.
        NoCandidatesError: Nothing could be sourced at all; the connection
            stays in `matching`.
    """
    connection = await fetch_connection(store, connection_id)
    if connection.status is not ConnectionStatus.MATCHING:
        raise InvalidInputError(f"Matching already ran; the connection is {connection.status.value}.")

    watch_lists = await asyncio.gather(*(fetch_watch_later(store, uid) for uid in connection.participants))
    candidates = select_overlap_candidates(list(watch_lists), len(connection.participants))
    overlap_count = len(candidates)

    refill_page = 1
    if overlap_count < MIN_OVERLAP_CANDIDATES:
        candidates, refill_page = await _top_up_with_popular(catalog, candidates)

    if not candidates:
        raise NoCandidatesError(
            "Could not find any movies to play with. Check your connection and try again."
        )

    # Only the first of several concurrent runs may open voting
    try:
        updated = await store.update(
            CONNECTIONS_COLLECTION,
            connection_id,
            {
                "matchedMovies": [movie.to_document() for movie in candidates],
                "status": ConnectionStatus.VOTING.value,
                "refillPage": refill_page,
            },
            expected={"status": ConnectionStatus.MATCHING.value},
        )
    except PreconditionFailedError as exc:
        logger.info("Matching for connection %s lost the race to a concurrent run", connection_id)
        raise InvalidInputError("Matching already ran for this connection.") from exc
    logger.info(
        "Connection %s matched %d shared movies, %d candidates total",
        connection_id, overlap_count, len(candidates),
    )
    return Connection.model_validate(updated)


async def add_candidate(
    store: DocumentStore,
    connection_id: str,
    user_id: str,
    movie: MovieStub,
) -> Connection:
    """
    Manually add a discovered movie to the candidate list.

    The union is keyed on movie id, so a concurrent add of the same movie
    (or a refill that brings it in) leaves a single entry.
    """
    connection = await fetch_connection(store, connection_id)
    _require_participant(connection, user_id)
    if connection.has_movie(movie.id):
        raise InvalidInputError(f"'{movie.title}' is already in the list!")

    updated = await store.update(
        CONNECTIONS_COLLECTION,
        connection_id,
        {"matchedMovies": ArrayUnion([movie.to_document()], key="id")},
    )
    return Connection.model_validate(updated)


# ===============================
#            VOTING
# ===============================

def _validate_score(score: Any) -> int:
    if isinstance(score, bool) or not isinstance(score, int):
        raise InvalidInputError("Scores must be whole numbers from 1 to 10.")
    if score != SKIP_SCORE and not (MIN_VOTE_SCORE <= score <= MAX_VOTE_SCORE):
        raise InvalidInputError("Scores must be from 1 to 10 (or skip).")
    return score


async def cast_vote(
    store: DocumentStore,
    catalog: TMDBCatalogClient,
    connection_id: str,
    user_id: str,
    movie_id: int,
    score: int,
    now: Optional[datetime] = None,
    enforce_deadline: Optional[bool] = None,
) -> list[MovieStub]:
    """
    Record one participant's score for one candidate.

    Only votes.<user_id>.<movie_id> is written, so other participants'
    votes and this user's other votes are untouched. Late votes are
    accepted and logged unless deadline enforcement is on.

    Returns:
        The user's remaining unvoted candidates, in list order.

    Raises:
        InvalidInputError: Bad score, non-participant, unknown movie, or
            voting has not started.
        VotingLockedError: The deadline passed and enforcement is on.
    """
    score = _validate_score(score)
    connection = await fetch_connection(store, connection_id)
    _require_participant(connection, user_id)

    if connection.status is ConnectionStatus.MATCHING:
        raise InvalidInputError("Voting hasn't started yet.")
    if not connection.has_movie(movie_id):
        raise InvalidInputError("That movie is not part of this connection.")

    now = ensure_aware(now) if now else utc_now()
    if not is_voting_open(now, connection.deadline):
        enforce = ENFORCE_VOTE_DEADLINE if enforce_deadline is None else enforce_deadline
        if enforce:
            raise VotingLockedError("Time's up! Voting for this connection has closed.")
        logger.warning("Late vote on connection %s by %s after deadline %s", connection_id, user_id, connection.deadline)

    updated = await store.update(
        CONNECTIONS_COLLECTION,
        connection_id,
        {("votes", user_id, movie_key(movie_id)): score},
    )
    queue = Connection.model_validate(updated).unvoted_movies(user_id)

    if len(queue) < REFILL_THRESHOLD:
        _run_in_background(refill_if_needed(store, catalog, connection_id, user_id), "candidate refill")

    return queue


async def skip_movie(
    store: DocumentStore,
    catalog: TMDBCatalogClient,
    connection_id: str,
    user_id: str,
    movie_id: int,
    now: Optional[datetime] = None,
    enforce_deadline: Optional[bool] = None,
) -> list[MovieStub]:
    """Mark a candidate as "already seen / skip": removed from the queue, never averaged."""
    return await cast_vote(
        store, catalog, connection_id, user_id, movie_id, SKIP_SCORE,
        now=now, enforce_deadline=enforce_deadline,
    )


async def refill_if_needed(
    store: DocumentStore,
    catalog: TMDBCatalogClient,
    connection_id: str,
    user_id: str,
) -> int:
    """
    Append the next page of popular movies when the user's queue runs low.

    Passive background operation: any failure is logged and reported as
    zero movies added.

    Returns:
        Number of new candidates appended.
    """
    try:
        connection = await fetch_connection(store, connection_id)
        if len(connection.unvoted_movies(user_id)) >= REFILL_THRESHOLD:
            return 0

        page = connection.refill_page + 1
        popular = await catalog.get_popular(page)
        new_movies = [movie for movie in popular if not connection.has_movie(movie.id)]

        fields: dict[Any, Any] = {"refillPage": page}
        if new_movies:
            fields["matchedMovies"] = ArrayUnion([movie.to_document() for movie in new_movies], key="id")
        await store.update(CONNECTIONS_COLLECTION, connection_id, fields)
    except Exception:
        logger.exception("Refill failed for connection %s", connection_id)
        return 0

    logger.info("Refilled connection %s with %d movies from popular page %d", connection_id, len(new_movies), page)
    return len(new_movies)


# ===============================
#            REVEAL
# ===============================

def compute_results(connection: Connection) -> list[RankedMovie]:
    """
    Rank candidates by average score across participants.

    Skips (-1) are not scores and are excluded. Movies without a single
    numeric vote average 0. Ties keep candidate-list order, so the first
    movie with the top average wins.
    """
    ranked: list[RankedMovie] = []
    for movie in connection.matched_movies:
        key = movie_key(movie.id)
        scores = [
            user_votes[key]
            for user_votes in connection.votes.values()
            if key in user_votes and user_votes[key] != SKIP_SCORE
        ]
        average = sum(scores) / len(scores) if scores else 0.0
        ranked.append(RankedMovie(movie=movie, average_score=average, vote_count=len(scores)))

    # sorted() is stable: equal averages keep list order
    return sorted(ranked, key=lambda entry: entry.average_score, reverse=True)


async def reveal_winner(
    store: DocumentStore,
    connection_id: str,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
    force: bool = False,
) -> RevealResult:
    """
    Compute the winner and move the connection to `revealed`.

    Reveal is available once the deadline has passed; `force=True` lets
    the group reveal early. Revealing an already revealed connection
    recomputes the same result.

    Raises:
        InvalidInputError: Matching hasn't run, the caller is not a
            participant, or the deadline hasn't passed without `force`.
        NoCandidatesError: The connection has no candidates.
    """
    connection = await fetch_connection(store, connection_id)
    if user_id is not None:
        _require_participant(connection, user_id)
    if connection.status is ConnectionStatus.MATCHING:
        raise InvalidInputError("Nothing to reveal yet; matching hasn't run.")

    now = ensure_aware(now) if now else utc_now()
    if not force and is_voting_open(now, connection.deadline):
        raise InvalidInputError(
            f"Voting is still open ({format_time_remaining(now, connection.deadline)} left)."
        )

    ranked = compute_results(connection)
    if not ranked:
        raise NoCandidatesError("This connection has no movies to choose from.")

    if connection.status.can_transition_to(ConnectionStatus.REVEALED):
        await store.update(CONNECTIONS_COLLECTION, connection_id, {"status": ConnectionStatus.REVEALED.value})
        logger.info("Connection %s revealed: winner %s", connection_id, ranked[0].movie.id)

    return RevealResult(winner=ranked[0], runners_up=ranked[1:])


async def nudge_participants(
    store: DocumentStore,
    notifier: ExpoPushSender,
    connection_id: str,
    sender_id: str,
) -> int:
    """
    Remind every other participant to vote.

    Returns:
        Number of notifications sent. Delivery failures are logged and
        counted as not sent.
    """
    connection = await fetch_connection(store, connection_id)
    _require_participant(connection, sender_id)

    try:
        sender = await store.get(USERS_COLLECTION, sender_id) or {}
        sender_name = sender.get("username") or "A friend"
        return await broadcast_to_group(
            store,
            notifier,
            connection.participants,
            title=connection.name,
            body=f"{sender_name} is waiting on your votes!",
            data={"connectionId": connection_id},
            exclude_user_id=sender_id,
        )
    except Exception:
        logger.exception("Nudge failed for connection %s", connection_id)
        return 0
