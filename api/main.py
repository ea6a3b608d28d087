"""
HTTP surface for connections, ratings and awards ballots.

Serve with `uvicorn api.main:app` (install the `serve` extra).
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

load_dotenv()
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

from db.document_store import DocumentStore  # noqa: E402
from db.push_notifications import ExpoPushSender  # noqa: E402
from db.redis import RedisDocumentStore, check_redis, close_redis, init_redis  # noqa: E402
from db.tmdb import TMDBCatalogClient  # noqa: E402
from engine import awards_admin, ballots, connections, ratings  # noqa: E402
from engine.classes.enums import LockOverride  # noqa: E402
from engine.classes.errors import (  # noqa: E402
    InvalidInputError,
    MovieNightError,
    NoCandidatesError,
    NotFoundError,
    UpstreamUnavailableError,
    VotingLockedError,
)
from engine.classes.schemas import MovieStub, Nominee  # noqa: E402
from engine.misc.helpers import utc_now  # noqa: E402
from engine.scoring import normalize_score  # noqa: E402

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    FastAPI lifespan handler for backing-service lifecycle management.

    Opens the Redis pool (failing fast if Redis is unreachable), then
    builds the document store, the catalog client and the push sender.
    On shutdown, pending background side effects are drained before the
    clients are closed.
    """
    client = await init_redis()
    app.state.store = RedisDocumentStore(client)
    app.state.catalog = TMDBCatalogClient()
    app.state.notifier = ExpoPushSender()
    yield
    await connections.drain_background_tasks()
    await app.state.store.aclose()
    await app.state.catalog.aclose()
    await app.state.notifier.aclose()
    await close_redis()


app = FastAPI(lifespan=lifespan)


# ===============================
#         DEPENDENCIES
# ===============================

def get_store(request: Request) -> DocumentStore:
    return request.app.state.store


def get_catalog(request: Request) -> TMDBCatalogClient:
    return request.app.state.catalog


def get_notifier(request: Request) -> ExpoPushSender:
    return request.app.state.notifier


def current_user(x_user_id: str = Header(...)) -> str:
    """Caller identity; authentication happens upstream of this service."""
    return x_user_id


# ===============================
#        ERROR HANDLING
# ===============================

_STATUS_BY_ERROR: dict[type[MovieNightError], int] = {
    NotFoundError: 404,
    InvalidInputError: 422,
    VotingLockedError: 423,
    UpstreamUnavailableError: 503,
    NoCandidatesError: 409,
}


@app.exception_handler(MovieNightError)
async def movie_night_error_handler(request: Request, exc: MovieNightError) -> JSONResponse:
    status_code = next(
        (status for error_type, status in _STATUS_BY_ERROR.items() if isinstance(exc, error_type)),
        500,
    )
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


# ===============================
#        REQUEST BODIES
# ===============================

class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateConnectionBody(_Body):
    name: str
    participant_ids: list[str] = Field(default=[], alias="participantIds")
    duration_minutes: int = Field(alias="durationMinutes")


class VoteBody(_Body):
    movie_id: int = Field(alias="movieId")
    score: int


class SkipBody(_Body):
    movie_id: int = Field(alias="movieId")


class RatingBody(_Body):
    method: str
    score: Optional[float] = None
    breakdown: Optional[dict[str, Any]] = None


class PickBody(_Body):
    nominee_id: int = Field(alias="nomineeId")


class CreateEventBody(_Body):
    id: str
    name: str
    date: str
    is_active: bool = Field(default=True, alias="isActive")
    lock_override: Optional[str] = Field(default=None, alias="lockOverride")
    with_default_categories: bool = Field(default=False, alias="withDefaultCategories")


class UpdateEventBody(_Body):
    name: Optional[str] = None
    date: Optional[str] = None
    is_active: Optional[bool] = Field(default=None, alias="isActive")
    lock_override: Optional[str] = Field(default=None, alias="lockOverride")


class CategoryBody(_Body):
    id: str
    name: str
    awards_rating_key: str = Field(alias="awardsRatingKey")


class NomineeUpdateBody(_Body):
    title: Optional[str] = None
    name: Optional[str] = None
    poster_path: Optional[str] = None


class WinnerBody(_Body):
    tmdb_id: Optional[int] = Field(default=None, alias="tmdbId")


class ReorderBody(_Body):
    category_ids: list[str] = Field(alias="categoryIds")


# ===============================
#            HEALTH
# ===============================

@app.get("/health")
async def health_check():
    """
    Health check endpoint that validates connectivity to backing services.

    Returns a dictionary with status for each service:
    - redis: 'ok' or error message
    """
    return {"redis": await check_redis()}


# ===============================
#          CONNECTIONS
# ===============================

@app.post("/connections", status_code=201)
async def create_connection(
    body: CreateConnectionBody,
    user_id: str = Depends(current_user),
    store: DocumentStore = Depends(get_store),
    notifier: ExpoPushSender = Depends(get_notifier),
):
    connection = await connections.create_connection(
        store, body.name, user_id, body.participant_ids, body.duration_minutes, notifier=notifier,
    )
    return connection.to_document()


@app.get("/connections")
async def list_connections(user_id: str = Depends(current_user), store: DocumentStore = Depends(get_store)):
    return [c.to_document() for c in await connections.list_connections_for_user(store, user_id)]


@app.get("/connections/{connection_id}")
async def get_connection(connection_id: str, store: DocumentStore = Depends(get_store)):
    connection = await connections.fetch_connection(store, connection_id)
    document = connection.to_document()
    document["timeRemaining"] = connections.format_time_remaining(utc_now(), connection.deadline)
    return document


@app.delete("/connections/{connection_id}", status_code=204)
async def delete_connection(
    connection_id: str,
    user_id: str = Depends(current_user),
    store: DocumentStore = Depends(get_store),
):
    await connections.delete_connection(store, connection_id, user_id)


@app.post("/connections/{connection_id}/match")
async def run_matching(
    connection_id: str,
    store: DocumentStore = Depends(get_store),
    catalog: TMDBCatalogClient = Depends(get_catalog),
):
    return (await connections.run_matching(store, catalog, connection_id)).to_document()


@app.post("/connections/{connection_id}/candidates")
async def add_candidate(
    connection_id: str,
    movie: MovieStub,
    user_id: str = Depends(current_user),
    store: DocumentStore = Depends(get_store),
):
    return (await connections.add_candidate(store, connection_id, user_id, movie)).to_document()


@app.post("/connections/{connection_id}/votes")
async def cast_vote(
    connection_id: str,
    body: VoteBody,
    user_id: str = Depends(current_user),
    store: DocumentStore = Depends(get_store),
    catalog: TMDBCatalogClient = Depends(get_catalog),
):
    queue = await connections.cast_vote(store, catalog, connection_id, user_id, body.movie_id, body.score)
    return {"queue": [movie.to_document() for movie in queue]}


@app.post("/connections/{connection_id}/skips")
async def skip_movie(
    connection_id: str,
    body: SkipBody,
    user_id: str = Depends(current_user),
    store: DocumentStore = Depends(get_store),
    catalog: TMDBCatalogClient = Depends(get_catalog),
):
    queue = await connections.skip_movie(store, catalog, connection_id, user_id, body.movie_id)
    return {"queue": [movie.to_document() for movie in queue]}


@app.post("/connections/{connection_id}/refill")
async def refill(
    connection_id: str,
    user_id: str = Depends(current_user),
    store: DocumentStore = Depends(get_store),
    catalog: TMDBCatalogClient = Depends(get_catalog),
):
    return {"added": await connections.refill_if_needed(store, catalog, connection_id, user_id)}


@app.post("/connections/{connection_id}/reveal")
async def reveal_winner(
    connection_id: str,
    force: bool = False,
    user_id: str = Depends(current_user),
    store: DocumentStore = Depends(get_store),
):
    result = await connections.reveal_winner(store, connection_id, user_id, force=force)
    return result.model_dump(mode="json")


@app.post("/connections/{connection_id}/nudge")
async def nudge(
    connection_id: str,
    user_id: str = Depends(current_user),
    store: DocumentStore = Depends(get_store),
    notifier: ExpoPushSender = Depends(get_notifier),
):
    return {"sent": await connections.nudge_participants(store, notifier, connection_id, user_id)}


# ===============================
#            RATINGS
# ===============================

@app.put("/ratings/{movie_id}")
async def submit_rating(
    movie_id: int,
    body: RatingBody,
    user_id: str = Depends(current_user),
    store: DocumentStore = Depends(get_store),
):
    record = await ratings.submit_rating(store, user_id, movie_id, body.method, body.score, body.breakdown)
    document = record.to_document()
    document["normalizedScore"] = normalize_score(record.rating_method, record.score)
    return document


@app.get("/movies/{movie_id}/stats")
async def movie_stats(movie_id: int, store: DocumentStore = Depends(get_store)):
    stats = await ratings.fetch_aggregate_stats(store, movie_id)
    return {method.value: entry.to_document() for method, entry in stats.items()}


# ===============================
#            AWARDS
# ===============================

@app.get("/events")
async def list_events(store: DocumentStore = Depends(get_store)):
    now = utc_now()
    return [
        {**event.to_document(), "votingClosed": ballots.is_voting_closed(event, now)}
        for event in await ballots.fetch_active_events(store)
    ]


@app.get("/events/{event_id}")
async def get_event(event_id: str, store: DocumentStore = Depends(get_store)):
    event = await ballots.fetch_event(store, event_id)
    return {**event.to_document(), "votingClosed": ballots.is_voting_closed(event, utc_now())}


@app.put("/events/{event_id}/ballot/{category_id}")
async def lock_pick(
    event_id: str,
    category_id: str,
    body: PickBody,
    user_id: str = Depends(current_user),
    store: DocumentStore = Depends(get_store),
):
    ballot = await ballots.lock_pick(store, user_id, event_id, category_id, body.nominee_id)
    return ballot.to_document()


@app.get("/events/{event_id}/ballot")
async def get_ballot(
    event_id: str,
    user_id: str = Depends(current_user),
    store: DocumentStore = Depends(get_store),
):
    event = await ballots.fetch_event(store, event_id)
    ballot = await ballots.fetch_ballot(store, user_id, event_id)
    return {
        "ballot": ballot.to_document(),
        "score": ballots.score_ballot(ballot, event).model_dump(),
        "percentile": await ballots.compute_event_percentile(store, user_id, event_id),
    }


@app.get("/events/{event_id}/suggestions")
async def get_suggestions(
    event_id: str,
    user_id: str = Depends(current_user),
    store: DocumentStore = Depends(get_store),
):
    suggestions = await ballots.suggest_picks(store, user_id, event_id)
    return {category_id: pick.model_dump(mode="json", by_alias=True) for category_id, pick in suggestions.items()}


# -----------------------------
#          ADMIN
# -----------------------------

@app.post("/admin/events", status_code=201)
async def create_event(body: CreateEventBody, store: DocumentStore = Depends(get_store)):
    event = await awards_admin.create_event(
        store,
        body.id,
        body.name,
        body.date,
        is_active=body.is_active,
        lock_override=body.lock_override or LockOverride.AUTO,
        categories=awards_admin.default_categories() if body.with_default_categories else None,
    )
    return event.to_document()


@app.patch("/admin/events/{event_id}")
async def update_event(event_id: str, body: UpdateEventBody, store: DocumentStore = Depends(get_store)):
    event = await awards_admin.update_event(
        store,
        event_id,
        name=body.name,
        date=body.date,
        is_active=body.is_active,
        lock_override=body.lock_override,
    )
    return event.to_document()


@app.delete("/admin/events/{event_id}", status_code=204)
async def delete_event(event_id: str, store: DocumentStore = Depends(get_store)):
    await awards_admin.delete_event(store, event_id)


@app.post("/admin/events/{event_id}/categories")
async def add_category(event_id: str, body: CategoryBody, store: DocumentStore = Depends(get_store)):
    event = await awards_admin.add_category(store, event_id, body.id, body.name, body.awards_rating_key)
    return event.to_document()


@app.delete("/admin/events/{event_id}/categories/{category_id}")
async def remove_category(event_id: str, category_id: str, store: DocumentStore = Depends(get_store)):
    return (await awards_admin.remove_category(store, event_id, category_id)).to_document()


@app.put("/admin/events/{event_id}/categories")
async def reorder_categories(event_id: str, body: ReorderBody, store: DocumentStore = Depends(get_store)):
    return (await awards_admin.reorder_categories(store, event_id, body.category_ids)).to_document()


@app.post("/admin/events/{event_id}/categories/{category_id}/nominees")
async def add_nominee(
    event_id: str,
    category_id: str,
    nominee: Nominee,
    store: DocumentStore = Depends(get_store),
):
    return (await awards_admin.add_nominee(store, event_id, category_id, nominee)).to_document()


@app.patch("/admin/events/{event_id}/categories/{category_id}/nominees/{tmdb_id}")
async def update_nominee(
    event_id: str,
    category_id: str,
    tmdb_id: int,
    body: NomineeUpdateBody,
    store: DocumentStore = Depends(get_store),
):
    updates = body.model_dump(exclude_none=True)
    return (await awards_admin.update_nominee(store, event_id, category_id, tmdb_id, updates)).to_document()


@app.delete("/admin/events/{event_id}/categories/{category_id}/nominees/{tmdb_id}")
async def remove_nominee(event_id: str, category_id: str, tmdb_id: int, store: DocumentStore = Depends(get_store)):
    return (await awards_admin.remove_nominee(store, event_id, category_id, tmdb_id)).to_document()


@app.put("/admin/events/{event_id}/categories/{category_id}/winner")
async def set_winner(event_id: str, category_id: str, body: WinnerBody, store: DocumentStore = Depends(get_store)):
    return (await awards_admin.set_winner(store, event_id, category_id, body.tmdb_id)).to_document()


@app.post("/admin/seed", status_code=201)
async def seed_season(overwrite: bool = False, store: DocumentStore = Depends(get_store)):
    events = await awards_admin.seed_awards_season(store, overwrite=overwrite)
    return {"seeded": [event.id for event in events]}
