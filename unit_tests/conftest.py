"""Shared pytest fixtures for unit tests."""

from typing import Any, Callable
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock
import asyncio
import sys

import pytest

# Ensure project root is importable when tests run from repository root.
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from db.document_store import InMemoryDocumentStore
from db.push_notifications import USERS_COLLECTION
from engine.ballots import EVENTS_COLLECTION
from engine.classes.schemas import AwardsEvent, Category, MovieStub, Nominee



@pytest.fixture
def store() -> InMemoryDocumentStore:
    """Fresh in-process document store per test."""
    return InMemoryDocumentStore()


class YieldingDocumentStore(InMemoryDocumentStore):
    """In-memory store whose reads suspend after returning, like a networked store's."""

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        document = await super().get(collection, doc_id)
        await asyncio.sleep(0)
        return document


@pytest.fixture
def yielding_store() -> YieldingDocumentStore:
    """Store that lets concurrent read-then-write callers interleave between the read and the write."""
    return YieldingDocumentStore()


@pytest.fixture
def catalog() -> MagicMock:
    """Catalog client double whose get_popular returns an empty page unless overridden."""
    client = MagicMock()
    client.get_popular = AsyncMock(return_value=[])
    return client


@pytest.fixture
def notifier() -> MagicMock:
    """Push sender double that accepts every notification."""
    sender = MagicMock()
    sender.send = AsyncMock(return_value=True)
    return sender


@pytest.fixture
def movie_factory() -> Callable[..., MovieStub]:
    """Return a factory that builds a MovieStub from an id with optional overrides."""

    def _factory(movie_id: int, **overrides: Any) -> MovieStub:
        data: dict[str, Any] = {
            "id": movie_id,
            "title": f"Movie {movie_id}",
            "poster_path": f"/poster_{movie_id}.jpg",
            "overview": None,
            "release_date": "2024-01-01",
        }
        data.update(overrides)
        return MovieStub(**data)

    return _factory


@pytest.fixture
def seed_user(store: InMemoryDocumentStore, movie_factory: Callable[..., MovieStub]) -> Callable[..., Any]:
    """Return a coroutine factory that writes a user document with a Watch Later list."""

    async def _seed(
        user_id: str,
        watch_later_ids: list[int] | tuple[int, ...] = (),
        push_token: str | None = None,
        notifications_enabled: bool = True,
        username: str | None = None,
    ) -> None:
        document: dict[str, Any] = {
            "movieLists": [
                {
                    "id": 2,
                    "name": "Watch Later",
                    "movies": [movie_factory(movie_id).to_document() for movie_id in watch_later_ids],
                },
            ],
            "notificationsEnabled": notifications_enabled,
        }
        if push_token is not None:
            document["pushToken"] = push_token
        if username is not None:
            document["username"] = username
        await store.set(USERS_COLLECTION, user_id, document)

    return _seed


@pytest.fixture
def event_factory() -> Callable[..., AwardsEvent]:
    """Return a factory that builds an AwardsEvent with two categories of three nominees each."""

    def _factory(**overrides: Any) -> AwardsEvent:
        data: dict[str, Any] = {
            "id": "2026_oscars",
            "name": "Academy Awards (Oscars)",
            "date": "2026-03-15",
            "is_active": True,
            "lock_override": None,
            "categories": [
                Category(
                    id="directing",
                    name="Best Director",
                    awards_rating_key="Directing",
                    nominees=[
                        Nominee(tmdb_id=101, title="Alpha"),
                        Nominee(tmdb_id=102, title="Bravo"),
                        Nominee(tmdb_id=103, title="Charlie"),
                    ],
                ),
                Category(
                    id="leading_actor",
                    name="Best Leading Actor",
                    awards_rating_key="Leading Actor",
                    nominees=[
                        Nominee(tmdb_id=201, title="Delta", name="Actor D as Hero"),
                        Nominee(tmdb_id=202, title="Echo", name="Actor E as Villain"),
                        Nominee(tmdb_id=203, title="Foxtrot", name="Actor F as Sidekick"),
                    ],
                ),
            ],
        }
        data.update(overrides)
        return AwardsEvent(**data)

    return _factory


@pytest.fixture
def seed_event(store: InMemoryDocumentStore, event_factory: Callable[..., AwardsEvent]) -> Callable[..., Any]:
    """Return a coroutine factory that stores an event built by event_factory."""

    async def _seed(**overrides: Any) -> AwardsEvent:
        event = event_factory(**overrides)
        document = event.to_document()
        document.pop("id")
        await store.set(EVENTS_COLLECTION, event.id, document)
        return event

    return _seed
