"""Unit tests for the api.main HTTP surface (backing services overridden)."""

import tomllib
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from api.main import app, get_catalog, get_notifier, get_store
from db.document_store import InMemoryDocumentStore
from engine.classes.errors import UpstreamUnavailableError


@pytest.fixture
def api_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def client(api_store, catalog, notifier):
    """TestClient with the store, catalog and push sender swapped for test doubles."""
    app.dependency_overrides[get_store] = lambda: api_store
    app.dependency_overrides[get_catalog] = lambda: catalog
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()


def _as(user_id: str) -> dict[str, str]:
    return {"X-User-Id": user_id}


def test_health_check_reports_redis_status(client, mocker) -> None:
    mocker.patch("api.main.check_redis", new=AsyncMock(return_value="ok"))
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"redis": "ok"}


def test_health_check_redis_failure(client, mocker) -> None:
    mocker.patch("api.main.check_redis", new=AsyncMock(return_value="redis down"))
    assert client.get("/health").json() == {"redis": "redis down"}


def test_create_and_fetch_connection(client) -> None:
    response = client.post(
        "/connections",
        json={"name": "Date Night", "participantIds": ["u2"], "durationMinutes": 60},
        headers=_as("u1"),
    )
    assert response.status_code == 201
    created = response.json()
    assert created["participants"] == ["u1", "u2"]
    assert created["status"] == "matching"

    fetched = client.get(f"/connections/{created['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["timeRemaining"].endswith("m")

    listed = client.get("/connections", headers=_as("u2")).json()
    assert [c["id"] for c in listed] == [created["id"]]


def test_requests_without_user_header_are_rejected(client) -> None:
    response = client.post("/connections", json={"name": "Night", "durationMinutes": 60})
    assert response.status_code == 422


def test_missing_connection_maps_to_404(client) -> None:
    response = client.get("/connections/missing")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


def test_invalid_input_maps_to_422(client) -> None:
    created = client.post(
        "/connections", json={"name": "Night", "durationMinutes": 60}, headers=_as("u1"),
    ).json()

    response = client.post(
        f"/connections/{created['id']}/votes", json={"movieId": 1, "score": 5}, headers=_as("u1"),
    )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "INVALID_INPUT"


def test_matching_without_candidates_maps_to_409(client) -> None:
    created = client.post(
        "/connections", json={"name": "Night", "durationMinutes": 60}, headers=_as("u1"),
    ).json()

    response = client.post(f"/connections/{created['id']}/match")
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "NO_CANDIDATES"


def test_full_connection_flow(client, catalog, movie_factory) -> None:
    catalog.get_popular = AsyncMock(return_value=[movie_factory(i) for i in range(1, 21)])
    created = client.post(
        "/connections", json={"name": "Night", "durationMinutes": 60}, headers=_as("u1"),
    ).json()

    matched = client.post(f"/connections/{created['id']}/match").json()
    assert matched["status"] == "voting"
    assert len(matched["matchedMovies"]) == 20

    vote = client.post(f"/connections/{created['id']}/votes", json={"movieId": 3, "score": 9}, headers=_as("u1"))
    assert vote.status_code == 200
    assert len(vote.json()["queue"]) == 19

    skip = client.post(f"/connections/{created['id']}/skips", json={"movieId": 1}, headers=_as("u1"))
    assert len(skip.json()["queue"]) == 18

    early = client.post(f"/connections/{created['id']}/reveal", headers=_as("u1"))
    assert early.status_code == 422

    revealed = client.post(f"/connections/{created['id']}/reveal?force=true", headers=_as("u1"))
    assert revealed.status_code == 200
    assert revealed.json()["winner"]["movie"]["id"] == 3


def test_upstream_failure_maps_to_503(client) -> None:
    failing_store = MagicMock()
    failing_store.get = AsyncMock(side_effect=UpstreamUnavailableError("The document store is unavailable."))
    app.dependency_overrides[get_store] = lambda: failing_store

    response = client.get("/connections/c1")
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "UPSTREAM_UNAVAILABLE"


def test_rating_submission_returns_normalized_score(client) -> None:
    response = client.put("/ratings/603", json={"method": "pizza", "score": 4}, headers=_as("u1"))
    assert response.status_code == 200
    assert response.json()["normalizedScore"] == 80.0

    stats = client.get("/movies/603/stats").json()
    assert stats["pizza"]["count"] == 1


def test_awards_admin_and_ballot_flow(client) -> None:
    created = client.post(
        "/admin/events",
        json={"id": "2099_oscars", "name": "Oscars", "date": "2099-03-15", "withDefaultCategories": True},
    )
    assert created.status_code == 201
    assert len(created.json()["categories"]) == 5

    nominee = client.post(
        "/admin/events/2099_oscars/categories/directing/nominees",
        json={"tmdbId": 11, "title": "Eleven", "name": "Director X"},
    )
    assert nominee.status_code == 200

    pick = client.put("/events/2099_oscars/ballot/directing", json={"nomineeId": 11}, headers=_as("u1"))
    assert pick.status_code == 200
    assert pick.json()["picks"] == {"directing": 11}

    before_winner = client.get("/events/2099_oscars/ballot", headers=_as("u1")).json()
    assert before_winner["percentile"] is None

    client.put("/admin/events/2099_oscars/categories/directing/winner", json={"tmdbId": 11})
    after_winner = client.get("/events/2099_oscars/ballot", headers=_as("u1")).json()
    assert after_winner["score"]["correct"] == 1
    assert after_winner["percentile"] == 100

    client.patch("/admin/events/2099_oscars", json={"lockOverride": "closed"})
    locked = client.put("/events/2099_oscars/ballot/directing", json={"nomineeId": 11}, headers=_as("u1"))
    assert locked.status_code == 423
    assert locked.json()["error"]["code"] == "VOTING_LOCKED"

    events = client.get("/events").json()
    assert events[0]["votingClosed"] is True


def test_server_runner_is_declared_as_an_optional_extra() -> None:
    """uvicorn only serves api.main:app, so it is installed with the `serve` extra, not by default."""
    pyproject = tomllib.loads((Path(__file__).resolve().parent.parent / "pyproject.toml").read_text())
    project = pyproject["project"]

    assert not any(dep.startswith("uvicorn") for dep in project["dependencies"])
    assert any(dep.startswith("uvicorn") for dep in project["optional-dependencies"]["serve"])
