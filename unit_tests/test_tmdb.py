"""Unit tests for the TMDB catalog client (HTTP mocked with httpx.MockTransport)."""

from unittest.mock import AsyncMock

import httpx
import pytest

from db.tmdb import TMDBCatalogClient
from engine.classes.errors import UpstreamUnavailableError


def _catalog(handler) -> TMDBCatalogClient:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://tmdb.test/3")
    return TMDBCatalogClient(client=client)


def _page(*entries: dict) -> dict:
    return {"page": 1, "results": list(entries)}


@pytest.fixture(autouse=True)
def no_backoff(mocker):
    """Skip real back-off sleeps."""
    return mocker.patch("db.tmdb.asyncio.sleep", new=AsyncMock())


@pytest.mark.asyncio
async def test_search_movies_parses_stubs_and_drops_incomplete_entries() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json=_page(
            {"id": 603, "title": "The Matrix", "poster_path": "/m.jpg", "overview": "Neo", "release_date": "1999-03-31"},
            {"id": 604, "title": ""},
            {"title": "No id"},
        ))

    async with _catalog(handler) as catalog:
        results = await catalog.search_movies("  matrix ")

    assert [movie.id for movie in results] == [603]
    assert results[0].poster_path == "/m.jpg"
    assert seen["path"] == "/3/search/movie"
    assert seen["params"]["query"] == "matrix"
    assert seen["params"]["language"] == "en-US"


@pytest.mark.asyncio
async def test_search_movies_with_empty_query_makes_no_request() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    catalog = _catalog(handler)
    assert await catalog.search_movies("   ") == []


@pytest.mark.asyncio
async def test_get_popular_requests_page() -> None:
    pages = []

    def handler(request: httpx.Request) -> httpx.Response:
        pages.append(request.url.params["page"])
        return httpx.Response(200, json=_page({"id": 1, "title": "One"}))

    catalog = _catalog(handler)
    assert [movie.id for movie in await catalog.get_popular(2)] == [1]
    assert pages == ["2"]


@pytest.mark.asyncio
async def test_get_popular_rejects_page_zero() -> None:
    catalog = _catalog(lambda request: httpx.Response(200, json=_page()))
    with pytest.raises(ValueError):
        await catalog.get_popular(0)


@pytest.mark.asyncio
async def test_discover_by_provider_sends_region() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(dict(request.url.params))
        return httpx.Response(200, json=_page({"id": 5, "title": "Five"}))

    catalog = _catalog(handler)
    await catalog.discover_by_provider(8, region="GB")
    assert seen["with_watch_providers"] == "8"
    assert seen["watch_region"] == "GB"


@pytest.mark.asyncio
async def test_get_movie_details_keeps_extra_fields() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={
            "id": 603, "title": "The Matrix", "runtime": 136,
            "genres": [{"id": 28, "name": "Action"}], "tagline": "Welcome to the Real World.",
        })

    detail = await _catalog(handler).get_movie_details(603)
    assert detail.runtime == 136
    assert detail.genres[0].name == "Action"
    assert detail.model_extra["tagline"] == "Welcome to the Real World."


@pytest.mark.asyncio
async def test_get_person_details_appends_combined_credits() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(dict(request.url.params))
        return httpx.Response(200, json={"id": 1, "name": "Keanu Reeves", "combined_credits": {"cast": []}})

    person = await _catalog(handler).get_person_details(1)
    assert person.name == "Keanu Reeves"
    assert seen["append_to_response"] == "combined_credits"


@pytest.mark.asyncio
async def test_rate_limited_request_is_retried(no_backoff) -> None:
    responses = iter([
        httpx.Response(429, headers={"Retry-After": "1"}),
        httpx.Response(200, json={"genres": [{"id": 28, "name": "Action"}]}),
    ])

    genres = await _catalog(lambda request: next(responses)).get_genres()

    assert [genre.name for genre in genres] == ["Action"]
    no_backoff.assert_awaited_once_with(1.0)


@pytest.mark.asyncio
async def test_transport_errors_exhaust_retries_as_upstream_unavailable() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ConnectError("unreachable", request=request)

    with pytest.raises(UpstreamUnavailableError):
        await _catalog(handler).get_popular(1)
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_http_error_status_raises_upstream_unavailable() -> None:
    catalog = _catalog(lambda request: httpx.Response(404, json={"status_message": "not found"}))
    with pytest.raises(UpstreamUnavailableError) as exc_info:
        await catalog.get_movie_details(0)
    assert exc_info.value.details["status_code"] == 404
