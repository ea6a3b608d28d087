"""
TMDB API client backing the movie catalog.

Uses httpx.AsyncClient with Bearer token authentication. Concurrent
requests are bounded by a semaphore to respect TMDB's rate limits, and
transient failures are retried with exponential back-off.
"""

import asyncio
import logging
import os
from typing import Any, Optional

import httpx

from engine.classes.errors import UpstreamUnavailableError
from engine.classes.schemas import Genre, MovieDetail, MovieStub, PersonDetail

logger = logging.getLogger(__name__)

_TMDB_BASE_URL = "https://api.themoviedb.org/3"
_SEMAPHORE_LIMIT = 10    # max concurrent requests (~40 req/10 s TMDB limit)
_MAX_RETRIES = 3
_RETRY_BACKOFF_BASE = 1.0  # seconds; doubles on each retry
_DEFAULT_LANGUAGE = "en-US"
_DEFAULT_REGION = os.getenv("TMDB_REGION", "US")


def _access_token() -> str:
    token = os.getenv("TMDB_ACCESS_TOKEN")
    if not token:
        raise RuntimeError("TMDB_ACCESS_TOKEN environment variable is not set")
    return token


def _parse_stubs(payload: dict[str, Any]) -> list[MovieStub]:
    """Parse a TMDB paged result into stubs, dropping entries without an id or title."""
    stubs: list[MovieStub] = []
    for entry in payload.get("results", []):
        if entry.get("id") is None or not entry.get("title"):
            continue
        stubs.append(MovieStub.model_validate(entry))
    return stubs


class TMDBCatalogClient:
    """
    Async catalog client.

    Owns its httpx.AsyncClient unless one is injected; call `aclose()` (or
    use it as an async context manager) to release connections.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        base_url: str = _TMDB_BASE_URL,
        language: str = _DEFAULT_LANGUAGE,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {_access_token()}"},
            timeout=10.0,
        )
        self._language = language
        self._sem = asyncio.Semaphore(_SEMAPHORE_LIMIT)

    async def __aenter__(self) -> "TMDBCatalogClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get_json(self, path: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """
        GET one TMDB endpoint and return the decoded JSON body.

        Retries on transport errors and 429 rate-limit responses with
        exponential back-off. Any other failure is raised as
        UpstreamUnavailableError.
        """
        query = {"language": self._language, **(params or {})}

        for attempt in range(1, _MAX_RETRIES + 1):
            async with self._sem:
                try:
                    response = await self._client.get(path, params=query)
                except httpx.TransportError as exc:
                    if attempt == _MAX_RETRIES:
                        raise UpstreamUnavailableError("The movie catalog is unreachable.") from exc
                    wait = _RETRY_BACKOFF_BASE * (2 ** (attempt - 1))
                    logger.warning(
                        "TMDB transport error on %s (attempt %d/%d): %s, retrying in %.1fs",
                        path, attempt, _MAX_RETRIES, exc, wait,
                    )
                    await asyncio.sleep(wait)
                    continue

            if response.status_code == 429:
                if attempt == _MAX_RETRIES:
                    raise UpstreamUnavailableError("The movie catalog is rate limiting requests.")
                retry_after = float(response.headers.get("Retry-After", _RETRY_BACKOFF_BASE * 2 ** attempt))
                logger.warning("TMDB rate-limited on %s, sleeping %.1fs", path, retry_after)
                await asyncio.sleep(retry_after)
                continue

            try:
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                logger.error("TMDB %s returned %d", path, response.status_code)
                raise UpstreamUnavailableError(
                    f"The movie catalog returned an error ({response.status_code}).",
                    details={"path": path, "status_code": response.status_code},
                ) from exc
            return response.json()

        raise RuntimeError(f"Failed to fetch TMDB {path} after {_MAX_RETRIES} attempts")  # unreachable

    # ===============================
    #          OPERATIONS
    # ===============================

    async def search_movies(self, query: str) -> list[MovieStub]:
        """Search movies by title. An empty query returns [] without calling TMDB."""
        if not query or not query.strip():
            return []
        payload = await self._get_json("/search/movie", {"query": query.strip(), "page": 1})
        return _parse_stubs(payload)

    async def get_movie_details(self, movie_id: int) -> MovieDetail:
        payload = await self._get_json(f"/movie/{movie_id}")
        return MovieDetail.model_validate(payload)

    async def get_genres(self) -> list[Genre]:
        payload = await self._get_json("/genre/movie/list")
        return [Genre.model_validate(entry) for entry in payload.get("genres", [])]

    async def discover_by_genre(self, genre_id: int) -> list[MovieStub]:
        payload = await self._get_json(
            "/discover/movie",
            {"with_genres": genre_id, "sort_by": "popularity.desc", "page": 1},
        )
        return _parse_stubs(payload)

    async def discover_by_provider(self, provider_id: int, region: str = _DEFAULT_REGION) -> list[MovieStub]:
        payload = await self._get_json(
            "/discover/movie",
            {
                "with_watch_providers": provider_id,
                "watch_region": region,
                "sort_by": "popularity.desc",
                "page": 1,
            },
        )
        return _parse_stubs(payload)

    async def get_popular(self, page: int = 1) -> list[MovieStub]:
        """One page (20 entries) of TMDB's popular movies. Pages start at 1."""
        if page < 1:
            raise ValueError(f"page must be >= 1, got {page}")
        payload = await self._get_json("/movie/popular", {"page": page})
        return _parse_stubs(payload)

    async def get_person_details(self, person_id: int) -> PersonDetail:
        payload = await self._get_json(
            f"/person/{person_id}",
            {"append_to_response": "combined_credits"},
        )
        return PersonDetail.model_validate(payload)
