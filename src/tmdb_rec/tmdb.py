import asyncio
import logging
import random
from datetime import date, timedelta

import httpx

from .config import (
    DEFAULT_MAX_CONCURRENT,
    DEFAULT_RETRY_AFTER,
    HTTP_TIMEOUT,
    MAX_HTTP_RETRIES,
    MAX_RETRY_AFTER,
    MIN_VOTE_COUNT_NEW,
    NEW_RELEASE_CLIENT_LOOKBACK_DAYS,
    TMDB_API_KEY,
    TMDB_BASE_URL,
    TMDB_LANGUAGE,
    WATCH_REGION,
)
from .errors import CatalogError
from .models import CatalogMovie, DiscoverPage, Genre, Keyword, parse_entities
from .utils import first_match

logger = logging.getLogger(__name__)


def _is_youtube(video: dict) -> bool:
    return video.get('site') == 'YouTube'


TRAILER_PREFERENCE = [
    lambda v: _is_youtube(v) and v.get('type') == 'Trailer' and bool(v.get('official')),
    lambda v: _is_youtube(v) and v.get('type') == 'Trailer',
    lambda v: _is_youtube(v) and v.get('type') == 'Teaser',
]


def pick_trailer(videos: list[dict]) -> dict | None:
    """Best trailer: official YouTube trailer, then any YouTube trailer, then a YouTube teaser."""
    return first_match(videos, TRAILER_PREFERENCE)


def _parse_page(payload: dict) -> DiscoverPage:
    results = []
    for item in payload.get('results') or []:
        if not isinstance(item, dict) or not isinstance(item.get('id'), int):
            logger.debug(f"Skipping malformed catalog entry: {item!r}")
            continue
        try:
            results.append(CatalogMovie.from_tmdb(item))
        except (TypeError, ValueError) as e:
            logger.debug(f"Skipping malformed catalog entry {item.get('id')}: {e}")
    return DiscoverPage(
        results=results,
        total_pages=int(payload.get('total_pages') or 1),
        page=int(payload.get('page') or 1),
    )


class TMDBClient:
    """
    Async catalog client with coordinated rate limiting.

    Use as an async context manager so one httpx.AsyncClient is shared by
    every call made during a request:

        async with TMDBClient() as catalog:
            page = await catalog.get_popular()

    Listing and detail calls raise CatalogError once retries are exhausted.
    Auxiliary lookups (keywords, videos, watch providers, genres,
    collections) log and return an empty result instead.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        timeout: float = HTTP_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key if api_key is not None else TMDB_API_KEY
        self.base_url = (base_url or TMDB_BASE_URL).rstrip('/')
        self.timeout = timeout
        self.semaphore = asyncio.Semaphore(max_concurrent)
        self.client = None
        self._transport = transport
        # Coordinated rate limiting: when one task hits 429, all tasks pause
        self._rate_limit_event = asyncio.Event()
        self._rate_limit_event.set()

        if not self.api_key:
            logger.warning("TMDB_API_KEY not set; catalog requests will be rejected")

    async def __aenter__(self):
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Accept": "application/json", "User-Agent": "tmdb-rec/1.0"},
            timeout=self.timeout,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.client:
            await self.client.aclose()
            self.client = None
        return False

    async def _get(self, path: str, params: dict | None = None) -> dict:
        """
        GET a catalog path and return the decoded JSON body.

        Retries timeouts with exponential backoff and honours Retry-After on
        429 by pausing every in-flight request.

        Raises:
            CatalogError: on 4xx/5xx, transport errors, or exhausted retries
        """
        if not self.client:
            raise RuntimeError("TMDBClient must be used as an async context manager")

        query = {'api_key': self.api_key, 'language': TMDB_LANGUAGE}
        if params:
            query.update({k: v for k, v in params.items() if v is not None})

        async with self.semaphore:
            for attempt in range(MAX_HTTP_RETRIES):
                await self._rate_limit_event.wait()

                try:
                    resp = await self.client.get(path, params=query)

                    if resp.status_code == 429:
                        try:
                            retry_after = int(resp.headers.get("Retry-After", DEFAULT_RETRY_AFTER))
                        except ValueError:
                            retry_after = DEFAULT_RETRY_AFTER
                        retry_after = min(retry_after, MAX_RETRY_AFTER)
                        logger.warning(
                            f"Rate limited on {path}, pausing ALL requests for {retry_after}s "
                            f"(attempt {attempt + 1}/{MAX_HTTP_RETRIES})"
                        )
                        self._rate_limit_event.clear()
                        try:
                            await asyncio.sleep(retry_after)
                        finally:
                            self._rate_limit_event.set()
                        await asyncio.sleep(random.uniform(0, 0.2))
                        continue

                    resp.raise_for_status()
                    return resp.json()

                except httpx.TimeoutException:
                    wait_time = 2 ** attempt
                    logger.warning(
                        f"Timeout on {path}, retrying in {wait_time}s (attempt {attempt + 1}/{MAX_HTTP_RETRIES})"
                    )
                    await asyncio.sleep(wait_time)

                except httpx.HTTPStatusError as exc:
                    logger.error(f"HTTP {exc.response.status_code} on {path}")
                    raise CatalogError(f"HTTP {exc.response.status_code} on {path}") from exc

                except httpx.HTTPError as exc:
                    logger.error(f"Request error on {path}: {type(exc).__name__}: {exc}")
                    raise CatalogError(f"Request error on {path}: {exc}") from exc

                except ValueError as exc:
                    raise CatalogError(f"Invalid JSON from {path}") from exc

            logger.error(f"Max retries exceeded for {path}")
            raise CatalogError(f"Max retries exceeded for {path}")

    # Listings (essential: errors propagate as CatalogError)

    async def search(self, query: str, page: int = 1) -> DiscoverPage:
        return _parse_page(await self._get("/search/movie", {'query': query, 'page': page}))

    async def get_popular(self, page: int = 1) -> DiscoverPage:
        return _parse_page(await self._get("/movie/popular", {'page': page}))

    async def get_top_rated(self, page: int = 1) -> DiscoverPage:
        return _parse_page(await self._get("/movie/top_rated", {'page': page}))

    async def get_similar(self, tmdb_id: int, page: int = 1) -> DiscoverPage:
        return _parse_page(await self._get(f"/movie/{tmdb_id}/similar", {'page': page}))

    async def get_recommendations(self, tmdb_id: int, page: int = 1) -> DiscoverPage:
        return _parse_page(await self._get(f"/movie/{tmdb_id}/recommendations", {'page': page}))

    async def discover(self, params: dict) -> DiscoverPage:
        """Filtered discovery; params use the catalog's query names (with_genres, vote_count.gte, ...)."""
        return _parse_page(await self._get("/discover/movie", params))

    async def get_new_releases(self, page: int = 1, today: date | None = None) -> DiscoverPage:
        today = today or date.today()
        since = today - timedelta(days=NEW_RELEASE_CLIENT_LOOKBACK_DAYS)
        return await self.discover({
            'primary_release_date.gte': since.isoformat(),
            'primary_release_date.lte': today.isoformat(),
            'sort_by': 'popularity.desc',
            'vote_count.gte': MIN_VOTE_COUNT_NEW,
            'page': page,
        })

    # Details

    async def get_details(self, tmdb_id: int) -> dict:
        """Full detail payload with credits appended."""
        return await self._get(f"/movie/{tmdb_id}", {'append_to_response': 'credits'})

    async def get_enhanced_details(self, tmdb_id: int) -> dict:
        """Details plus a validated `keywords` list, fetched in parallel."""
        details, keywords = await asyncio.gather(
            self.get_details(tmdb_id),
            self.get_keywords(tmdb_id),
        )
        details['keywords'] = keywords
        return details

    # Auxiliary lookups (non-essential: degrade to empty)

    async def get_keywords(self, tmdb_id: int) -> list[Keyword]:
        try:
            payload = await self._get(f"/movie/{tmdb_id}/keywords")
        except CatalogError as e:
            logger.debug(f"Keyword lookup failed for {tmdb_id}: {e}")
            return []
        return parse_entities(payload.get('keywords'), Keyword)

    async def get_videos(self, tmdb_id: int) -> list[dict]:
        try:
            payload = await self._get(f"/movie/{tmdb_id}/videos")
        except CatalogError as e:
            logger.debug(f"Video lookup failed for {tmdb_id}: {e}")
            return []
        return [v for v in payload.get('results') or [] if isinstance(v, dict)]

    async def get_trailer(self, tmdb_id: int) -> dict | None:
        return pick_trailer(await self.get_videos(tmdb_id))

    async def get_watch_providers(self, tmdb_id: int, region: str = WATCH_REGION) -> dict | None:
        try:
            payload = await self._get(f"/movie/{tmdb_id}/watch/providers")
        except CatalogError as e:
            logger.debug(f"Watch provider lookup failed for {tmdb_id}: {e}")
            return None
        return (payload.get('results') or {}).get(region)

    async def get_genre_list(self) -> list[Genre]:
        try:
            payload = await self._get("/genre/movie/list")
        except CatalogError as e:
            logger.debug(f"Genre list lookup failed: {e}")
            return []
        return parse_entities(payload.get('genres'), Genre)

    async def get_collection_movies(self, collection_id: int) -> list[CatalogMovie]:
        try:
            payload = await self._get(f"/collection/{collection_id}")
        except CatalogError as e:
            logger.debug(f"Collection lookup failed for {collection_id}: {e}")
            return []
        return _parse_page({'results': payload.get('parts')}).results
