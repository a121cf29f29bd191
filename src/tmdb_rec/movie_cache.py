"""
Local cache of catalog movie details.

Ratings and watchlist rows reference cached MovieRecords. Entries older
than CACHE_DAYS (or missing fields added after they were written) are
refetched on next access.
"""

import asyncio
import logging
from datetime import datetime, timedelta

from tqdm import tqdm

from . import database
from .config import CACHE_BATCH_SIZE, CACHE_DAYS, MAX_CAST_STORED, MAX_COMPANIES_STORED
from .errors import CatalogError
from .models import CastMember, Company, Genre, Keyword, MovieRecord, parse_entities
from .tmdb import TMDBClient

logger = logging.getLogger(__name__)


def needs_refresh(movie: MovieRecord | None, now: datetime | None = None) -> bool:
    if movie is None or movie.last_updated is None:
        return True
    now = now or datetime.now()
    if movie.last_updated < now - timedelta(days=CACHE_DAYS):
        return True
    # Written before backdrops were stored
    if movie.backdrop_path is None:
        return True
    return False


def build_movie_record(details: dict, keywords: list[Keyword] | None = None) -> MovieRecord:
    """Project a catalog detail payload (with credits) onto a MovieRecord."""
    credits = details.get('credits') or {}
    director = next(
        (p for p in credits.get('crew') or [] if isinstance(p, dict) and p.get('job') == 'Director'),
        None,
    )
    collection = details.get('belongs_to_collection') or {}
    if keywords is None:
        keywords = parse_entities(details.get('keywords'), Keyword)

    return MovieRecord(
        tmdb_id=int(details['id']),
        title=details.get('title') or '',
        overview=details.get('overview') or None,
        poster_path=details.get('poster_path'),
        backdrop_path=details.get('backdrop_path'),
        release_date=details.get('release_date') or None,
        genres=parse_entities(details.get('genres'), Genre),
        director=director.get('name') if director else None,
        director_id=director.get('id') if director else None,
        cast=parse_entities((credits.get('cast') or [])[:MAX_CAST_STORED], CastMember),
        keywords=list(keywords),
        collection_id=collection.get('id'),
        collection_name=collection.get('name'),
        production_companies=parse_entities(
            (details.get('production_companies') or [])[:MAX_COMPANIES_STORED], Company
        ),
        runtime=details.get('runtime') or None,
        vote_average=details.get('vote_average'),
        vote_count=details.get('vote_count'),
        original_language=details.get('original_language'),
    )


async def cache_movie_details(
    catalog: TMDBClient,
    tmdb_id: int,
    include_keywords: bool = True,
    force_refresh: bool = False,
) -> MovieRecord:
    """
    Return the cached record for tmdb_id, fetching and storing it when stale.

    Raises:
        CatalogError: the movie is not cached and the catalog lookup failed
    """
    existing = await asyncio.to_thread(database.get_movie, tmdb_id)
    if not force_refresh and not needs_refresh(existing):
        return existing

    if include_keywords:
        details = await catalog.get_enhanced_details(tmdb_id)
    else:
        details = await catalog.get_details(tmdb_id)

    record = build_movie_record(details)
    if not include_keywords and existing is not None:
        record.keywords = existing.keywords

    await asyncio.to_thread(database.upsert_movie, record)
    record.last_updated = datetime.now()
    return record


async def batch_cache_movies(
    catalog: TMDBClient,
    tmdb_ids: list[int],
    include_keywords: bool = True,
    force_refresh: bool = False,
    show_progress: bool = False,
) -> list[MovieRecord]:
    """Cache several movies, CACHE_BATCH_SIZE at a time; failures are logged and skipped."""
    cached = []
    failed = 0
    pbar = tqdm(total=len(tmdb_ids), desc="Caching movies", disable=not show_progress)
    try:
        for i in range(0, len(tmdb_ids), CACHE_BATCH_SIZE):
            batch = tmdb_ids[i:i + CACHE_BATCH_SIZE]
            results = await asyncio.gather(
                *(cache_movie_details(catalog, tid, include_keywords, force_refresh) for tid in batch),
                return_exceptions=True,
            )
            for tid, result in zip(batch, results):
                if isinstance(result, CatalogError):
                    logger.warning(f"Failed to cache movie {tid}: {result}")
                    failed += 1
                elif isinstance(result, BaseException):
                    raise result
                else:
                    cached.append(result)
            pbar.update(len(batch))
    finally:
        pbar.close()

    if failed:
        logger.info(f"Cached {len(cached)}/{len(tmdb_ids)} movies, {failed} failed")
    return cached


async def refresh_stale_movies(catalog: TMDBClient, limit: int | None = None, show_progress: bool = True) -> int:
    """Refetch every cached movie past its staleness window. Returns the number refreshed."""
    stale = await asyncio.to_thread(database.get_stale_movies, CACHE_DAYS, limit)
    if not stale:
        logger.info("No stale movies to refresh")
        return 0
    logger.info(f"Refreshing {len(stale)} stale movies")
    refreshed = await batch_cache_movies(
        catalog, stale, include_keywords=True, force_refresh=True, show_progress=show_progress
    )
    return len(refreshed)
