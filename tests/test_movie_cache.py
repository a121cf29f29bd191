from datetime import datetime, timedelta

import pytest

from tmdb_rec.errors import CatalogError
from tmdb_rec.models import Keyword, MovieRecord
from tmdb_rec.movie_cache import (
    batch_cache_movies,
    build_movie_record,
    cache_movie_details,
    needs_refresh,
    refresh_stale_movies,
)


def test_needs_refresh_rules():
    now = datetime(2024, 1, 31)
    fresh = MovieRecord(tmdb_id=1, title="A", backdrop_path="/b.jpg", last_updated=now - timedelta(days=2))

    assert needs_refresh(None, now)
    assert not needs_refresh(fresh, now)
    fresh.last_updated = now - timedelta(days=31)
    assert needs_refresh(fresh, now)
    no_backdrop = MovieRecord(tmdb_id=2, title="B", backdrop_path=None, last_updated=now)
    assert needs_refresh(no_backdrop, now)


def test_build_movie_record_projects_credits(details):
    payload = details(
        1,
        title="Heat",
        director=(9, "Jane Doe"),
        cast=[(100 + i, f"Actor {i}") for i in range(12)],
        collection=(5, "Saga"),
        companies=[(i, f"Studio {i}") for i in range(1, 8)],
    )
    payload["keywords"] = [Keyword(3, "heist")]

    record = build_movie_record(payload)

    assert record.title == "Heat"
    assert record.director == "Jane Doe"
    assert record.director_id == 9
    assert len(record.cast) == 10
    assert len(record.production_companies) == 5
    assert record.collection_name == "Saga"
    assert record.keywords == [Keyword(3, "heist")]


@pytest.mark.asyncio
async def test_cache_movie_details_fetches_once(fresh_db, fake_catalog, details):
    catalog = fake_catalog(details={1: details(1, director=(9, "Jane Doe"))}, keywords={1: [(3, "heist")]})

    first = await cache_movie_details(catalog, 1)
    second = await cache_movie_details(catalog, 1)

    assert first.director == "Jane Doe"
    assert second.keywords == [Keyword(3, "heist")]
    assert len(catalog.called("get_details")) == 1
    assert fresh_db.get_movie(1).title == "Movie 1"


@pytest.mark.asyncio
async def test_cache_without_keywords_keeps_existing(fresh_db, fake_catalog, details):
    catalog = fake_catalog(details={1: details(1)}, keywords={1: [(3, "heist")]})
    await cache_movie_details(catalog, 1)

    record = await cache_movie_details(catalog, 1, include_keywords=False, force_refresh=True)

    assert record.keywords == [Keyword(3, "heist")]
    assert len(catalog.called("get_keywords")) == 1


@pytest.mark.asyncio
async def test_cache_missing_movie_raises(fresh_db, fake_catalog):
    with pytest.raises(CatalogError):
        await cache_movie_details(fake_catalog(), 404)


@pytest.mark.asyncio
async def test_batch_cache_skips_failures(fresh_db, fake_catalog, details):
    catalog = fake_catalog(details={i: details(i) for i in (1, 2, 4, 5, 6, 7)})

    cached = await batch_cache_movies(catalog, [1, 2, 3, 4, 5, 6, 7])

    assert sorted(r.tmdb_id for r in cached) == [1, 2, 4, 5, 6, 7]
    assert fresh_db.get_movie(3) is None


@pytest.mark.asyncio
async def test_refresh_stale_movies(fresh_db, fake_catalog, details):
    catalog = fake_catalog(details={1: details(1), 2: details(2, title="Renamed")})
    await batch_cache_movies(catalog, [1, 2])
    old = (datetime.now() - timedelta(days=40)).isoformat()
    with fresh_db.get_db() as conn:
        conn.execute("UPDATE movies SET last_updated = ? WHERE tmdb_id = 2", (old,))

    refreshed = await refresh_stale_movies(catalog, show_progress=False)

    assert refreshed == 1
    assert fresh_db.get_stale_movies() == []
    assert await refresh_stale_movies(catalog, show_progress=False) == 0
