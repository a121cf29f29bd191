import asyncio

import pytest

from tmdb_rec.candidates import CandidateAggregator, CandidatePool
from tmdb_rec.models import CatalogMovie, Genre, MovieRecord, Rating, RatingEvent
from tmdb_rec.profile import build_profile


def _liked(tmdb_id, genre=Genre(18, "Drama")):
    movie = MovieRecord(tmdb_id=tmdb_id, title=f"Movie {tmdb_id}", genres=[genre])
    return RatingEvent("alice", tmdb_id, Rating.LIKE, movie=movie)


def test_pool_dedupes_excludes_and_filters_votes():
    pool = CandidatePool(excluded={2}, min_vote_count=100)

    added = pool.add_all([
        CatalogMovie(id=1, title="A", vote_count=500),
        CatalogMovie(id=1, title="A again", vote_count=500),
        CatalogMovie(id=2, title="Rated", vote_count=500),
        CatalogMovie(id=3, title="Obscure", vote_count=10),
        CatalogMovie(id=4, title="B", vote_count=100),
    ])

    assert added == 2
    assert [m.id for m in pool.movies] == [1, 4]


@pytest.mark.asyncio
async def test_similar_uses_five_most_recent_liked(fake_catalog):
    catalog = fake_catalog()
    history = [_liked(i) for i in range(10, 0, -1)]
    history.insert(1, RatingEvent("alice", 99, Rating.DISLIKE))

    await CandidateAggregator(catalog).similar_to_liked(history)

    assert [c[1] for c in catalog.called("get_similar")] == [10, 9, 8, 7, 6]


@pytest.mark.asyncio
async def test_aggregate_priority_and_exclusion(fake_catalog, listing):
    catalog = fake_catalog(
        similar={1: [listing(100), listing(101)]},
        discover_results=[listing(101), listing(200), listing(300, vote_count=5)],
        popular=[listing(400), listing(1)],
    )
    history = [_liked(1)]
    profile = build_profile(history)

    movies = await CandidateAggregator(catalog).aggregate(history, profile, excluded={1, 200})

    assert [m.id for m in movies] == [100, 101, 400]
    discover_params = catalog.called("discover")[0][1]
    assert discover_params["with_genres"] == "18"
    assert discover_params["sort_by"] == "popularity.desc"


@pytest.mark.asyncio
async def test_popular_fallback_skipped_when_pool_is_large(fake_catalog, listing):
    catalog = fake_catalog(discover_results=[listing(i) for i in range(100, 125)], popular=[listing(1)])
    history = [_liked(1)]

    movies = await CandidateAggregator(catalog).aggregate(history, build_profile(history), excluded={1})

    assert len(movies) == 25
    assert catalog.called("get_popular") == []


@pytest.mark.asyncio
async def test_cold_start_uses_popular_only(fake_catalog, listing):
    catalog = fake_catalog(popular=[listing(1), listing(2)])

    movies = await CandidateAggregator(catalog).aggregate([], build_profile([]), excluded=set())

    assert [m.id for m in movies] == [1, 2]
    assert catalog.called("get_similar") == []
    assert catalog.called("discover") == []


@pytest.mark.asyncio
async def test_failing_sources_are_isolated(fake_catalog, listing):
    catalog = fake_catalog(popular=[listing(7)])
    catalog.failing = {"get_similar", "discover"}
    history = [_liked(1)]

    movies = await CandidateAggregator(catalog).aggregate(history, build_profile(history), excluded={1})

    assert [m.id for m in movies] == [7]


@pytest.mark.asyncio
async def test_slow_source_times_out(fake_catalog, listing):
    catalog = fake_catalog(popular=[listing(7)])

    async def slow_similar(tmdb_id, page=1):
        await asyncio.sleep(5)

    catalog.get_similar = slow_similar
    history = [_liked(1)]

    aggregator = CandidateAggregator(catalog, timeout=0.05)
    movies = await aggregator.aggregate(history, build_profile(history), excluded={1})

    assert [m.id for m in movies] == [7]


@pytest.mark.asyncio
async def test_enrich_prefers_cache_then_catalog(fresh_db, fake_catalog, details):
    fresh_db.upsert_movie(MovieRecord(tmdb_id=1, title="Cached", director="Cached Director", runtime=95))
    catalog = fake_catalog(details={2: details(2, director=(8, "Fetched Director"), cast=[(5, "Lead")])})
    candidates = [CatalogMovie(id=1, title="Cached"), CatalogMovie(id=2, title="Fresh"), CatalogMovie(id=3, title="Gone")]

    enriched = await CandidateAggregator(catalog).enrich(candidates)

    assert [m.director for m in enriched] == ["Cached Director", "Fetched Director", None]
    assert enriched[0].runtime == 95
    assert enriched[1].cast[0].name == "Lead"
    assert [c[1] for c in catalog.called("get_details")] == [2, 3]


@pytest.mark.asyncio
async def test_malformed_entry_in_one_source_keeps_others(fake_catalog, listing):
    catalog = fake_catalog(
        similar={1: [{"id": 5, "title": "Broken", "vote_count": "n/a"}, listing(6)]},
        popular=[listing(9)],
    )
    catalog.failing = {"discover"}
    history = [_liked(1)]

    movies = await CandidateAggregator(catalog).aggregate(history, build_profile(history), excluded={1})

    assert [m.id for m in movies] == [6, 9]
