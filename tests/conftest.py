import importlib
import sys
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with a temporary database path to keep tests isolated.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("TMDB_REC_DB", str(db_path))
    import tmdb_rec.config as config

    importlib.reload(config)
    return config


@pytest.fixture
def fresh_db(monkeypatch, tmp_path):
    """
    Reload config/database modules with a temp DB and cleanly close the pool after use.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("TMDB_REC_DB", str(db_path))

    import tmdb_rec.config as config
    import tmdb_rec.database as database

    importlib.reload(config)
    importlib.reload(database)
    database.init_db()

    yield database
    database.close_pool()


def movie_details(
    tmdb_id: int,
    title: str | None = None,
    genres=((18, "Drama"),),
    director: tuple[int, str] | None = None,
    cast=(),
    release_date: str = "2015-06-01",
    runtime: int = 110,
    vote_average: float = 7.0,
    vote_count: int = 1000,
    language: str = "en",
    collection: tuple[int, str] | None = None,
    companies=(),
) -> dict:
    """Catalog-shaped detail payload with credits appended."""
    crew = []
    if director:
        crew.append({"id": director[0], "name": director[1], "job": "Director"})
    return {
        "id": tmdb_id,
        "title": title or f"Movie {tmdb_id}",
        "overview": "",
        "poster_path": f"/poster{tmdb_id}.jpg",
        "backdrop_path": f"/backdrop{tmdb_id}.jpg",
        "release_date": release_date,
        "genres": [{"id": gid, "name": name} for gid, name in genres],
        "runtime": runtime,
        "vote_average": vote_average,
        "vote_count": vote_count,
        "original_language": language,
        "belongs_to_collection": {"id": collection[0], "name": collection[1]} if collection else None,
        "production_companies": [{"id": cid, "name": name} for cid, name in companies],
        "credits": {
            "cast": [{"id": aid, "name": name, "character": "Someone"} for aid, name in cast],
            "crew": crew,
        },
    }


def listing_entry(
    tmdb_id: int,
    genre_ids=(18,),
    vote_average: float = 7.0,
    vote_count: int = 1000,
    release_date: str = "2015-06-01",
    language: str = "en",
) -> dict:
    return {
        "id": tmdb_id,
        "title": f"Movie {tmdb_id}",
        "genre_ids": list(genre_ids),
        "vote_average": vote_average,
        "vote_count": vote_count,
        "popularity": 50.0,
        "release_date": release_date,
        "original_language": language,
    }


class FakeCatalog:
    """
    In-memory stand-in for TMDBClient.

    `details` maps tmdb_id to a detail payload; listing methods return the
    configured pages. Failing methods raise CatalogError. Every call is
    recorded in `calls`.
    """

    def __init__(self, details=None, similar=None, discover_results=None, popular=None, keywords=None):
        self.details = dict(details or {})
        self.similar = dict(similar or {})
        self.discover_results = list(discover_results or [])
        self.popular = list(popular or [])
        self.keywords = dict(keywords or {})
        self.failing: set[str] = set()
        self.calls: list[tuple] = []
        self.discover_total_pages = 7

    def _check(self, name, *args):
        from tmdb_rec.errors import CatalogError

        self.calls.append((name, *args))
        if name in self.failing:
            raise CatalogError(f"{name} unavailable")

    def _page(self, entries, total_pages=1):
        from tmdb_rec.tmdb import _parse_page

        return _parse_page({"results": entries, "total_pages": total_pages, "page": 1})

    async def get_details(self, tmdb_id):
        from tmdb_rec.errors import CatalogError

        self._check("get_details", tmdb_id)
        if tmdb_id not in self.details:
            raise CatalogError(f"HTTP 404 on /movie/{tmdb_id}")
        return dict(self.details[tmdb_id])

    async def get_keywords(self, tmdb_id):
        from tmdb_rec.models import Keyword

        self.calls.append(("get_keywords", tmdb_id))
        return [Keyword(kid, name) for kid, name in self.keywords.get(tmdb_id, [])]

    async def get_enhanced_details(self, tmdb_id):
        details = await self.get_details(tmdb_id)
        details["keywords"] = await self.get_keywords(tmdb_id)
        return details

    async def get_similar(self, tmdb_id, page=1):
        self._check("get_similar", tmdb_id, page)
        return self._page(self.similar.get(tmdb_id, []))

    async def discover(self, params):
        self._check("discover", dict(params))
        return self._page(self.discover_results, self.discover_total_pages)

    async def get_popular(self, page=1):
        self._check("get_popular", page)
        return self._page(self.popular)

    async def get_trailer(self, tmdb_id):
        self.calls.append(("get_trailer", tmdb_id))
        return None

    async def get_watch_providers(self, tmdb_id, region="US"):
        self.calls.append(("get_watch_providers", tmdb_id, region))
        return None

    def called(self, name):
        return [c for c in self.calls if c[0] == name]


@pytest.fixture
def fake_catalog():
    return FakeCatalog


@pytest.fixture
def details():
    return movie_details


@pytest.fixture
def listing():
    return listing_entry
