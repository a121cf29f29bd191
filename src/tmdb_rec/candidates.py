import asyncio
import logging

from . import database
from .config import (
    ENRICHMENT_BATCH_SIZE,
    ENRICHMENT_LIMIT,
    HTTP_TIMEOUT,
    MAX_CAST_CONSIDERED,
    MAX_DISCOVER_GENRES,
    MAX_SIMILAR_SEEDS,
    MIN_CANDIDATES,
    MIN_VOTE_COUNT,
)
from .errors import CatalogError
from .models import CastMember, CatalogMovie, DiscoverPage, RatingEvent, parse_entities
from .profile import PreferenceProfile

logger = logging.getLogger(__name__)


class CandidatePool:
    """Insertion-ordered, de-duplicated candidates that never admits an excluded id."""

    def __init__(self, excluded: set[int], min_vote_count: int = MIN_VOTE_COUNT):
        self.excluded = excluded
        self.min_vote_count = min_vote_count
        self.seen: set[int] = set()
        self.movies: list[CatalogMovie] = []

    def __len__(self) -> int:
        return len(self.movies)

    def add_all(self, movies: list[CatalogMovie]) -> int:
        added = 0
        for movie in movies:
            if movie.id in self.seen or movie.id in self.excluded:
                continue
            if movie.vote_count < self.min_vote_count:
                continue
            self.seen.add(movie.id)
            self.movies.append(movie)
            added += 1
        return added


class CandidateAggregator:
    """
    Multi-source candidate collection against the catalog.

    Sources run in priority order (similar-to-liked, preferred-genre
    discovery, popularity fallback); each one is fault-isolated so a
    failing or slow catalog call only empties its own contribution.
    """

    def __init__(self, catalog, timeout: float = HTTP_TIMEOUT * 3):
        self.catalog = catalog
        self.timeout = timeout

    async def _safe(self, label: str, coro) -> list[CatalogMovie]:
        try:
            page: DiscoverPage = await asyncio.wait_for(coro, timeout=self.timeout)
        except CatalogError as e:
            logger.warning(f"Candidate source {label} failed: {e}")
            return []
        except asyncio.TimeoutError:
            logger.warning(f"Candidate source {label} timed out after {self.timeout}s")
            return []
        return page.results

    async def similar_to_liked(self, history: list[RatingEvent], page: int = 1) -> list[list[CatalogMovie]]:
        """Similar-movie lists for the most recent liked ratings, fetched concurrently."""
        seeds = [e.tmdb_id for e in history if e.rating.is_liked][:MAX_SIMILAR_SEEDS]
        if not seeds:
            return []
        return await asyncio.gather(*(
            self._safe(f"similar:{tmdb_id}", self.catalog.get_similar(tmdb_id, page))
            for tmdb_id in seeds
        ))

    async def by_preferred_genres(self, profile: PreferenceProfile, page: int = 1) -> list[CatalogMovie]:
        genre_ids = profile.preferred_genre_ids[:MAX_DISCOVER_GENRES]
        if not genre_ids:
            return []
        params = {
            'with_genres': ','.join(str(g) for g in genre_ids),
            'sort_by': 'popularity.desc',
            'vote_count.gte': MIN_VOTE_COUNT,
            'page': page,
        }
        return await self._safe("discover:genres", self.catalog.discover(params))

    async def aggregate(
        self,
        history: list[RatingEvent],
        profile: PreferenceProfile,
        excluded: set[int],
        page: int = 1,
    ) -> list[CatalogMovie]:
        """
        Collect the candidate pool for one recommendation pass.

        Source order decides insertion priority only; ranking happens later.
        """
        pool = CandidatePool(excluded)

        for results in await self.similar_to_liked(history, page):
            pool.add_all(results)
        similar_count = len(pool)

        pool.add_all(await self.by_preferred_genres(profile, page))
        genre_count = len(pool) - similar_count

        popular_count = 0
        if len(pool) < MIN_CANDIDATES:
            popular_count = pool.add_all(
                await self._safe("popular", self.catalog.get_popular(page))
            )

        logger.info(
            f"Candidate pool: {len(pool)} movies "
            f"(similar={similar_count}, genres={genre_count}, popular={popular_count})"
        )
        return pool.movies

    async def _fetch_credits(self, movie: CatalogMovie) -> CatalogMovie:
        try:
            details = await asyncio.wait_for(self.catalog.get_details(movie.id), timeout=self.timeout)
        except (CatalogError, asyncio.TimeoutError) as e:
            logger.debug(f"Enrichment failed for {movie.id}: {e}")
            return movie

        credits = details.get('credits') or {}
        director = next(
            (p for p in credits.get('crew') or [] if isinstance(p, dict) and p.get('job') == 'Director'),
            None,
        )
        if director:
            movie.director = director.get('name')
            movie.director_id = director.get('id')
        movie.cast = parse_entities((credits.get('cast') or [])[:MAX_CAST_CONSIDERED], CastMember)
        movie.runtime = details.get('runtime') or movie.runtime
        return movie

    async def enrich(self, candidates: list[CatalogMovie]) -> list[CatalogMovie]:
        """
        Attach director and top cast to the first ENRICHMENT_LIMIT candidates.

        Cached movie records are used first; the rest are fetched in
        concurrent batches. Candidates past the limit are returned untouched.
        """
        head = candidates[:ENRICHMENT_LIMIT]
        tail = candidates[ENRICHMENT_LIMIT:]

        cached = await asyncio.to_thread(database.get_movies, [m.id for m in head])
        to_fetch = []
        for movie in head:
            record = cached.get(movie.id)
            if record and (record.director or record.cast):
                movie.director = record.director
                movie.director_id = record.director_id
                movie.cast = record.cast[:MAX_CAST_CONSIDERED]
                movie.keywords = record.keywords
                movie.runtime = record.runtime
            else:
                to_fetch.append(movie)

        for i in range(0, len(to_fetch), ENRICHMENT_BATCH_SIZE):
            batch = to_fetch[i:i + ENRICHMENT_BATCH_SIZE]
            await asyncio.gather(*(self._fetch_credits(m) for m in batch))

        if to_fetch:
            logger.debug(f"Enriched {len(head)} candidates ({len(to_fetch)} from catalog)")
        return head + tail
