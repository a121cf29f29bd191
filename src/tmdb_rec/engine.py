"""
Recommendation service: the outward API over profile extraction, weight
learning, candidate aggregation, scoring and ranking.

Store calls are synchronous sqlite and run through asyncio.to_thread;
catalog calls go through an async TMDBClient (or any object exposing the
same coroutine methods).
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any

from . import database
from .candidates import CandidateAggregator
from .config import (
    DEFAULT_LIMIT,
    DEFAULT_PAGE,
    DISCOVER_PAGE_SIZE,
    FILTERED_REQUEST_LIMIT,
    FOR_YOU_TOTAL_PAGES,
    MAX_CATALOG_PAGES,
    MAX_LIMIT,
    MOOD_GENRE_MAPPING,
    RECENTLY_SHOWN_DAYS,
    RECENTLY_SHOWN_PENALTY,
    SHOWN_ACTIONS,
    VALID_ACTIONS,
)
from .models import CatalogMovie, Priority, Rating, RatingEvent, WatchlistEntry
from .movie_cache import cache_movie_details
from .profile import PreferenceProfile, build_profile
from .ranking import (
    build_discover_params,
    filter_results,
    matches_style,
    tiered_shuffle,
    validate_category,
    validate_style,
)
from .scoring import ScoredMovie, score_candidates
from .weight_learning import WeightLearner

logger = logging.getLogger(__name__)

WATCHED_RATINGS = (Rating.DISLIKE, Rating.OK, Rating.LIKE, Rating.SUPER_LIKE)


# --- Input validation ----------------------------------------------------

def parse_rating(value: Any) -> Rating:
    if value is None:
        raise ValueError("Rating is required")
    return Rating.parse(value)


def parse_priority(value: Any, default: Priority = Priority.MEDIUM) -> Priority:
    return Priority.parse(value, default)


def _to_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def validate_pagination(
    page: Any = None,
    limit: Any = None,
    max_page: int = MAX_CATALOG_PAGES,
    max_limit: int = MAX_LIMIT,
    default_limit: int = DEFAULT_LIMIT,
) -> tuple[int, int]:
    """Clamp page into [1, max_page] and limit into [1, max_limit]; unparseable values fall back to defaults."""
    parsed_page = _to_int(page)
    parsed_limit = _to_int(limit)
    page = DEFAULT_PAGE if parsed_page is None else max(1, min(parsed_page, max_page))
    limit = default_limit if parsed_limit is None else max(1, min(parsed_limit, max_limit))
    return page, limit


def validate_positive_int(value: Any, field_name: str = "Value") -> int | None:
    """Optional positive integer (None passes through)."""
    if value is None:
        return None
    parsed = _to_int(value)
    if parsed is None:
        raise ValueError(f"{field_name} must be a number")
    if parsed <= 0:
        raise ValueError(f"{field_name} must be a positive number")
    return parsed


@dataclass
class DiscoverFeed:
    movies: list[CatalogMovie]
    page: int
    total_pages: int
    category: str
    scored: list[ScoredMovie] = field(default_factory=list)

    def to_dict(self) -> dict:
        scores = {s.movie.id: s for s in self.scored}
        movies = []
        for m in self.movies:
            data = scores[m.id].to_dict() if m.id in scores else m.to_dict()
            movies.append(data)
        return {
            'movies': movies,
            'page': self.page,
            'total_pages': self.total_pages,
            'category': self.category,
        }


class RecommendationService:
    """Personalized recommendations and category browsing for one user store."""

    def __init__(self, catalog, learner: WeightLearner | None = None, rng: random.Random | None = None):
        self.catalog = catalog
        self.learner = learner or WeightLearner()
        self.aggregator = CandidateAggregator(catalog)
        self.rng = rng or random.Random()

    # --- Read side ------------------------------------------------------

    async def get_preference_profile(self, user_id: str) -> PreferenceProfile:
        history = await asyncio.to_thread(database.get_rating_history, user_id)
        return build_profile(history)

    async def get_recommendations(
        self,
        user_id: str,
        limit: int = DEFAULT_LIMIT,
        page: int = DEFAULT_PAGE,
        mood: str | None = None,
    ) -> list[ScoredMovie]:
        """
        Ranked, personalized recommendations.

        Never returns a movie the user has rated or watchlisted. Movies
        shown (viewed/skipped) in the last RECENTLY_SHOWN_DAYS are
        demoted before tiering.
        """
        page, limit = validate_pagination(page, limit)
        mood_genres = None
        if mood:
            mood = mood.lower()
            if mood not in MOOD_GENRE_MAPPING:
                raise ValueError(f"Invalid mood '{mood}'. Must be one of: {', '.join(MOOD_GENRE_MAPPING)}")
            mood_genres = set(MOOD_GENRE_MAPPING[mood])

        history, excluded, recently_shown = await asyncio.gather(
            asyncio.to_thread(database.get_rating_history, user_id),
            asyncio.to_thread(database.get_excluded_ids, user_id),
            asyncio.to_thread(database.get_recently_shown_ids, user_id, SHOWN_ACTIONS, RECENTLY_SHOWN_DAYS),
        )
        profile = build_profile(history)
        weights = await self.learner.get_weights(user_id)

        candidates = await self.aggregator.aggregate(history, profile, excluded, page)
        candidates = await self.aggregator.enrich(candidates)
        scored = score_candidates(candidates, profile, weights)

        if mood_genres is not None:
            scored = [s for s in scored if mood_genres.intersection(s.movie.genre_ids)]

        for item in scored:
            if item.movie.id in recently_shown:
                item.score *= 1 - RECENTLY_SHOWN_PENALTY

        return tiered_shuffle(scored, limit, self.rng)

    async def get_discover_feed(
        self,
        user_id: str,
        category: str = 'for_you',
        page: int = DEFAULT_PAGE,
        style: str = 'all',
        genre: int | None = None,
        actor: int | None = None,
        director: int | None = None,
        company: int | None = None,
    ) -> DiscoverFeed:
        """
        Category/style browse.

        for_you without a person or company filter is the personalized feed
        post-filtered by genre and style; everything else is a catalog
        discovery query with category-specific sort and vote floor.
        """
        category = validate_category(category)
        style = validate_style(style)
        page, _ = validate_pagination(page)
        genre = validate_positive_int(genre, "Genre")
        actor = validate_positive_int(actor, "Actor")
        director = validate_positive_int(director, "Director")
        company = validate_positive_int(company, "Company")

        excluded = await asyncio.to_thread(database.get_excluded_ids, user_id)
        has_person_filter = bool(actor or director or company)

        if has_person_filter or category != 'for_you':
            effective = 'popular' if category == 'for_you' else category
            params = build_discover_params(effective, style, page, genre, actor, director, company)
            response = await self.catalog.discover(params)
            return DiscoverFeed(
                movies=filter_results(response.results, excluded, style),
                page=page,
                total_pages=response.total_pages,
                category=category,
            )

        request_limit = FILTERED_REQUEST_LIMIT if (genre or style != 'all') else DISCOVER_PAGE_SIZE
        recommendations = await self.get_recommendations(user_id, limit=request_limit, page=page)
        if genre:
            recommendations = [r for r in recommendations if genre in r.movie.genre_ids]
        recommendations = [r for r in recommendations if matches_style(r.movie, style)]
        recommendations = recommendations[:DISCOVER_PAGE_SIZE]

        if not recommendations and genre:
            logger.info(f"No personalized matches for genre {genre}, falling back to catalog discovery")
            params = build_discover_params('popular', style, page, genre)
            response = await self.catalog.discover(params)
            return DiscoverFeed(
                movies=filter_results(response.results, excluded, style),
                page=page,
                total_pages=response.total_pages,
                category=category,
            )

        return DiscoverFeed(
            movies=[r.movie for r in recommendations],
            page=page,
            total_pages=FOR_YOU_TOTAL_PAGES,
            category=category,
            scored=recommendations,
        )

    # --- Write side -----------------------------------------------------

    async def record_interaction(self, user_id: str, tmdb_id: int, action: str) -> None:
        if action not in VALID_ACTIONS:
            raise ValueError(f"Invalid action '{action}'. Must be one of: {', '.join(VALID_ACTIONS)}")
        tmdb_id = validate_positive_int(tmdb_id, "TMDB ID")
        await asyncio.to_thread(database.record_interaction, user_id, tmdb_id, action)

    def on_new_rating(self, user_id: str) -> asyncio.Task:
        return self.learner.on_new_rating(user_id)

    async def rate_movie(self, user_id: str, tmdb_id: int, rating: Any, watched: bool = True) -> RatingEvent:
        """Cache metadata, upsert the single (user, movie) rating and schedule weight learning."""
        rating = parse_rating(rating)
        tmdb_id = validate_positive_int(tmdb_id, "TMDB ID")
        movie = await cache_movie_details(self.catalog, tmdb_id, include_keywords=True)
        created = await asyncio.to_thread(database.upsert_rating, user_id, tmdb_id, rating, watched)
        logger.info(f"{'Rated' if created else 'Re-rated'} {movie.title} ({tmdb_id}) as {rating.name}")
        self.on_new_rating(user_id)
        return RatingEvent(user_id, tmdb_id, rating, watched, movie=movie)

    async def add_to_watchlist(
        self,
        user_id: str,
        tmdb_id: int,
        priority: Any = None,
        note: str | None = None,
    ) -> WatchlistEntry:
        priority = parse_priority(priority)
        tmdb_id = validate_positive_int(tmdb_id, "TMDB ID")
        movie = await cache_movie_details(self.catalog, tmdb_id, include_keywords=False)
        entry = await asyncio.to_thread(database.create_watchlist_entry, user_id, tmdb_id, priority, note)
        entry.movie = movie
        logger.info(f"Added {movie.title} ({tmdb_id}) to watchlist [{priority.value}]")
        return entry

    async def mark_watched(self, user_id: str, tmdb_id: int, rating: Any) -> None:
        """Atomically move a watchlist entry to the rated list."""
        rating = parse_rating(rating)
        if rating not in WATCHED_RATINGS:
            raise ValueError(
                f"Invalid rating for a watched movie. Must be one of: {', '.join(r.name for r in WATCHED_RATINGS)}"
            )
        await asyncio.to_thread(database.mark_watched, user_id, tmdb_id, rating)
        logger.info(f"Marked {tmdb_id} as watched ({rating.name})")
        self.on_new_rating(user_id)

    async def remove_movie(self, user_id: str, tmdb_id: int) -> None:
        await asyncio.to_thread(database.delete_rating, user_id, tmdb_id)

    async def remove_from_watchlist(self, user_id: str, tmdb_id: int) -> None:
        await asyncio.to_thread(database.delete_watchlist_entry, user_id, tmdb_id)

    async def close(self) -> None:
        """Let pending weight recomputes finish."""
        await self.learner.drain()
