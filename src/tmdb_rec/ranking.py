import logging
import random
from datetime import date, timedelta
from typing import Callable

from .config import (
    ANIMATION_GENRE_ID,
    JAPANESE_LANGUAGE,
    MIN_VOTE_COUNT,
    MIN_VOTE_COUNT_ANIME,
    MIN_VOTE_COUNT_NEW,
    MIN_VOTE_COUNT_TOP_RATED,
    NEW_RELEASE_LOOKBACK_DAYS,
    TIER_1_MIN_SCORE,
    TIER_2_MIN_SCORE,
    VALID_CATEGORIES,
    VALID_STYLES,
)
from .models import CatalogMovie
from .scoring import ScoredMovie

logger = logging.getLogger(__name__)


def tier_of(score: float) -> int:
    if score >= TIER_1_MIN_SCORE:
        return 1
    if score >= TIER_2_MIN_SCORE:
        return 2
    return 3


def tiered_shuffle(
    scored: list[ScoredMovie],
    limit: int | None = None,
    rng: random.Random | None = None,
) -> list[ScoredMovie]:
    """
    Order by coarse score tier, shuffling uniformly within each tier.

    Tier 1 (>= 70) always precedes tier 2 (>= 50), which precedes tier 3,
    so the best matches surface first without a fixed top-N.
    """
    rng = rng or random.Random()
    tiers: dict[int, list[ScoredMovie]] = {1: [], 2: [], 3: []}
    for item in scored:
        tiers[tier_of(item.score)].append(item)

    ranked = []
    for tier in (1, 2, 3):
        bucket = tiers[tier]
        rng.shuffle(bucket)
        ranked.extend(bucket)

    return ranked[:limit] if limit is not None else ranked


# --- Style filters -------------------------------------------------------

def _is_animation(movie: CatalogMovie) -> bool:
    return ANIMATION_GENRE_ID in movie.genre_ids


STYLE_PREDICATES: dict[str, Callable[[CatalogMovie], bool]] = {
    'all': lambda m: True,
    'movies': lambda m: not _is_animation(m),
    'anime': lambda m: _is_animation(m) and m.original_language == JAPANESE_LANGUAGE,
    'cartoons': lambda m: _is_animation(m) and m.original_language != JAPANESE_LANGUAGE,
}


def validate_category(category: str | None) -> str:
    category = category or 'for_you'
    if category not in VALID_CATEGORIES:
        raise ValueError(f"Invalid category '{category}'. Must be one of: {', '.join(VALID_CATEGORIES)}")
    return category


def validate_style(style: str | None) -> str:
    style = style or 'all'
    if style not in VALID_STYLES:
        raise ValueError(f"Invalid style '{style}'. Must be one of: {', '.join(VALID_STYLES)}")
    return style


def matches_style(movie: CatalogMovie, style: str) -> bool:
    return STYLE_PREDICATES[validate_style(style)](movie)


def vote_threshold(base: int, style: str) -> int:
    """Animated styles use a much looser floor: those titles collect fewer votes."""
    if style in ('anime', 'cartoons'):
        return MIN_VOTE_COUNT_ANIME
    return base


def style_genre_filter(style: str, genre: int | None = None) -> str | None:
    genres = []
    if genre:
        genres.append(genre)
    if style in ('anime', 'cartoons') and ANIMATION_GENRE_ID not in genres:
        genres.append(ANIMATION_GENRE_ID)
    return ','.join(str(g) for g in genres) if genres else None


def style_language_filter(style: str) -> dict:
    # The catalog cannot exclude a language; cartoons drop Japanese titles client-side
    if style == 'anime':
        return {'with_original_language': JAPANESE_LANGUAGE}
    if style == 'movies':
        return {'without_genres': str(ANIMATION_GENRE_ID)}
    return {}


def build_discover_params(
    category: str,
    style: str = 'all',
    page: int = 1,
    genre: int | None = None,
    actor: int | None = None,
    director: int | None = None,
    company: int | None = None,
    today: date | None = None,
) -> dict:
    """
    Catalog discovery query for a category/style browse.

    for_you with a person or company filter is browsed as popular.
    """
    category = validate_category(category)
    style = validate_style(style)
    today = today or date.today()

    params: dict = {'page': page}
    genre_filter = style_genre_filter(style, genre)
    if genre_filter:
        params['with_genres'] = genre_filter
    params.update(style_language_filter(style))
    if actor:
        params['with_cast'] = str(actor)
    if director:
        params['with_crew'] = str(director)
    if company:
        params['with_companies'] = str(company)

    if category == 'new_releases':
        params['sort_by'] = 'primary_release_date.desc'
        params['primary_release_date.lte'] = today.isoformat()
        params['primary_release_date.gte'] = (today - timedelta(days=NEW_RELEASE_LOOKBACK_DAYS)).isoformat()
        params['vote_count.gte'] = vote_threshold(MIN_VOTE_COUNT_NEW, style)
    elif category == 'top_rated':
        params['sort_by'] = 'vote_average.desc'
        params['vote_count.gte'] = vote_threshold(MIN_VOTE_COUNT_TOP_RATED, style)
    else:
        params['sort_by'] = 'popularity.desc'
        params['vote_count.gte'] = vote_threshold(MIN_VOTE_COUNT, style)

    return params


def filter_results(movies: list[CatalogMovie], excluded: set[int], style: str) -> list[CatalogMovie]:
    """Drop excluded ids, then apply the style predicate client-side."""
    predicate = STYLE_PREDICATES[validate_style(style)]
    return [m for m in movies if m.id not in excluded and predicate(m)]
