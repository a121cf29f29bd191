"""
Configuration constants for the TMDB-backed recommendation engine.

This module centralizes all magic numbers and configurable parameters.
Operational values can be overridden via environment variables.
"""
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


# Database Configuration
DB_PATH = Path(os.environ.get("TMDB_REC_DB", "data/tmdb_rec.db"))
DEFAULT_USER = os.environ.get("TMDB_REC_USER", "default")

# Catalog (TMDB) Configuration
TMDB_API_KEY = os.environ.get("TMDB_API_KEY", "")
TMDB_BASE_URL = os.environ.get("TMDB_BASE_URL", "https://api.themoviedb.org/3")
TMDB_LANGUAGE = "en-US"
HTTP_TIMEOUT = _get_float_env("TMDB_REC_HTTP_TIMEOUT", 10.0, min_val=0.5)  # Per-call timeout in seconds
DEFAULT_MAX_CONCURRENT = _get_int_env("TMDB_REC_MAX_CONCURRENT", 8, min_val=1)
WATCH_REGION = os.environ.get("TMDB_REC_REGION", "US")

# Retry and Rate Limiting
MAX_HTTP_RETRIES = 3
DEFAULT_RETRY_AFTER = 10  # Default wait time if Retry-After header missing
MAX_RETRY_AFTER = 60

# Vote count floors
MIN_VOTE_COUNT = 100
MIN_VOTE_COUNT_TOP_RATED = 500
MIN_VOTE_COUNT_NEW = 50
MIN_VOTE_COUNT_ANIME = 10  # Animated titles accumulate fewer votes

ANIMATION_GENRE_ID = 16
JAPANESE_LANGUAGE = "ja"
MAX_CATALOG_PAGES = 500  # TMDB pagination limit

# Movie cache
CACHE_DAYS = 30
CACHE_BATCH_SIZE = 5
MAX_CAST_STORED = 10
MAX_COMPANIES_STORED = 5

# Preference extraction
MAX_CAST_CONSIDERED = 5
MAX_COMPANIES_CONSIDERED = 3
MIN_PREFERRED_AVG_RATING = 2.5
MIN_KEYWORD_OCCURRENCES = 2
MAX_PREFERRED_KEYWORDS = 50
MIN_COMPANY_OCCURRENCES = 2
GENEROUS_POSITIVE_RATIO = 0.7
CRITICAL_POSITIVE_RATIO = 0.4

# Runtime buckets: (upper bound exclusive, label); the last bucket is open-ended
RUNTIME_BUCKETS = [
    (90, "short"),
    (120, "medium"),
    (150, "long"),
]
RUNTIME_BUCKET_OPEN = "epic"

# Weight Learning
MIN_RATINGS_FOR_LEARNING = 10
RECALC_THRESHOLD = 5
MIN_WEIGHT = 0.5
MAX_WEIGHT = 2.0
DEFAULT_WEIGHT = 1.0
DEBOUNCE_SECONDS = _get_float_env("TMDB_REC_DEBOUNCE_SECONDS", 5.0, min_val=0.0)
SIGNAL_TOP_N = 10
SIGNAL_MIN_LIKED = 3

# Heuristic thresholds for the consistency weights.
# Each table is evaluated in order; the first matching rule wins.
RUNTIME_MIN_SAMPLES = 3
RUNTIME_STDDEV_RULES = [
    ("lt", 15, 1.5),
    ("lt", 25, 1.2),
    ("gt", 40, 0.7),
]
ERA_MIN_SAMPLES = 5
ERA_DISTINCT_DECADE_RULES = [
    ("le", 2, 1.5),
    ("le", 3, 1.2),
    ("ge", 6, 0.8),
]
RECENCY_MIN_SAMPLES = 5
RECENCY_AVG_AGE_RULES = [
    ("lt", 5, 1.5),
    ("lt", 10, 1.2),
    ("gt", 30, 0.6),
    ("gt", 20, 0.8),
]

# Candidate aggregation
MAX_SIMILAR_SEEDS = 5
MAX_DISCOVER_GENRES = 3
MIN_CANDIDATES = 20
ENRICHMENT_LIMIT = 50
ENRICHMENT_BATCH_SIZE = 10

# Scorer component weights (sum to 100)
SCORING_WEIGHTS = {
    'genre': 40,
    'rating': 30,
    'vote_count': 20,
    'recency': 10,
}
VOTE_COUNT_SATURATION = 5000
HIGHLY_RATED_THRESHOLD = 7.5
RECENT_RELEASE_YEARS = 3
SEMI_RECENT_RELEASE_YEARS = 10
SEMI_RECENT_BONUS = 5
DISLIKED_GENRE_PENALTY = 0.5

# Affinity bonuses (applied on top of the base components)
DIRECTOR_BONUS_PER_FILM = 5
DIRECTOR_BONUS_CAP = 15
ACTOR_BONUS_PER_MATCH = 2
ACTOR_BONUS_CAP = 10
KEYWORD_BONUS_PER_MATCH = 2
KEYWORD_BONUS_CAP = 10

# Ranking tiers
TIER_1_MIN_SCORE = 70
TIER_2_MIN_SCORE = 50

# Interaction tracking
VALID_ACTIONS = ('viewed', 'skipped', 'rated', 'watchlisted', 'not_interested')
SHOWN_ACTIONS = ('viewed', 'skipped')
RECENTLY_SHOWN_DAYS = 7
RECENTLY_SHOWN_PENALTY = 0.3

# Discover feed
VALID_CATEGORIES = ('for_you', 'popular', 'new_releases', 'top_rated')
VALID_STYLES = ('all', 'movies', 'anime', 'cartoons')
NEW_RELEASE_LOOKBACK_DAYS = 182
NEW_RELEASE_CLIENT_LOOKBACK_DAYS = 90
DISCOVER_PAGE_SIZE = 20
FILTERED_REQUEST_LIMIT = 100
FOR_YOU_TOTAL_PAGES = 50

# Pagination
DEFAULT_PAGE = 1
DEFAULT_LIMIT = 20
MAX_LIMIT = 100

# Mood to genre ID mapping for mood-based recommendations
MOOD_GENRE_MAPPING = {
    'exciting': [28, 12, 53, 878],      # Action, Adventure, Thriller, Sci-Fi
    'relaxing': [35, 10751, 14],        # Comedy, Family, Fantasy
    'thoughtful': [18, 36, 99],         # Drama, History, Documentary
    'funny': [35, 10402],               # Comedy, Music
    'scary': [27, 53, 9648],            # Horror, Thriller, Mystery
    'romantic': [10749, 18],            # Romance, Drama
}

# TMDB genre ID to name mapping (fallback when the catalog is unavailable)
GENRE_NAMES = {
    28: 'Action',
    12: 'Adventure',
    16: 'Animation',
    35: 'Comedy',
    80: 'Crime',
    99: 'Documentary',
    18: 'Drama',
    10751: 'Family',
    14: 'Fantasy',
    36: 'History',
    27: 'Horror',
    10402: 'Music',
    9648: 'Mystery',
    10749: 'Romance',
    878: 'Science Fiction',
    10770: 'TV Movie',
    53: 'Thriller',
    10752: 'War',
    37: 'Western',
}
