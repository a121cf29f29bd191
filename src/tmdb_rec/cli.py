import argparse
import asyncio
import atexit
import functools
import json
import logging

from . import database
from .config import (
    DEFAULT_LIMIT,
    DEFAULT_USER,
    GENRE_NAMES,
    MOOD_GENRE_MAPPING,
    VALID_ACTIONS,
    VALID_CATEGORIES,
    VALID_STYLES,
    WATCH_REGION,
)
from .database import close_pool, init_db
from .engine import RecommendationService
from .errors import AlreadyExistsError, CatalogError, NotFoundError, TransactionError
from .models import Rating
from .movie_cache import cache_movie_details, refresh_stale_movies
from .profile import build_profile
from .tmdb import TMDBClient
from .weight_learning import WeightProfile

logger = logging.getLogger(__name__)

# Register cleanup on exit
atexit.register(close_pool)

RATING_CHOICES = [r.name.lower() for r in Rating]


def _validate_user(user: str | None) -> str:
    """Users are free-form ids; only blank values are rejected."""
    cleaned = (user or "").strip()
    if not cleaned:
        raise ValueError("User id must not be empty")
    return cleaned


def _run_with_service(args: argparse.Namespace, action):
    """
    Run `action(service)` inside one event loop with a shared catalog client.

    Pending weight recomputes are drained before the loop closes so ratings
    made by this command are reflected in the stored weights.
    """
    init_db()

    async def runner():
        async with TMDBClient() as catalog:
            service = RecommendationService(catalog)
            try:
                return await action(service)
            finally:
                await service.close()

    return asyncio.run(runner())


def _handle_errors(func):
    """Log expected failures as errors instead of dumping a traceback."""
    @functools.wraps(func)
    def wrapper(args: argparse.Namespace):
        try:
            return func(args)
        except (ValueError, NotFoundError, AlreadyExistsError) as e:
            logger.error(str(e))
        except (CatalogError, TransactionError) as e:
            logger.error(f"{func.__name__.removeprefix('cmd_')} failed: {e}")
    return wrapper


def _format_movie(data: dict) -> str:
    year = (data.get('release_date') or '')[:4] or '????'
    return f"{data.get('title')} ({year}) [tmdb:{data.get('id')}]"


@_handle_errors
def cmd_rate(args: argparse.Namespace) -> None:
    """Rate a movie (re-rating replaces the previous rating)."""
    user = _validate_user(args.user)
    event = _run_with_service(
        args, lambda s: s.rate_movie(user, args.tmdb_id, args.rating, watched=not args.unwatched)
    )
    logger.info(f"Rated {event.movie.title}: {event.rating.name}")


@_handle_errors
def cmd_unrate(args: argparse.Namespace) -> None:
    """Remove a rating."""
    user = _validate_user(args.user)
    _run_with_service(args, lambda s: s.remove_movie(user, args.tmdb_id))
    logger.info(f"Removed rating for {args.tmdb_id}")


@_handle_errors
def cmd_watchlist(args: argparse.Namespace) -> None:
    """List the watchlist."""
    user = _validate_user(args.user)
    init_db()
    entries = database.get_watchlist(user)
    if not entries:
        logger.info("Watchlist is empty.")
        return

    logger.info(f"\nWatchlist for {user} ({len(entries)} movies)")
    for entry in entries:
        title = entry.movie.title if entry.movie else f"tmdb:{entry.tmdb_id}"
        note = f" - {entry.note}" if entry.note else ""
        logger.info(f"  [{entry.priority.value:>6}] {title}{note}")


@_handle_errors
def cmd_watchlist_add(args: argparse.Namespace) -> None:
    """Add a movie to the watchlist."""
    user = _validate_user(args.user)
    entry = _run_with_service(
        args, lambda s: s.add_to_watchlist(user, args.tmdb_id, args.priority, args.note)
    )
    logger.info(f"Added {entry.movie.title} to watchlist ({entry.priority.value})")


@_handle_errors
def cmd_watchlist_remove(args: argparse.Namespace) -> None:
    """Remove a movie from the watchlist."""
    user = _validate_user(args.user)
    _run_with_service(args, lambda s: s.remove_from_watchlist(user, args.tmdb_id))
    logger.info(f"Removed {args.tmdb_id} from watchlist")


@_handle_errors
def cmd_mark_watched(args: argparse.Namespace) -> None:
    """Move a watchlist entry to the rated list."""
    user = _validate_user(args.user)
    _run_with_service(args, lambda s: s.mark_watched(user, args.tmdb_id, args.rating))
    logger.info(f"Marked {args.tmdb_id} as watched")


@_handle_errors
def cmd_profile(args: argparse.Namespace) -> None:
    """Show the preference profile derived from ratings."""
    user = _validate_user(args.user)
    init_db()
    history = database.get_rating_history(user)
    if not history:
        logger.error(f"No ratings for '{user}'. Run: tmdb-rec rate <tmdb_id> <rating>")
        return

    profile = build_profile(history)

    if args.json:
        logger.info(json.dumps(profile.to_dict(), indent=2))
        return

    dist = profile.rating_distribution
    logger.info(f"\nProfile for {user}")
    logger.info(f"  Ratings: {profile.total_rated_movies} ({profile.rating_style})")
    logger.info(
        f"  super_like={dist.super_like} like={dist.like} ok={dist.ok} "
        f"dislike={dist.dislike} not_interested={dist.not_interested}"
    )

    sections = [
        ("Top genres", profile.preferred_genres),
        ("Disliked genres", profile.disliked_genres),
        ("Top directors", profile.liked_directors),
        ("Top actors", profile.liked_actors),
        ("Collections", profile.liked_collections),
        ("Studios", profile.liked_companies),
    ]
    for title, prefs in sections:
        if not prefs:
            continue
        logger.info(f"\n{title}:")
        for p in prefs[:10]:
            logger.info(f"  {p.name}: {p.avg_rating:.2f} avg over {p.count} (confidence {p.confidence:.2f})")

    if profile.preferred_keywords:
        logger.info("\nKeywords: " + ", ".join(k.name for k in profile.preferred_keywords[:15]))

    if profile.preferred_eras:
        logger.info("\nEra preferences:")
        for era in profile.preferred_eras:
            bar = "#" * int(max(0, era.avg_rating * 2))
            logger.info(f"  {era.label}: {bar} ({era.avg_rating:.2f}, {era.count} films)")

    if profile.preferred_runtime:
        rt = profile.preferred_runtime
        logger.info(f"\nPreferred runtime: {rt.bucket} ({rt.avg_rating:.2f} avg over {rt.count})")


@_handle_errors
def cmd_weights(args: argparse.Namespace) -> None:
    """Show (or recompute) the learned preference weights."""
    user = _validate_user(args.user)

    if args.recalculate:
        weights = _run_with_service(args, lambda s: s.learner.recalculate(user))
    else:
        init_db()
        weights = WeightProfile.from_row(database.get_weight_profile(user))

    logger.info(f"\nLearned weights for {user}")
    for dim, value in weights.to_dict().items():
        if isinstance(value, float):
            logger.info(f"  {dim:<11} {value:.2f}")
    logger.info(f"  last calculated: {weights.last_calculated or 'never'}")


@_handle_errors
def cmd_recommend(args: argparse.Namespace) -> None:
    """Generate personalized recommendations."""
    user = _validate_user(args.user)
    recs = _run_with_service(
        args, lambda s: s.get_recommendations(user, limit=args.limit, page=args.page, mood=args.mood)
    )

    if args.json:
        logger.info(json.dumps([r.to_dict() for r in recs], indent=2))
        return

    if not recs:
        logger.info("No recommendations found.")
        return

    logger.info(f"\nTop {len(recs)} recommendations for {user}:\n")
    for i, rec in enumerate(recs, 1):
        logger.info(f"{i:2}. {_format_movie(rec.movie.to_dict())}  score={rec.score:.1f}")
        for reason in rec.reasons:
            logger.info(f"      - {reason}")


@_handle_errors
def cmd_discover(args: argparse.Namespace) -> None:
    """Browse a category with optional style and person/company filters."""
    user = _validate_user(args.user)
    feed = _run_with_service(
        args,
        lambda s: s.get_discover_feed(
            user,
            category=args.category,
            page=args.page,
            style=args.style,
            genre=args.genre,
            actor=args.actor,
            director=args.director,
            company=args.company,
        ),
    )
    data = feed.to_dict()

    if args.json:
        logger.info(json.dumps(data, indent=2))
        return

    logger.info(f"\n{feed.category} (style={args.style}) page {feed.page}/{feed.total_pages}\n")
    for movie in data['movies']:
        genres = ", ".join(GENRE_NAMES.get(g, str(g)) for g in movie.get('genre_ids', []))
        logger.info(f"  {_format_movie(movie)}  {movie.get('vote_average', 0):.1f}  {genres}")


@_handle_errors
def cmd_interaction(args: argparse.Namespace) -> None:
    """Record a feedback event against a shown recommendation."""
    user = _validate_user(args.user)
    _run_with_service(args, lambda s: s.record_interaction(user, args.tmdb_id, args.action))
    logger.info(f"Recorded {args.action} for {args.tmdb_id}")


@_handle_errors
def cmd_search(args: argparse.Namespace) -> None:
    """Search the catalog by title."""
    async def action(service: RecommendationService):
        return await service.catalog.search(args.query, args.page)

    page = _run_with_service(args, action)
    if not page.results:
        logger.info("No matches.")
        return
    for movie in page.results:
        logger.info(f"  {_format_movie(movie.to_dict())}  {movie.vote_average:.1f}")


@_handle_errors
def cmd_info(args: argparse.Namespace) -> None:
    """Show cached metadata, trailer and streaming providers for a movie."""
    async def action(service: RecommendationService):
        catalog = service.catalog
        record = await cache_movie_details(catalog, args.tmdb_id)
        trailer, providers = await asyncio.gather(
            catalog.get_trailer(args.tmdb_id),
            catalog.get_watch_providers(args.tmdb_id, args.region),
        )
        return record, trailer, providers

    record, trailer, providers = _run_with_service(args, action)
    logger.info(f"\n{record.title} ({record.release_year or '????'})")
    if record.director:
        logger.info(f"  Director: {record.director}")
    if record.genres:
        logger.info(f"  Genres: {', '.join(g.name for g in record.genres)}")
    if record.cast:
        logger.info(f"  Cast: {', '.join(c.name for c in record.cast[:5])}")
    if record.runtime:
        logger.info(f"  Runtime: {record.runtime} min")
    if record.vote_average is not None:
        logger.info(f"  Rating: {record.vote_average:.1f} ({record.vote_count or 0} votes)")
    if record.collection_name:
        logger.info(f"  Collection: {record.collection_name}")
    if trailer:
        logger.info(f"  Trailer: https://www.youtube.com/watch?v={trailer.get('key')}")
    if providers:
        flatrate = [p.get('provider_name') for p in providers.get('flatrate') or []]
        if flatrate:
            logger.info(f"  Streaming ({args.region}): {', '.join(flatrate)}")


@_handle_errors
def cmd_refresh_metadata(args: argparse.Namespace) -> None:
    """Refetch cached movies whose metadata is stale."""
    async def action(service: RecommendationService):
        return await refresh_stale_movies(service.catalog, limit=args.limit, show_progress=True)

    refreshed = _run_with_service(args, action)
    logger.info(f"Refreshed {refreshed} movies")


def cmd_stats(args: argparse.Namespace) -> None:
    """Show database statistics."""
    user = args.user or DEFAULT_USER
    init_db()
    stats = database.get_stats(user)

    logger.info(f"\nDatabase Statistics:")
    logger.info(f"  Cached movies: {stats['cached_movies']}")
    logger.info(f"  Rated ({user}): {stats['rated']}")
    logger.info(f"  Watchlisted: {stats['watchlisted']}")
    logger.info(f"  Interactions: {stats['interactions']}")

    if stats['by_rating']:
        logger.info(f"\nRatings by level:")
        for rating in sorted(Rating, reverse=True):
            logger.info(f"  {rating.name.lower():<15} {stats['by_rating'].get(rating.name, 0)}")


def main():
    parser = argparse.ArgumentParser(description="TMDB movie recommender")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--user", default=DEFAULT_USER, help="User id (default: $TMDB_REC_USER)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Ratings
    rate_parser = subparsers.add_parser("rate", help="Rate a movie")
    rate_parser.add_argument("tmdb_id", type=int, help="TMDB movie id")
    rate_parser.add_argument("rating", choices=RATING_CHOICES, help="Rating level")
    rate_parser.add_argument("--unwatched", action="store_true", help="Rate without marking as watched")
    rate_parser.set_defaults(func=cmd_rate)

    unrate_parser = subparsers.add_parser("unrate", help="Remove a rating")
    unrate_parser.add_argument("tmdb_id", type=int, help="TMDB movie id")
    unrate_parser.set_defaults(func=cmd_unrate)

    # Watchlist
    watchlist_parser = subparsers.add_parser("watchlist", help="Show watchlist")
    watchlist_parser.set_defaults(func=cmd_watchlist)

    watchlist_add_parser = subparsers.add_parser("watchlist-add", help="Add a movie to the watchlist")
    watchlist_add_parser.add_argument("tmdb_id", type=int, help="TMDB movie id")
    watchlist_add_parser.add_argument("--priority", choices=["low", "medium", "high"], default="medium")
    watchlist_add_parser.add_argument("--note", help="Free-text note")
    watchlist_add_parser.set_defaults(func=cmd_watchlist_add)

    watchlist_remove_parser = subparsers.add_parser("watchlist-remove", help="Remove a movie from the watchlist")
    watchlist_remove_parser.add_argument("tmdb_id", type=int, help="TMDB movie id")
    watchlist_remove_parser.set_defaults(func=cmd_watchlist_remove)

    mark_parser = subparsers.add_parser("mark-watched", help="Move a watchlist entry to rated")
    mark_parser.add_argument("tmdb_id", type=int, help="TMDB movie id")
    mark_parser.add_argument("rating", choices=[c for c in RATING_CHOICES if c != "not_interested"])
    mark_parser.set_defaults(func=cmd_mark_watched)

    # Profile and weights
    profile_parser = subparsers.add_parser("profile", help="Show preference profile")
    profile_parser.add_argument("--json", action="store_true", help="Output as JSON")
    profile_parser.set_defaults(func=cmd_profile)

    weights_parser = subparsers.add_parser("weights", help="Show learned preference weights")
    weights_parser.add_argument("--recalculate", action="store_true", help="Recompute from the full rating history")
    weights_parser.set_defaults(func=cmd_weights)

    # Recommendations
    recommend_parser = subparsers.add_parser("recommend", help="Get recommendations")
    recommend_parser.add_argument("--limit", type=int, default=DEFAULT_LIMIT, help="Number of recommendations")
    recommend_parser.add_argument("--page", type=int, default=1, help="Catalog page to draw candidates from")
    recommend_parser.add_argument("--mood", choices=sorted(MOOD_GENRE_MAPPING), help="Restrict to a mood's genres")
    recommend_parser.add_argument("--json", action="store_true", help="Output as JSON")
    recommend_parser.set_defaults(func=cmd_recommend)

    discover_parser = subparsers.add_parser("discover", help="Browse a category")
    discover_parser.add_argument("--category", choices=VALID_CATEGORIES, default="for_you")
    discover_parser.add_argument("--style", choices=VALID_STYLES, default="all")
    discover_parser.add_argument("--genre", type=int, help="TMDB genre id")
    discover_parser.add_argument("--actor", type=int, help="TMDB person id (cast)")
    discover_parser.add_argument("--director", type=int, help="TMDB person id (crew)")
    discover_parser.add_argument("--company", type=int, help="TMDB company id")
    discover_parser.add_argument("--page", type=int, default=1)
    discover_parser.add_argument("--json", action="store_true", help="Output as JSON")
    discover_parser.set_defaults(func=cmd_discover)

    interaction_parser = subparsers.add_parser("interaction", help="Record recommendation feedback")
    interaction_parser.add_argument("tmdb_id", type=int, help="TMDB movie id")
    interaction_parser.add_argument("action", choices=VALID_ACTIONS)
    interaction_parser.set_defaults(func=cmd_interaction)

    # Catalog
    search_parser = subparsers.add_parser("search", help="Search the catalog")
    search_parser.add_argument("query", help="Title to search for")
    search_parser.add_argument("--page", type=int, default=1)
    search_parser.set_defaults(func=cmd_search)

    info_parser = subparsers.add_parser("info", help="Show movie details, trailer and providers")
    info_parser.add_argument("tmdb_id", type=int, help="TMDB movie id")
    info_parser.add_argument("--region", default=WATCH_REGION, help="Watch-provider region")
    info_parser.set_defaults(func=cmd_info)

    # Maintenance
    refresh_meta_parser = subparsers.add_parser("refresh-metadata", help="Refresh stale cached movies")
    refresh_meta_parser.add_argument("--limit", type=int, help="Max movies to refresh")
    refresh_meta_parser.set_defaults(func=cmd_refresh_metadata)

    stats_parser = subparsers.add_parser("stats", help="Show database stats")
    stats_parser.set_defaults(func=cmd_stats)

    args = parser.parse_args()

    # Configure logging based on verbosity
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    args.func(args)
