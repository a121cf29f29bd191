"""
Per-user learned multipliers for each preference dimension.

A dimension whose top signals show up in liked movies but not in disliked
ones is a good predictor for this user and gets boosted; one that fires
equally on both is damped. Multipliers live in [MIN_WEIGHT, MAX_WEIGHT]
and default to the neutral 1.0 when there is not enough history.

Recomputation is debounced per user and throttled by a rating counter, so
a burst of ratings costs one O(ratings) pass at most.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, fields
from datetime import date, datetime
from statistics import mean, pstdev
from typing import Any, Callable, Iterable

from . import database
from .config import (
    DEBOUNCE_SECONDS,
    DEFAULT_WEIGHT,
    ERA_DISTINCT_DECADE_RULES,
    ERA_MIN_SAMPLES,
    MAX_CAST_CONSIDERED,
    MAX_WEIGHT,
    MIN_RATINGS_FOR_LEARNING,
    MIN_WEIGHT,
    RECALC_THRESHOLD,
    RECENCY_AVG_AGE_RULES,
    RECENCY_MIN_SAMPLES,
    RUNTIME_MIN_SAMPLES,
    RUNTIME_STDDEV_RULES,
    SIGNAL_MIN_LIKED,
    SIGNAL_TOP_N,
)
from .models import MovieRecord, Rating, RatingEvent

logger = logging.getLogger(__name__)

DIMENSIONS = ('genre', 'director', 'actor', 'keyword', 'popularity', 'recency', 'runtime', 'era')


def _clamp_weight(value: float) -> float:
    return max(MIN_WEIGHT, min(MAX_WEIGHT, value))


@dataclass
class WeightProfile:
    """Container for the eight per-dimension multipliers."""

    genre: float = DEFAULT_WEIGHT
    director: float = DEFAULT_WEIGHT
    actor: float = DEFAULT_WEIGHT
    keyword: float = DEFAULT_WEIGHT
    popularity: float = DEFAULT_WEIGHT
    recency: float = DEFAULT_WEIGHT
    runtime: float = DEFAULT_WEIGHT
    era: float = DEFAULT_WEIGHT
    rating_count: int = 0
    last_calculated: datetime | None = None

    def __post_init__(self) -> None:
        for dim in DIMENSIONS:
            try:
                value = _clamp_weight(float(getattr(self, dim)))
            except (TypeError, ValueError):
                value = DEFAULT_WEIGHT
            setattr(self, dim, value)

    def factor(self, dimension: str) -> float:
        if dimension not in DIMENSIONS:
            raise ValueError(f"Unknown weight dimension: {dimension}")
        return getattr(self, dimension)

    def to_columns(self) -> dict[str, float]:
        return {f"{dim}_weight": getattr(self, dim) for dim in DIMENSIONS}

    def to_dict(self) -> dict[str, Any]:
        data = {dim: getattr(self, dim) for dim in DIMENSIONS}
        data['rating_count'] = self.rating_count
        data['last_calculated'] = self.last_calculated.isoformat() if self.last_calculated else None
        return data

    @classmethod
    def from_row(cls, row: dict[str, Any] | None) -> "WeightProfile":
        if not row:
            return cls()
        known = {f.name for f in fields(cls)}
        kwargs = {
            dim: row[f"{dim}_weight"]
            for dim in DIMENSIONS
            if row.get(f"{dim}_weight") is not None
        }
        kwargs['rating_count'] = int(row.get('rating_count') or 0)
        kwargs['last_calculated'] = row.get('last_calculated')
        return cls(**{k: v for k, v in kwargs.items() if k in known})


# --- Signal extraction ---------------------------------------------------

def _genre_signals(movie: MovieRecord) -> set:
    return {g.id for g in movie.genres}


def _director_signals(movie: MovieRecord) -> set:
    return {movie.director.lower()} if movie.director else set()


def _actor_signals(movie: MovieRecord) -> set:
    return {a.id for a in movie.cast[:MAX_CAST_CONSIDERED]}


def _keyword_signals(movie: MovieRecord) -> set:
    return {k.id for k in movie.keywords}


def signal_correlation(
    liked: list[MovieRecord],
    disliked: list[MovieRecord],
    extract: Callable[[MovieRecord], set],
) -> float:
    """
    Multiplier for one dimension from liked/disliked hit rates.

    The ten entities most frequent across liked movies are the "top
    signals"; the multiplier is 1 + (share of liked movies hitting one)
    - (share of disliked movies hitting one), clamped.
    """
    if len(liked) < SIGNAL_MIN_LIKED:
        return DEFAULT_WEIGHT

    counts: Counter = Counter()
    for movie in liked:
        counts.update(extract(movie))
    top_signals = {key for key, _ in counts.most_common(SIGNAL_TOP_N)}
    if not top_signals:
        return DEFAULT_WEIGHT

    def hit_rate(movies: list[MovieRecord]) -> float:
        if not movies:
            return 0.0
        return sum(1 for m in movies if extract(m) & top_signals) / len(movies)

    correlation = hit_rate(liked) - hit_rate(disliked)
    return _clamp_weight(DEFAULT_WEIGHT + correlation)


_OPS = {
    'lt': lambda a, b: a < b,
    'le': lambda a, b: a <= b,
    'gt': lambda a, b: a > b,
    'ge': lambda a, b: a >= b,
}


def apply_rules(value: float, rules: Iterable[tuple[str, float, float]]) -> float:
    """First (op, threshold, weight) rule that matches wins; otherwise neutral."""
    for op, threshold, weight in rules:
        if _OPS[op](value, threshold):
            return weight
    return DEFAULT_WEIGHT


def runtime_weight(liked: list[MovieRecord]) -> float:
    runtimes = [m.runtime for m in liked if m.runtime]
    if len(runtimes) < RUNTIME_MIN_SAMPLES:
        return DEFAULT_WEIGHT
    return apply_rules(pstdev(runtimes), RUNTIME_STDDEV_RULES)


def era_weight(liked: list[MovieRecord]) -> float:
    decades = [m.decade for m in liked if m.decade is not None]
    if len(decades) < ERA_MIN_SAMPLES:
        return DEFAULT_WEIGHT
    return apply_rules(len(set(decades)), ERA_DISTINCT_DECADE_RULES)


def recency_weight(liked: list[MovieRecord], current_year: int) -> float:
    ages = [current_year - m.release_year for m in liked if m.release_year is not None]
    if len(ages) < RECENCY_MIN_SAMPLES:
        return DEFAULT_WEIGHT
    return apply_rules(mean(ages), RECENCY_AVG_AGE_RULES)


def calculate_weights(history: list[RatingEvent], current_year: int | None = None) -> WeightProfile:
    """
    Derive a WeightProfile from a rating history.

    Returns neutral defaults below MIN_RATINGS_FOR_LEARNING ratings. The
    popularity multiplier stays neutral: catalog vote averages are cached
    but the correlation against them is not learned.
    """
    if len(history) < MIN_RATINGS_FOR_LEARNING:
        return WeightProfile()

    current_year = current_year or date.today().year
    liked = [e.movie for e in history if e.movie is not None and e.rating.is_liked]
    disliked = [e.movie for e in history if e.movie is not None and e.rating == Rating.DISLIKE]

    return WeightProfile(
        genre=signal_correlation(liked, disliked, _genre_signals),
        director=signal_correlation(liked, disliked, _director_signals),
        actor=signal_correlation(liked, disliked, _actor_signals),
        keyword=signal_correlation(liked, disliked, _keyword_signals),
        popularity=DEFAULT_WEIGHT,
        recency=recency_weight(liked, current_year),
        runtime=runtime_weight(liked),
        era=era_weight(liked),
    )


# --- Scheduling ----------------------------------------------------------

class WeightLearner:
    """
    Debounced, counter-throttled weight recomputation.

    Lifecycle of the per-user pending task:
    - created by the first on_new_rating() for that user
    - cancelled and replaced by every later on_new_rating() inside the window
    - removed from the map when its delay elapses, before any work runs
    shutdown() cancels whatever is still pending; drain() waits for it.
    """

    def __init__(self, debounce_seconds: float = DEBOUNCE_SECONDS):
        self.debounce_seconds = debounce_seconds
        self._pending: dict[str, asyncio.Task] = {}

    def has_pending(self, user_id: str) -> bool:
        return user_id in self._pending

    def on_new_rating(self, user_id: str) -> asyncio.Task:
        """Schedule a recompute for user_id, replacing any pending one. Must be called inside a running loop."""
        existing = self._pending.pop(user_id, None)
        if existing is not None and not existing.done():
            existing.cancel()
            logger.debug(f"Debounce reset for {user_id}")

        task = asyncio.get_running_loop().create_task(self._debounced(user_id))
        self._pending[user_id] = task
        return task

    async def _debounced(self, user_id: str) -> None:
        await asyncio.sleep(self.debounce_seconds)
        if self._pending.get(user_id) is asyncio.current_task():
            del self._pending[user_id]
        try:
            await self.process_rating_update(user_id)
        except Exception:
            # Background task: nobody awaits it, so log instead of losing the error
            logger.exception(f"Weight learning failed for {user_id}")

    async def process_rating_update(self, user_id: str) -> None:
        row = await asyncio.to_thread(database.get_weight_profile, user_id)

        if row is None:
            count = await asyncio.to_thread(database.get_rating_count, user_id)
            if count >= MIN_RATINGS_FOR_LEARNING:
                await self.recalculate(user_id)
            else:
                logger.debug(f"{user_id} has {count} ratings; weight learning not started")
            return

        new_count = int(row.get('rating_count') or 0) + 1
        if new_count >= RECALC_THRESHOLD:
            await self.recalculate(user_id)
        else:
            await asyncio.to_thread(database.update_weight_rating_count, user_id, new_count)

    async def recalculate(self, user_id: str) -> WeightProfile:
        """Full recomputation from the stored history; persists and resets the counter."""
        history = await asyncio.to_thread(database.get_rating_history, user_id)
        if len(history) < MIN_RATINGS_FOR_LEARNING:
            logger.info(f"Not enough ratings to learn weights for {user_id} ({len(history)})")
            # Stored weights are kept; only the counter restarts
            await asyncio.to_thread(database.update_weight_rating_count, user_id, 0)
            return WeightProfile()

        weights = calculate_weights(history)
        await asyncio.to_thread(database.save_weight_profile, user_id, weights.to_columns(), 0)
        weights.last_calculated = datetime.now()
        logger.info(f"Recalculated weights for {user_id}: {weights.to_columns()}")
        return weights

    async def get_weights(self, user_id: str) -> WeightProfile:
        row = await asyncio.to_thread(database.get_weight_profile, user_id)
        return WeightProfile.from_row(row)

    async def drain(self) -> None:
        """Wait for every pending recompute to finish."""
        while self._pending:
            tasks = list(self._pending.values())
            await asyncio.gather(*tasks, return_exceptions=True)
            for user_id, task in list(self._pending.items()):
                if task.done():
                    del self._pending[user_id]

    async def shutdown(self) -> None:
        """Cancel pending recomputes without running them."""
        tasks = list(self._pending.values())
        self._pending.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
