import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from statistics import mean, pstdev

from .config import (
    CRITICAL_POSITIVE_RATIO,
    GENEROUS_POSITIVE_RATIO,
    MAX_CAST_CONSIDERED,
    MAX_COMPANIES_CONSIDERED,
    MAX_PREFERRED_KEYWORDS,
    MIN_COMPANY_OCCURRENCES,
    MIN_KEYWORD_OCCURRENCES,
    MIN_PREFERRED_AVG_RATING,
    RUNTIME_BUCKET_OPEN,
    RUNTIME_BUCKETS,
)
from .models import Rating, RatingEvent

logger = logging.getLogger(__name__)

NEGATIVE_RATINGS = (Rating.DISLIKE, Rating.NOT_INTERESTED)


@dataclass
class EntityPreference:
    """
    Aggregated signal for one genre, director, actor, collection or studio.

    confidence is the share of all rated movies touching this entity;
    consistency is the population std-dev of the rating weights (lower =
    steadier taste).
    """
    id: int | None
    name: str
    count: int
    avg_rating: float
    confidence: float
    consistency: float = 0.0

    @property
    def score(self) -> float:
        return self.avg_rating * self.confidence


@dataclass
class KeywordPreference:
    id: int
    name: str
    count: int


@dataclass
class EraPreference:
    decade: int
    count: int
    avg_rating: float

    @property
    def label(self) -> str:
        return f"{self.decade}s"


@dataclass
class RuntimePreference:
    bucket: str
    count: int
    avg_rating: float


@dataclass
class RatingDistribution:
    super_like: int = 0
    like: int = 0
    ok: int = 0
    dislike: int = 0
    not_interested: int = 0

    @property
    def total(self) -> int:
        return self.super_like + self.like + self.ok + self.dislike + self.not_interested

    def add(self, rating: Rating) -> None:
        attr = rating.name.lower()
        setattr(self, attr, getattr(self, attr) + 1)


@dataclass
class PreferenceProfile:
    """Multi-dimensional taste signals derived from a rating history."""
    preferred_genres: list[EntityPreference] = field(default_factory=list)
    disliked_genres: list[EntityPreference] = field(default_factory=list)
    liked_directors: list[EntityPreference] = field(default_factory=list)
    liked_actors: list[EntityPreference] = field(default_factory=list)
    preferred_keywords: list[KeywordPreference] = field(default_factory=list)
    liked_collections: list[EntityPreference] = field(default_factory=list)
    liked_companies: list[EntityPreference] = field(default_factory=list)
    preferred_eras: list[EraPreference] = field(default_factory=list)
    preferred_runtime: RuntimePreference | None = None
    rating_distribution: RatingDistribution = field(default_factory=RatingDistribution)
    rating_style: str = "balanced"
    total_rated_movies: int = 0

    @property
    def preferred_genre_ids(self) -> list[int]:
        return [g.id for g in self.preferred_genres]

    @property
    def disliked_genre_ids(self) -> set[int]:
        return {g.id for g in self.disliked_genres}

    def to_dict(self) -> dict:
        data = asdict(self)
        data['rating_distribution']['total'] = self.rating_distribution.total
        for era, raw in zip(self.preferred_eras, data['preferred_eras']):
            raw['label'] = era.label
        return data


def rating_style(distribution: RatingDistribution) -> str:
    """Classify a user as generous, balanced or critical from their share of positive ratings."""
    total = distribution.total
    if total == 0:
        return "balanced"
    positive_ratio = (distribution.super_like + distribution.like) / total
    if positive_ratio > GENEROUS_POSITIVE_RATIO:
        return "generous"
    if positive_ratio < CRITICAL_POSITIVE_RATIO:
        return "critical"
    return "balanced"


def runtime_bucket(runtime: int) -> str:
    for upper, label in RUNTIME_BUCKETS:
        if runtime < upper:
            return label
    return RUNTIME_BUCKET_OPEN


class _EntityAccumulator:
    """Collects rating weights per entity id, remembering the display name."""

    def __init__(self):
        self.names: dict = {}
        self.ids: dict = {}
        self.weights: dict[object, list[int]] = defaultdict(list)

    def add(self, key, name: str, weight: int, entity_id: int | None = None) -> None:
        self.weights[key].append(weight)
        self.names.setdefault(key, name)
        if entity_id and not self.ids.get(key):
            self.ids[key] = entity_id

    def preferences(self, total: int, min_count: int = 1) -> list[EntityPreference]:
        prefs = []
        for key, weights in self.weights.items():
            avg = mean(weights)
            if len(weights) < min_count or avg < MIN_PREFERRED_AVG_RATING:
                continue
            prefs.append(EntityPreference(
                id=self.ids.get(key, key if isinstance(key, int) else None),
                name=self.names[key],
                count=len(weights),
                avg_rating=avg,
                confidence=len(weights) / total if total else 0.0,
                consistency=pstdev(weights),
            ))
        prefs.sort(key=lambda p: p.score, reverse=True)
        return prefs


def _disliked_genres(history: list[RatingEvent], total: int) -> list[EntityPreference]:
    """
    Genres with strictly more negative than positive occurrences.

    A genre the user mostly likes is never reported as disliked, however
    many individual dislikes it collects.
    """
    negative: dict[int, int] = defaultdict(int)
    positive: dict[int, int] = defaultdict(int)
    names: dict[int, str] = {}

    for event in history:
        if event.movie is None:
            continue
        for genre in event.movie.genres:
            names.setdefault(genre.id, genre.name)
            if event.rating in NEGATIVE_RATINGS:
                negative[genre.id] += 1
            elif event.rating.is_liked:
                positive[genre.id] += 1

    disliked = [
        EntityPreference(
            id=gid,
            name=names[gid],
            count=count,
            avg_rating=float(Rating.DISLIKE),
            confidence=count / total if total else 0.0,
        )
        for gid, count in negative.items()
        if count > positive.get(gid, 0)
    ]
    disliked.sort(key=lambda g: g.count, reverse=True)
    return disliked


def build_profile(history: list[RatingEvent]) -> PreferenceProfile:
    """
    Aggregate a full rating history into a PreferenceProfile.

    Zero-weight ratings (NOT_INTERESTED) are left out of every positive
    aggregation but still count toward totals, the distribution and
    disliked-genre detection. Pure and deterministic: the same history
    always yields the same ranked lists.
    """
    total = len(history)
    distribution = RatingDistribution()
    for event in history:
        distribution.add(event.rating)

    genres = _EntityAccumulator()
    directors = _EntityAccumulator()
    actors = _EntityAccumulator()
    collections = _EntityAccumulator()
    companies = _EntityAccumulator()
    keyword_counts: dict[int, int] = defaultdict(int)
    keyword_names: dict[int, str] = {}
    era_weights: dict[int, list[int]] = defaultdict(list)
    runtime_weights: dict[str, list[int]] = defaultdict(list)

    for event in history:
        movie = event.movie
        weight = event.rating.weight
        if movie is None:
            continue

        if event.rating.is_liked:
            for kw_id in dict.fromkeys(k.id for k in movie.keywords):
                keyword_counts[kw_id] += 1
            for kw in movie.keywords:
                keyword_names.setdefault(kw.id, kw.name)

        if weight <= 0:
            continue

        for genre in movie.genres:
            genres.add(genre.id, genre.name, weight)
        if movie.director:
            # Keyed by name: older cache rows may lack the person id
            directors.add(movie.director, movie.director, weight, movie.director_id)
        for actor in movie.cast[:MAX_CAST_CONSIDERED]:
            actors.add(actor.id, actor.name, weight)
        if movie.collection_id and movie.collection_name:
            collections.add(movie.collection_id, movie.collection_name, weight)
        for company in movie.production_companies[:MAX_COMPANIES_CONSIDERED]:
            companies.add(company.id, company.name, weight)
        if movie.decade is not None:
            era_weights[movie.decade].append(weight)
        if movie.runtime:
            runtime_weights[runtime_bucket(movie.runtime)].append(weight)

    keywords = [
        KeywordPreference(id=kid, name=keyword_names[kid], count=count)
        for kid, count in keyword_counts.items()
        if count >= MIN_KEYWORD_OCCURRENCES
    ]
    keywords.sort(key=lambda k: k.count, reverse=True)

    eras = [
        EraPreference(decade=decade, count=len(w), avg_rating=mean(w))
        for decade, w in era_weights.items()
    ]
    eras.sort(key=lambda e: e.avg_rating, reverse=True)

    bucket_order = [label for _, label in RUNTIME_BUCKETS] + [RUNTIME_BUCKET_OPEN]
    runtimes = [
        RuntimePreference(bucket=b, count=len(runtime_weights[b]), avg_rating=mean(runtime_weights[b]))
        for b in bucket_order
        if runtime_weights.get(b)
    ]
    preferred_runtime = max(runtimes, key=lambda r: r.avg_rating) if runtimes else None

    profile = PreferenceProfile(
        preferred_genres=genres.preferences(total),
        disliked_genres=_disliked_genres(history, total),
        liked_directors=directors.preferences(total),
        liked_actors=actors.preferences(total),
        preferred_keywords=keywords[:MAX_PREFERRED_KEYWORDS],
        liked_collections=collections.preferences(total),
        liked_companies=companies.preferences(total, min_count=MIN_COMPANY_OCCURRENCES),
        preferred_eras=eras,
        preferred_runtime=preferred_runtime,
        rating_distribution=distribution,
        rating_style=rating_style(distribution),
        total_rated_movies=total,
    )
    logger.debug(
        f"Built profile from {total} ratings: {len(profile.preferred_genres)} preferred genres, "
        f"{len(profile.disliked_genres)} disliked"
    )
    return profile
