import logging
from dataclasses import dataclass, field
from datetime import date

from .config import (
    ACTOR_BONUS_CAP,
    ACTOR_BONUS_PER_MATCH,
    DIRECTOR_BONUS_CAP,
    DIRECTOR_BONUS_PER_FILM,
    DISLIKED_GENRE_PENALTY,
    HIGHLY_RATED_THRESHOLD,
    KEYWORD_BONUS_CAP,
    KEYWORD_BONUS_PER_MATCH,
    MAX_CAST_CONSIDERED,
    RECENT_RELEASE_YEARS,
    SCORING_WEIGHTS,
    SEMI_RECENT_BONUS,
    SEMI_RECENT_RELEASE_YEARS,
    VOTE_COUNT_SATURATION,
)
from .models import CatalogMovie
from .profile import PreferenceProfile
from .weight_learning import WeightProfile

logger = logging.getLogger(__name__)

FALLBACK_REASON = "Popular and well-rated"


@dataclass
class ScoredMovie:
    movie: CatalogMovie
    score: float
    reasons: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = self.movie.to_dict()
        data['score'] = round(self.score, 2)
        data['reasons'] = list(self.reasons)
        return data


def score_movie(
    movie: CatalogMovie,
    profile: PreferenceProfile,
    weights: WeightProfile | None = None,
    today: date | None = None,
) -> ScoredMovie:
    """
    Score one candidate against a preference profile.

    Components: genre match (40), catalog rating (30), vote-count
    confidence (20) and recency (10), plus director/actor/keyword
    affinity bonuses. Learned multipliers scale the matching component
    when a WeightProfile is given. Touching a disliked genre halves the
    whole score. Always returns at least one reason.
    """
    weights = weights or WeightProfile()
    today = today or date.today()
    score = 0.0
    reasons: list[str] = []

    # Genre match
    preferred_ids = profile.preferred_genre_ids
    matching = [gid for gid in movie.genre_ids if gid in set(preferred_ids)]
    if matching:
        genre_score = len(matching) / max(1, len(preferred_ids)) * SCORING_WEIGHTS['genre']
        score += genre_score * weights.genre
        names = [g.name for g in profile.preferred_genres if g.id in matching]
        reasons.append(f"Matches your favorite genres: {', '.join(names[:2])}")

    # Director affinity
    if movie.director and profile.liked_directors:
        director = movie.director.lower()
        match = next((d for d in profile.liked_directors if d.name.lower() == director), None)
        if match:
            bonus = min(match.count * DIRECTOR_BONUS_PER_FILM, DIRECTOR_BONUS_CAP)
            score += bonus * weights.director
            reasons.append(f"From {movie.director}")

    # Actor affinity
    if movie.cast and profile.liked_actors:
        liked_actor_ids = {a.id for a in profile.liked_actors}
        actors = [a for a in movie.cast[:MAX_CAST_CONSIDERED] if a.id in liked_actor_ids]
        if actors:
            bonus = min(len(actors) * ACTOR_BONUS_PER_MATCH, ACTOR_BONUS_CAP)
            score += bonus * weights.actor
            reasons.append(f"With {', '.join(a.name for a in actors[:2])}")

    # Keyword affinity
    if movie.keywords and profile.preferred_keywords:
        preferred_kw = {k.id for k in profile.preferred_keywords}
        kw_matches = sum(1 for k in movie.keywords if k.id in preferred_kw)
        if kw_matches:
            bonus = min(kw_matches * KEYWORD_BONUS_PER_MATCH, KEYWORD_BONUS_CAP)
            score += bonus * weights.keyword

    # Catalog rating
    score += (movie.vote_average / 10) * SCORING_WEIGHTS['rating'] * weights.popularity
    if movie.vote_average >= HIGHLY_RATED_THRESHOLD:
        reasons.append(f"Highly rated ({movie.vote_average:.1f}/10)")

    # Vote-count confidence, saturating
    score += min(movie.vote_count / VOTE_COUNT_SATURATION, 1) * SCORING_WEIGHTS['vote_count']

    # Recency
    year = movie.release_year
    if year is not None:
        age = today.year - year
        if age <= RECENT_RELEASE_YEARS:
            score += SCORING_WEIGHTS['recency'] * weights.recency
            reasons.append("Recent release")
        elif age <= SEMI_RECENT_RELEASE_YEARS:
            score += SEMI_RECENT_BONUS * weights.recency

    if profile.disliked_genre_ids.intersection(movie.genre_ids):
        score *= DISLIKED_GENRE_PENALTY

    if not reasons:
        reasons.append(FALLBACK_REASON)

    return ScoredMovie(movie=movie, score=score, reasons=reasons)


def score_candidates(
    candidates: list[CatalogMovie],
    profile: PreferenceProfile,
    weights: WeightProfile | None = None,
    today: date | None = None,
) -> list[ScoredMovie]:
    return [score_movie(m, profile, weights, today) for m in candidates]
