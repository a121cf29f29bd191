"""
Typed records exchanged between the store, the catalog client and the engine.

Catalog payloads arrive as provider-shaped JSON. They are validated into
these records at the boundary so the scoring pipeline never handles
untyped maps.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any

from .utils import decade_of, parse_release_year

logger = logging.getLogger(__name__)


class Rating(IntEnum):
    """Rating levels; the integer value doubles as the preference weight."""
    NOT_INTERESTED = 0
    DISLIKE = 1
    OK = 2
    LIKE = 3
    SUPER_LIKE = 4

    @property
    def weight(self) -> int:
        return int(self)

    @property
    def is_liked(self) -> bool:
        return self in (Rating.LIKE, Rating.SUPER_LIKE)

    @classmethod
    def parse(cls, value: Any) -> "Rating":
        """Accept a Rating, its name (case-insensitive) or its integer value."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip().upper().replace('-', '_').replace(' ', '_')
            if key in cls.__members__:
                return cls[key]
            raise ValueError(
                f"Invalid rating '{value}'. Must be one of: {', '.join(cls.__members__)}"
            )
        if isinstance(value, int) and not isinstance(value, bool):
            try:
                return cls(value)
            except ValueError:
                pass
        raise ValueError(f"Invalid rating value: {value!r}")


class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    @classmethod
    def parse(cls, value: Any, default: "Priority | None" = None) -> "Priority":
        if value is None:
            return default or cls.MEDIUM
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError("Priority must be a string")
        key = value.strip().upper()
        if key not in cls.__members__:
            raise ValueError(
                f"Invalid priority value. Must be one of: {', '.join(cls.__members__)}"
            )
        return cls[key]


@dataclass(frozen=True)
class Genre:
    id: int
    name: str


@dataclass(frozen=True)
class Keyword:
    id: int
    name: str


@dataclass(frozen=True)
class Company:
    id: int
    name: str


@dataclass(frozen=True)
class CastMember:
    id: int
    name: str
    character: str | None = None
    profile_path: str | None = None


def _valid_id(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def parse_entities(raw: Any, record_type: type) -> list:
    """
    Validate a provider-shaped list of {id, name, ...} dicts into typed records.

    Entries without a positive integer id or a string name are dropped
    (and logged) instead of leaking into the scoring pipeline.
    """
    if not raw:
        return []
    if not isinstance(raw, list):
        logger.warning(f"Expected list for {record_type.__name__}, got {type(raw).__name__}")
        return []

    parsed = []
    for item in raw:
        if isinstance(item, record_type):
            parsed.append(item)
            continue
        if not isinstance(item, dict) or not _valid_id(item.get('id')):
            logger.debug(f"Dropping malformed {record_type.__name__} entry: {item!r}")
            continue
        name = item.get('name')
        if not isinstance(name, str):
            name = 'Unknown'
        if record_type is CastMember:
            parsed.append(CastMember(
                id=item['id'],
                name=name,
                character=item.get('character'),
                profile_path=item.get('profile_path', item.get('profilePath')),
            ))
        else:
            parsed.append(record_type(id=item['id'], name=name))
    return parsed


def entities_to_json(entities: list) -> list[dict]:
    """Inverse of parse_entities, used when writing JSON columns."""
    out = []
    for e in entities:
        if isinstance(e, CastMember):
            out.append({
                'id': e.id,
                'name': e.name,
                'character': e.character,
                'profile_path': e.profile_path,
            })
        else:
            out.append({'id': e.id, 'name': e.name})
    return out


@dataclass
class MovieRecord:
    """Cached snapshot of a catalog movie."""
    tmdb_id: int
    title: str
    overview: str | None = None
    poster_path: str | None = None
    backdrop_path: str | None = None
    release_date: str | None = None
    genres: list[Genre] = field(default_factory=list)
    director: str | None = None
    director_id: int | None = None
    cast: list[CastMember] = field(default_factory=list)
    keywords: list[Keyword] = field(default_factory=list)
    collection_id: int | None = None
    collection_name: str | None = None
    production_companies: list[Company] = field(default_factory=list)
    runtime: int | None = None
    vote_average: float | None = None
    vote_count: int | None = None
    original_language: str | None = None
    last_updated: datetime | None = None

    @property
    def release_year(self) -> int | None:
        return parse_release_year(self.release_date)

    @property
    def decade(self) -> int | None:
        year = self.release_year
        return decade_of(year) if year is not None else None

    @property
    def genre_ids(self) -> list[int]:
        return [g.id for g in self.genres]


@dataclass
class RatingEvent:
    """One rating per (user, movie); re-rating overwrites."""
    user_id: str
    tmdb_id: int
    rating: Rating
    watched: bool = True
    rated_at: datetime | None = None
    movie: MovieRecord | None = None


@dataclass
class WatchlistEntry:
    user_id: str
    tmdb_id: int
    priority: Priority = Priority.MEDIUM
    note: str | None = None
    added_at: datetime | None = None
    movie: MovieRecord | None = None


@dataclass
class CatalogMovie:
    """A movie as returned by catalog listings (search, similar, discover)."""
    id: int
    title: str
    genre_ids: list[int] = field(default_factory=list)
    vote_average: float = 0.0
    vote_count: int = 0
    popularity: float = 0.0
    release_date: str | None = None
    original_language: str | None = None
    overview: str | None = None
    poster_path: str | None = None
    # Filled in by enrichment
    director: str | None = None
    director_id: int | None = None
    cast: list[CastMember] = field(default_factory=list)
    keywords: list[Keyword] = field(default_factory=list)
    runtime: int | None = None

    @property
    def release_year(self) -> int | None:
        return parse_release_year(self.release_date)

    @classmethod
    def from_tmdb(cls, payload: dict) -> "CatalogMovie":
        """Build from a catalog listing entry; detail payloads carry `genres` instead of `genre_ids`."""
        genre_ids = payload.get('genre_ids')
        if genre_ids is None:
            genre_ids = [g.id for g in parse_entities(payload.get('genres'), Genre)]
        return cls(
            id=int(payload['id']),
            title=payload.get('title') or payload.get('name') or '',
            genre_ids=[g for g in genre_ids if _valid_id(g)],
            vote_average=float(payload.get('vote_average') or 0.0),
            vote_count=int(payload.get('vote_count') or 0),
            popularity=float(payload.get('popularity') or 0.0),
            release_date=payload.get('release_date') or None,
            original_language=payload.get('original_language'),
            overview=payload.get('overview'),
            poster_path=payload.get('poster_path'),
        )

    @classmethod
    def from_record(cls, record: MovieRecord) -> "CatalogMovie":
        return cls(
            id=record.tmdb_id,
            title=record.title,
            genre_ids=record.genre_ids,
            vote_average=record.vote_average or 0.0,
            vote_count=record.vote_count or 0,
            release_date=record.release_date,
            original_language=record.original_language,
            overview=record.overview,
            poster_path=record.poster_path,
            director=record.director,
            director_id=record.director_id,
            cast=list(record.cast),
            keywords=list(record.keywords),
            runtime=record.runtime,
        )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'title': self.title,
            'genre_ids': self.genre_ids,
            'vote_average': self.vote_average,
            'vote_count': self.vote_count,
            'popularity': self.popularity,
            'release_date': self.release_date,
            'original_language': self.original_language,
            'director': self.director,
        }


@dataclass
class DiscoverPage:
    results: list[CatalogMovie]
    total_pages: int = 1
    page: int = 1
