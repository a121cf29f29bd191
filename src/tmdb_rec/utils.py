"""Utility helpers for tmdb_rec."""

import logging
from datetime import datetime
from typing import Callable, Iterable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


def first_match(items: Iterable[T], predicates: list[Callable[[T], bool]]) -> T | None:
    """
    Return the first item satisfying the earliest predicate in priority order.

    Every predicate is tried against the whole collection before moving on
    to the next one, so predicate order expresses preference.

    Example:
        first_match(videos, [is_official_trailer, is_trailer, is_teaser])
    """
    materialized = list(items)
    for predicate in predicates:
        for item in materialized:
            if predicate(item):
                return item
    return None


def parse_release_year(release_date: str | None) -> int | None:
    """Extract the year from a 'YYYY-MM-DD' catalog date; None when absent or malformed."""
    if not release_date:
        return None
    try:
        return int(str(release_date).split('-')[0])
    except ValueError:
        return None


def parse_timestamp_naive(timestamp_str: str) -> datetime:
    """
    Parse ISO format timestamp string to naive datetime.

    Always returns a naive datetime so stored timestamps compare safely
    against datetime.now().
    """
    dt = datetime.fromisoformat(timestamp_str)
    return dt.replace(tzinfo=None) if dt.tzinfo else dt


def decade_of(year: int) -> int:
    return (year // 10) * 10
