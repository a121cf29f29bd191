import logging
import sys
from types import SimpleNamespace

import pytest

from tmdb_rec import cli
from tmdb_rec.engine import RecommendationService
from tmdb_rec.models import MovieRecord, Rating
from tmdb_rec.weight_learning import WeightLearner


def _run_cli(monkeypatch, argv, target, capture):
    monkeypatch.setattr(cli, target, lambda args: capture.append(args))
    monkeypatch.setattr(sys, "argv", argv)
    cli.main()


def test_main_dispatches_to_subcommand(monkeypatch):
    called = {}

    def fake_stats(args):
        called["command"] = args.command
        called["user"] = args.user

    monkeypatch.setattr(cli, "cmd_stats", fake_stats)
    monkeypatch.setattr(sys, "argv", ["prog", "--user", "alice", "stats"])

    cli.main()

    assert called == {"command": "stats", "user": "alice"}


def test_cli_parses_recommend_args(monkeypatch):
    called = []
    _run_cli(
        monkeypatch,
        ["prog", "recommend", "--limit", "5", "--page", "2", "--mood", "funny", "--json"],
        "cmd_recommend",
        called,
    )
    args = called[0]
    assert (args.limit, args.page, args.mood, args.json) == (5, 2, "funny", True)


def test_cli_parses_discover_args(monkeypatch):
    called = []
    _run_cli(
        monkeypatch,
        ["prog", "discover", "--category", "new_releases", "--style", "anime", "--genre", "16", "--director", "7"],
        "cmd_discover",
        called,
    )
    args = called[0]
    assert args.category == "new_releases"
    assert args.style == "anime"
    assert args.genre == 16
    assert args.director == 7
    assert args.actor is None


def test_cli_rejects_unknown_rating(monkeypatch):
    monkeypatch.setattr(sys, "argv", ["prog", "rate", "1", "love"])
    with pytest.raises(SystemExit):
        cli.main()


def test_mark_watched_choices_exclude_not_interested(monkeypatch):
    monkeypatch.setattr(sys, "argv", ["prog", "mark-watched", "1", "not_interested"])
    with pytest.raises(SystemExit):
        cli.main()


def test_validate_user():
    assert cli._validate_user("  alice ") == "alice"
    with pytest.raises(ValueError):
        cli._validate_user("   ")


class _CatalogContext:
    """Async context manager handing out a shared fake catalog."""

    def __init__(self, catalog):
        self.catalog = catalog

    async def __aenter__(self):
        return self.catalog

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


@pytest.fixture
def cli_catalog(fresh_db, fake_catalog, details, monkeypatch):
    catalog = fake_catalog(details={1: details(1, title="Heat")})
    monkeypatch.setattr(cli, "TMDBClient", lambda: _CatalogContext(catalog))
    monkeypatch.setattr(
        cli,
        "RecommendationService",
        lambda c: RecommendationService(c, learner=WeightLearner(debounce_seconds=0)),
    )
    return catalog


def test_cmd_rate_and_stats(cli_catalog, fresh_db, caplog):
    caplog.set_level(logging.INFO)

    cli.cmd_rate(SimpleNamespace(user="alice", tmdb_id=1, rating="like", unwatched=False))
    cli.cmd_stats(SimpleNamespace(user="alice"))

    assert fresh_db.get_rating("alice", 1).rating is Rating.LIKE
    assert "Rated Heat: LIKE" in caplog.text
    assert "Cached movies: 1" in caplog.text


def test_cmd_watchlist_flow(cli_catalog, fresh_db, caplog):
    caplog.set_level(logging.INFO)

    cli.cmd_watchlist_add(SimpleNamespace(user="alice", tmdb_id=1, priority="high", note="weekend"))
    cli.cmd_watchlist(SimpleNamespace(user="alice"))
    cli.cmd_mark_watched(SimpleNamespace(user="alice", tmdb_id=1, rating="super_like"))

    assert "[  HIGH] Heat - weekend" in caplog.text
    assert fresh_db.get_watchlist("alice") == []
    assert fresh_db.get_rating("alice", 1).rating is Rating.SUPER_LIKE


def test_expected_errors_are_logged(cli_catalog, caplog):
    caplog.set_level(logging.INFO)

    cli.cmd_unrate(SimpleNamespace(user="alice", tmdb_id=1))
    cli.cmd_rate(SimpleNamespace(user="alice", tmdb_id=404, rating="like", unwatched=False))

    assert "No rating for movie 1" in caplog.text
    assert "rate failed: HTTP 404" in caplog.text


def test_cmd_recommend_json(cli_catalog, listing, caplog):
    caplog.set_level(logging.INFO)
    cli_catalog.popular = [listing(5), listing(6)]

    cli.cmd_recommend(SimpleNamespace(user="alice", limit=10, page=1, mood=None, json=True))

    assert '"reasons"' in caplog.text
    assert '"id": 5' in caplog.text


def test_cmd_profile_without_ratings(cli_catalog, caplog):
    caplog.set_level(logging.INFO)

    cli.cmd_profile(SimpleNamespace(user="alice", json=False))

    assert "No ratings for 'alice'" in caplog.text


def test_cmd_weights_defaults(cli_catalog, caplog):
    caplog.set_level(logging.INFO)

    cli.cmd_weights(SimpleNamespace(user="alice", recalculate=False))

    assert "genre       1.00" in caplog.text
    assert "last calculated: never" in caplog.text


def test_cmd_info_without_catalog_rating(cli_catalog, fresh_db, caplog):
    caplog.set_level(logging.INFO)
    fresh_db.upsert_movie(MovieRecord(tmdb_id=2, title="Unrated Short", runtime=12))

    cli.cmd_info(SimpleNamespace(user="alice", tmdb_id=2, region="US"))

    assert "Unrated Short (????)" in caplog.text
    assert "Runtime: 12 min" in caplog.text
    assert "Rating:" not in caplog.text
    assert "info failed" not in caplog.text
