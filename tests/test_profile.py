from tmdb_rec.models import CastMember, Company, Genre, Keyword, MovieRecord, Rating, RatingEvent
from tmdb_rec.profile import RatingDistribution, build_profile, rating_style, runtime_bucket

DRAMA = Genre(18, "Drama")
HORROR = Genre(27, "Horror")
COMEDY = Genre(35, "Comedy")


def _event(tmdb_id, rating, genres=(DRAMA,), **movie_fields):
    movie = MovieRecord(tmdb_id=tmdb_id, title=f"Movie {tmdb_id}", genres=list(genres), **movie_fields)
    return RatingEvent(user_id="alice", tmdb_id=tmdb_id, rating=rating, movie=movie)


def test_empty_history_yields_empty_profile():
    profile = build_profile([])

    assert profile.total_rated_movies == 0
    assert profile.preferred_genres == []
    assert profile.disliked_genres == []
    assert profile.preferred_runtime is None
    assert profile.rating_style == "balanced"


def test_preferred_genres_ranked_by_avg_times_confidence():
    history = [
        _event(1, Rating.SUPER_LIKE, genres=(DRAMA,)),
        _event(2, Rating.LIKE, genres=(DRAMA, COMEDY)),
        _event(3, Rating.SUPER_LIKE, genres=(COMEDY,)),
        _event(4, Rating.OK, genres=(HORROR,)),
    ]

    profile = build_profile(history)

    names = [g.name for g in profile.preferred_genres]
    # Drama and Comedy both average 3.5 over 2 movies; Horror has a 2.0 average (< 2.5)
    assert set(names) == {"Drama", "Comedy"}
    drama = profile.preferred_genres[0]
    assert drama.count == 2
    assert drama.avg_rating == 3.5
    assert drama.confidence == 0.5
    assert drama.consistency == 0.5


def test_not_interested_excluded_from_positive_aggregation():
    history = [
        _event(1, Rating.NOT_INTERESTED, genres=(HORROR,), director="Someone"),
        _event(2, Rating.LIKE, genres=(DRAMA,)),
    ]

    profile = build_profile(history)

    assert profile.liked_directors == []
    assert [g.name for g in profile.preferred_genres] == ["Drama"]
    assert profile.rating_distribution.not_interested == 1
    assert profile.total_rated_movies == 2


def test_disliked_genre_requires_more_negative_than_positive():
    history = [
        _event(1, Rating.DISLIKE, genres=(HORROR,)),
        _event(2, Rating.NOT_INTERESTED, genres=(HORROR,)),
        _event(3, Rating.DISLIKE, genres=(DRAMA,)),
        _event(4, Rating.LIKE, genres=(DRAMA,)),
        _event(5, Rating.SUPER_LIKE, genres=(COMEDY,)),
    ]

    profile = build_profile(history)

    # Drama ties (1 negative vs 1 positive) so it is not disliked
    assert [g.name for g in profile.disliked_genres] == ["Horror"]
    assert profile.disliked_genres[0].count == 2
    assert profile.disliked_genre_ids == {27}


def test_directors_actors_and_companies():
    cast = [CastMember(100 + i, f"Actor {i}") for i in range(7)]
    studio = Company(1, "Studio One")
    history = [
        _event(1, Rating.SUPER_LIKE, director="Jane Doe", director_id=9, cast=cast, production_companies=[studio]),
        _event(2, Rating.LIKE, director="Jane Doe", cast=cast, production_companies=[studio]),
        _event(3, Rating.LIKE, director="Other", production_companies=[Company(2, "Studio Two")]),
    ]

    profile = build_profile(history)

    jane = profile.liked_directors[0]
    assert jane.name == "Jane Doe"
    assert jane.id == 9
    assert jane.count == 2
    # Only the top five billed actors count
    assert {a.id for a in profile.liked_actors} == {100, 101, 102, 103, 104}
    # Studios need two appearances
    assert [c.name for c in profile.liked_companies] == ["Studio One"]


def test_keywords_only_from_liked_movies_with_minimum_occurrences():
    heist = Keyword(1, "heist")
    twist = Keyword(2, "twist")
    history = [
        _event(1, Rating.LIKE, keywords=[heist, heist, twist]),
        _event(2, Rating.SUPER_LIKE, keywords=[heist]),
        _event(3, Rating.DISLIKE, keywords=[twist]),
    ]

    profile = build_profile(history)

    assert [(k.name, k.count) for k in profile.preferred_keywords] == [("heist", 2)]


def test_eras_runtime_and_collections():
    history = [
        _event(1, Rating.SUPER_LIKE, release_date="1994-01-01", runtime=85, collection_id=5, collection_name="Saga"),
        _event(2, Rating.LIKE, release_date="1999-01-01", runtime=88, collection_id=5, collection_name="Saga"),
        _event(3, Rating.OK, release_date="2012-01-01", runtime=160),
    ]

    profile = build_profile(history)

    assert profile.preferred_eras[0].label == "1990s"
    assert profile.preferred_eras[0].count == 2
    assert profile.preferred_runtime.bucket == "short"
    assert profile.liked_collections[0].name == "Saga"


def test_rating_style_thresholds():
    assert rating_style(RatingDistribution(super_like=4, like=4, ok=1)) == "generous"
    assert rating_style(RatingDistribution(like=1, dislike=2)) == "critical"
    assert rating_style(RatingDistribution(like=1, ok=1)) == "balanced"
    assert rating_style(RatingDistribution()) == "balanced"


def test_runtime_buckets():
    assert runtime_bucket(89) == "short"
    assert runtime_bucket(90) == "medium"
    assert runtime_bucket(149) == "long"
    assert runtime_bucket(150) == "epic"


def test_profile_is_deterministic_and_serializable():
    history = [_event(i, Rating.LIKE, genres=(DRAMA, COMEDY), release_date="2001-01-01") for i in range(1, 6)]

    first = build_profile(history).to_dict()
    second = build_profile(list(history)).to_dict()

    assert first == second
    assert first["rating_distribution"]["total"] == 5
    assert first["preferred_eras"][0]["label"] == "2000s"
