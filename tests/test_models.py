import pytest

from tmdb_rec.models import (
    CastMember,
    CatalogMovie,
    Genre,
    MovieRecord,
    Priority,
    Rating,
    entities_to_json,
    parse_entities,
)


def test_rating_parse_accepts_names_and_values():
    assert Rating.parse("super_like") is Rating.SUPER_LIKE
    assert Rating.parse("Super-Like") is Rating.SUPER_LIKE
    assert Rating.parse("not interested") is Rating.NOT_INTERESTED
    assert Rating.parse(3) is Rating.LIKE
    assert Rating.parse(Rating.OK) is Rating.OK


@pytest.mark.parametrize("value", ["LOVE", 7, -1, True, None, 2.0])
def test_rating_parse_rejects_unknown(value):
    with pytest.raises(ValueError):
        Rating.parse(value)


def test_rating_weights_and_liked():
    assert [r.weight for r in Rating] == [0, 1, 2, 3, 4]
    assert {r for r in Rating if r.is_liked} == {Rating.LIKE, Rating.SUPER_LIKE}


def test_priority_parse_defaults_and_validation():
    assert Priority.parse(None) is Priority.MEDIUM
    assert Priority.parse("high") is Priority.HIGH
    with pytest.raises(ValueError):
        Priority.parse("urgent")
    with pytest.raises(ValueError):
        Priority.parse(3)


def test_parse_entities_drops_malformed_entries():
    raw = [
        {"id": 18, "name": "Drama"},
        {"id": "27", "name": "Horror"},
        {"id": 0, "name": "Zero"},
        {"id": True, "name": "Bool"},
        {"name": "No id"},
        {"id": 35, "name": None},
        "garbage",
    ]

    genres = parse_entities(raw, Genre)

    assert genres == [Genre(18, "Drama"), Genre(35, "Unknown")]


def test_parse_entities_non_list_payload():
    assert parse_entities({"id": 1}, Genre) == []
    assert parse_entities(None, Genre) == []


def test_cast_members_keep_character_and_roundtrip_json():
    cast = parse_entities([{"id": 5, "name": "Lead", "character": "Hero", "profile_path": "/p.jpg"}], CastMember)

    assert cast[0].character == "Hero"
    assert entities_to_json(cast) == [{"id": 5, "name": "Lead", "character": "Hero", "profile_path": "/p.jpg"}]


def test_movie_record_derived_fields():
    record = MovieRecord(
        tmdb_id=1,
        title="Old One",
        release_date="1987-03-01",
        genres=[Genre(18, "Drama"), Genre(80, "Crime")],
    )

    assert record.release_year == 1987
    assert record.decade == 1980
    assert record.genre_ids == [18, 80]
    assert MovieRecord(tmdb_id=2, title="Undated").decade is None


def test_catalog_movie_from_detail_payload_uses_genres():
    movie = CatalogMovie.from_tmdb({
        "id": 9,
        "title": "Detail",
        "genres": [{"id": 16, "name": "Animation"}],
        "vote_average": None,
        "release_date": "",
    })

    assert movie.genre_ids == [16]
    assert movie.vote_average == 0.0
    assert movie.release_date is None
    assert movie.release_year is None
