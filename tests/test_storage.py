import sqlite3

import pytest

from conftest import make_meta, make_roast
from plotburn import storage
from plotburn.models import MovieMeta


def test_refresh_category_replaces_membership(conn):
    storage.refresh_category(conn, "popular", [make_meta(1), make_meta(2)])
    count = storage.refresh_category(conn, "popular", [make_meta(2), make_meta(3)])

    assert count == 2
    assert storage.list_category_movie_ids(conn, "popular") == {2, 3}
    assert storage.get_movie(conn, 1).categories == []


def test_failed_refresh_keeps_previous_membership(conn):
    storage.refresh_category(conn, "popular", [make_meta(1), make_meta(2)])
    broken = MovieMeta(id=9, title=None)

    with pytest.raises(sqlite3.IntegrityError):
        storage.refresh_category(conn, "popular", [make_meta(3), broken])

    assert storage.list_category_movie_ids(conn, "popular") == {1, 2}
    assert storage.get_movie(conn, 3) is None


def test_empty_refresh_clears_category(conn):
    storage.refresh_category(conn, "now_playing", [make_meta(1)])
    assert storage.refresh_category(conn, "now_playing", []) == 0
    assert storage.list_category_movie_ids(conn, "now_playing") == set()


def test_upsert_preserves_created_at(conn):
    storage.upsert_movie(conn, make_meta(1, title="Before"))
    created = storage.get_movie(conn, 1).created_at
    storage.upsert_movie(conn, make_meta(1, title="After"))

    movie = storage.get_movie(conn, 1)
    assert movie.title == "After"
    assert movie.created_at == created


def test_movie_in_two_categories(conn):
    storage.refresh_category(conn, "now_playing", [make_meta(1)])
    storage.refresh_category(conn, "popular", [make_meta(1)])
    assert storage.get_movie(conn, 1).categories == ["now_playing", "popular"]


def test_list_movies_by_category_pages(conn):
    storage.refresh_category(conn, "popular", [make_meta(i) for i in range(1, 6)])

    first, total = storage.list_movies_by_category(conn, "popular", limit=2, offset=0)
    second, _ = storage.list_movies_by_category(conn, "popular", limit=2, offset=2)

    assert total == 5
    assert len(first) == 2
    assert not {movie.id for movie in first} & {movie.id for movie in second}


def test_feed_joins_roast_and_truth(conn):
    storage.refresh_category(conn, "popular", [make_meta(1), make_meta(2)])
    storage.upsert_roast(conn, 1, make_roast())
    storage.insert_extraction(
        conn,
        1,
        source="brave-search-api",
        model="m",
        content={"title": "Movie 1"},
        evidence={"results": [{"title": "x"}]},
        citations=[],
        usage={},
        total_cost=0.0,
    )

    items, total = storage.list_feed(conn, "popular")

    assert total == 2
    by_id = {item["movie"].id: item for item in items}
    assert by_id[1]["roast"].roast["headline"] == make_roast()["headline"]
    assert by_id[1]["truth_source"] == "brave-search-api"
    assert by_id[2]["roast"] is None
    assert by_id[2]["truth_fetched_at"] is None


def test_streaming_providers_are_replaced_per_region(conn):
    storage.upsert_movie(conn, make_meta(1))
    row = {"provider_id": 8, "provider_name": "Netflix", "logo_path": None, "type": "flatrate", "link": None}
    storage.save_streaming_providers(conn, 1, "IN", [row])
    storage.save_streaming_providers(conn, 1, "IN", [dict(row, provider_id=9, provider_name="Prime")])
    storage.save_streaming_providers(conn, 1, "US", [row])

    saved = storage.list_streaming_providers(conn, 1)
    assert [(item["region"], item["provider_name"]) for item in saved] == [
        ("IN", "Prime"),
        ("US", "Netflix"),
    ]


def test_settings_round_trip(conn):
    assert storage.get_setting(conn, "missing", "fallback") == "fallback"
    storage.set_setting(conn, "feature", {"enabled": True})
    assert storage.get_setting(conn, "feature", None) == {"enabled": True}
