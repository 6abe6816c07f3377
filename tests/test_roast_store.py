import pytest

from conftest import make_meta, make_roast
from plotburn import storage
from plotburn.errors import GenerationFailure, GenerationParseFailure
from plotburn.pipeline import generate_roast, get_or_create_truth, process_movie


def test_regenerating_keeps_exactly_one_active_roast(conn, providers):
    meta = make_meta(7)
    storage.upsert_movie(conn, meta)
    truth = get_or_create_truth(conn, 7, meta, providers)

    first = generate_roast(conn, 7, meta, truth, providers)
    second = generate_roast(conn, 7, meta, truth, providers)

    assert second != first
    assert storage.count_active_roasts(conn, 7) == 1
    active = storage.get_active_roast(conn, 7)
    assert active.id == second
    history = storage.get_roast_history(conn, 7)
    assert [item.id for item in history] == [second, first]
    assert [item.is_active for item in history] == [True, False]


def test_active_roast_is_per_language(conn):
    storage.upsert_movie(conn, make_meta(3))
    en_id = storage.upsert_roast(conn, 3, make_roast(1), "en")
    hi_id = storage.upsert_roast(conn, 3, make_roast(2), "hi")

    assert storage.get_active_roast(conn, 3, "en").id == en_id
    assert storage.get_active_roast(conn, 3, "hi").id == hi_id
    assert storage.has_active_roast(conn, 3, "ta") is False


def test_second_active_row_is_rejected_by_the_index(conn):
    storage.upsert_movie(conn, make_meta(4))
    storage.upsert_roast(conn, 4, make_roast(1))
    with pytest.raises(Exception) as excinfo:
        conn.execute(
            """
            INSERT INTO roasts (movie_id, roast_json, language, created_at, is_featured, is_active)
            VALUES (?, ?, ?, ?, 0, 1)
            """,
            (4, "{}", "en", "2026-01-01T00:00:00+00:00"),
        )
    assert "UNIQUE" in str(excinfo.value)


def test_recent_texts_feed_the_next_generation(conn, fakes, providers):
    for movie_id in (1, 2, 3):
        meta = make_meta(movie_id)
        storage.upsert_movie(conn, meta)
        truth = get_or_create_truth(conn, movie_id, meta, providers)
        generate_roast(conn, movie_id, meta, truth, providers, recent_limit=2)

    assert fakes.generation.recent_seen[0] == []
    assert len(fakes.generation.recent_seen[2]) == 2
    assert fakes.generation.recent_seen[2][-1] == make_roast(2)["roast"]
    assert storage.list_recent_roast_texts(conn, 5) == [make_roast(n)["roast"] for n in (1, 2, 3)]


def test_invalid_roast_shape_is_not_stored(conn, fakes, providers):
    meta = make_meta(5)
    storage.upsert_movie(conn, meta)
    truth = get_or_create_truth(conn, 5, meta, providers)

    def _bad(truth, meta, recent):
        roast = make_roast()
        roast["chips"] = ["only one"]
        return roast

    fakes.generation.generate = _bad
    with pytest.raises(GenerationParseFailure):
        generate_roast(conn, 5, meta, truth, providers)
    assert storage.get_active_roast(conn, 5) is None


def test_generation_provider_error_becomes_generation_failure(conn, fakes, providers):
    meta = make_meta(6)
    storage.upsert_movie(conn, meta)
    truth = get_or_create_truth(conn, 6, meta, providers)
    fakes.generation.failing_ids.add(6)

    with pytest.raises(GenerationFailure):
        generate_roast(conn, 6, meta, truth, providers)
    assert storage.get_roast_history(conn, 6) == []


def test_toggle_featured(conn):
    storage.upsert_movie(conn, make_meta(8))
    roast_id = storage.upsert_roast(conn, 8, make_roast())

    assert storage.toggle_roast_featured(conn, roast_id) is True
    assert storage.get_active_roast(conn, 8).is_featured is True
    storage.toggle_roast_featured(conn, roast_id)
    assert storage.get_active_roast(conn, 8).is_featured is False
    assert storage.toggle_roast_featured(conn, 9999) is False


def test_process_movie_runs_every_stage(conn, config, fakes, providers):
    result = process_movie(conn, config, 11, providers)

    assert result.truth_cached is False
    assert storage.get_active_roast(conn, 11).id == result.roast_id
    assert storage.get_movie(conn, 11).title == "Movie 11"
    streaming = storage.list_streaming_providers(conn, 11)
    assert streaming[0]["provider_name"] == "Netflix"
    assert streaming[0]["region"] == config.streaming.region


def test_streaming_failure_does_not_fail_the_movie(conn, config, fakes, providers):
    fakes.catalog.watch_error = RuntimeError("tmdb down")

    result = process_movie(conn, config, 12, providers)

    assert storage.get_active_roast(conn, 12).id == result.roast_id
    assert storage.list_streaming_providers(conn, 12) == []
