import json
from datetime import datetime, timezone

import pytest

from conftest import make_meta, make_roast
from plotburn.errors import ExtractionParseFailure, GenerationParseFailure, ProviderError
from plotburn.models import Truth
from plotburn.providers import BraveSearchClient, ExtractionClient, RoastGenerator, TmdbClient
from plotburn.providers.generation import build_user_prompt


class FakeTransport:
    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    def __call__(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        response = self.responses(url, kwargs) if callable(self.responses) else self.responses
        if isinstance(response, Exception):
            raise response
        return response


def _clock():
    return datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _now_playing_page(page):
    if page == 1:
        return {
            "total_pages": 3,
            "results": [
                {"id": 1, "title": "In Window", "release_date": "2026-10-12", "genre_ids": [28]},
                {"id": 2, "title": "Too New", "release_date": "2026-10-18", "genre_ids": [28]},
                {"id": 3, "title": "Documentary", "release_date": "2026-10-12", "genre_ids": [99]},
            ],
        }
    if page == 2:
        return ProviderError("http_error 500: page two")
    return {
        "total_pages": 3,
        "results": [
            {"id": 4, "title": "Edge", "release_date": "2026-10-09", "genre_ids": [], "original_language": "ta"},
            {"id": 5, "title": "Too Old", "release_date": "2026-10-01", "genre_ids": []},
        ],
    }


def test_now_playing_filters_window_and_genres():
    transport = FakeTransport(lambda url, kwargs: _now_playing_page(kwargs["params"]["page"]))
    client = TmdbClient(
        "key",
        excluded_genre_ids=[99, 10402],
        transport=transport,
        clock=_clock,
    )

    movies = client.fetch_items("now_playing")

    assert [movie.id for movie in movies] == [1, 4]
    assert movies[1].language_name == "Tamil"
    assert len(transport.calls) == 3
    assert transport.calls[0][2]["params"]["region"] == "IN"


def test_popular_is_capped_at_twenty():
    transport = FakeTransport({"results": [{"id": i, "title": f"M{i}"} for i in range(1, 30)]})
    client = TmdbClient("key", transport=transport, clock=_clock)

    movies = client.fetch_items("popular")

    assert len(movies) == 20
    assert movies[0].title == "M1"


def test_unknown_category_and_missing_key():
    client = TmdbClient("key", transport=FakeTransport({}), clock=_clock)
    with pytest.raises(ProviderError):
        client.fetch_items("upcoming")
    with pytest.raises(ProviderError):
        TmdbClient(None, transport=FakeTransport({})).fetch_movie_details(1)


def test_movie_details_and_watch_providers():
    def _responses(url, kwargs):
        if url.endswith("/watch/providers"):
            return {
                "results": {
                    "IN": {
                        "link": "https://tmdb.example/watch",
                        "flatrate": [{"provider_id": 8, "provider_name": "Netflix", "logo_path": "/n.png"}],
                        "rent": [{"provider_id": 2, "provider_name": "Apple TV", "logo_path": "/a.png"}],
                    }
                }
            }
        return {
            "id": 42,
            "title": "Details",
            "release_date": "2026-10-10",
            "original_language": "ml",
            "spoken_languages": [{"iso_639_1": "ml", "english_name": "Malayalam"}],
            "genres": [{"id": 28, "name": "Action"}, {"id": 35, "name": "Comedy"}],
            "runtime": 151,
        }

    client = TmdbClient("key", transport=FakeTransport(_responses), clock=_clock)

    meta = client.fetch_movie_details(42)
    assert meta.language_name == "Malayalam"
    assert meta.genres == ["Action", "Comedy"]
    assert meta.genre_ids == [28, 35]
    assert meta.runtime == 151

    rows = client.fetch_watch_providers(42)
    assert [(row["provider_name"], row["type"]) for row in rows] == [
        ("Netflix", "flatrate"),
        ("Apple TV", "rent"),
    ]
    assert rows[0]["link"] == "https://tmdb.example/watch"
    assert client.fetch_watch_providers(42, "US") == []


def test_search_maps_results_and_citations():
    transport = FakeTransport(
        {
            "web": {
                "results": [
                    {
                        "title": "Review",
                        "url": "https://example.com/r",
                        "description": "fun",
                        "extra_snippets": ["a"],
                        "movie": {"rating": "7/10"},
                    },
                    {"title": "No url"},
                ]
            },
            "faq": {"results": [{"question": "Is it good?", "answer": "Sort of"}]},
        }
    )
    client = BraveSearchClient("key", cost_per_request=0.005, transport=transport)

    result = client.search(make_meta(1, title="Leo", release_date="2023-10-19"))

    assert result.citations == ["https://example.com/r"]
    assert result.evidence["results"][0]["rating"] == "7/10"
    assert result.evidence["faq"][0]["answer"] == "Sort of"
    assert result.cost == 0.005
    assert result.query.startswith("Leo 2023 Tamil")
    headers = transport.calls[0][2]["headers"]
    assert headers["X-Subscription-Token"] == "key"


def _chat(content, usage=None):
    return {
        "choices": [{"message": {"content": content}}],
        "usage": usage or {"prompt_tokens": 100, "completion_tokens": 50, "total_tokens": 150},
    }


def test_extraction_accepts_fenced_json():
    transport = FakeTransport(_chat('```json\n{"title": "Leo (2023)", "plot": {"summary": "s"}}\n```'))
    client = ExtractionClient("key", model="grok", transport=transport)

    result = client.extract({"results": []}, make_meta(1))

    assert result.content["title"] == "Leo (2023)"
    assert result.usage == {"prompt_tokens": 100, "completion_tokens": 50, "total_tokens": 150}
    assert result.model == "grok"
    payload = transport.calls[0][2]["payload"]
    assert payload["messages"][0]["role"] == "system"
    assert transport.calls[0][2]["headers"]["Authorization"] == "Bearer key"


def test_extraction_rejects_prose():
    transport = FakeTransport(_chat('Here you go: {"title": "Leo"}'))
    client = ExtractionClient("key", model="grok", transport=transport)

    with pytest.raises(ExtractionParseFailure) as excinfo:
        client.extract({"results": []}, make_meta(1))
    assert excinfo.value.raw.startswith("Here you go")


def _truth():
    return Truth(
        source="brave-search-api",
        model="grok",
        fetched_at="2026-10-19T00:00:00+00:00",
        citations=[],
        content='{"title": "Leo"}',
        usage={},
        cost=0.0,
    )


def test_generation_returns_validated_roast():
    transport = FakeTransport({"content": [{"type": "text", "text": json.dumps(make_roast())}]})
    client = RoastGenerator("key", model="claude", transport=transport)

    roast = client.generate(_truth(), make_meta(1), ["old roast"])

    assert roast == make_roast()
    headers = transport.calls[0][2]["headers"]
    assert headers["x-api-key"] == "key"
    assert headers["anthropic-version"] == "2023-06-01"


def test_generation_rejects_invalid_shape():
    roast = make_roast()
    roast["reception"]["bars"] = 0
    transport = FakeTransport({"content": [{"type": "text", "text": json.dumps(roast)}]})
    client = RoastGenerator("key", model="claude", transport=transport)

    with pytest.raises(GenerationParseFailure):
        client.generate(_truth(), make_meta(1), [])


def test_user_prompt_includes_recent_roasts_only_when_present():
    with_recent = build_user_prompt(_truth(), make_meta(1), ["first", "second"])
    without = build_user_prompt(_truth(), make_meta(1), [])

    assert "<recent_roasts>" in with_recent
    assert "first\n\n---\n\nsecond" in with_recent
    assert "<recent_roasts>" not in without
    assert '{"title": "Leo"}' in without
