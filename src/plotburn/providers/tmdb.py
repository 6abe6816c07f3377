from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any, Callable

from ..errors import ProviderError
from ..models import MovieMeta
from ..utils import log_event, utc_now
from .http import Transport, request_json

BASE_URL = "https://api.themoviedb.org/3"

NOW_PLAYING = "now_playing"
POPULAR = "popular"
CATEGORIES = (NOW_PLAYING, POPULAR)

LANGUAGE_NAMES = {
    "en": "English",
    "hi": "Hindi",
    "ta": "Tamil",
    "te": "Telugu",
    "ml": "Malayalam",
    "kn": "Kannada",
    "bn": "Bengali",
    "mr": "Marathi",
    "pa": "Punjabi",
    "gu": "Gujarati",
    "ko": "Korean",
    "ja": "Japanese",
    "zh": "Chinese",
    "fr": "French",
    "es": "Spanish",
    "de": "German",
    "it": "Italian",
}

WATCH_TYPES = ("flatrate", "free", "ads", "rent", "buy")


def language_name(code: str | None) -> str:
    if not code:
        return "Unknown"
    return LANGUAGE_NAMES.get(code.lower(), code)


class TmdbClient:
    """Catalog adapter for the TMDB v3 API."""

    def __init__(
        self,
        api_key: str | None,
        *,
        region: str = "IN",
        timeout: float = 30,
        max_pages: int = 10,
        window_min_days_ago: int = 10,
        window_max_days_ago: int = 3,
        excluded_genre_ids: list[int] | None = None,
        user_agent: str | None = None,
        transport: Transport = request_json,
        clock: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.api_key = api_key
        self.region = region
        self.timeout = timeout
        self.max_pages = max_pages
        self.window_min_days_ago = window_min_days_ago
        self.window_max_days_ago = window_max_days_ago
        self.excluded_genre_ids = set(excluded_genre_ids or [])
        self.user_agent = user_agent
        self._transport = transport
        self._clock = clock
        self._logger = logger or logging.getLogger("plotburn.providers.tmdb")

    def fetch_items(self, category: str) -> list[MovieMeta]:
        if category == NOW_PLAYING:
            return self._fetch_now_playing()
        if category == POPULAR:
            return self._fetch_popular()
        raise ProviderError(f"unknown_category: {category}")

    def fetch_movie_details(self, movie_id: int) -> MovieMeta:
        data = self._get(f"/movie/{movie_id}")
        spoken = data.get("spoken_languages") or []
        original = data.get("original_language")
        lang_name = None
        for item in spoken:
            if isinstance(item, dict) and item.get("iso_639_1") == original:
                lang_name = item.get("english_name") or item.get("name")
                break
        genres = [g.get("name") for g in data.get("genres") or [] if isinstance(g, dict)]
        return MovieMeta(
            id=int(data.get("id") or movie_id),
            title=str(data.get("title") or ""),
            release_date=data.get("release_date") or None,
            popularity=data.get("popularity"),
            vote_average=data.get("vote_average"),
            vote_count=data.get("vote_count"),
            poster_path=data.get("poster_path"),
            overview=data.get("overview") or "",
            original_language=original,
            language_name=lang_name or language_name(original),
            genres=[name for name in genres if name],
            genre_ids=[int(g["id"]) for g in data.get("genres") or [] if isinstance(g, dict) and "id" in g],
            runtime=data.get("runtime"),
        )

    def fetch_watch_providers(self, movie_id: int, region: str | None = None) -> list[dict[str, Any]]:
        data = self._get(f"/movie/{movie_id}/watch/providers")
        region = region or self.region
        entry = (data.get("results") or {}).get(region)
        if not isinstance(entry, dict):
            return []
        link = entry.get("link")
        rows: list[dict[str, Any]] = []
        for kind in WATCH_TYPES:
            for provider in entry.get(kind) or []:
                if not isinstance(provider, dict):
                    continue
                rows.append(
                    {
                        "provider_id": provider.get("provider_id"),
                        "provider_name": provider.get("provider_name"),
                        "logo_path": provider.get("logo_path"),
                        "type": kind,
                        "link": link,
                    }
                )
        return rows

    def in_release_window(self, release_date: str | None) -> bool:
        if not release_date:
            return False
        try:
            released = date.fromisoformat(release_date[:10])
        except ValueError:
            return False
        today = self._clock().date()
        earliest = today - timedelta(days=self.window_min_days_ago)
        latest = today - timedelta(days=self.window_max_days_ago)
        return earliest <= released <= latest

    def _fetch_now_playing(self) -> list[MovieMeta]:
        first = self._get("/movie/now_playing", page=1, region=self.region)
        results = list(first.get("results") or [])
        total_pages = min(int(first.get("total_pages") or 1), self.max_pages)
        for page in range(2, total_pages + 1):
            try:
                data = self._get("/movie/now_playing", page=page, region=self.region)
            except ProviderError as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "tmdb_page_failed",
                    category=NOW_PLAYING,
                    page=page,
                    error=str(exc),
                )
                continue
            results.extend(data.get("results") or [])
        kept = [
            item
            for item in results
            if self.in_release_window(item.get("release_date"))
            and not self.excluded_genre_ids.intersection(item.get("genre_ids") or [])
        ]
        log_event(
            self._logger,
            logging.INFO,
            "tmdb_now_playing_fetched",
            pages=total_pages,
            total=len(results),
            kept=len(kept),
        )
        return [_to_meta(item) for item in kept]

    def _fetch_popular(self) -> list[MovieMeta]:
        data = self._get("/movie/popular", page=1, region=self.region)
        results = list(data.get("results") or [])[:20]
        log_event(self._logger, logging.INFO, "tmdb_popular_fetched", count=len(results))
        return [_to_meta(item) for item in results]

    def _get(self, path: str, **params: Any) -> dict[str, Any]:
        if not self.api_key:
            raise ProviderError("missing_api_key: tmdb")
        params["api_key"] = self.api_key
        return self._transport(
            "GET",
            BASE_URL + path,
            params=params,
            timeout=self.timeout,
            user_agent=self.user_agent,
        )


def _to_meta(item: dict[str, Any]) -> MovieMeta:
    original = item.get("original_language")
    return MovieMeta(
        id=int(item["id"]),
        title=str(item.get("title") or ""),
        release_date=item.get("release_date") or None,
        popularity=item.get("popularity"),
        vote_average=item.get("vote_average"),
        vote_count=item.get("vote_count"),
        poster_path=item.get("poster_path"),
        overview=item.get("overview") or "",
        original_language=original,
        language_name=language_name(original),
        genre_ids=[int(value) for value in item.get("genre_ids") or []],
    )
