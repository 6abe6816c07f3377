from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

from ..errors import ProviderError
from ..models import MovieMeta
from ..utils import log_event, release_year
from .http import Transport, request_json
from .tmdb import language_name

SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
SOURCE = "brave-search-api"


@dataclass(frozen=True)
class EvidenceResult:
    evidence: dict[str, Any]
    citations: list[str]
    cost: float
    query: str
    source: str = SOURCE


def build_query(meta: MovieMeta) -> str:
    lang = meta.language_name or language_name(meta.original_language)
    return (
        f"{meta.title} {release_year(meta.release_date)} {lang} "
        "movie plot summary review rating audience verdict"
    )


class BraveSearchClient:
    """Evidence provider backed by the Brave web search API."""

    def __init__(
        self,
        api_key: str | None,
        *,
        count: int = 20,
        country: str = "IN",
        timeout: float = 30,
        cost_per_request: float = 0.0,
        transport: Transport = request_json,
        logger: logging.Logger | None = None,
    ) -> None:
        self.api_key = api_key
        self.count = count
        self.country = country
        self.timeout = timeout
        self.cost_per_request = cost_per_request
        self._transport = transport
        self._logger = logger or logging.getLogger("plotburn.providers.search")

    def search(self, meta: MovieMeta) -> EvidenceResult:
        if not self.api_key:
            raise ProviderError("missing_api_key: brave")
        query = build_query(meta)
        started = time.monotonic()
        data = self._transport(
            "GET",
            SEARCH_URL,
            headers={"X-Subscription-Token": self.api_key, "Accept-Encoding": "identity"},
            params={
                "q": query,
                "extra_snippets": "true",
                "count": self.count,
                "country": self.country,
                "safesearch": "off",
            },
            timeout=self.timeout,
        )
        web_results = (data.get("web") or {}).get("results") or []
        faq_results = (data.get("faq") or {}).get("results") or []
        evidence = {
            "results": [
                {
                    "title": item.get("title"),
                    "description": item.get("description"),
                    "extra_snippets": item.get("extra_snippets"),
                    "rating": (item.get("movie") or {}).get("rating"),
                }
                for item in web_results
                if isinstance(item, dict)
            ],
            "faq": [
                {"question": item.get("question"), "answer": item.get("answer")}
                for item in faq_results
                if isinstance(item, dict)
            ],
            "infobox": data.get("infobox"),
        }
        citations = [item["url"] for item in web_results if isinstance(item, dict) and item.get("url")]
        log_event(
            self._logger,
            logging.INFO,
            "search_complete",
            movie_id=meta.id,
            results=len(evidence["results"]),
            has_faq=bool(evidence["faq"]),
            has_infobox=bool(evidence["infobox"]),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return EvidenceResult(
            evidence=evidence,
            citations=citations,
            cost=self.cost_per_request,
            query=query,
        )
