from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from ..config import Config, get_api_key
from ..models import MovieMeta, Truth
from .extraction import ExtractionClient, ExtractionResult
from .generation import RoastGenerator
from .search import BraveSearchClient, EvidenceResult
from .tmdb import TmdbClient


class CatalogProvider(Protocol):
    def fetch_items(self, category: str) -> list[MovieMeta]: ...

    def fetch_movie_details(self, movie_id: int) -> MovieMeta: ...

    def fetch_watch_providers(self, movie_id: int, region: str | None = None) -> list[dict[str, Any]]: ...


class EvidenceProvider(Protocol):
    def search(self, meta: MovieMeta) -> EvidenceResult: ...


class ExtractionProvider(Protocol):
    def extract(self, evidence: dict[str, Any], meta: MovieMeta) -> ExtractionResult: ...


class GenerationProvider(Protocol):
    def generate(self, truth: Truth, meta: MovieMeta, recent: list[str]) -> dict[str, Any]: ...


@dataclass(frozen=True)
class Providers:
    catalog: CatalogProvider
    evidence: EvidenceProvider
    extraction: ExtractionProvider
    generation: GenerationProvider


def build_providers(config: Config) -> Providers:
    providers_cfg = config.providers
    catalog_cfg = config.catalog
    catalog = TmdbClient(
        get_api_key("tmdb"),
        region=catalog_cfg.region,
        timeout=providers_cfg.timeout_seconds,
        max_pages=catalog_cfg.now_playing_max_pages,
        window_min_days_ago=catalog_cfg.window_min_days_ago,
        window_max_days_ago=catalog_cfg.window_max_days_ago,
        excluded_genre_ids=catalog_cfg.excluded_genre_ids,
        user_agent=providers_cfg.user_agent,
    )
    evidence = BraveSearchClient(
        get_api_key("brave"),
        count=providers_cfg.search_result_count,
        country=providers_cfg.search_country,
        timeout=providers_cfg.timeout_seconds,
        cost_per_request=providers_cfg.pricing.search_cost_per_request,
    )
    extraction = ExtractionClient(
        get_api_key("xai"),
        model=providers_cfg.extraction_model,
        temperature=providers_cfg.extraction_temperature,
        max_tokens=providers_cfg.extraction_max_tokens,
        timeout=providers_cfg.extraction_timeout_seconds,
    )
    generation = RoastGenerator(
        get_api_key("anthropic"),
        model=providers_cfg.generation_model,
        temperature=providers_cfg.generation_temperature,
        max_tokens=providers_cfg.generation_max_tokens,
        timeout=providers_cfg.timeout_seconds,
    )
    return Providers(
        catalog=catalog,
        evidence=evidence,
        extraction=extraction,
        generation=generation,
    )


__all__ = [
    "BraveSearchClient",
    "EvidenceResult",
    "ExtractionClient",
    "ExtractionResult",
    "Providers",
    "RoastGenerator",
    "TmdbClient",
    "build_providers",
]
