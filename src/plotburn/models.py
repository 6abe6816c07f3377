from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class MovieMeta:
    id: int
    title: str
    release_date: str | None = None
    popularity: float | None = None
    vote_average: float | None = None
    vote_count: int | None = None
    poster_path: str | None = None
    overview: str = ""
    original_language: str | None = None
    language_name: str | None = None
    genres: list[str] = field(default_factory=list)
    genre_ids: list[int] = field(default_factory=list)
    runtime: int | None = None


@dataclass(frozen=True)
class Movie:
    id: int
    title: str
    release_date: str | None
    popularity: float | None
    vote_average: float | None
    vote_count: int | None
    poster_path: str | None
    language: str
    created_at: str
    updated_at: str
    categories: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Extraction:
    id: int
    movie_id: int
    source: str
    model: str
    fetched_at: str
    content: Any
    evidence: Any
    citations: list[str]
    prompt_tokens: int | None
    completion_tokens: int | None
    total_tokens: int | None
    total_cost: float | None


@dataclass(frozen=True)
class Truth:
    source: str
    model: str
    fetched_at: str
    citations: list[str]
    content: str
    usage: dict[str, Any]
    cost: float
    extraction_id: int | None = None
    from_cache: bool = False


@dataclass(frozen=True)
class Roast:
    id: int
    movie_id: int
    roast: dict[str, Any]
    language: str
    created_at: str
    is_featured: bool
    is_active: bool


@dataclass(frozen=True)
class JobRun:
    id: int
    job_name: str
    correlation_id: str | None
    started_at: str
    finished_at: str | None
    duration_ms: int | None
    status: str
    items_count: int
    item_titles: list[str]
    cursor: str | None
    error: str | None


@dataclass(frozen=True)
class QueueMessage:
    movie_id: int
    title: str
    correlation_id: str


@dataclass(frozen=True)
class Delivery:
    id: int
    message: QueueMessage
    attempts: int
    max_attempts: int
    leased_by: str = ""


@dataclass(frozen=True)
class ProcessResult:
    movie_id: int
    title: str
    truth_cached: bool
    roast_id: int
