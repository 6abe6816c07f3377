from __future__ import annotations

import dataclasses
import threading

import pytest

from plotburn.config import default_config
from plotburn.errors import ProviderError, ProviderTimeout
from plotburn.models import MovieMeta
from plotburn.providers import EvidenceResult, ExtractionResult, Providers
from plotburn.storage import init_db


def make_roast(n: int = 1) -> dict[str, object]:
    return {
        "headline": f"Headline number {n} about a very confident movie",
        "overview": f"Overview {n}: a cop is possessed by a superstar and fights hackers.",
        "roast": f"Roast text {n}. The writers looked at physics and said not today.",
        "reception": {"bars": 6, "label": "Mixed Bag"},
        "chips": ["Logic Police", "Vibe Check", "Zero Physics"],
        "similar_movies": [
            "Movie A (2001) - ghost cop fights hackers with nostalgia",
            "Movie B (2002) - car swings like Tarzan across a canyon",
            "Movie C (2003) - teenager romance told entirely in text messages",
            "Movie D (2004) - superstar spirit takes over a small town",
        ],
        "shareable_caption": f"We all agreed cars can fly {n} #PlotBurn",
    }


def make_meta(movie_id: int, title: str | None = None, **fields) -> MovieMeta:
    return MovieMeta(
        id=movie_id,
        title=title or f"Movie {movie_id}",
        release_date=fields.pop("release_date", "2026-10-10"),
        popularity=fields.pop("popularity", 10.0),
        vote_average=fields.pop("vote_average", 6.5),
        vote_count=fields.pop("vote_count", 100),
        original_language=fields.pop("original_language", "ta"),
        language_name=fields.pop("language_name", "Tamil"),
        genres=fields.pop("genres", ["Action"]),
        **fields,
    )


EVIDENCE = {
    "results": [
        {
            "title": "Review",
            "description": "A wild ride",
            "extra_snippets": ["critics split"],
            "rating": "3/5",
        }
    ],
    "faq": [],
    "infobox": None,
}

EXTRACTION = {
    "title": "Movie (2026)",
    "plot": {"summary": "A cop is possessed by a superstar."},
    "reception": {
        "criticalConsensus": "Mixed",
        "audienceSentiment": "Loved it",
        "split": "Fans and critics disagree",
    },
    "ratings": [],
}


class FakeCatalog:
    def __init__(self) -> None:
        self.items: dict[str, list[MovieMeta]] = {}
        self.failing_categories: set[str] = set()
        self.details_calls = 0
        self.watch_calls = 0
        self.watch_error: Exception | None = None
        self.details_error: Exception | None = None

    def fetch_items(self, category: str) -> list[MovieMeta]:
        if category in self.failing_categories:
            raise ProviderTimeout(f"timeout fetching {category}")
        return list(self.items.get(category, []))

    def fetch_movie_details(self, movie_id: int) -> MovieMeta:
        self.details_calls += 1
        if self.details_error is not None:
            raise self.details_error
        return make_meta(movie_id)

    def fetch_watch_providers(self, movie_id: int, region: str | None = None) -> list[dict[str, object]]:
        self.watch_calls += 1
        if self.watch_error is not None:
            raise self.watch_error
        return [
            {
                "provider_id": 8,
                "provider_name": "Netflix",
                "logo_path": "/n.png",
                "type": "flatrate",
                "link": "https://example.com/watch",
            }
        ]


class FakeEvidence:
    def __init__(self) -> None:
        self.calls = 0
        self.error: Exception | None = None
        self.evidence = EVIDENCE

    def search(self, meta: MovieMeta) -> EvidenceResult:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return EvidenceResult(
            evidence=self.evidence,
            citations=["https://example.com/review"],
            cost=0.005,
            query=f"{meta.title} review",
        )


class FakeExtraction:
    def __init__(self) -> None:
        self.calls = 0
        self.error: Exception | None = None
        self.seen_evidence: list[object] = []

    def extract(self, evidence, meta: MovieMeta) -> ExtractionResult:
        self.calls += 1
        self.seen_evidence.append(evidence)
        if self.error is not None:
            raise self.error
        return ExtractionResult(
            content=dict(EXTRACTION),
            usage={"prompt_tokens": 1000, "completion_tokens": 500, "total_tokens": 1500},
            model="fake-extractor",
        )


class FakeGeneration:
    def __init__(self) -> None:
        self.calls = 0
        self.error: Exception | None = None
        self.failing_ids: set[int] = set()
        self.recent_seen: list[list[str]] = []
        self._lock = threading.Lock()

    def generate(self, truth, meta: MovieMeta, recent: list[str]) -> dict[str, object]:
        with self._lock:
            self.calls += 1
            n = self.calls
        self.recent_seen.append(list(recent))
        if self.error is not None:
            raise self.error
        if meta.id in self.failing_ids:
            raise ProviderError(f"generation exploded for {meta.id}")
        return make_roast(n)


@dataclasses.dataclass
class FakeProviders:
    catalog: FakeCatalog
    evidence: FakeEvidence
    extraction: FakeExtraction
    generation: FakeGeneration

    def bundle(self) -> Providers:
        return Providers(
            catalog=self.catalog,
            evidence=self.evidence,
            extraction=self.extraction,
            generation=self.generation,
        )


@pytest.fixture
def fakes() -> FakeProviders:
    return FakeProviders(FakeCatalog(), FakeEvidence(), FakeExtraction(), FakeGeneration())


@pytest.fixture
def providers(fakes) -> Providers:
    return fakes.bundle()


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    monkeypatch.delenv("PB_DB_URL", raising=False)
    monkeypatch.setenv("PB_DATA_DIR", str(tmp_path / "data"))
    return str(tmp_path / "state.sqlite3")


@pytest.fixture
def conn(db_path):
    connection = init_db(db_path)
    yield connection
    connection.close()


@pytest.fixture
def config(tmp_path):
    base = default_config()
    return dataclasses.replace(
        base,
        paths=dataclasses.replace(
            base.paths,
            data_dir=str(tmp_path / "data"),
            logs_dir=str(tmp_path / "data" / "logs"),
        ),
        queue=dataclasses.replace(base.queue, retry_delay_seconds=0, poll_interval_seconds=0),
    )
