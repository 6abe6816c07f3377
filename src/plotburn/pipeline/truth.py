from __future__ import annotations

import logging
from typing import Any

from .. import storage
from ..config import PricingConfig
from ..context import RunContext
from ..db import safe_rollback
from ..errors import (
    EvidenceFetchFailure,
    ExtractionFailure,
    PersistenceFailure,
    ProviderError,
)
from ..models import Extraction, MovieMeta, Truth
from ..providers import Providers
from ..schemas import evidence_is_usable, extraction_is_usable
from ..utils import json_dumps

EVIDENCE_ONLY_MODEL = "none"


def get_or_create_truth(
    conn: Any,
    movie_id: int,
    meta: MovieMeta,
    providers: Providers,
    ctx: RunContext | None = None,
    *,
    pricing: PricingConfig | None = None,
) -> Truth:
    """Return the research record for ``movie_id``, calling providers only for missing parts.

    A stored record whose evidence and extraction both pass the shape checks is
    returned as-is. Stored evidence with an unusable extraction is reused and
    only the extraction provider is called. A usable extraction whose evidence
    is unusable keeps its content and only the search is repeated. Anything
    else starts from search.
    Exactly one row is appended whenever a provider was called.
    """
    ctx = ctx or RunContext(prefix="truth")
    latest = storage.get_latest_extraction(conn, movie_id)
    has_evidence = latest is not None and evidence_is_usable(latest.evidence)
    has_content = latest is not None and extraction_is_usable(latest.content)

    if latest is not None and has_evidence and has_content:
        ctx.event("truth_cache_hit", movie_id=movie_id, extraction_id=latest.id)
        return _truth_from_extraction(latest, from_cache=True)

    evidence_cost = 0.0
    if latest is not None and has_evidence:
        evidence = latest.evidence
        citations = list(latest.citations)
        source = latest.source
        ctx.event("truth_partial_resume", movie_id=movie_id, extraction_id=latest.id)
    else:
        try:
            result = providers.evidence.search(meta)
        except ProviderError as exc:
            ctx.event("evidence_fetch_failed", logging.ERROR, movie_id=movie_id, error=str(exc))
            raise EvidenceFetchFailure(f"evidence fetch failed for {movie_id}: {exc}") from exc
        if not evidence_is_usable(result.evidence):
            ctx.event("evidence_empty", logging.WARNING, movie_id=movie_id, query=result.query)
            raise EvidenceFetchFailure(f"no usable evidence for {movie_id}")
        evidence = result.evidence
        citations = list(result.citations)
        source = result.source
        evidence_cost = float(result.cost)
        ctx.event("evidence_fetched", movie_id=movie_id, citations=len(citations))

    if latest is not None and has_content:
        # stored extraction is still good, only the evidence was replaced
        extraction_id = _persist(
            conn,
            movie_id,
            source=source,
            model=latest.model,
            content=latest.content,
            evidence=evidence,
            citations=citations,
            usage=_stored_usage(latest),
            total_cost=evidence_cost,
        )
        stored = _read_back(conn, movie_id, extraction_id)
        ctx.event(
            "truth_evidence_refreshed",
            movie_id=movie_id,
            extraction_id=extraction_id,
            reused_extraction_id=latest.id,
            cost=round(evidence_cost, 6),
        )
        return _truth_from_extraction(stored, from_cache=False)

    try:
        extracted = providers.extraction.extract(evidence, meta)
    except (ExtractionFailure, ProviderError) as exc:
        if not has_evidence:
            # keep fresh evidence so the retry only pays for extraction
            _persist(
                conn,
                movie_id,
                source=source,
                model=EVIDENCE_ONLY_MODEL,
                content={},
                evidence=evidence,
                citations=citations,
                usage={},
                total_cost=evidence_cost,
            )
        ctx.event("extraction_failed", logging.ERROR, movie_id=movie_id, error=str(exc))
        if isinstance(exc, ExtractionFailure):
            raise
        raise ExtractionFailure(f"extraction failed for {movie_id}: {exc}") from exc

    total_cost = evidence_cost + _extraction_cost(extracted.usage, pricing)
    extraction_id = _persist(
        conn,
        movie_id,
        source=source,
        model=extracted.model,
        content=extracted.content,
        evidence=evidence,
        citations=citations,
        usage=extracted.usage,
        total_cost=total_cost,
    )
    stored = _read_back(conn, movie_id, extraction_id)
    ctx.event(
        "truth_created",
        movie_id=movie_id,
        extraction_id=extraction_id,
        total_tokens=extracted.usage.get("total_tokens", 0),
        cost=round(total_cost, 6),
    )
    return _truth_from_extraction(stored, from_cache=False)


def _persist(conn: Any, movie_id: int, **fields: Any) -> int:
    try:
        return storage.insert_extraction(conn, movie_id, **fields)
    except Exception as exc:  # noqa: BLE001
        safe_rollback(conn)
        raise PersistenceFailure(f"failed to store extraction for {movie_id}: {exc}") from exc


def _read_back(conn: Any, movie_id: int, extraction_id: int) -> Extraction:
    stored = storage.get_latest_extraction(conn, movie_id)
    if stored is None or stored.id != extraction_id:
        raise PersistenceFailure(f"extraction {extraction_id} not readable for {movie_id}")
    return stored


def _stored_usage(extraction: Extraction) -> dict[str, int]:
    return {
        "prompt_tokens": extraction.prompt_tokens or 0,
        "completion_tokens": extraction.completion_tokens or 0,
        "total_tokens": extraction.total_tokens or 0,
    }


def _extraction_cost(usage: dict[str, Any], pricing: PricingConfig | None) -> float:
    if pricing is None:
        return 0.0
    prompt = int(usage.get("prompt_tokens") or 0)
    completion = int(usage.get("completion_tokens") or 0)
    return (
        prompt * pricing.extraction_input_per_million
        + completion * pricing.extraction_output_per_million
    ) / 1_000_000


def _truth_from_extraction(extraction: Extraction, *, from_cache: bool) -> Truth:
    return Truth(
        source=extraction.source,
        model=extraction.model,
        fetched_at=extraction.fetched_at,
        citations=list(extraction.citations),
        content=json_dumps(extraction.content),
        usage=_stored_usage(extraction),
        cost=float(extraction.total_cost or 0.0),
        extraction_id=extraction.id,
        from_cache=from_cache,
    )
