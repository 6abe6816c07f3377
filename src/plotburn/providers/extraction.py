from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any

from ..errors import ExtractionParseFailure, ProviderError
from ..models import MovieMeta
from ..schemas import StructuredOutputError, parse_extraction
from ..utils import log_event, release_year
from .http import Transport, request_json

CHAT_URL = "https://api.x.ai/v1/chat/completions"

SYSTEM_PROMPT = """You extract movie reception data from web search results.
Return one JSON object and nothing else, with these keys:
title, plot {summary, absurdities, plotHoles, genreConfusion},
characterArcs {lead, supporting, wastedPotential},
reception {criticalConsensus, audienceSentiment, split},
ratings [{source, rating, criticName, quote, type}],
positives, negatives, memorableQuotes [{type, source, quote}],
comparisons [{comparedTo, reason, source}],
controversy {summary, details, impact}, satiricalAngles,
boxOffice {verdict, context}, miscs {director, runtime, release, certificate}.
Use "N/A" when a value is missing. Never invent ratings or quotes."""


@dataclass(frozen=True)
class ExtractionResult:
    content: dict[str, Any]
    usage: dict[str, int]
    model: str


class ExtractionClient:
    """Structured extraction over an OpenAI-compatible chat completions API."""

    def __init__(
        self,
        api_key: str | None,
        *,
        model: str,
        temperature: float = 0.3,
        max_tokens: int = 10000,
        timeout: float = 60,
        url: str = CHAT_URL,
        transport: Transport = request_json,
        logger: logging.Logger | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.url = url
        self._transport = transport
        self._logger = logger or logging.getLogger("plotburn.providers.extraction")

    def extract(self, evidence: dict[str, Any], meta: MovieMeta) -> ExtractionResult:
        if not self.api_key:
            raise ProviderError("missing_api_key: xai")
        user = (
            f'Extract movie information from this search response for "{meta.title}" '
            f"({release_year(meta.release_date)}):\n\n{json.dumps(evidence, indent=2)}"
        )
        payload = {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": user},
            ],
        }
        started = time.monotonic()
        response = self._transport(
            "POST",
            self.url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            payload=payload,
            timeout=self.timeout,
        )
        choices = response.get("choices") or []
        if not choices:
            raise ExtractionParseFailure("extraction_missing_choices", raw=json.dumps(response)[:2000])
        raw = (choices[0].get("message") or {}).get("content") or ""
        usage_raw = response.get("usage") or {}
        usage = {
            "prompt_tokens": int(usage_raw.get("prompt_tokens") or 0),
            "completion_tokens": int(usage_raw.get("completion_tokens") or 0),
            "total_tokens": int(usage_raw.get("total_tokens") or 0),
        }
        try:
            content = parse_extraction(raw)
        except StructuredOutputError as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "extraction_parse_failed",
                movie_id=meta.id,
                error=str(exc),
                raw=json.dumps(raw[:500]),
            )
            raise ExtractionParseFailure(str(exc), raw=raw) from exc
        log_event(
            self._logger,
            logging.INFO,
            "extraction_complete",
            movie_id=meta.id,
            model=self.model,
            prompt_tokens=usage["prompt_tokens"],
            completion_tokens=usage["completion_tokens"],
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return ExtractionResult(content=content, usage=usage, model=self.model)
