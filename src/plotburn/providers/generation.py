from __future__ import annotations

import json
import logging
import time
from typing import Any

from ..errors import GenerationParseFailure, ProviderError
from ..models import MovieMeta, Truth
from ..schemas import RECEPTION_LABELS, StructuredOutputError, parse_roast
from ..utils import log_event, release_year
from .http import Transport, request_json

MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"

SYSTEM_PROMPT = """You write short satirical movie roasts for PlotBurn.
Voice: a cheerful absurdist who is delighted by how wild the movie is.
Mock the creative decisions, the fans' willingness to believe anything and the
critics' hunt for logic. No money talk. No real names. Plain, everyday words.
Facts from the research data stay unchanged; only the framing is satire.
For regional films, suggest similar movies from the same region as well."""

OUTPUT_FORMAT = f"""Return one JSON object with exactly these keys:
{{
  "headline": "10-15 words",
  "overview": "40-60 words, spoiler-free",
  "roast": "100-130 words",
  "reception": {{"bars": 1-10, "label": one of {json.dumps(RECEPTION_LABELS)}}},
  "chips": ["Two Words", "Two Words", "Two Words"],
  "similar_movies": ["Movie (Year) - plot premise", "...", "...", "..."],
  "shareable_caption": "8-12 words ending with #PlotBurn"
}}"""


def build_user_prompt(truth: Truth, meta: MovieMeta, recent: list[str]) -> str:
    parts = []
    if recent:
        joined = "\n\n---\n\n".join(recent)
        parts.append(
            f"<recent_roasts>\n{joined}\n</recent_roasts>\n"
            "Use a different opening, structure and closing than these."
        )
    genres = ", ".join(meta.genres) if meta.genres else "film"
    parts.append(
        f"Movie: {meta.title} ({release_year(meta.release_date)})\n"
        f"Language: {meta.language_name or meta.original_language or 'Unknown'}\n"
        f"Genre: {genres}\n\n"
        f"Research data:\n{truth.content}"
    )
    parts.append(OUTPUT_FORMAT)
    return "\n\n".join(parts)


class RoastGenerator:
    """Commentary generator over the Anthropic messages API."""

    def __init__(
        self,
        api_key: str | None,
        *,
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 1024,
        timeout: float = 30,
        url: str = MESSAGES_URL,
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
        self._logger = logger or logging.getLogger("plotburn.providers.generation")

    def generate(self, truth: Truth, meta: MovieMeta, recent: list[str]) -> dict[str, Any]:
        if not self.api_key:
            raise ProviderError("missing_api_key: anthropic")
        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "system": SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": build_user_prompt(truth, meta, recent)}],
        }
        started = time.monotonic()
        response = self._transport(
            "POST",
            self.url,
            headers={"x-api-key": self.api_key, "anthropic-version": ANTHROPIC_VERSION},
            payload=payload,
            timeout=self.timeout,
        )
        content = response.get("content") or []
        if not content:
            raise GenerationParseFailure("generation_missing_content", raw=json.dumps(response)[:2000])
        raw = content[0].get("text") or ""
        try:
            roast = parse_roast(raw)
        except StructuredOutputError as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "generation_parse_failed",
                movie_id=meta.id,
                error=str(exc),
                raw=json.dumps(raw[:500]),
            )
            raise GenerationParseFailure(str(exc), raw=raw) from exc
        usage = response.get("usage") or {}
        log_event(
            self._logger,
            logging.INFO,
            "generation_complete",
            movie_id=meta.id,
            model=self.model,
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
            stop_reason=response.get("stop_reason"),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return roast
