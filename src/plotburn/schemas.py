from __future__ import annotations

import json
import re
from typing import Any

import jsonschema

RECEPTION_LABELS = [
    "Avoid",
    "Skip It",
    "Mixed Bag",
    "Worth Watching",
    "Strong Approval",
    "Universal Acclaim",
]

_STRING_LIST = {"type": "array", "items": {"type": "string"}}

EXTRACTION_SCHEMA_V1: dict[str, Any] = {
    "$id": "plotburn/extraction/v1",
    "type": "object",
    "required": ["title"],
    "properties": {
        "title": {"type": "string"},
        "plot": {
            "type": "object",
            "properties": {
                "summary": {"type": "string"},
                "detailedSummary": {"type": "string"},
                "absurdities": _STRING_LIST,
                "plotHoles": _STRING_LIST,
                "genreConfusion": {"type": "string"},
            },
        },
        "characterArcs": {"type": "object"},
        "reception": {
            "type": "object",
            "properties": {
                "criticalConsensus": {"type": "string"},
                "audienceSentiment": {"type": "string"},
                "split": {"type": "string"},
            },
        },
        "ratings": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "source": {"type": "string"},
                    "rating": {"type": "string"},
                    "criticName": {"type": "string"},
                    "quote": {"type": "string"},
                    "type": {"type": "string"},
                },
            },
        },
        "positives": _STRING_LIST,
        "negatives": _STRING_LIST,
        "memorableQuotes": {"type": "array", "items": {"type": "object"}},
        "comparisons": {"type": "array", "items": {"type": "object"}},
        "controversy": {"type": "object"},
        "satiricalAngles": _STRING_LIST,
        "boxOffice": {"type": "object"},
        "miscs": {"type": "object"},
    },
}

ROAST_SCHEMA_V1: dict[str, Any] = {
    "$id": "plotburn/roast/v1",
    "type": "object",
    "required": [
        "headline",
        "overview",
        "roast",
        "reception",
        "chips",
        "similar_movies",
        "shareable_caption",
    ],
    "properties": {
        "headline": {"type": "string", "minLength": 1},
        "overview": {"type": "string", "minLength": 1},
        "roast": {"type": "string", "minLength": 1},
        "reception": {
            "type": "object",
            "required": ["bars", "label"],
            "properties": {
                "bars": {"type": "integer", "minimum": 1, "maximum": 10},
                "label": {"enum": RECEPTION_LABELS},
            },
        },
        "chips": {
            "type": "array",
            "items": {"type": "string", "minLength": 1},
            "minItems": 3,
            "maxItems": 3,
        },
        "similar_movies": {
            "type": "array",
            "items": {"type": "string", "minLength": 1},
            "minItems": 4,
            "maxItems": 4,
        },
        "shareable_caption": {"type": "string", "minLength": 1},
    },
}

_FENCED = re.compile(r"^```[a-zA-Z]*\s*\n?(.*?)\n?\s*```$", re.DOTALL)


class StructuredOutputError(ValueError):
    pass


def parse_json_object(raw: str) -> dict[str, Any]:
    """Parse a model reply that is either bare JSON or one fenced JSON block.

    Anything else, including prose around the JSON, is rejected.
    """
    text = (raw or "").strip()
    if not text:
        raise StructuredOutputError("empty_output")
    match = _FENCED.match(text)
    if match:
        text = match.group(1).strip()
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise StructuredOutputError(f"invalid_json: {exc}") from exc
    if not isinstance(parsed, dict):
        raise StructuredOutputError("json_not_object")
    return parsed


def validate_payload(payload: Any, schema: dict[str, Any]) -> None:
    try:
        jsonschema.validate(payload, schema)
    except jsonschema.ValidationError as exc:
        location = "/".join(str(part) for part in exc.absolute_path) or "<root>"
        raise StructuredOutputError(f"schema_error at {location}: {exc.message}") from exc


def parse_extraction(raw: str) -> dict[str, Any]:
    payload = parse_json_object(raw)
    validate_payload(payload, EXTRACTION_SCHEMA_V1)
    return payload


def parse_roast(raw: str) -> dict[str, Any]:
    payload = parse_json_object(raw)
    validate_payload(payload, ROAST_SCHEMA_V1)
    return payload


def evidence_is_usable(evidence: Any) -> bool:
    if not isinstance(evidence, dict):
        return False
    if evidence.get("results"):
        return True
    if evidence.get("faq"):
        return True
    return bool(evidence.get("infobox"))


def extraction_is_usable(content: Any) -> bool:
    if isinstance(content, str):
        try:
            content = json.loads(content)
        except json.JSONDecodeError:
            return False
    if not isinstance(content, dict):
        return False
    title = content.get("title")
    if isinstance(title, str) and title.strip():
        return True
    return bool(content.get("plot")) or bool(content.get("reception"))
