"""Utility helpers for the PlayNext service."""

from __future__ import annotations

import json
import re
import unicodedata
from datetime import datetime, timezone
from typing import Any


JSON_BLOCK_RE = re.compile(r"```(?:json)?\s*([\[{].*?[\]}])\s*```", re.DOTALL)
BARE_JSON_RE = re.compile(r"\{.*\}", re.DOTALL)
BARE_ARRAY_RE = re.compile(r"\[.*\]", re.DOTALL)
WHITESPACE_RE = re.compile(r"\s+")

EDITION_WORDS: tuple[str, ...] = (
    "goty",
    "deluxe",
    "ultimate",
    "complete",
    "definitive",
    "edition",
)


def utcnow() -> datetime:
    """Return a naive UTC timestamp matching the persisted column format."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def slugify(value: str) -> str:
    """Return a URL-friendly slug."""

    value = unicodedata.normalize("NFKD", value)
    value = value.encode("ascii", "ignore").decode("ascii")
    value = re.sub(r"[^a-zA-Z0-9]+", "-", value)
    value = value.strip("-")
    value = re.sub(r"-+", "-", value)
    return value.lower() or "game"


def normalize_name(value: str) -> str:
    """Case-fold and trim a name so lookups agree across cache tiers."""

    return WHITESPACE_RE.sub(" ", value).strip().casefold()


def is_owned_variant(candidate: str, owned_names: set[str]) -> bool:
    """Return True when ``candidate`` names an owned game or one of its editions.

    ``owned_names`` must already be normalised with :func:`normalize_name`.
    """

    normalized = normalize_name(candidate)
    if not normalized:
        return False
    if normalized in owned_names:
        return True
    if not any(word in normalized for word in EDITION_WORDS):
        return False
    return any(owned and owned in normalized for owned in owned_names)


def extract_json_object(content: str) -> Any:
    """Extract and parse the first JSON object (or array) from a model response."""

    match = JSON_BLOCK_RE.search(content)
    if match:
        payload = match.group(1)
    else:
        match = BARE_JSON_RE.search(content) or BARE_ARRAY_RE.search(content)
        if not match:
            raise ValueError("No JSON object found in response")
        payload = match.group(0)

    try:
        return json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ValueError("Invalid JSON payload produced by the model") from exc
