"""
Shared text processing utilities.

LLM responses arrive as "mostly JSON": fenced, followed by commentary, or
with trailing commas. parse_json_object() tries strict parsing first and
falls back to json_repair before giving up.
"""

import json
import logging
import re
from typing import Any, Dict, Optional

from json_repair import repair_json

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")
_PUNCT_RE = re.compile(r"[^\w\s]")


def strip_code_fences(text: str) -> str:
    """Strip markdown code fences (```json ... ```) from text."""
    text = re.sub(r"^```(?:json)?\s*\n?", "", text)
    text = re.sub(r"\n?```\s*$", "", text)
    return text


def parse_json_object(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Parse an LLM response into a JSON object.

    Returns:
        Parsed dict, or None if the text is empty or no object can be recovered.
    """
    if not text or not text.strip():
        return None

    cleaned = strip_code_fences(text.strip())

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        logger.debug(f"Response not valid JSON, trying json_repair. Preview: {cleaned[:120]}")
        try:
            data = repair_json(cleaned, return_objects=True)
        except (ValueError, TypeError, RecursionError) as e:
            logger.debug(f"json_repair failed: {e}")
            return None

    # A model occasionally double-encodes: "{\"a\": 1}"
    if isinstance(data, str) and data.strip().startswith("{"):
        try:
            data = json.loads(data)
        except json.JSONDecodeError:
            return None

    if not isinstance(data, dict) or not data:
        return None
    return data


def normalize_name(name: str) -> str:
    """Lowercase, drop punctuation and collapse whitespace. Used for exact-name blocking."""
    if not name:
        return ""
    lowered = _PUNCT_RE.sub(" ", name.lower())
    return _WHITESPACE_RE.sub(" ", lowered).strip()


def normalize_fact(fact: str) -> str:
    """Whitespace/case-insensitive form of a fact statement."""
    if not fact:
        return ""
    return _WHITESPACE_RE.sub(" ", fact.strip().lower())


def truncate(text: str, limit: int) -> str:
    """Cut text to at most `limit` characters on a word boundary where possible."""
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    cut = text[:limit]
    space = cut.rfind(" ")
    if space > limit // 2:
        cut = cut[:space]
    return cut.rstrip()
