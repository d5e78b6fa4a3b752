"""Tolerant JSON extraction from model output.

Only ``ValueError`` leaves this module (``json.JSONDecodeError`` is one), so
callers can turn any parse failure into their deterministic fallback.
"""

import json
import logging
import re

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*\n?(.*?)\n?\s*```$", re.DOTALL)


def strip_markdown_fences(raw: str) -> str:
    """Remove a surrounding ```json ... ``` (or bare ```) block if present."""
    text = raw.strip()
    match = _FENCE_RE.match(text)
    if match:
        return match.group(1).strip()
    if text.startswith("```"):
        # Unterminated fence: drop the opening line only
        lines = text.split("\n")[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        return "\n".join(lines).strip()
    return text


def parse_json(raw: str | None) -> dict | list:
    """Parse JSON from a model response, stripping any accidental markdown fences.

    Falls back to the outermost {...} span when the model wrapped the object in
    prose."""
    if not raw or not raw.strip():
        raise ValueError("Empty model response")
    text = strip_markdown_fences(raw)
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}")
        if start != -1 and end > start:
            try:
                return json.loads(text[start:end + 1])
            except json.JSONDecodeError:
                pass
        logger.error(f"Failed to parse model JSON response: {text[:200]}")
        raise


def parse_json_object(raw: str | None) -> dict:
    result = parse_json(raw)
    if not isinstance(result, dict):
        raise ValueError(f"Expected a JSON object, got {type(result).__name__}")
    return result


def string_list(value, limit: int | None = None) -> list[str]:
    """Coerce a model-supplied field into a list of non-empty strings."""
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        raise ValueError(f"Expected a list, got {type(value).__name__}")
    items = [str(v).strip() for v in value if v is not None and str(v).strip()]
    return items[:limit] if limit else items
