"""
Helpers for pulling structured data out of model responses.
"""
import json
import re
from typing import Any, Dict, List

from ragcore.errors import MalformedOutputError

_CODE_FENCE_START = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_CODE_FENCE_END = re.compile(r"\s*```$")
_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def extract_json_object(text: str) -> Dict[str, Any]:
    """
    Parse the outermost JSON object in ``text``.

    Code fences and chatter around the object are ignored.

    Raises:
        MalformedOutputError: No object found or it does not parse
    """
    cleaned = _CODE_FENCE_END.sub("", _CODE_FENCE_START.sub("", text.strip()))
    match = _JSON_OBJECT.search(cleaned)
    if not match:
        raise MalformedOutputError("No JSON object in model response")
    try:
        parsed = json.loads(match.group(0))
    except ValueError as e:
        raise MalformedOutputError(f"Invalid JSON in model response: {e}") from e
    if not isinstance(parsed, dict):
        raise MalformedOutputError("Model response JSON is not an object")
    return parsed


def string_list(value: Any, limit: int) -> List[str]:
    """Non-empty, de-duplicated strings from ``value``, first ``limit`` kept."""
    if not isinstance(value, list):
        return []
    seen = []
    for item in value:
        if isinstance(item, str) and item.strip() and item.strip() not in seen:
            seen.append(item.strip())
    return seen[:limit]
