from __future__ import annotations

import json
import re
from typing import Any, Iterator, Optional

_CODE_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")


def extract_json_object(text: Optional[str]) -> dict[str, Any]:
    """
    Parse a model response into a JSON object, tolerating code fences, prose
    around the object and trailing commas. Raw control characters inside
    strings are accepted.
    """
    text = (text or "").strip()
    if not text:
        raise ValueError("Model returned empty response")

    for candidate in _candidates(text):
        parsed = _parse_object(candidate)
        if parsed is not None:
            return parsed

    raise ValueError("Model did not return a JSON object")


def _candidates(text: str) -> Iterator[str]:
    yield text
    for match in _CODE_FENCE_RE.finditer(text):
        yield match.group(1).strip()
    # Outermost span: first "{" through last "}".
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        yield text[start : end + 1]


def _parse_object(candidate: str) -> Optional[dict[str, Any]]:
    if not candidate:
        return None
    for attempt in (candidate, _TRAILING_COMMA_RE.sub(r"\1", candidate)):
        try:
            parsed = json.loads(attempt, strict=False)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None
