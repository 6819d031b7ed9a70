# parsing.py
# Repair and parsing of model output.
#
# Model responses are untrusted input. These helpers repair the common
# failure shapes (markdown fences, prose around the JSON) and raise a plain
# ValueError for anything else so callers can fall back deterministically.

import json
import re

_FENCE_OPEN = re.compile(r"^```[\w+-]*[ \t]*\n", re.MULTILINE)
_FENCE_CLOSE = re.compile(r"\n?```[ \t]*$", re.MULTILINE)
_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def strip_fences(text: str) -> str:
    """Remove markdown code-fence wrapping from a model response."""
    cleaned = _FENCE_OPEN.sub("", (text or "").strip("\n"))
    cleaned = _FENCE_CLOSE.sub("", cleaned)
    return cleaned.strip("\n")


def extract_json(text: str) -> dict:
    """
    Return the first JSON object found in `text`.

    Raises ValueError when nothing parseable is present.
    """
    cleaned = strip_fences(text).strip()
    match = _OBJECT.search(cleaned)
    candidate = match.group(0) if match else cleaned
    try:
        data = json.loads(candidate, strict=False)
    except json.JSONDecodeError as exc:
        raise ValueError(f"response is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError("response JSON is not an object")
    return data
