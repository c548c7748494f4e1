import json
import re
from typing import Any, Dict

_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def safe_json_loads(text: str) -> Dict[str, Any]:
    """Parse the first JSON object in a model reply, tolerating fences and trailing commas."""
    if not isinstance(text, str):
        raise ValueError("Input must be a string.")
    start_idx = text.find("{")
    if start_idx == -1:
        raise ValueError("Text does not contain JSON braces.")
    json_str = _TRAILING_COMMA_RE.sub(r"\1", text[start_idx:]).replace("\n", " ")
    decoder = json.JSONDecoder()
    try:
        obj, _ = decoder.raw_decode(json_str)
    except json.JSONDecodeError:
        end_idx = text.rfind("}")
        if end_idx < start_idx:
            raise ValueError("Text does not contain JSON braces.")
        json_str = _TRAILING_COMMA_RE.sub(r"\1", text[start_idx : end_idx + 1]).replace("\n", " ")
        obj = json.loads(json_str)
    if not isinstance(obj, dict):
        raise ValueError("JSON payload is not an object.")
    return obj
