"""
Structured Model Output Parsing

Models are asked to answer with a JSON object, but free text around it (or a
plain "key: value" block instead of JSON) is common. Parsing returns a tagged
result instead of raising, so every caller decides what a malformed answer means.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Union

_JSON_BLOCK = re.compile(r"\{[\s\S]*\}")
_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_KEY_VALUE = re.compile(r"^\s*[\"']?([A-Za-z_][\w ]*?)[\"']?\s*[:=]\s*(.+?)\s*,?\s*$")


@dataclass(frozen=True)
class Parsed:
    fields: Dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)


@dataclass(frozen=True)
class Malformed:
    raw_text: str
    reason: str


ParseResult = Union[Parsed, Malformed]


def _coerce_scalar(value: str) -> Any:
    """Turn a bare key/value string into bool, number or text."""
    cleaned = value.strip().strip('"').strip("'")
    lowered = cleaned.lower()
    if lowered in ("true", "yes"):
        return True
    if lowered in ("false", "no"):
        return False
    try:
        return float(cleaned) if "." in cleaned else int(cleaned)
    except ValueError:
        return cleaned


def _parse_key_values(text: str) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    for line in text.splitlines():
        match = _KEY_VALUE.match(line)
        if match:
            key = match.group(1).strip().replace(" ", "_")
            fields[key] = _coerce_scalar(match.group(2))
    return fields


def parse_structured_block(text: str) -> ParseResult:
    """
    Extract a structured block from model output.

    Tries, in order: a fenced code block, the outermost {...} span as JSON,
    and finally "key: value" lines.

    Args:
        text: Raw completion text

    Returns:
        Parsed(fields) on success, Malformed(raw_text, reason) otherwise
    """
    if not text or not text.strip():
        return Malformed(raw_text=text or "", reason="empty response")

    fenced = _FENCE.search(text)
    candidate = fenced.group(1) if fenced else text

    match = _JSON_BLOCK.search(candidate)
    if match:
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            return Malformed(raw_text=text, reason=f"invalid JSON: {e.msg}")
        if not isinstance(data, dict):
            return Malformed(raw_text=text, reason="JSON block is not an object")
        return Parsed(fields=data)

    fields = _parse_key_values(candidate)
    if fields:
        return Parsed(fields=fields)

    return Malformed(raw_text=text, reason="no structured block found")
