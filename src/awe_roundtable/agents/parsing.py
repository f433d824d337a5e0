"""Lenient JSON extraction for agent replies.

Extraction only recovers a JSON object from free-form model output; shape
rules live with each agent's validator.
"""
from __future__ import annotations

from dataclasses import dataclass
import json
import re
from typing import Any

_FENCED_JSON_RE = re.compile(r'```(?:json)?\s*(.*?)```', re.IGNORECASE | re.DOTALL)
_STRING_TERMINATORS = frozenset(',:}]')


@dataclass(frozen=True)
class JsonParseOutcome:
    payload: dict[str, Any] | None
    error: str | None = None
    repaired: bool = False

    @property
    def ok(self) -> bool:
        return self.payload is not None


def _iter_json_candidates(output: str) -> list[str]:
    text = str(output or '').strip()
    if not text:
        return []
    candidates: list[str] = [text]
    for match in _FENCED_JSON_RE.finditer(text):
        payload = str(match.group(1) or '').strip()
        if payload:
            candidates.append(payload)
    start = text.find('{')
    end = text.rfind('}')
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])
    out: list[str] = []
    seen: set[str] = set()
    for item in candidates:
        if item in seen:
            continue
        seen.add(item)
        out.append(item)
    return out


def _next_significant_char(text: str, index: int) -> str | None:
    for ch in text[index:]:
        if not ch.isspace():
            return ch
    return None


def repair_unescaped_quotes(text: str) -> str:
    """Escape quotes that sit inside string values, e.g. ``"say "hi" now"``.

    A quote inside a string only closes it when the next significant
    character could legally follow a JSON string. Raw newlines inside strings
    are escaped as well.
    """
    out: list[str] = []
    in_string = False
    escaped = False
    for index, ch in enumerate(text):
        if not in_string:
            out.append(ch)
            if ch == '"':
                in_string = True
            continue
        if escaped:
            out.append(ch)
            escaped = False
            continue
        if ch == '\\':
            out.append(ch)
            escaped = True
            continue
        if ch == '"':
            follower = _next_significant_char(text, index + 1)
            if follower is None or follower in _STRING_TERMINATORS:
                out.append(ch)
                in_string = False
            else:
                out.append('\\"')
            continue
        if ch == '\n':
            out.append('\\n')
            continue
        out.append(ch)
    return ''.join(out)


def _load_object(candidate: str) -> dict[str, Any]:
    parsed = json.loads(candidate)
    if not isinstance(parsed, dict):
        raise ValueError('JSON root must be an object')
    return parsed


def extract_json_object(output: str) -> JsonParseOutcome:
    candidates = _iter_json_candidates(output)
    if not candidates:
        return JsonParseOutcome(payload=None, error='empty output')
    last_error = 'no JSON object found'
    for candidate in candidates:
        try:
            return JsonParseOutcome(payload=_load_object(candidate))
        except ValueError as exc:
            last_error = str(exc)
    for candidate in candidates:
        repaired = repair_unescaped_quotes(candidate)
        if repaired == candidate:
            continue
        try:
            return JsonParseOutcome(payload=_load_object(repaired), repaired=True)
        except ValueError as exc:
            last_error = str(exc)
    return JsonParseOutcome(payload=None, error=last_error)


def is_string_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)


__all__ = ['JsonParseOutcome', 'extract_json_object', 'is_string_list', 'repair_unescaped_quotes']
