from __future__ import annotations

import re

# CSI/OSC escape sequences first, then any remaining C0/C1 control byte
# except newline and tab.
_ANSI_RE = re.compile(r'\x1b\[[0-?]*[ -/]*[@-~]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)|\x1b[@-Z\\-_]')
_CONTROL_RE = re.compile(r'[\x00-\x08\x0b-\x1f\x7f-\x9f]')


def sanitize_log_text(text: str) -> str:
    raw = str(text or '')
    raw = _ANSI_RE.sub('', raw)
    return _CONTROL_RE.sub('', raw)


def clip_text(text: str, *, max_chars: int) -> str:
    raw = str(text or '')
    if max_chars <= 0 or len(raw) <= max_chars:
        return raw
    hidden = len(raw) - max_chars
    return raw[:max_chars] + f'\n...[truncated {hidden} chars]'


def clip_tail(text: str, *, max_chars: int) -> str:
    raw = str(text or '')
    if max_chars <= 0 or len(raw) <= max_chars:
        return raw
    return raw[-max_chars:]


def clip_error_message(text: str, *, max_chars: int = 400) -> str:
    """Strip escape sequences before clipping so output is never cut mid-sequence."""
    cleaned = sanitize_log_text(text).strip()
    if len(cleaned) <= max_chars:
        return cleaned
    return cleaned[:max_chars].rstrip() + '...'
