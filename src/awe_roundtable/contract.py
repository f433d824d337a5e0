"""Discussion contract: the agreed plan handed from a proposal round to implementation.

The hash covers every field except itself and is recomputed on every update,
so a stored contract whose content was edited by hand is re-sealed on load
instead of trusted.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
import hashlib
import json
import re
from typing import Any, Iterable

from awe_roundtable.text_utils import clip_text

CONTRACT_VERSION = 1

_BULLET_RE = re.compile(r'^\s*(?:[-*•]|\d+[.)])\s+(.*\S)\s*$')
_ACCEPTANCE_KEYWORDS = ('should', 'expect', 'verify', 'assert', 'passes', 'acceptance')
_CONSTRAINT_KEYWORDS = ('must not', 'do not', "don't", 'avoid', 'never', 'keep ', 'only ')
_MUST_FIX_KEYWORDS = ('must', 'required', 'blocker', 'needs to')
_RISK_KEYWORDS = ('risk', 'concern', 'edge case', 'regression', 'unclear')

_MAX_ITEMS = 8
_MAX_ITEM_CHARS = 300
_LIST_FIELDS = ('acceptance_criteria', 'constraints', 'must_fix', 'open_risks')


def _coerce_text(value: object, *, max_chars: int) -> str:
    return clip_text(str(value or '').strip(), max_chars=max_chars)


def _coerce_string_list(value: object, *, max_items: int, max_chars: int) -> tuple[str, ...]:
    if isinstance(value, str):
        raw_items = [value]
    elif isinstance(value, (list, tuple)):
        raw_items = list(value)
    else:
        return ()
    out: list[str] = []
    seen: set[str] = set()
    for raw in raw_items:
        text = _coerce_text(raw, max_chars=max_chars)
        if not text:
            continue
        key = text.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(text)
        if len(out) >= max_items:
            break
    return tuple(out)


def _bullets(texts: Iterable[str]) -> list[str]:
    items: list[str] = []
    for text in texts:
        for line in str(text or '').splitlines():
            match = _BULLET_RE.match(line)
            if match:
                items.append(match.group(1))
    return items


def _pick(items: Iterable[str], keywords: tuple[str, ...]) -> tuple[str, ...]:
    chosen = [item for item in items if any(word in item.lower() for word in keywords)]
    return _coerce_string_list(chosen, max_items=_MAX_ITEMS, max_chars=_MAX_ITEM_CHARS)


def compute_contract_hash(content: dict[str, Any]) -> str:
    canonical = json.dumps(content, sort_keys=True, ensure_ascii=True, separators=(',', ':'))
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


@dataclass(frozen=True)
class DiscussionContract:
    version: int
    source_round: int
    goal: str
    core_plan: str
    reviewer_notes: str
    tester_notes: str
    acceptance_criteria: tuple[str, ...] = ()
    constraints: tuple[str, ...] = ()
    must_fix: tuple[str, ...] = ()
    open_risks: tuple[str, ...] = ()
    hash: str = ''

    def content(self) -> dict[str, Any]:
        return {
            'version': self.version,
            'source_round': self.source_round,
            'goal': self.goal,
            'core_plan': self.core_plan,
            'reviewer_notes': self.reviewer_notes,
            'tester_notes': self.tester_notes,
            'acceptance_criteria': list(self.acceptance_criteria),
            'constraints': list(self.constraints),
            'must_fix': list(self.must_fix),
            'open_risks': list(self.open_risks),
        }

    def to_dict(self) -> dict[str, Any]:
        payload = self.content()
        payload['hash'] = self.hash
        return payload

    @property
    def is_valid(self) -> bool:
        return any((
            self.goal.strip(),
            self.core_plan.strip(),
            self.reviewer_notes.strip(),
            self.tester_notes.strip(),
            self.must_fix,
        ))

    def with_updates(self, **changes: Any) -> 'DiscussionContract':
        if 'hash' in changes:
            raise ValueError('hash is derived and cannot be set directly')
        for name in _LIST_FIELDS:
            if name in changes:
                changes[name] = _coerce_string_list(changes[name], max_items=_MAX_ITEMS, max_chars=_MAX_ITEM_CHARS)
        return _seal(replace(self, **changes))


def _seal(contract: DiscussionContract) -> DiscussionContract:
    return replace(contract, hash=compute_contract_hash(contract.content()))


def build_discussion_contract(
    *,
    source_round: int,
    goal: str,
    coder_text: str,
    reviewer_text: str,
    tester_text: str,
) -> DiscussionContract | None:
    bullets = _bullets([coder_text, reviewer_text, tester_text])
    contract = _seal(DiscussionContract(
        version=CONTRACT_VERSION,
        source_round=int(source_round),
        goal=_coerce_text(goal, max_chars=2000),
        core_plan=_coerce_text(coder_text, max_chars=2400),
        reviewer_notes=_coerce_text(reviewer_text, max_chars=1600),
        tester_notes=_coerce_text(tester_text, max_chars=1600),
        acceptance_criteria=_pick(_bullets([tester_text]), _ACCEPTANCE_KEYWORDS),
        constraints=_pick(bullets, _CONSTRAINT_KEYWORDS),
        must_fix=_pick(_bullets([reviewer_text]), _MUST_FIX_KEYWORDS),
        open_risks=_pick(bullets, _RISK_KEYWORDS),
    ))
    return contract if contract.is_valid else None


def contract_from_dict(payload: Any) -> DiscussionContract | None:
    if not isinstance(payload, dict):
        return None
    try:
        version = int(payload.get('version') or CONTRACT_VERSION)
        source_round = int(payload.get('source_round') or 0)
    except (TypeError, ValueError):
        return None
    contract = _seal(DiscussionContract(
        version=version,
        source_round=source_round,
        goal=_coerce_text(payload.get('goal'), max_chars=2000),
        core_plan=_coerce_text(payload.get('core_plan'), max_chars=2400),
        reviewer_notes=_coerce_text(payload.get('reviewer_notes'), max_chars=1600),
        tester_notes=_coerce_text(payload.get('tester_notes'), max_chars=1600),
        acceptance_criteria=_coerce_string_list(
            payload.get('acceptance_criteria'), max_items=_MAX_ITEMS, max_chars=_MAX_ITEM_CHARS
        ),
        constraints=_coerce_string_list(payload.get('constraints'), max_items=_MAX_ITEMS, max_chars=_MAX_ITEM_CHARS),
        must_fix=_coerce_string_list(payload.get('must_fix'), max_items=_MAX_ITEMS, max_chars=_MAX_ITEM_CHARS),
        open_risks=_coerce_string_list(payload.get('open_risks'), max_items=_MAX_ITEMS, max_chars=_MAX_ITEM_CHARS),
    ))
    return contract if contract.is_valid else None


def render_contract_for_prompt(contract: DiscussionContract | None) -> str:
    if contract is None:
        return ''
    lines = [
        f'Agreed discussion contract (round {contract.source_round}, hash {contract.hash[:12]}):',
        f'Goal: {contract.goal}',
        'Core plan:',
        contract.core_plan or '(none)',
    ]
    sections = (
        ('Acceptance criteria', contract.acceptance_criteria),
        ('Constraints', contract.constraints),
        ('Must fix', contract.must_fix),
        ('Open risks', contract.open_risks),
    )
    for title, items in sections:
        if items:
            lines.append(f'{title}:')
            lines.extend(f'- {item}' for item in items)
    return '\n'.join(lines)


__all__ = [
    'CONTRACT_VERSION',
    'DiscussionContract',
    'build_discussion_contract',
    'compute_contract_hash',
    'contract_from_dict',
    'render_contract_for_prompt',
]
