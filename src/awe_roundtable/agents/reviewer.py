from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from awe_roundtable.adapters.runner import ProviderTextResult
from awe_roundtable.agents.base import AgentCall, DISCUSSION_MODE, STRICT_JSON_MODE, TextRunner
from awe_roundtable.agents.parsing import extract_json_object, is_string_list
from awe_roundtable.agents.profiles import render_persona
from awe_roundtable.contract import DiscussionContract, render_contract_for_prompt
from awe_roundtable.text_utils import clip_text

DECISION_APPROVE = 'approve'
DECISION_CHANGES_REQUESTED = 'changes_requested'
REVIEW_DECISIONS = (DECISION_APPROVE, DECISION_CHANGES_REQUESTED)
_LIST_KEYS = ('must_fix', 'nice_to_have', 'tests', 'security')

REVIEW_SCHEMA_TEXT = (
    '{\n'
    '  "decision": "approve" | "changes_requested",\n'
    '  "must_fix": string[],\n'
    '  "nice_to_have": string[],\n'
    '  "tests": string[],\n'
    '  "security": string[]\n'
    '}'
)


def validate_review_schema(payload: Any) -> str | None:
    """Return the first rule violation, or None when the review is well-formed."""
    if not isinstance(payload, dict):
        return 'review must be a JSON object'
    decision = payload.get('decision')
    if decision not in REVIEW_DECISIONS:
        return 'decision must be "approve" or "changes_requested"'
    if not is_string_list(payload.get('must_fix')):
        return 'must_fix must be string[]'
    for key in _LIST_KEYS[1:]:
        if key in payload and not is_string_list(payload.get(key)):
            return f'{key} must be string[]'
    has_must_fix = any(item.strip() for item in payload['must_fix'])
    if has_must_fix and decision != DECISION_CHANGES_REQUESTED:
        return 'decision must be changes_requested when must_fix is non-empty'
    if not has_must_fix and decision != DECISION_APPROVE:
        return 'decision must be approve when must_fix is empty'
    return None


def _normalized_review(payload: dict[str, Any]) -> dict[str, Any]:
    review: dict[str, Any] = {'decision': payload['decision']}
    for key in _LIST_KEYS:
        review[key] = [item.strip() for item in payload.get(key) or [] if item.strip()]
    return review


def _synthetic_review(message: str) -> dict[str, Any]:
    return {
        'decision': DECISION_CHANGES_REQUESTED,
        'must_fix': [message],
        'nice_to_have': [],
        'tests': [],
        'security': [],
    }


@dataclass(frozen=True)
class ReviewerResult:
    mode: str
    text: str
    ok: bool
    run: ProviderTextResult
    review: dict[str, Any] = field(default_factory=dict)
    parse_error: str | None = None
    repaired_json: bool = False

    @property
    def error_class(self) -> str | None:
        return self.run.error_class

    @property
    def decision(self) -> str | None:
        return self.review.get('decision')

    @property
    def must_fix(self) -> list[str]:
        return list(self.review.get('must_fix') or [])

    def to_record(self) -> dict[str, Any]:
        return {
            'mode': self.mode,
            'ok': self.ok,
            'run_id': self.run.run_id,
            'error_class': self.error_class,
            'parse_error': self.parse_error,
            'repaired_json': self.repaired_json,
            'decision': self.decision,
            'must_fix': self.must_fix,
        }


def build_reviewer_prompt(
    *,
    task: str,
    coder_output: str,
    mode: str,
    round_no: int,
    contract: DiscussionContract | None = None,
    role_profiles=None,
) -> str:
    persona = render_persona('reviewer', role_profiles)
    clipped = clip_text(coder_output, max_chars=12000)
    if mode == DISCUSSION_MODE:
        return (
            f'{persona}\n'
            f'Round: {round_no}\n'
            'Mode: discussion. The coder has proposed a plan; nothing has been implemented yet.\n'
            'Critique the plan in plain prose. Use bullet points for concrete items.\n'
            'Start items the coder must address with "must", and name risks explicitly.\n'
            f'Task:\n{task}\n'
            f'Coder proposal:\n{clipped}\n'
        )
    contract_text = render_contract_for_prompt(contract)
    contract_block = f'{contract_text}\n' if contract_text else ''
    return (
        f'{persona}\n'
        f'Round: {round_no}\n'
        'Mode: strict review of the implementation summary below.\n'
        'Block only for correctness, regression, security, or data-loss risks.\n'
        'Do not block for style-only or preference-only feedback.\n'
        f'{contract_block}'
        'Reply with exactly one JSON object and nothing else, matching:\n'
        f'{REVIEW_SCHEMA_TEXT}\n'
        'Rules:\n'
        '- must_fix non-empty requires decision "changes_requested".\n'
        '- must_fix empty requires decision "approve".\n'
        '- Every list holds plain strings.\n'
        f'Task:\n{task}\n'
        f'Implementation summary:\n{clipped}\n'
    )


def run_reviewer(
    runner: TextRunner,
    call: AgentCall,
    *,
    task: str,
    coder_output: str,
    mode: str,
    round_no: int,
    contract: DiscussionContract | None = None,
) -> ReviewerResult:
    if mode not in {DISCUSSION_MODE, STRICT_JSON_MODE}:
        raise ValueError(f'unknown reviewer mode: {mode}')
    prompt = build_reviewer_prompt(
        task=task,
        coder_output=coder_output,
        mode=mode,
        round_no=round_no,
        contract=contract,
        role_profiles=call.role_profiles,
    )
    run = call.invoke(runner, role='reviewer', prompt=prompt, mode=mode)
    text = str(run.text or '')

    if mode == DISCUSSION_MODE:
        return ReviewerResult(
            mode=mode,
            text=text,
            ok=True,
            run=run,
            review={'decision': 'discussion', 'must_fix': [], 'nice_to_have': [], 'tests': [], 'security': []},
        )

    if run.error_class:
        return ReviewerResult(
            mode=mode,
            text=text,
            ok=False,
            run=run,
            review=_synthetic_review(f'Reviewer provider failed: {run.error_class}'),
            parse_error=f'provider_error: {run.error_class}',
        )

    parsed = extract_json_object(text)
    if parsed.payload is None:
        message = f'Reviewer output was not valid JSON: {parsed.error}'
        return ReviewerResult(
            mode=mode,
            text=text,
            ok=False,
            run=run,
            review=_synthetic_review(message),
            parse_error=message,
        )

    violation = validate_review_schema(parsed.payload)
    if violation:
        return ReviewerResult(
            mode=mode,
            text=text,
            ok=False,
            run=run,
            review=_synthetic_review(f'Reviewer output schema invalid: {violation}'),
            parse_error=violation,
            repaired_json=parsed.repaired,
        )
    return ReviewerResult(
        mode=mode,
        text=text,
        ok=True,
        run=run,
        review=_normalized_review(parsed.payload),
        repaired_json=parsed.repaired,
    )


__all__ = [
    'DECISION_APPROVE',
    'DECISION_CHANGES_REQUESTED',
    'REVIEW_DECISIONS',
    'ReviewerResult',
    'build_reviewer_prompt',
    'run_reviewer',
    'validate_review_schema',
]
