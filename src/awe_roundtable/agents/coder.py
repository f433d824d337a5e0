from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from awe_roundtable.adapters.runner import ProviderTextResult
from awe_roundtable.agents.base import AgentCall, IMPLEMENTATION_MODE, PROPOSAL_MODE, TextRunner
from awe_roundtable.agents.profiles import render_persona
from awe_roundtable.contract import DiscussionContract, render_contract_for_prompt
from awe_roundtable.text_utils import clip_text

PLAN_PERMISSION_MODE = 'plan'


@dataclass(frozen=True)
class CoderResult:
    mode: str
    text: str
    run: ProviderTextResult

    @property
    def error_class(self) -> str | None:
        return self.run.error_class

    @property
    def ok(self) -> bool:
        return self.run.error_class is None and bool(self.text.strip())

    def to_record(self) -> dict[str, Any]:
        return {
            'mode': self.mode,
            'ok': self.ok,
            'run_id': self.run.run_id,
            'error_class': self.error_class,
            'text_chars': len(self.text),
        }


def _must_fix_block(must_fix: Iterable[str]) -> str:
    items = [str(item).strip() for item in must_fix if str(item).strip()]
    if not items:
        return ''
    numbered = '\n'.join(f'{index}. {item}' for index, item in enumerate(items, start=1))
    return f'Must-fix items from the previous round (resolve these first):\n{numbered}\n'


def build_coder_prompt(
    *,
    task: str,
    mode: str,
    round_no: int,
    must_fix: Iterable[str] = (),
    contract: DiscussionContract | None = None,
    role_profiles=None,
) -> str:
    persona = render_persona('coder', role_profiles)
    contract_text = render_contract_for_prompt(contract)
    contract_block = f'{contract_text}\n' if contract_text else ''
    must_fix_block = _must_fix_block(must_fix)
    if mode == PROPOSAL_MODE:
        return (
            f'{persona}\n'
            f'Round: {round_no}\n'
            'Mode: proposal. Do not edit, create, or delete any file in this round.\n'
            'Do not claim that any change has been made.\n'
            'Write a plan your teammates can critique, covering:\n'
            '- Approach\n'
            '- Files you plan to touch\n'
            '- Risks and edge cases\n'
            '- Rollout and verification steps\n'
            f'{must_fix_block}'
            f'Task:\n{task}\n'
        )
    return (
        f'{persona}\n'
        f'Round: {round_no}\n'
        'Mode: implementation. Make the concrete code changes the task needs.\n'
        'Fix every must-fix item before anything else.\n'
        f'{contract_block}'
        f'{must_fix_block}'
        'When done, reply with a concise summary of the files changed and why.\n'
        'Do not paste whole files and do not narrate tool usage.\n'
        f'Task:\n{clip_text(task, max_chars=8000)}\n'
    )


def run_coder(
    runner: TextRunner,
    call: AgentCall,
    *,
    task: str,
    mode: str,
    round_no: int,
    must_fix: Iterable[str] = (),
    contract: DiscussionContract | None = None,
) -> CoderResult:
    if mode not in {PROPOSAL_MODE, IMPLEMENTATION_MODE}:
        raise ValueError(f'unknown coder mode: {mode}')
    prompt = build_coder_prompt(
        task=task,
        mode=mode,
        round_no=round_no,
        must_fix=must_fix,
        contract=contract,
        role_profiles=call.role_profiles,
    )
    run = call.invoke(
        runner,
        role='coder',
        prompt=prompt,
        mode=mode,
        permission_mode=PLAN_PERMISSION_MODE if mode == PROPOSAL_MODE else None,
    )
    return CoderResult(mode=mode, text=str(run.text or ''), run=run)


__all__ = ['CoderResult', 'PLAN_PERMISSION_MODE', 'build_coder_prompt', 'run_coder']
