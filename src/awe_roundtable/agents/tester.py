from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from awe_roundtable.adapters.runner import ProviderTextResult
from awe_roundtable.agents.base import AgentCall, DISCUSSION_MODE, STRICT_JSON_MODE, TextRunner
from awe_roundtable.agents.parsing import extract_json_object, is_string_list
from awe_roundtable.agents.profiles import render_persona
from awe_roundtable.text_utils import clip_text

TESTER_SCHEMA_TEXT = (
    '{\n'
    '  "test_plan": string,\n'
    '  "commands": string[],\n'
    '  "expected_results": string[]\n'
    '}'
)


def validate_tester_schema(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return 'tester output must be a JSON object'
    plan = payload.get('test_plan')
    if not isinstance(plan, str) or not plan.strip():
        return 'test_plan must be a non-empty string'
    if not is_string_list(payload.get('commands')):
        return 'commands must be string[]'
    if 'expected_results' in payload and not is_string_list(payload.get('expected_results')):
        return 'expected_results must be string[]'
    return None


@dataclass(frozen=True)
class TesterResult:
    mode: str
    text: str
    ok: bool
    run: ProviderTextResult
    test_plan: str = ''
    commands: tuple[str, ...] = ()
    expected_results: tuple[str, ...] = ()
    parse_error: str | None = None
    retry_feedback_used: bool = False

    @property
    def error_class(self) -> str | None:
        return self.run.error_class

    def spec_dict(self) -> dict[str, Any]:
        return {
            'test_plan': self.test_plan,
            'commands': list(self.commands),
            'expected_results': list(self.expected_results),
        }

    def to_record(self) -> dict[str, Any]:
        return {
            'mode': self.mode,
            'ok': self.ok,
            'run_id': self.run.run_id,
            'error_class': self.error_class,
            'parse_error': self.parse_error,
            'command_count': len(self.commands),
            'retry_feedback_used': self.retry_feedback_used,
        }


def build_tester_prompt(
    *,
    task: str,
    coder_output: str,
    reviewer_output: str,
    mode: str,
    round_no: int,
    allowed_prefixes: Iterable[str] = (),
    retry_feedback: str | None = None,
    role_profiles=None,
) -> str:
    persona = render_persona('tester', role_profiles)
    coder_clipped = clip_text(coder_output, max_chars=8000)
    reviewer_clipped = clip_text(reviewer_output, max_chars=4000)
    if mode == DISCUSSION_MODE:
        return (
            f'{persona}\n'
            f'Round: {round_no}\n'
            'Mode: discussion. Nothing is implemented yet and no command will run.\n'
            'Describe how you will verify the proposal once built.\n'
            'List acceptance criteria as bullet points that say what "should" happen.\n'
            f'Task:\n{task}\n'
            f'Coder proposal:\n{coder_clipped}\n'
            f'Reviewer notes:\n{reviewer_clipped}\n'
        )
    allowed = '\n'.join(f'- {item}' for item in allowed_prefixes)
    feedback_block = f'Feedback on your previous attempt:\n{retry_feedback}\n' if retry_feedback else ''
    return (
        f'{persona}\n'
        f'Round: {round_no}\n'
        'Mode: strict. Propose shell commands that verify the implementation.\n'
        'Each command must start with one of these allowed prefixes:\n'
        f'{allowed}\n'
        'No shell operators (;, &&, ||, |, $(), backticks) and no inline code evaluation.\n'
        f'{feedback_block}'
        'Reply with exactly one JSON object and nothing else, matching:\n'
        f'{TESTER_SCHEMA_TEXT}\n'
        f'Task:\n{task}\n'
        f'Implementation summary:\n{coder_clipped}\n'
        f'Review:\n{reviewer_clipped}\n'
    )


def run_tester(
    runner: TextRunner,
    call: AgentCall,
    *,
    task: str,
    coder_output: str,
    reviewer_output: str,
    mode: str,
    round_no: int,
    allowed_prefixes: Iterable[str] = (),
    retry_feedback: str | None = None,
) -> TesterResult:
    if mode not in {DISCUSSION_MODE, STRICT_JSON_MODE}:
        raise ValueError(f'unknown tester mode: {mode}')
    prompt = build_tester_prompt(
        task=task,
        coder_output=coder_output,
        reviewer_output=reviewer_output,
        mode=mode,
        round_no=round_no,
        allowed_prefixes=allowed_prefixes,
        retry_feedback=retry_feedback,
        role_profiles=call.role_profiles,
    )
    run = call.invoke(runner, role='tester', prompt=prompt, mode=mode)
    text = str(run.text or '')
    used_feedback = bool(retry_feedback)

    if mode == DISCUSSION_MODE:
        return TesterResult(mode=mode, text=text, ok=True, run=run, test_plan=text.strip())

    if run.error_class:
        return TesterResult(
            mode=mode,
            text=text,
            ok=False,
            run=run,
            parse_error=f'provider_error: {run.error_class}',
            retry_feedback_used=used_feedback,
        )

    parsed = extract_json_object(text)
    if parsed.payload is None:
        return TesterResult(
            mode=mode,
            text=text,
            ok=False,
            run=run,
            test_plan='Tester output schema invalid',
            parse_error=f'tester output was not valid JSON: {parsed.error}',
            retry_feedback_used=used_feedback,
        )
    violation = validate_tester_schema(parsed.payload)
    if violation:
        return TesterResult(
            mode=mode,
            text=text,
            ok=False,
            run=run,
            test_plan='Tester output schema invalid',
            parse_error=violation,
            retry_feedback_used=used_feedback,
        )
    payload = parsed.payload
    return TesterResult(
        mode=mode,
        text=text,
        ok=True,
        run=run,
        test_plan=payload['test_plan'].strip(),
        commands=tuple(str(item) for item in payload['commands']),
        expected_results=tuple(payload.get('expected_results') or ()),
        retry_feedback_used=used_feedback,
    )


__all__ = [
    'TESTER_SCHEMA_TEXT',
    'TesterResult',
    'build_tester_prompt',
    'run_tester',
    'validate_tester_schema',
]
