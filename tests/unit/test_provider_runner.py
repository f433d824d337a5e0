from __future__ import annotations

import json
from pathlib import Path
import threading

import pytest

from awe_roundtable.adapters.runner import (
    PERMISSION_LOOP_REASON,
    ProviderRunner,
    classify_provider_error,
)
from awe_roundtable.adapters.supervisor import ExitInfo, RunEvent, StreamingRunResult
from awe_roundtable.domain.errors import RunCanceledError, UnsupportedProviderError


class FakeSupervisor:
    """Replays scripted run events instead of spawning a process."""

    def __init__(self, events: list[tuple[str, dict]], *, exit_info: ExitInfo | None = None, aborted: bool = False):
        self.events = events
        self.exit_info = exit_info or ExitInfo(code=0, signal=None)
        self.aborted = aborted
        self.calls: list[dict] = []

    def run_streaming(self, **kwargs):
        self.calls.append(kwargs)
        termination_reason = None
        meta = {'run_id': 'run-1', **dict(kwargs.get('event_meta') or {})}
        for event_type, data in self.events:
            event = RunEvent(type=event_type, ts=0, data=data, meta=meta)
            kwargs['on_event'](event)
            decision = kwargs['should_terminate'](event)
            if decision and termination_reason is None:
                termination_reason = decision
        return StreamingRunResult(
            run_id='run-1',
            run_dir=Path('/tmp/run-1'),
            exit=self.exit_info,
            aborted=self.aborted,
            termination_reason=termination_reason,
        )


def test_execute_text_collects_assistant_text_and_usage():
    supervisor = FakeSupervisor([
        ('assistant.text', {'text': 'hello '}),
        ('assistant.text', {'text': 'world'}),
        ('run.usage', {'total_cost_usd': 0.02, 'is_error': False}),
    ])
    runner = ProviderRunner(supervisor=supervisor, command_overrides={'claude': 'claude -p --output-format stream-json'})
    seen: list[str] = []
    result = runner.execute_text(
        provider='claude',
        prompt='say hello',
        model='sonnet',
        event_meta={'task_id': 't1', 'agent_role': 'coder'},
        on_event=lambda event: seen.append(event.type),
    )
    assert result.ok
    assert result.text == 'hello world'
    assert result.usage == {'total_cost_usd': 0.02, 'is_error': False}
    assert result.run_id == 'run-1'
    call = supervisor.calls[0]
    assert call['argv'][:4] == ['claude', '-p', '--output-format', 'stream-json']
    assert call['argv'][-1] == 'say hello'
    assert call['parse_mode'] == 'ndjson'
    assert seen == ['assistant.text', 'assistant.text', 'run.usage']


def test_execute_text_permission_loop_is_classified_and_terminates():
    denied = "Claude requested permissions to write to /tmp/x.py, but you haven't granted it yet."
    supervisor = FakeSupervisor(
        [('run.stdout.line', {'line': denied})] * 3,
        exit_info=ExitInfo(code=None, signal='SIGTERM'),
    )
    runner = ProviderRunner(supervisor=supervisor)
    result = runner.execute_text(provider='claude', prompt='edit')
    assert result.error_class == 'provider_permission_denied'
    assert result.termination_reason == PERMISSION_LOOP_REASON
    assert result.text == f'Runtime Error: {PERMISSION_LOOP_REASON}'


def test_execute_text_nonzero_exit_builds_runtime_error_text():
    supervisor = FakeSupervisor(
        [('run.stderr.line', {'line': 'boom: something broke'})],
        exit_info=ExitInfo(code=2, signal=None),
    )
    runner = ProviderRunner(supervisor=supervisor)
    result = runner.execute_text(provider='codex', prompt='x')
    assert result.error_class == 'provider_runtime_error'
    assert result.text.startswith('Runtime Error: codex exited with code=2 signal=None')
    assert 'boom: something broke' in result.text


def test_execute_text_raises_when_aborted_before_start():
    abort = threading.Event()
    abort.set()
    runner = ProviderRunner(supervisor=FakeSupervisor([]))
    with pytest.raises(RunCanceledError):
        runner.execute_text(provider='claude', prompt='x', abort_signal=abort)


def test_execute_text_raises_when_supervisor_reports_abort():
    runner = ProviderRunner(supervisor=FakeSupervisor([], aborted=True))
    with pytest.raises(RunCanceledError):
        runner.execute_text(provider='claude', prompt='x')


def test_execute_text_unknown_provider_raises():
    runner = ProviderRunner(supervisor=FakeSupervisor([]))
    with pytest.raises(UnsupportedProviderError):
        runner.execute_text(provider='llama', prompt='x')


def test_runner_requires_supervisor_unless_dry_run():
    with pytest.raises(ValueError):
        ProviderRunner()
    assert ProviderRunner(dry_run=True).dry_run is True


def test_dry_run_responses_follow_agent_role():
    runner = ProviderRunner(dry_run=True)
    review = runner.execute_text(provider='claude', prompt='r', event_meta={'agent_role': 'reviewer'})
    tester = runner.execute_text(provider='codex', prompt='t', event_meta={'agent_role': 'tester'})
    coder = runner.execute_text(provider='gemini', prompt='c', event_meta={'agent_role': 'coder'})
    assert json.loads(review.text)['decision'] == 'approve'
    assert json.loads(tester.text)['commands'] == []
    assert coder.text == '[dry-run] gemini coder response'
    assert all(item.ok for item in (review, tester, coder))


def test_classify_provider_error_precedence():
    ok_exit = ExitInfo(code=0, signal=None)
    failed = ExitInfo(code=1, signal=None)
    assert classify_provider_error(
        exit_info=ok_exit, termination_reason=None, permission_hits=0, diagnostics='', usage=None
    ) is None
    assert classify_provider_error(
        exit_info=ExitInfo(code=None, signal=None, error='missing', error_kind='not_found'),
        termination_reason=None,
        permission_hits=0,
        diagnostics='',
        usage=None,
    ) == 'provider_not_found'
    assert classify_provider_error(
        exit_info=failed, termination_reason=None, permission_hits=0, diagnostics='HTTP 401 Unauthorized', usage=None
    ) == 'provider_auth_error'
    assert classify_provider_error(
        exit_info=ExitInfo(code=None, signal='SIGTERM'),
        termination_reason='idle timeout after 600s',
        permission_hits=0,
        diagnostics='',
        usage=None,
    ) == 'provider_timeout'
    assert classify_provider_error(
        exit_info=failed, termination_reason=None, permission_hits=0, diagnostics='ECONNRESET', usage=None
    ) == 'provider_network_error'
    assert classify_provider_error(
        exit_info=ok_exit, termination_reason=None, permission_hits=0, diagnostics='', usage={'is_error': True}
    ) == 'provider_runtime_error'
