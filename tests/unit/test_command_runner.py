from __future__ import annotations

import threading

import pytest

from awe_roundtable.command_runner import (
    ExecutedCommand,
    ShellCommandExecutor,
    TestCommandRunner,
    render_test_results_text,
    summarize_test_run,
)


class FakeExecutor:
    def __init__(self, outcomes: dict[str, ExecutedCommand] | None = None):
        self.outcomes = outcomes or {}
        self.calls: list[tuple[str, float]] = []

    def run(self, command, *, cwd, timeout_seconds, abort_signal=None):
        self.calls.append((command, timeout_seconds))
        return self.outcomes.get(
            command,
            ExecutedCommand(ok=True, code=0, signal=None, stdout='ok\n', stderr='', duration_seconds=0.01),
        )


def _failed(code: int = 1) -> ExecutedCommand:
    return ExecutedCommand(ok=False, code=code, signal=None, stdout='', stderr='1 failing', duration_seconds=0.01)


def test_runner_executes_allowed_commands_and_reports_pass(tmp_path):
    executor = FakeExecutor()
    runner = TestCommandRunner(executor=executor, command_timeout_seconds=30)
    report = runner.run_commands(['npm test', 'node --test'], allowed_prefixes=['npm test', 'node --test'], cwd=tmp_path)

    assert report.all_passed is True
    assert [call[0] for call in executor.calls] == ['npm test', 'node --test']
    assert all(call[1] == 30.0 for call in executor.calls)
    summary = summarize_test_run(report)
    assert summary['runnable_commands'] == 2
    assert summary['blocked_commands'] == 0
    assert summary['first_failed_command'] is None


def test_runner_blocks_without_spawning_and_records_reason(tmp_path):
    executor = FakeExecutor()
    runner = TestCommandRunner(executor=executor)
    report = runner.run_commands(
        ['make test', 'node -e "process.exit(0)"'],
        allowed_prefixes=['npm test'],
        cwd=tmp_path,
    )

    assert executor.calls == []
    assert report.all_passed is False
    first, second = report.results
    assert first.blocked is True and first.code == 1
    assert first.blocked_reason == 'allowlist_mismatch'
    assert first.retryable_blocked is True
    assert first.stderr.startswith('blocked command: allowlist_mismatch (allowed: npm test)')
    assert second.blocked_reason == 'malicious_command'
    assert second.blocked_severity == 'malicious'

    summary = summarize_test_run(report)
    assert summary['blocked_commands'] == 2
    assert summary['retryable_blocked_commands'] == 1
    assert summary['malicious_blocked_commands'] == 1
    assert summary['first_blocked_command'] == 'make test'
    assert summary['blocked_reason'] == 'allowlist_mismatch'


def test_runner_stops_on_first_failure_by_default(tmp_path):
    executor = FakeExecutor({'npm test': _failed()})
    runner = TestCommandRunner(executor=executor)
    report = runner.run_commands(['npm test', 'npm run test'], allowed_prefixes=['npm'], cwd=tmp_path)

    assert report.all_passed is False
    assert len(report.results) == 1
    assert report.first_failure is not None
    assert report.first_failure.command == 'npm test'


def test_runner_continues_when_stop_on_failure_disabled(tmp_path):
    executor = FakeExecutor({'npm test': _failed()})
    runner = TestCommandRunner(executor=executor)
    report = runner.run_commands(
        ['npm test', 'npm run test'],
        allowed_prefixes=['npm'],
        cwd=tmp_path,
        stop_on_failure=False,
    )
    assert [item.ok for item in report.results] == [False, True]
    assert report.all_passed is False


def test_runner_all_passed_ignores_blocked_when_something_ran(tmp_path):
    runner = TestCommandRunner(executor=FakeExecutor())
    report = runner.run_commands(['make test', 'npm test'], allowed_prefixes=['npm test'], cwd=tmp_path)
    assert report.all_passed is True
    assert len(report.blocked) == 1
    assert len(report.runnable) == 1


def test_runner_with_no_commands_passes(tmp_path):
    report = TestCommandRunner(executor=FakeExecutor()).run_commands([], cwd=tmp_path)
    assert report.all_passed is True
    assert report.results == ()
    assert report.allowlist.used_fallback is True


def test_runner_stops_when_abort_already_set(tmp_path):
    executor = FakeExecutor()
    abort = threading.Event()
    abort.set()
    report = TestCommandRunner(executor=executor).run_commands(
        ['npm test'],
        allowed_prefixes=['npm test'],
        cwd=tmp_path,
        abort_signal=abort,
    )
    assert executor.calls == []
    assert report.results[0].runnable is False
    assert report.results[0].stderr == 'aborted by operator'


def test_runner_marks_commands_after_batch_budget_as_failed(tmp_path, monkeypatch):
    import awe_roundtable.command_runner as module

    ticks = [100.0, 100.0]

    def fake_monotonic():
        return ticks.pop(0) if ticks else 200.0

    monkeypatch.setattr(module.time, 'monotonic', fake_monotonic)
    executor = FakeExecutor()
    report = TestCommandRunner(executor=executor).run_commands(
        ['npm test', 'npm run test'],
        allowed_prefixes=['npm'],
        cwd=tmp_path,
        batch_timeout_seconds=10,
    )
    assert [call[0] for call in executor.calls] == ['npm test']
    assert executor.calls[0][1] == pytest.approx(10.0)
    assert report.results[1].ok is False
    assert report.results[1].stderr == 'command batch timeout exhausted before this command ran'
    assert report.all_passed is False


def test_render_test_results_text_lists_each_command(tmp_path):
    executor = FakeExecutor({'npm test': _failed(2)})
    report = TestCommandRunner(executor=executor).run_commands(
        ['make lint', 'npm test'],
        allowed_prefixes=['npm test'],
        cwd=tmp_path,
        stop_on_failure=False,
    )
    text = render_test_results_text(report)
    assert '$ make lint\nstatus: BLOCKED (allowlist_mismatch)' in text
    assert '$ npm test\nstatus: FAIL\nexit: code=2 signal=None' in text
    assert text.endswith('all_passed: False\n')


def test_report_to_dict_includes_allowlist(tmp_path):
    report = TestCommandRunner(executor=FakeExecutor()).run_commands(
        ['npm test'],
        allowed_prefixes=['npm test', 'rm -rf'],
        cwd=tmp_path,
    )
    payload = report.to_dict()
    assert payload['allowlist']['prefixes'] == ['npm test']
    assert payload['allowlist']['rejected'] == [{'prefix': 'rm -rf', 'reason': 'unsupported_binary'}]
    assert payload['results'][0]['matched_prefix'] == 'npm test'


def test_shell_executor_captures_exit_code_and_streams(tmp_path):
    executed = ShellCommandExecutor(poll_seconds=0.05).run(
        'echo out; echo err 1>&2; exit 3',
        cwd=tmp_path,
        timeout_seconds=10,
    )
    assert executed.ok is False
    assert executed.code == 3
    assert executed.stdout.strip() == 'out'
    assert 'err' in executed.stderr


def test_shell_executor_times_out_and_terminates_group(tmp_path):
    executed = ShellCommandExecutor(poll_seconds=0.05, timeout_kill_grace_seconds=0.5).run(
        'sleep 5',
        cwd=tmp_path,
        timeout_seconds=0.3,
    )
    assert executed.timed_out is True
    assert executed.ok is False
    assert 'command timed out after 0.3s' in executed.stderr
    assert executed.duration_seconds < 4.0
