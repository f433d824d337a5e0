from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import signal
import subprocess
import threading
import time
from typing import Any, Iterable

from awe_roundtable.command_policy import (
    AllowlistResolution,
    SEVERITY_MALICIOUS,
    classify_command,
    normalize_allowed_prefixes,
)
from awe_roundtable.observability import get_logger
from awe_roundtable.text_utils import clip_tail

_log = get_logger('awe_roundtable.command_runner')

DEFAULT_COMMAND_TIMEOUT_SECONDS = 300
_OUTPUT_LIMIT_CHARS = 20_000


@dataclass(frozen=True)
class ExecutedCommand:
    ok: bool
    code: int | None
    signal: str | None
    stdout: str
    stderr: str
    duration_seconds: float
    timed_out: bool = False
    aborted: bool = False


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f'SIG{signum}'


class ShellCommandExecutor:
    """Runs one command string through ``sh -lc`` in its own process group."""

    def __init__(
        self,
        *,
        timeout_kill_grace_seconds: float = 3.0,
        abort_kill_grace_seconds: float = 1.0,
        poll_seconds: float = 0.1,
    ):
        self.timeout_kill_grace_seconds = timeout_kill_grace_seconds
        self.abort_kill_grace_seconds = abort_kill_grace_seconds
        self.poll_seconds = poll_seconds

    def run(
        self,
        command: str,
        *,
        cwd: Path,
        timeout_seconds: float,
        abort_signal: threading.Event | None = None,
    ) -> ExecutedCommand:
        started = time.monotonic()
        try:
            process = subprocess.Popen(
                ['sh', '-lc', command],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding='utf-8',
                errors='replace',
                cwd=str(cwd),
                start_new_session=True,
            )
        except OSError as exc:
            return ExecutedCommand(
                ok=False,
                code=127,
                signal=None,
                stdout='',
                stderr=str(exc),
                duration_seconds=time.monotonic() - started,
            )

        deadline = started + max(0.01, float(timeout_seconds))
        kill_at: float | None = None
        timed_out = False
        aborted = False
        while True:
            try:
                stdout, stderr = process.communicate(timeout=self.poll_seconds)
                break
            except subprocess.TimeoutExpired:
                pass
            now = time.monotonic()
            if kill_at is None:
                if abort_signal is not None and abort_signal.is_set():
                    aborted = True
                    self._signal_group(process, signal.SIGTERM)
                    kill_at = now + self.abort_kill_grace_seconds
                elif now >= deadline:
                    timed_out = True
                    self._signal_group(process, signal.SIGTERM)
                    kill_at = now + self.timeout_kill_grace_seconds
            elif now >= kill_at:
                self._signal_group(process, signal.SIGKILL)
                kill_at = float('inf')

        elapsed = time.monotonic() - started
        returncode = process.returncode
        code = returncode if returncode is None or returncode >= 0 else None
        sig = _signal_name(-returncode) if returncode is not None and returncode < 0 else None
        if timed_out:
            stderr = (stderr or '') + f'\ncommand timed out after {timeout_seconds:g}s'
        if aborted:
            stderr = (stderr or '') + '\naborted by operator'
        _log.debug('shell_command command=%s code=%s signal=%s duration=%.2fs', command, code, sig, elapsed)
        return ExecutedCommand(
            ok=(code == 0 and not timed_out and not aborted),
            code=code,
            signal=sig,
            stdout=stdout or '',
            stderr=stderr or '',
            duration_seconds=elapsed,
            timed_out=timed_out,
            aborted=aborted,
        )

    @staticmethod
    def _signal_group(process: subprocess.Popen, signum: int) -> None:
        if process.poll() is not None:
            return
        try:
            os.killpg(process.pid, signum)
        except ProcessLookupError:
            # exited between poll and kill
            return


@dataclass(frozen=True)
class CommandRunResult:
    command: str
    ok: bool
    runnable: bool
    blocked: bool
    code: int | None = None
    signal: str | None = None
    stdout: str = ''
    stderr: str = ''
    blocked_reason: str | None = None
    blocked_severity: str | None = None
    retryable_blocked: bool = False
    command_argv0: str | None = None
    matched_prefix: str | None = None
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            'command': self.command,
            'ok': self.ok,
            'runnable': self.runnable,
            'blocked': self.blocked,
            'blocked_reason': self.blocked_reason,
            'blocked_severity': self.blocked_severity,
            'retryable_blocked': self.retryable_blocked,
            'code': self.code,
            'signal': self.signal,
            'stdout': self.stdout,
            'stderr': self.stderr,
            'command_argv0': self.command_argv0,
            'matched_prefix': self.matched_prefix,
            'duration_seconds': round(self.duration_seconds, 3),
        }


@dataclass(frozen=True)
class TestRunReport:
    __test__ = False

    all_passed: bool
    results: tuple[CommandRunResult, ...]
    allowlist: AllowlistResolution

    @property
    def blocked(self) -> list[CommandRunResult]:
        return [item for item in self.results if item.blocked]

    @property
    def runnable(self) -> list[CommandRunResult]:
        return [item for item in self.results if item.runnable]

    @property
    def first_failure(self) -> CommandRunResult | None:
        for item in self.results:
            if item.runnable and not item.ok:
                return item
        return None

    def to_dict(self) -> dict[str, Any]:
        payload = summarize_test_run(self)
        payload['results'] = [item.to_dict() for item in self.results]
        payload['allowlist'] = self.allowlist.to_dict()
        return payload


def summarize_test_run(report: TestRunReport) -> dict[str, Any]:
    blocked = report.blocked
    runnable = report.runnable
    first_failure = report.first_failure
    return {
        'all_passed': report.all_passed,
        'total_commands': len(report.results),
        'blocked_commands': len(blocked),
        'runnable_commands': len(runnable),
        'failed_runnable_commands': sum(1 for item in runnable if not item.ok),
        'retryable_blocked_commands': sum(1 for item in blocked if item.retryable_blocked),
        'malicious_blocked_commands': sum(1 for item in blocked if item.blocked_severity == SEVERITY_MALICIOUS),
        'first_blocked_command': blocked[0].command if blocked else None,
        'blocked_reason': blocked[0].blocked_reason if blocked else None,
        'first_failed_command': first_failure.command if first_failure else None,
    }


def render_test_results_text(report: TestRunReport) -> str:
    lines: list[str] = []
    for item in report.results:
        if item.blocked:
            status = f'BLOCKED ({item.blocked_reason})'
        elif item.ok:
            status = 'PASS'
        else:
            status = 'FAIL'
        lines.append(f'$ {item.command}')
        lines.append(f'status: {status}')
        if item.runnable:
            lines.append(f'exit: code={item.code} signal={item.signal}')
        if item.stdout.strip():
            lines.extend(['--- stdout ---', item.stdout.rstrip()])
        if item.stderr.strip():
            lines.extend(['--- stderr ---', item.stderr.rstrip()])
        lines.append('')
    lines.append(f'all_passed: {report.all_passed}')
    return '\n'.join(lines) + '\n'


class TestCommandRunner:
    __test__ = False

    def __init__(
        self,
        *,
        executor: ShellCommandExecutor | None = None,
        command_timeout_seconds: int = DEFAULT_COMMAND_TIMEOUT_SECONDS,
    ):
        self.executor = executor or ShellCommandExecutor()
        self.command_timeout_seconds = command_timeout_seconds

    def run_commands(
        self,
        commands: Iterable[str],
        *,
        allowed_prefixes: Iterable[str] | None = None,
        stop_on_failure: bool = True,
        abort_signal: threading.Event | None = None,
        cwd: Path | str | None = None,
        timeout_seconds: float | None = None,
        batch_timeout_seconds: float | None = None,
    ) -> TestRunReport:
        allowlist = normalize_allowed_prefixes(allowed_prefixes)
        per_command_timeout = float(timeout_seconds or self.command_timeout_seconds)
        batch_deadline = (
            time.monotonic() + float(batch_timeout_seconds) if batch_timeout_seconds else None
        )
        workdir = Path(cwd) if cwd is not None else Path.cwd()
        results: list[CommandRunResult] = []

        for raw in list(commands or []):
            command = str(raw or '').strip()
            if abort_signal is not None and abort_signal.is_set():
                results.append(CommandRunResult(
                    command=command,
                    ok=False,
                    runnable=False,
                    blocked=False,
                    stderr='aborted by operator',
                ))
                break

            verdict = classify_command(command, allowlist.rules)
            if not verdict.allowed:
                _log.info('test_command_blocked command=%s reason=%s', command, verdict.blocked_reason)
                results.append(CommandRunResult(
                    command=command,
                    ok=False,
                    runnable=False,
                    blocked=True,
                    code=1,
                    stderr=(
                        f'blocked command: {verdict.blocked_reason} '
                        f'(allowed: {", ".join(allowlist.prefixes)})'
                    ),
                    blocked_reason=verdict.blocked_reason,
                    blocked_severity=verdict.blocked_severity,
                    retryable_blocked=verdict.retryable,
                    command_argv0=verdict.command_argv0,
                ))
                continue

            command_timeout = per_command_timeout
            if batch_deadline is not None:
                remaining = batch_deadline - time.monotonic()
                if remaining <= 0:
                    results.append(CommandRunResult(
                        command=command,
                        ok=False,
                        runnable=True,
                        blocked=False,
                        stderr='command batch timeout exhausted before this command ran',
                        command_argv0=verdict.command_argv0,
                        matched_prefix=verdict.matched_prefix,
                    ))
                    if stop_on_failure:
                        break
                    continue
                command_timeout = min(command_timeout, remaining)

            executed = self.executor.run(
                command,
                cwd=workdir,
                timeout_seconds=command_timeout,
                abort_signal=abort_signal,
            )
            result = CommandRunResult(
                command=command,
                ok=executed.ok,
                runnable=True,
                blocked=False,
                code=executed.code,
                signal=executed.signal,
                stdout=clip_tail(executed.stdout, max_chars=_OUTPUT_LIMIT_CHARS),
                stderr=clip_tail(executed.stderr, max_chars=_OUTPUT_LIMIT_CHARS),
                command_argv0=verdict.command_argv0,
                matched_prefix=verdict.matched_prefix,
                duration_seconds=executed.duration_seconds,
            )
            results.append(result)
            _log.info('test_command_finished command=%s ok=%s code=%s', command, result.ok, result.code)
            if executed.aborted:
                break
            if stop_on_failure and not result.ok:
                break

        runnable = [item for item in results if item.runnable]
        if runnable:
            all_passed = all(item.ok for item in runnable)
        else:
            all_passed = not results
        return TestRunReport(all_passed=all_passed, results=tuple(results), allowlist=allowlist)


__all__ = [
    'CommandRunResult',
    'ExecutedCommand',
    'ShellCommandExecutor',
    'TestCommandRunner',
    'TestRunReport',
    'render_test_results_text',
    'summarize_test_run',
]
