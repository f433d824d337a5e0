from __future__ import annotations

from dataclasses import dataclass
import json
from pathlib import Path
import re
import threading
import time
from typing import Any, Callable

from awe_roundtable.adapters.base import DEFAULT_PROVIDER_REGISTRY, normalize_provider_name
from awe_roundtable.adapters.factory import ProviderFactory
from awe_roundtable.adapters.supervisor import (
    DEFAULT_KILL_GRACE_MS,
    DEFAULT_TIMEOUT_MS,
    ExitInfo,
    ProcessSupervisor,
    RunEvent,
)
from awe_roundtable.domain.errors import RunCanceledError
from awe_roundtable.domain.events import RunEventType
from awe_roundtable.domain.models import ProviderErrorClass
from awe_roundtable.observability import get_logger

_log = get_logger('awe_roundtable.adapters.runner')

_PERMISSION_DENIED_RE = re.compile(r"requested permissions to write .*haven't granted it yet", re.IGNORECASE)
PERMISSION_LOOP_THRESHOLD = 3
PERMISSION_LOOP_REASON = 'permission denied loop: file write not granted'

_AUTH_RE = re.compile(
    r'\b40[13]\b|unauthori[sz]ed|forbidden|invalid api key|invalid x-api-key|authentication'
    r'|not logged in|please run /login|api key',
    re.IGNORECASE,
)
_NETWORK_RE = re.compile(
    r'econnreset|econnrefused|enotfound|etimedout|eai_again|getaddrinfo|socket hang up'
    r'|connection reset|connection refused|network error|temporary failure in name resolution',
    re.IGNORECASE,
)
_STDERR_TAIL_LINES = 6


@dataclass(frozen=True)
class ProviderTextResult:
    provider: str
    text: str
    run_id: str | None
    run_dir: Path | None
    exit: ExitInfo
    error_class: str | None
    usage: dict[str, Any] | None
    duration_seconds: float
    termination_reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.error_class is None

    def to_dict(self) -> dict[str, Any]:
        return {
            'provider': self.provider,
            'run_id': self.run_id,
            'run_dir': str(self.run_dir) if self.run_dir is not None else None,
            'exit': {
                'code': self.exit.code,
                'signal': self.exit.signal,
                'error': self.exit.error,
                'error_kind': self.exit.error_kind,
            },
            'error_class': self.error_class,
            'usage': self.usage,
            'duration_seconds': round(self.duration_seconds, 3),
            'termination_reason': self.termination_reason,
            'text_chars': len(self.text),
        }


class _TextAccumulator:
    def __init__(self):
        self.parts: list[str] = []
        self.stderr_lines: list[str] = []
        self.error_notes: list[str] = []
        self.usage: dict[str, Any] | None = None
        self.permission_hits = 0

    def observe(self, event: RunEvent) -> None:
        data = event.data
        if event.type == RunEventType.ASSISTANT_TEXT.value:
            self.parts.append(str(data.get('text') or ''))
        elif event.type == RunEventType.RUN_USAGE.value:
            self.usage = dict(data)
        elif event.type == RunEventType.STDERR_LINE.value:
            self.stderr_lines.append(str(data.get('line') or ''))
            del self.stderr_lines[:-200]
        elif event.type == RunEventType.PROVIDER_NDJSON.value:
            obj = data.get('obj')
            if isinstance(obj, dict) and obj.get('type') == 'result' and obj.get('is_error'):
                self.error_notes.append(str(obj.get('result') or ''))
        if event.type in {RunEventType.STDOUT_LINE.value, RunEventType.STDERR_LINE.value}:
            if _PERMISSION_DENIED_RE.search(str(data.get('line') or '')):
                self.permission_hits += 1

    def should_terminate(self, event: RunEvent) -> str | None:
        _ = event
        if self.permission_hits >= PERMISSION_LOOP_THRESHOLD:
            return PERMISSION_LOOP_REASON
        return None

    @property
    def text(self) -> str:
        return ''.join(self.parts)

    def diagnostics(self, exit_info: ExitInfo) -> str:
        chunks = list(self.stderr_lines) + list(self.error_notes)
        if exit_info.error:
            chunks.append(exit_info.error)
        return '\n'.join(chunks)


def classify_provider_error(
    *,
    exit_info: ExitInfo,
    termination_reason: str | None,
    permission_hits: int,
    diagnostics: str,
    usage: dict[str, Any] | None,
) -> str | None:
    """Map a finished run to one error class; first match wins, None means success."""
    if permission_hits >= PERMISSION_LOOP_THRESHOLD:
        return ProviderErrorClass.PERMISSION_DENIED.value
    if exit_info.error_kind == 'not_found':
        return ProviderErrorClass.NOT_FOUND.value
    failed = (not exit_info.ok) or termination_reason is not None or bool((usage or {}).get('is_error'))
    if not failed:
        return None
    if _AUTH_RE.search(diagnostics or ''):
        return ProviderErrorClass.AUTH_ERROR.value
    if str(termination_reason or '').startswith('idle timeout'):
        return ProviderErrorClass.TIMEOUT.value
    if _NETWORK_RE.search(diagnostics or ''):
        return ProviderErrorClass.NETWORK_ERROR.value
    return ProviderErrorClass.RUNTIME_ERROR.value


def runtime_error_text(
    *,
    provider: str,
    exit_info: ExitInfo,
    error_class: str,
    termination_reason: str | None,
    stderr_lines: list[str],
) -> str:
    if error_class == ProviderErrorClass.NOT_FOUND.value:
        return f'Runtime Error: {provider} CLI not found ({exit_info.error})'
    if error_class == ProviderErrorClass.PERMISSION_DENIED.value:
        return f'Runtime Error: {PERMISSION_LOOP_REASON}'
    lines = [f'Runtime Error: {provider} exited with code={exit_info.code} signal={exit_info.signal}']
    if exit_info.error:
        lines.append(f'error: {exit_info.error}')
    if termination_reason:
        lines.append(f'reason: {termination_reason}')
    tail = [line for line in stderr_lines if line.strip()][-_STDERR_TAIL_LINES:]
    if tail:
        lines.append('stderr tail:')
        lines.extend(tail)
    return '\n'.join(lines)


class ProviderRunner:
    def __init__(
        self,
        *,
        supervisor: ProcessSupervisor | None = None,
        command_overrides: dict[str, str] | None = None,
        dry_run: bool = False,
        kill_grace_ms: int = DEFAULT_KILL_GRACE_MS,
        cwd: Path | str | None = None,
    ):
        self.supervisor = supervisor
        self.dry_run = bool(dry_run)
        self.kill_grace_ms = int(kill_grace_ms)
        self.cwd = cwd
        self.provider_registry = {
            provider: dict(spec)
            for provider, spec in DEFAULT_PROVIDER_REGISTRY.items()
        }
        if command_overrides:
            for raw_provider, raw_command in command_overrides.items():
                provider = normalize_provider_name(raw_provider)
                command = str(raw_command or '').strip()
                if provider in self.provider_registry and command:
                    self.provider_registry[provider]['command'] = command
        if self.supervisor is None and not self.dry_run:
            raise ValueError('supervisor is required unless dry_run is enabled')

    def execute_text(
        self,
        *,
        provider: str,
        prompt: str,
        model: str | None = None,
        model_params: str | None = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        permission_mode: str | None = None,
        event_meta: dict[str, Any] | None = None,
        abort_signal: threading.Event | None = None,
        on_event: Callable[[RunEvent], None] | None = None,
    ) -> ProviderTextResult:
        if abort_signal is not None and abort_signal.is_set():
            raise RunCanceledError('provider run aborted by operator')
        key = normalize_provider_name(provider)
        adapter = ProviderFactory.create(provider=key, provider_spec=self.provider_registry.get(key))
        if self.dry_run:
            return self._dry_run_result(provider=key, event_meta=event_meta)

        invocation = adapter.build_invocation(
            command=str(self.provider_registry[key].get('command') or ''),
            prompt=prompt,
            model=model,
            model_params=model_params,
            permission_mode=permission_mode,
        )
        accumulator = _TextAccumulator()

        def _on_event(event: RunEvent) -> None:
            accumulator.observe(event)
            if on_event is not None:
                on_event(event)

        started = time.monotonic()
        assert self.supervisor is not None
        result = self.supervisor.run_streaming(
            provider_name=key,
            argv=invocation.argv,
            parse_mode=invocation.parse_mode,
            event_meta=event_meta,
            timeout_ms=timeout_ms,
            kill_grace_ms=self.kill_grace_ms,
            on_event=_on_event,
            should_terminate=accumulator.should_terminate,
            abort_signal=abort_signal,
            cwd=self.cwd,
        )
        elapsed = time.monotonic() - started
        if result.aborted or (abort_signal is not None and abort_signal.is_set()):
            raise RunCanceledError('provider run aborted by operator')

        text = adapter.normalize_output(accumulator.text)
        error_class = classify_provider_error(
            exit_info=result.exit,
            termination_reason=result.termination_reason,
            permission_hits=accumulator.permission_hits,
            diagnostics=accumulator.diagnostics(result.exit),
            usage=accumulator.usage,
        )
        if error_class and not text:
            text = runtime_error_text(
                provider=key,
                exit_info=result.exit,
                error_class=error_class,
                termination_reason=result.termination_reason,
                stderr_lines=accumulator.stderr_lines,
            )
        if error_class:
            _log.warning(
                'provider_run_failed provider=%s run_id=%s error_class=%s code=%s signal=%s',
                key,
                result.run_id,
                error_class,
                result.exit.code,
                result.exit.signal,
            )
        return ProviderTextResult(
            provider=key,
            text=text,
            run_id=result.run_id,
            run_dir=result.run_dir,
            exit=result.exit,
            error_class=error_class,
            usage=accumulator.usage,
            duration_seconds=elapsed,
            termination_reason=result.termination_reason,
        )

    @staticmethod
    def _dry_run_result(*, provider: str, event_meta: dict[str, Any] | None) -> ProviderTextResult:
        role = str((event_meta or {}).get('agent_role') or 'coder')
        if role == 'reviewer':
            text = json.dumps(
                {'decision': 'approve', 'must_fix': [], 'nice_to_have': [], 'tests': [], 'security': []}
            )
        elif role == 'tester':
            text = json.dumps(
                {'test_plan': 'Dry run: no commands executed.', 'commands': [], 'expected_results': []}
            )
        else:
            text = f'[dry-run] {provider} {role} response'
        return ProviderTextResult(
            provider=provider,
            text=text,
            run_id=None,
            run_dir=None,
            exit=ExitInfo(code=0, signal=None),
            error_class=None,
            usage=None,
            duration_seconds=0.0,
        )


__all__ = [
    'PERMISSION_LOOP_REASON',
    'PERMISSION_LOOP_THRESHOLD',
    'ProviderRunner',
    'ProviderTextResult',
    'classify_provider_error',
    'runtime_error_text',
]
