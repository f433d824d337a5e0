from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import errno
import json
import os
from pathlib import Path
from queue import Empty, Queue
import shutil
import signal
import subprocess
import threading
import time
from typing import Any, Callable
from uuid import uuid4

from awe_roundtable.domain.events import RunEventType
from awe_roundtable.observability import get_logger

_log = get_logger('awe_roundtable.adapters.supervisor')

DEFAULT_TIMEOUT_MS = 10 * 60 * 1000
DEFAULT_KILL_GRACE_MS = 5000
# Grandchildren may keep the pipes open after the direct child exits.
_PIPE_DRAIN_GRACE_SECONDS = 2.0


@dataclass(frozen=True)
class RunEvent:
    type: str
    ts: int
    data: dict[str, Any]
    meta: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {'type': self.type, 'ts': self.ts, 'data': self.data, 'meta': self.meta}


@dataclass(frozen=True)
class ExitInfo:
    code: int | None
    signal: str | None
    error: str | None = None
    error_kind: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.signal is None and self.code == 0


@dataclass(frozen=True)
class StreamingRunResult:
    run_id: str
    run_dir: Path
    exit: ExitInfo
    aborted: bool
    termination_reason: str | None


EventCallback = Callable[[RunEvent], None]
TerminationPredicate = Callable[[RunEvent], 'bool | str | None']


def new_run_id() -> str:
    return f'{int(time.time() * 1000)}-{uuid4().hex[:8]}'


def _now_ms() -> int:
    return int(time.time() * 1000)


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f'SIG{signum}'


def _signal_group(process: subprocess.Popen, signum: int) -> None:
    """Signal the child's whole process group so provider subprocesses go with it."""
    if process.poll() is not None:
        return
    try:
        os.killpg(process.pid, signum)
    except ProcessLookupError:
        return


def _assistant_text(obj: dict[str, Any]) -> str:
    message = obj.get('message')
    if not isinstance(message, dict):
        return ''
    content = message.get('content')
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ''
    parts: list[str] = []
    for part in content:
        if isinstance(part, dict) and part.get('type') == 'text' and isinstance(part.get('text'), str):
            parts.append(part['text'])
    return ''.join(parts)


def _usage_payload(obj: dict[str, Any]) -> dict[str, Any]:
    return {
        'subtype': obj.get('subtype'),
        'is_error': obj.get('is_error'),
        'model': obj.get('model'),
        'duration_ms': obj.get('duration_ms'),
        'duration_api_ms': obj.get('duration_api_ms'),
        'total_cost_usd': obj.get('total_cost_usd'),
        'usage': obj.get('usage'),
        'model_usage': obj.get('modelUsage'),
    }


class _JsonlWriter:
    def __init__(self, path: Path):
        path.parent.mkdir(parents=True, exist_ok=True)
        self._handle = path.open('a', encoding='utf-8')

    def write_line(self, text: str) -> None:
        self._handle.write(text + '\n')
        self._handle.flush()

    def write_json(self, payload: dict[str, Any]) -> None:
        self.write_line(json.dumps(payload, ensure_ascii=False, default=str))

    def close(self) -> None:
        self._handle.close()


class _SupervisedRun:
    def __init__(
        self,
        *,
        run_id: str,
        run_dir: Path,
        meta: dict[str, Any],
        parse_mode: str,
        on_event: EventCallback | None,
        should_terminate: TerminationPredicate | None,
        kill_grace_seconds: float,
    ):
        self.run_id = run_id
        self.run_dir = run_dir
        self.meta = meta
        self.parse_mode = parse_mode
        self.on_event = on_event
        self.should_terminate = should_terminate
        self.kill_grace_seconds = kill_grace_seconds
        self.events_log = _JsonlWriter(run_dir / 'events.jsonl')
        self.raw_log = _JsonlWriter(run_dir / 'raw.ndjson')
        self.process: subprocess.Popen | None = None
        self.termination_reason: str | None = None
        self.aborted = False
        self.finished = False
        self.kill_deadline: float | None = None
        self.parent_signal: str | None = None

    def emit(self, event_type: RunEventType, data: dict[str, Any]) -> None:
        event = RunEvent(type=event_type.value, ts=_now_ms(), data=data, meta=self.meta)
        self.events_log.write_json(event.to_dict())
        if self.on_event is not None:
            self.on_event(event)
        if self.should_terminate is None or self.finished or self.termination_reason is not None:
            return
        decision = self.should_terminate(event)
        if decision:
            reason = decision if isinstance(decision, str) else 'provider requested early termination'
            self.request_kill(reason)

    def request_kill(self, reason: str, *, aborted: bool = False) -> None:
        if aborted:
            self.aborted = True
        if self.termination_reason is not None:
            return
        process = self.process
        if process is None or process.poll() is not None:
            return
        self.termination_reason = reason
        _log.info('run_terminating run_id=%s reason=%s', self.run_id, reason)
        self.emit(RunEventType.RUN_TERMINATING, {'reason': reason})
        _signal_group(process, signal.SIGTERM)
        self.kill_deadline = time.monotonic() + self.kill_grace_seconds

    def note_parent_signal(self, signum: int, _frame: Any = None) -> None:
        self.parent_signal = _signal_name(signum)

    def handle_line(self, stream_name: str, chunk: str) -> None:
        line = chunk.rstrip('\r\n')
        if stream_name == 'stderr':
            self.emit(RunEventType.STDERR_LINE, {'line': line})
            return
        self.raw_log.write_line(line)
        self.emit(RunEventType.STDOUT_LINE, {'line': line})
        if self.parse_mode == 'text':
            self.emit(RunEventType.ASSISTANT_TEXT, {'text': line + '\n'})
            return
        if not line.strip():
            return
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            self.emit(RunEventType.PROVIDER_NDJSON_PARSE_ERROR, {'line': line})
            return
        self.emit(RunEventType.PROVIDER_NDJSON, {'obj': obj})
        if not isinstance(obj, dict):
            return
        kind = obj.get('type')
        if kind == 'assistant':
            text = _assistant_text(obj)
            if text:
                self.emit(RunEventType.ASSISTANT_TEXT, {'text': text})
        elif kind == 'result':
            self.emit(RunEventType.RUN_USAGE, _usage_payload(obj))

    def close(self) -> None:
        self.events_log.close()
        self.raw_log.close()


class ProcessSupervisor:
    """Spawns one provider CLI and turns its output into a typed event stream.

    The supervisor never judges success. It only reports how the child ended,
    whether it was killed and why, and where the run logs live.
    """

    def __init__(
        self,
        *,
        logs_root: Path,
        tick_seconds: float = 1.0,
        install_signal_handlers: bool = True,
    ):
        self.logs_root = Path(logs_root)
        self.tick_seconds = max(0.01, float(tick_seconds))
        self.install_signal_handlers = install_signal_handlers

    def run_dir_for(self, run_id: str) -> Path:
        day = datetime.now().strftime('%Y-%m-%d')
        return self.logs_root / day / f'run-{run_id}'

    def run_streaming(
        self,
        *,
        provider_name: str,
        argv: list[str],
        parse_mode: str = 'ndjson',
        event_meta: dict[str, Any] | None = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        kill_grace_ms: int = DEFAULT_KILL_GRACE_MS,
        on_event: EventCallback | None = None,
        should_terminate: TerminationPredicate | None = None,
        abort_signal: threading.Event | None = None,
        env: dict[str, str] | None = None,
        cwd: Path | str | None = None,
    ) -> StreamingRunResult:
        if not argv:
            raise ValueError('argv must not be empty')
        run_id = new_run_id()
        run_dir = self.run_dir_for(run_id)
        run_dir.mkdir(parents=True, exist_ok=True)
        meta = {'run_id': run_id, 'provider': provider_name}
        meta.update(dict(event_meta or {}))
        run = _SupervisedRun(
            run_id=run_id,
            run_dir=run_dir,
            meta=meta,
            parse_mode='text' if parse_mode == 'text' else 'ndjson',
            on_event=on_event,
            should_terminate=should_terminate,
            kill_grace_seconds=max(0.0, kill_grace_ms / 1000.0),
        )
        restore_signals = self._install_parent_signal_handlers(run)
        try:
            return self._supervise(
                run=run,
                argv=list(argv),
                timeout_ms=max(1, int(timeout_ms)),
                abort_signal=abort_signal,
                env=env,
                cwd=cwd,
            )
        finally:
            restore_signals()
            process = run.process
            if process is not None and process.poll() is None:
                _signal_group(process, signal.SIGKILL)
                process.wait(timeout=5)
            run.close()

    def _supervise(
        self,
        *,
        run: _SupervisedRun,
        argv: list[str],
        timeout_ms: int,
        abort_signal: threading.Event | None,
        env: dict[str, str] | None,
        cwd: Path | str | None,
    ) -> StreamingRunResult:
        run.emit(
            RunEventType.RUN_STARTED,
            {'cmd': argv[0], 'args': argv[1:], 'log_dir': str(run.run_dir)},
        )
        try:
            process = subprocess.Popen(
                self._resolve_executable(argv),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding='utf-8',
                errors='replace',
                bufsize=1,
                cwd=str(cwd) if cwd is not None else None,
                env=env,
                start_new_session=True,
            )
        except OSError as exc:
            kind = 'not_found' if exc.errno == errno.ENOENT else 'spawn_error'
            _log.warning('run_spawn_failed run_id=%s cmd=%s error=%s', run.run_id, argv[0], exc)
            run.finished = True
            run.emit(RunEventType.RUN_FAILED, {'message': str(exc), 'errno': exc.errno, 'error_kind': kind})
            return StreamingRunResult(
                run_id=run.run_id,
                run_dir=run.run_dir,
                exit=ExitInfo(code=None, signal=None, error=str(exc), error_kind=kind),
                aborted=False,
                termination_reason=None,
            )

        run.process = process
        _log.info('run_spawned run_id=%s pid=%s cmd=%s', run.run_id, process.pid, argv[0])
        run.emit(RunEventType.RUN_SPAWNED, {'pid': process.pid})

        queue: Queue[tuple[str, str]] = Queue()

        def _pump(pipe, stream_name: str) -> None:
            if pipe is None:
                return
            try:
                while True:
                    chunk = pipe.readline()
                    if chunk == '':
                        break
                    queue.put((stream_name, chunk))
            finally:
                pipe.close()

        workers = [
            threading.Thread(target=_pump, args=(process.stdout, 'stdout'), daemon=True),
            threading.Thread(target=_pump, args=(process.stderr, 'stderr'), daemon=True),
        ]
        for worker in workers:
            worker.start()

        last_activity = time.monotonic()
        next_tick = last_activity + self.tick_seconds
        exited_at: float | None = None
        while True:
            try:
                stream_name, chunk = queue.get(timeout=min(0.05, self.tick_seconds))
            except Empty:
                pass
            else:
                last_activity = time.monotonic()
                run.handle_line(stream_name, chunk)

            now = time.monotonic()
            if run.parent_signal is not None:
                run.request_kill(f'parent {run.parent_signal}')
            if abort_signal is not None and abort_signal.is_set():
                run.request_kill('aborted by operator', aborted=True)
            if now >= next_tick:
                next_tick = now + self.tick_seconds
                if (now - last_activity) * 1000 > timeout_ms:
                    run.request_kill(f'idle timeout after {timeout_ms / 1000:g}s')
            if run.kill_deadline is not None and now >= run.kill_deadline and process.poll() is None:
                _log.warning('run_force_kill run_id=%s reason=%s', run.run_id, run.termination_reason)
                _signal_group(process, signal.SIGKILL)
                run.kill_deadline = None

            if process.poll() is None:
                continue
            if exited_at is None:
                exited_at = now
            drained = queue.empty() and all(not worker.is_alive() for worker in workers)
            if drained or (queue.empty() and now - exited_at > _PIPE_DRAIN_GRACE_SECONDS):
                break

        for worker in workers:
            worker.join(timeout=0.2)

        returncode = process.returncode
        if returncode is not None and returncode < 0:
            exit_info = ExitInfo(code=None, signal=_signal_name(-returncode))
        else:
            exit_info = ExitInfo(code=returncode, signal=None)
        run.emit(RunEventType.RUN_COMPLETED, {'code': exit_info.code, 'signal': exit_info.signal})
        run.finished = True
        _log.info(
            'run_completed run_id=%s code=%s signal=%s reason=%s',
            run.run_id,
            exit_info.code,
            exit_info.signal,
            run.termination_reason,
        )
        return StreamingRunResult(
            run_id=run.run_id,
            run_dir=run.run_dir,
            exit=exit_info,
            aborted=run.aborted,
            termination_reason=run.termination_reason,
        )

    def _install_parent_signal_handlers(self, run: _SupervisedRun) -> Callable[[], None]:
        if not self.install_signal_handlers or threading.current_thread() is not threading.main_thread():
            return lambda: None
        previous: dict[int, Any] = {}
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.getsignal(signum)
            signal.signal(signum, run.note_parent_signal)

        def _restore() -> None:
            for signum, handler in previous.items():
                signal.signal(signum, handler if handler is not None else signal.SIG_DFL)

        return _restore

    @staticmethod
    def _resolve_executable(argv: list[str]) -> list[str]:
        first = str(argv[0]).strip()
        if not first:
            return argv
        resolved = shutil.which(first)
        if not resolved:
            return argv
        patched = list(argv)
        patched[0] = resolved
        return patched


__all__ = [
    'DEFAULT_KILL_GRACE_MS',
    'DEFAULT_TIMEOUT_MS',
    'ExitInfo',
    'ProcessSupervisor',
    'RunEvent',
    'StreamingRunResult',
    'new_run_id',
]
